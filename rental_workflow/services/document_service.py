import logging

from rental_workflow.errors import NotFound, PreconditionFailed, ValidationError
from rental_workflow.models import DOCUMENT_TYPES, Document
from rental_workflow.models.base import utcnow
from rental_workflow.services.rental_service import RentalService, clean_text

logger = logging.getLogger(__name__)


class DocumentService:
    @staticmethod
    def validate(document_type, title):
        document_type = clean_text(document_type, "document_type").lower()
        title = clean_text(title, "title")
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(f"Unknown document type: {document_type or '(empty)'}.")
        if not title:
            raise ValidationError("Document title is required.")
        return document_type, title

    @staticmethod
    def ensure_open(order):
        if order.is_terminal:
            raise PreconditionFailed(
                f"Rental {order.id} is {order.status}; documents can no longer be attached.",
                guard="order_not_terminal",
            )
        return order

    @staticmethod
    def attach_document(
        order_id,
        document_type,
        title,
        visible_to_customer=True,
        storage_ref=None,
        original_filename=None,
        actor_ref=None,
    ):
        """Add a document to a non-terminal order. The order's status is left alone."""
        document_type, title = DocumentService.validate(document_type, title)
        if not storage_ref:
            raise ValidationError("Document payload reference is required.")

        order = DocumentService.ensure_open(RentalService.get_order(order_id, for_update=True))

        document = Document(
            document_type=document_type,
            title=title,
            visible_to_customer=bool(visible_to_customer),
            storage_ref=storage_ref,
            original_filename=original_filename,
            uploaded_by=actor_ref,
        )
        order.documents.append(document)
        # Touch the order so the version check orders this write against transitions.
        order.updated_at = utcnow()
        RentalService._commit(order)
        logger.info("Document %s (%s) attached to rental %s.", document.id, document_type, order.id)
        return document

    @staticmethod
    def list_documents(order_id, customer_view=False):
        order = RentalService.get_order(order_id)
        if customer_view:
            return [doc for doc in order.documents if doc.visible_to_customer]
        return list(order.documents)

    @staticmethod
    def remove_document(order_id, document_id):
        order = RentalService.get_order(order_id, for_update=True)
        document = Document.query.filter_by(id=document_id, rental_order_id=order.id).first()
        if not document:
            raise NotFound(f"Document {document_id} not found on rental {order.id}.")
        storage_ref = document.storage_ref
        order.documents.remove(document)
        order.updated_at = utcnow()
        RentalService._commit(order)
        logger.info("Document %s removed from rental %s.", document_id, order.id)
        return storage_ref
