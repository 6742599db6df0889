from rental_workflow.errors import NotFound, PreconditionFailed, ValidationError
from rental_workflow.extensions import db
from rental_workflow.models import Document
from rental_workflow.services import DocumentService, RentalService
from tests.base import AppTestCase


class AttachDocumentTests(AppTestCase):
    def test_attach_keeps_status_and_bumps_version(self):
        order = RentalService.approve(self.make_order().id, "ok")
        version = order.version

        document = DocumentService.attach_document(
            order.id,
            "Rental_Agreement",
            "  Signed agreement ",
            visible_to_customer=False,
            storage_ref="rental-1/2026/10/abc.pdf",
            original_filename="agreement.pdf",
            actor_ref="ops-7",
        )

        order = RentalService.get_order(order.id)
        self.assertEqual(order.status, "approved")
        self.assertEqual(order.version, version + 1)
        self.assertEqual(document.document_type, "rental_agreement")
        self.assertEqual(document.title, "Signed agreement")
        self.assertFalse(document.visible_to_customer)
        self.assertEqual(document.uploaded_by, "ops-7")
        self.assertEqual([doc.id for doc in order.documents], [document.id])

    def test_validation(self):
        order = self.make_order()
        with self.assertRaises(ValidationError):
            DocumentService.attach_document(order.id, "selfie", "Photo", storage_ref="a.png")
        with self.assertRaises(ValidationError):
            DocumentService.attach_document(order.id, "invoice", "   ", storage_ref="a.pdf")
        with self.assertRaises(ValidationError):
            DocumentService.attach_document(order.id, "invoice", "Invoice", storage_ref=None)
        with self.assertRaises(NotFound):
            DocumentService.attach_document(404, "invoice", "Invoice", storage_ref="a.pdf")
        self.assertEqual(Document.query.count(), 0)

    def test_terminal_orders_take_no_documents(self):
        order = RentalService.cancel(self.make_order().id, "duplicate")
        with self.assertRaises(PreconditionFailed):
            DocumentService.attach_document(order.id, "invoice", "Invoice", storage_ref="a.pdf")

    def test_customer_view_hides_internal_documents(self):
        order = self.make_order()
        DocumentService.attach_document(order.id, "invoice", "Invoice", True, storage_ref="a.pdf")
        DocumentService.attach_document(order.id, "damage_report", "Internal notes", False, storage_ref="b.pdf")

        self.assertEqual(len(DocumentService.list_documents(order.id)), 2)
        visible = DocumentService.list_documents(order.id, customer_view=True)
        self.assertEqual([doc.title for doc in visible], ["Invoice"])

    def test_documents_are_never_mutated(self):
        order = self.make_order()
        document = DocumentService.attach_document(order.id, "invoice", "Invoice", storage_ref="a.pdf")
        document.title = "Edited"
        with self.assertRaises(ValueError):
            db.session.commit()
        db.session.rollback()

    def test_remove_document(self):
        order = self.make_order()
        document = DocumentService.attach_document(order.id, "invoice", "Invoice", storage_ref="a.pdf")

        storage_ref = DocumentService.remove_document(order.id, document.id)

        self.assertEqual(storage_ref, "a.pdf")
        self.assertEqual(Document.query.count(), 0)
        with self.assertRaises(NotFound):
            DocumentService.remove_document(order.id, document.id)
