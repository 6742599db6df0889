from sqlalchemy import event

from rental_workflow.extensions import db
from rental_workflow.models.base import PKType, utcnow

DOCUMENT_TYPES = (
    "rental_agreement",
    "operating_manual",
    "insurance_document",
    "delivery_receipt",
    "return_receipt",
    "damage_report",
    "invoice",
    "payment_receipt",
    "other",
)


class Document(db.Model):
    __tablename__ = "rental_documents"

    id = db.Column(PKType, primary_key=True, autoincrement=True)
    rental_order_id = db.Column(
        PKType, db.ForeignKey("rental_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_type = db.Column(db.String(32), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    visible_to_customer = db.Column(db.Boolean, nullable=False, default=True)
    storage_ref = db.Column(db.String(500), nullable=False)
    original_filename = db.Column(db.String(255), nullable=True)
    uploaded_by = db.Column(db.String(64), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    rental_order = db.relationship("RentalOrder", back_populates="documents")


@event.listens_for(Document, "before_update")
def _documents_are_immutable(_mapper, _connection, target):
    raise ValueError(f"Document {target.id} cannot be modified; upload a new one instead.")
