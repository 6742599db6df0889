from rental_workflow.extensions import db
from rental_workflow.models.base import PKType, TimestampMixin


class Notification(TimestampMixin, db.Model):
    __tablename__ = "notifications"

    id = db.Column(PKType, primary_key=True, autoincrement=True)
    rental_order_id = db.Column(
        PKType, db.ForeignKey("rental_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    history_entry_id = db.Column(
        PKType, db.ForeignKey("rental_status_history.id", ondelete="CASCADE"), nullable=True
    )
    recipient_ref = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(180), nullable=False)
    message = db.Column(db.Text, nullable=False)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    rental_order = db.relationship("RentalOrder", back_populates="notifications")
