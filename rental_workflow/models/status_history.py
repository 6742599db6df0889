from sqlalchemy import event

from rental_workflow.extensions import db
from rental_workflow.models.base import PKType, utcnow


class StatusHistoryEntry(db.Model):
    """One accepted status change. Rows are written once and never updated."""

    __tablename__ = "rental_status_history"

    id = db.Column(PKType, primary_key=True, autoincrement=True)
    rental_order_id = db.Column(
        PKType, db.ForeignKey("rental_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    previous_status = db.Column(db.String(24), nullable=True)
    new_status = db.Column(db.String(24), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    actor_ref = db.Column(db.String(64), nullable=True)
    visible_to_customer = db.Column(db.Boolean, nullable=False, default=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    rental_order = db.relationship("RentalOrder", back_populates="history")


@event.listens_for(StatusHistoryEntry, "before_update")
def _history_is_append_only(_mapper, _connection, target):
    raise ValueError(f"Status history entry {target.id} is immutable.")
