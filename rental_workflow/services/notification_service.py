from rental_workflow.errors import NotFound
from rental_workflow.extensions import db
from rental_workflow.models import Notification
from rental_workflow.models.base import utcnow

TRANSITION_TITLES = {
    "approved": "Rental approved",
    "payment_pending": "Payment requested",
    "confirmed": "Rental confirmed",
    "preparing": "Equipment being prepared",
    "ready_for_pickup": "Equipment ready for pickup",
    "out_for_delivery": "Equipment out for delivery",
    "delivered": "Equipment delivered",
    "in_progress": "Rental started",
    "return_requested": "Return requested",
    "returning": "Equipment returning",
    "completed": "Rental completed",
    "cancelled": "Rental cancelled",
    "overdue": "Rental overdue",
    "dispute": "Rental under dispute",
}


class NotificationService:
    """Outbox for customer-facing notices; delivery is done by an external sender."""

    @staticmethod
    def push(order, title, message, history_entry=None):
        notification = Notification(
            rental_order=order,
            recipient_ref=order.customer_ref,
            title=title,
            message=message,
            history_entry_id=history_entry.id if history_entry is not None else None,
        )
        db.session.add(notification)
        db.session.flush()
        return notification

    @staticmethod
    def push_transition(order, history_entry):
        title = TRANSITION_TITLES.get(history_entry.new_status, "Rental updated")
        message = history_entry.notes or f"Rental #{order.id} is now {order.status_display}."
        return NotificationService.push(order, title, message, history_entry=history_entry)

    @staticmethod
    def pending(limit=50):
        return (
            Notification.query.filter(Notification.dispatched_at.is_(None))
            .order_by(Notification.id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def mark_dispatched(notification_id):
        notification = db.session.get(Notification, notification_id)
        if not notification:
            raise NotFound(f"Notification {notification_id} not found.")
        if notification.dispatched_at is None:
            notification.dispatched_at = utcnow()
            db.session.commit()
        return notification
