from rental_workflow.models.base import as_utc
from rental_workflow.models.rental_order import AMOUNT_FIELDS
from rental_workflow.services import schedule, transitions


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_history_entry(entry):
    return {
        "id": entry.id,
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "notes": entry.notes,
        "actor_ref": entry.actor_ref,
        "visible_to_customer": entry.visible_to_customer,
        "timestamp": _iso(entry.timestamp),
    }


def serialize_document(document):
    return {
        "id": document.id,
        "document_type": document.document_type,
        "title": document.title,
        "visible_to_customer": document.visible_to_customer,
        "storage_ref": document.storage_ref,
        "original_filename": document.original_filename,
        "uploaded_at": _iso(document.uploaded_at),
    }


def serialize_notification(notification):
    return {
        "id": notification.id,
        "rental_order_id": notification.rental_order_id,
        "recipient_ref": notification.recipient_ref,
        "title": notification.title,
        "message": notification.message,
        "created_at": _iso(notification.created_at),
        "dispatched_at": _iso(notification.dispatched_at),
    }


def serialize_order(order, detail=False):
    payload = {
        "id": order.id,
        "status": order.status,
        "status_display": order.status_display,
        "allowed_next_statuses": transitions.allowed_targets(order.status),
        "customer_ref": order.customer_ref,
        "equipment_ref": order.equipment_ref,
        "start_date": _iso(order.start_date),
        "end_date": _iso(order.end_date),
        "total_days": order.total_days,
        "daily_rate": str(order.daily_rate),
        "total_amount": str(order.total_amount),
        "payment_status": order.payment_status,
        "delivery_required": order.delivery_required,
        "delivery_address": order.delivery_address,
        "progress": schedule.progress_fraction(order),
        "days_remaining": schedule.days_remaining(order),
        "version": order.version,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    for name in AMOUNT_FIELDS:
        payload[name] = str(getattr(order, name))
    if detail:
        payload["status_history"] = [serialize_history_entry(entry) for entry in order.history]
        payload["documents"] = [serialize_document(doc) for doc in order.documents]
    return payload
