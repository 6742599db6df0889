from rental_workflow.models.document import DOCUMENT_TYPES, Document
from rental_workflow.models.notification import Notification
from rental_workflow.models.rental_order import (
    PAYMENT_STATUSES,
    RENTAL_STATUSES,
    TERMINAL_STATUSES,
    RentalOrder,
)
from rental_workflow.models.status_history import StatusHistoryEntry

__all__ = [
    "RentalOrder",
    "StatusHistoryEntry",
    "Document",
    "Notification",
    "DOCUMENT_TYPES",
    "PAYMENT_STATUSES",
    "RENTAL_STATUSES",
    "TERMINAL_STATUSES",
]
