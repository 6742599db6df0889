from rental_workflow.services.document_service import DocumentService
from rental_workflow.services.file_service import FileService
from rental_workflow.services.notification_service import NotificationService
from rental_workflow.services.rental_service import RentalService

__all__ = [
    "DocumentService",
    "FileService",
    "NotificationService",
    "RentalService",
]
