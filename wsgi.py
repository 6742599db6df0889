from rental_workflow import create_app
from rental_workflow.extensions import db
from rental_workflow.models import Document, Notification, RentalOrder, StatusHistoryEntry

app = create_app()


@app.shell_context_processor
def make_shell_context():
    return {
        "db": db,
        "RentalOrder": RentalOrder,
        "StatusHistoryEntry": StatusHistoryEntry,
        "Document": Document,
        "Notification": Notification,
    }
