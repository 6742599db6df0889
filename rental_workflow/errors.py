from flask import jsonify
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from rental_workflow.extensions import db


class AppError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class InvalidTransition(AppError):
    """The requested status is not reachable from the current one."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current_status, target_status, allowed_statuses, message=None):
        super().__init__(message or f"Invalid status transition from {current_status} to {target_status}.")
        self.current_status = current_status
        self.target_status = target_status
        self.allowed_statuses = list(allowed_statuses)

    def to_dict(self):
        payload = super().to_dict()
        payload["current_status"] = self.current_status
        payload["allowed_statuses"] = self.allowed_statuses
        return payload


class PreconditionFailed(AppError):
    """A guard attached to an otherwise allowed transition did not hold."""

    status_code = 422
    code = "precondition_failed"

    def __init__(self, message, guard=None):
        super().__init__(message)
        self.guard = guard

    def to_dict(self):
        payload = super().to_dict()
        if self.guard:
            payload["guard"] = self.guard
        return payload


class ConcurrentModification(AppError):
    status_code = 409
    code = "concurrent_modification"

    def to_dict(self):
        payload = super().to_dict()
        payload["retryable"] = True
        return payload


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(err):
        db.session.rollback()
        if err.status_code >= 500:
            app.logger.error("Application error: %s", err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(_err):
        db.session.rollback()
        app.logger.warning("Database integrity error")
        return jsonify({"error": "Conflict. The write violates a data constraint.", "code": "conflict"}), 409

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify({"error": err.description, "code": err.name.lower().replace(" ", "_")}), err.code

    @app.errorhandler(500)
    def server_error(_err):
        db.session.rollback()
        app.logger.exception("Internal server error")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500
