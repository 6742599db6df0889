from flask import Blueprint, jsonify, request
from flask_login import login_required

from rental_workflow.serializers import serialize_notification
from rental_workflow.services import NotificationService

api_notification_bp = Blueprint("api_notification", __name__)


@api_notification_bp.get("/pending")
@login_required
def pending_notifications():
    limit = request.args.get("limit", default=50, type=int)
    items = NotificationService.pending(limit=min(max(limit, 1), 200))
    return jsonify([serialize_notification(n) for n in items])


@api_notification_bp.post("/<int:notification_id>/dispatched")
@login_required
def mark_dispatched(notification_id):
    notification = NotificationService.mark_dispatched(notification_id)
    return jsonify(serialize_notification(notification))
