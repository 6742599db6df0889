from flask import Blueprint

from rental_workflow.routes.api.v1.notifications import api_notification_bp
from rental_workflow.routes.api.v1.rentals import api_rental_bp

api_v1_bp = Blueprint("api_v1", __name__)
api_v1_bp.register_blueprint(api_rental_bp, url_prefix="/rentals")
api_v1_bp.register_blueprint(api_notification_bp, url_prefix="/notifications")
