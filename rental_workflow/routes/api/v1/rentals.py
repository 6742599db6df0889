from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from rental_workflow.decorators import actor_ref, role_required
from rental_workflow.errors import ConcurrentModification, ValidationError
from rental_workflow.extensions import cache, limiter
from rental_workflow.serializers import serialize_document, serialize_order
from rental_workflow.services import DocumentService, FileService, RentalService

api_rental_bp = Blueprint("api_rental", __name__)

SUMMARY_CACHE_KEY = "rentals/summary"


@api_rental_bp.after_request
def invalidate_summary(response):
    if request.method != "GET" and response.status_code < 400:
        cache.delete(SUMMARY_CACHE_KEY)
    return response


def _json_body():
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _write_limit():
    return current_app.config.get("RATELIMIT_WRITES", "60 per minute")


def _flag(value, default):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _with_conflict_retry(operation, *args, **kwargs):
    retries = int(current_app.config.get("CONFLICT_RETRIES", 1))
    attempt = 0
    while True:
        try:
            return operation(*args, **kwargs)
        except ConcurrentModification:
            if attempt >= retries:
                raise
            attempt += 1
            current_app.logger.info("Concurrent modification, retry %s of %s.", attempt, retries)


def _order_response(order, status_code=200):
    return jsonify(serialize_order(order, detail=True)), status_code


@api_rental_bp.post("")
@login_required
@limiter.limit(_write_limit)
def create_rental():
    payload = _json_body()
    order = RentalService.create_order(
        customer_ref=payload.get("customer_ref"),
        equipment_ref=payload.get("equipment_ref"),
        start_date=payload.get("start_date"),
        end_date=payload.get("end_date"),
        daily_rate=payload.get("daily_rate", 0),
        subtotal=payload.get("subtotal"),
        delivery_fee=payload.get("delivery_fee", 0),
        insurance_fee=payload.get("insurance_fee", 0),
        security_deposit=payload.get("security_deposit", 0),
        delivery_required=_flag(payload.get("delivery_required"), False),
        delivery_address=payload.get("delivery_address"),
        payment_status=payload.get("payment_status") or "pending",
        notes=payload.get("notes"),
        actor_ref=actor_ref(),
    )
    return _order_response(order, 201)


@api_rental_bp.get("")
def list_rentals():
    page = request.args.get("page", default=1, type=int)
    per_page = request.args.get("per_page", default=20, type=int)
    raw_status = request.args.get("status", "")
    statuses = [item.strip() for item in raw_status.split(",") if item.strip()]
    paginated = RentalService.list_orders(
        statuses=statuses,
        payment_status=request.args.get("payment_status"),
        start_date_after=request.args.get("start_date_after"),
        end_date_before=request.args.get("end_date_before"),
        search=request.args.get("search"),
        page=page,
        per_page=min(per_page, 100),
    )
    return jsonify(
        {
            "items": [serialize_order(order) for order in paginated.items],
            "meta": {
                "page": paginated.page,
                "pages": paginated.pages,
                "total": paginated.total,
                "has_next": paginated.has_next,
                "has_prev": paginated.has_prev,
            },
        }
    )


@api_rental_bp.get("/summary")
@cache.cached(key_prefix=SUMMARY_CACHE_KEY)
def rental_summary():
    return jsonify({"by_status": RentalService.status_summary()})


@api_rental_bp.get("/pending-approvals")
def pending_approvals():
    return jsonify([serialize_order(order) for order in RentalService.pending_approvals()])


@api_rental_bp.get("/active")
def active_rentals():
    return jsonify([serialize_order(order) for order in RentalService.active_rentals()])


@api_rental_bp.get("/<int:rental_id>")
def get_rental(rental_id):
    return _order_response(RentalService.get_order(rental_id))


@api_rental_bp.post("/<int:rental_id>/transition")
@login_required
@limiter.limit(_write_limit)
def transition_rental(rental_id):
    payload = _json_body()
    target = payload.get("target_status") or payload.get("new_status")
    if not target:
        raise ValidationError("target_status is required.")
    default_visible = current_app.config.get("NOTIFY_CUSTOMER_BY_DEFAULT", True)
    order = _with_conflict_retry(
        RentalService.request_transition,
        rental_id,
        target,
        notes=payload.get("notes"),
        actor_ref=actor_ref(),
        visible_to_customer=_flag(payload.get("visible_to_customer"), default_visible),
        payment_waived=_flag(payload.get("payment_waived"), False),
    )
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/approve")
@login_required
@limiter.limit(_write_limit)
def approve_rental(rental_id):
    payload = _json_body()
    message = payload.get("message") or payload.get("notes")
    order = _with_conflict_retry(RentalService.approve, rental_id, message, actor_ref=actor_ref())
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/reject")
@login_required
@limiter.limit(_write_limit)
def reject_rental(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(RentalService.reject, rental_id, payload.get("reason"), actor_ref=actor_ref())
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/cancel")
@login_required
@limiter.limit(_write_limit)
def cancel_rental(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(RentalService.cancel, rental_id, payload.get("reason"), actor_ref=actor_ref())
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/mark-delivered")
@login_required
@limiter.limit(_write_limit)
def mark_delivered(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(
        RentalService.mark_delivered, rental_id, payload.get("notes"), actor_ref=actor_ref()
    )
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/request-return")
@login_required
@limiter.limit(_write_limit)
def request_return(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(
        RentalService.request_return, rental_id, payload.get("notes"), actor_ref=actor_ref()
    )
    return _order_response(order)


@api_rental_bp.post("/<int:rental_id>/complete")
@login_required
@limiter.limit(_write_limit)
def complete_rental(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(
        RentalService.complete,
        rental_id,
        late_fees=payload.get("late_fees") or 0,
        damage_fees=payload.get("damage_fees") or 0,
        notes=payload.get("notes"),
        actor_ref=actor_ref(),
    )
    return _order_response(order)


@api_rental_bp.patch("/<int:rental_id>/delivery")
@login_required
def update_delivery(rental_id):
    payload = _json_body()
    required = payload.get("delivery_required")
    order = _with_conflict_retry(
        RentalService.update_delivery,
        rental_id,
        delivery_required=None if required is None else _flag(required, False),
        delivery_address=payload.get("delivery_address"),
    )
    return _order_response(order)


@api_rental_bp.put("/<int:rental_id>/payment-status")
@login_required
def record_payment_status(rental_id):
    payload = _json_body()
    order = _with_conflict_retry(RentalService.record_payment_status, rental_id, payload.get("payment_status"))
    return _order_response(order)


@api_rental_bp.get("/<int:rental_id>/documents")
def list_documents(rental_id):
    customer_view = _flag(request.args.get("customer_view"), False)
    documents = DocumentService.list_documents(rental_id, customer_view=customer_view)
    return jsonify([serialize_document(doc) for doc in documents])


@api_rental_bp.post("/<int:rental_id>/documents")
@login_required
@limiter.limit(_write_limit)
def upload_document(rental_id):
    document_type, title = DocumentService.validate(request.form.get("document_type"), request.form.get("title"))
    DocumentService.ensure_open(RentalService.get_order(rental_id))
    upload_root = current_app.config["UPLOAD_DIR"]
    storage_ref, original_filename = FileService.save_document(request.files.get("file"), upload_root, rental_id)
    try:
        document = _with_conflict_retry(
            DocumentService.attach_document,
            rental_id,
            document_type,
            title,
            visible_to_customer=_flag(request.form.get("visible_to_customer"), True),
            storage_ref=storage_ref,
            original_filename=original_filename,
            actor_ref=actor_ref(),
        )
    except Exception:
        FileService.delete(storage_ref, upload_root)
        raise
    return jsonify(serialize_document(document)), 201


@api_rental_bp.delete("/<int:rental_id>/documents/<int:document_id>")
@login_required
@role_required("admin")
def remove_document(rental_id, document_id):
    storage_ref = DocumentService.remove_document(rental_id, document_id)
    FileService.delete(storage_ref, current_app.config["UPLOAD_DIR"])
    return jsonify({"ok": True})
