import logging
from datetime import date, datetime, time, timezone

from sqlalchemy import func, or_
from sqlalchemy.orm.exc import StaleDataError

from rental_workflow.errors import (
    AppError,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from rental_workflow.extensions import db
from rental_workflow.models import PAYMENT_STATUSES, RENTAL_STATUSES, RentalOrder, StatusHistoryEntry
from rental_workflow.models.base import as_utc, utcnow
from rental_workflow.models.rental_order import CENTS, to_money
from rental_workflow.services import transitions
from rental_workflow.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def parse_datetime(value, label):
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raw = value.strip() if isinstance(value, str) else ""
    if not raw:
        raise ValidationError(f"{label} is required.")
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}: {value!r}.") from exc


def clean_text(value, label):
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string.")
    return value.strip()


def normalize_status(value, choices, label="status"):
    status = clean_text(value, label).lower()
    if status not in choices:
        raise ValidationError(f"Unknown {label}: {value!r}.")
    return status


class RentalService:
    @staticmethod
    def get_order(order_id, for_update=False):
        try:
            key = int(order_id)
        except (TypeError, ValueError) as exc:
            raise NotFound(f"Rental {order_id} not found.") from exc
        # Writers lock the row and re-read it so guards see the committed state.
        order = db.session.get(
            RentalOrder,
            key,
            with_for_update=True if for_update else None,
            populate_existing=for_update,
        )
        if not order:
            raise NotFound(f"Rental {order_id} not found.")
        return order

    @staticmethod
    def _commit(order, flush_only=False):
        order_id = order.id
        try:
            if flush_only:
                db.session.flush()
            else:
                db.session.commit()
        except StaleDataError as exc:
            db.session.rollback()
            logger.warning("Concurrent modification of rental %s rejected.", order_id)
            raise ConcurrentModification(
                f"Rental {order_id} was modified by another request. Reload and retry."
            ) from exc
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def create_order(
        customer_ref,
        equipment_ref,
        start_date,
        end_date,
        daily_rate=0,
        subtotal=None,
        delivery_fee=0,
        insurance_fee=0,
        security_deposit=0,
        delivery_required=False,
        delivery_address=None,
        payment_status="pending",
        notes=None,
        actor_ref=None,
    ):
        customer_ref = str(customer_ref or "").strip()
        equipment_ref = str(equipment_ref or "").strip()
        if not customer_ref or not equipment_ref:
            raise ValidationError("customer_ref and equipment_ref are required.")

        start = parse_datetime(start_date, "start_date")
        end = parse_datetime(end_date, "end_date")
        if not start < end:
            raise ValidationError("start_date must be before end_date.")

        order = RentalOrder(
            status="pending",
            customer_ref=customer_ref,
            equipment_ref=equipment_ref,
            start_date=start,
            end_date=end,
            daily_rate=to_money(daily_rate),
            delivery_fee=to_money(delivery_fee),
            insurance_fee=to_money(insurance_fee),
            security_deposit=to_money(security_deposit),
            late_fees=to_money(0),
            damage_fees=to_money(0),
            payment_status=normalize_status(payment_status, PAYMENT_STATUSES, "payment status"),
            delivery_required=bool(delivery_required),
            delivery_address=clean_text(delivery_address, "delivery_address") or None,
        )
        if subtotal is None or subtotal == "":
            order.subtotal = (order.daily_rate * order.total_days).quantize(CENTS)
        else:
            order.subtotal = to_money(subtotal)
        order.recalc_total()
        order.history.append(
            StatusHistoryEntry(
                previous_status=None,
                new_status="pending",
                notes=clean_text(notes, "notes") or "Rental requested.",
                actor_ref=actor_ref,
                visible_to_customer=True,
            )
        )
        db.session.add(order)
        RentalService._commit(order)
        logger.info("Rental %s created for customer %s.", order.id, customer_ref)
        return order

    @staticmethod
    def check_transition(order, target_status, payment_waived=False):
        """Validate ``order -> target_status`` without touching the order.

        Returns the normalized target. Raises ``InvalidTransition`` when the
        pair is not in the table and ``PreconditionFailed`` when a guard
        rejects it. A target equal to the current status is always accepted.
        """
        target = normalize_status(target_status, RENTAL_STATUSES, "target status")
        current = order.status
        if target == current:
            return target
        if not transitions.is_allowed(current, target):
            logger.warning("Rejected transition %s -> %s for rental %s.", current, target, order.id)
            raise InvalidTransition(current, target, transitions.allowed_targets(current))
        guard = transitions.failed_guard(
            order, target, transitions.TransitionContext(payment_waived=bool(payment_waived))
        )
        if guard is not None:
            logger.warning(
                "Guard %s blocked transition %s -> %s for rental %s.", guard.name, current, target, order.id
            )
            raise PreconditionFailed(guard.message, guard=guard.name)
        return target

    @staticmethod
    def transition(
        order,
        target_status,
        notes=None,
        actor_ref=None,
        visible_to_customer=True,
        payment_waived=False,
    ):
        try:
            target = RentalService.check_transition(order, target_status, payment_waived=payment_waived)
            notes = clean_text(notes, "notes") or None
        except AppError:
            db.session.rollback()
            raise

        previous = order.status
        if target == previous:
            # Retried requests land here; nothing to record.
            return order

        now = utcnow()
        entry = StatusHistoryEntry(
            previous_status=previous,
            new_status=target,
            notes=notes,
            actor_ref=actor_ref,
            visible_to_customer=bool(visible_to_customer),
            timestamp=now,
        )
        # Loading the history must not flush the versioned UPDATE outside _commit.
        with db.session.no_autoflush:
            order.history.append(entry)
            order.status = target
            order.updated_at = now

        RentalService._commit(order, flush_only=True)
        if entry.visible_to_customer:
            NotificationService.push_transition(order, entry)
        RentalService._commit(order)
        logger.info("Rental %s moved %s -> %s by %s.", order.id, previous, target, actor_ref or "system")
        return order

    @staticmethod
    def request_transition(
        order_id,
        target_status,
        notes=None,
        actor_ref=None,
        visible_to_customer=True,
        payment_waived=False,
    ):
        order = RentalService.get_order(order_id, for_update=True)
        return RentalService.transition(
            order,
            target_status,
            notes=notes,
            actor_ref=actor_ref,
            visible_to_customer=visible_to_customer,
            payment_waived=payment_waived,
        )

    @staticmethod
    def approve(order_id, message=None, actor_ref=None):
        return RentalService.request_transition(
            order_id,
            "approved",
            notes=message or "Rental request approved. Customer can proceed with payment.",
            actor_ref=actor_ref,
            visible_to_customer=True,
        )

    @staticmethod
    def reject(order_id, reason, actor_ref=None):
        reason = clean_text(reason, "reason")
        if not reason:
            raise ValidationError("A reason is required to reject a rental.")
        order = RentalService.get_order(order_id, for_update=True)
        if order.status not in {"pending", "cancelled"}:
            raise InvalidTransition(
                order.status,
                "cancelled",
                [status for status in transitions.allowed_targets(order.status) if status != "cancelled"],
                message=f"Only pending rentals can be rejected; rental {order.id} is {order.status}.",
            )
        return RentalService.transition(order, "cancelled", notes=reason, actor_ref=actor_ref, visible_to_customer=True)

    @staticmethod
    def cancel(order_id, reason, actor_ref=None):
        reason = clean_text(reason, "reason")
        if not reason:
            raise ValidationError("A reason is required to cancel a rental.")
        return RentalService.request_transition(
            order_id, "cancelled", notes=reason, actor_ref=actor_ref, visible_to_customer=True
        )

    @staticmethod
    def mark_delivered(order_id, notes=None, actor_ref=None):
        return RentalService.request_transition(
            order_id, "delivered", notes=notes or "Equipment delivered.", actor_ref=actor_ref
        )

    @staticmethod
    def request_return(order_id, notes=None, actor_ref=None):
        return RentalService.request_transition(
            order_id, "return_requested", notes=notes or "Return requested.", actor_ref=actor_ref
        )

    @staticmethod
    def complete(order_id, late_fees=0, damage_fees=0, notes=None, actor_ref=None):
        """Close the rental, booking late and damage fees in the same commit."""
        late_fees, damage_fees = to_money(late_fees), to_money(damage_fees)
        order = RentalService.get_order(order_id, for_update=True)
        if order.status == "completed":
            return order
        RentalService.check_transition(order, "completed")
        order.late_fees = late_fees
        order.damage_fees = damage_fees
        order.recalc_total()
        return RentalService.transition(order, "completed", notes=notes or "Rental completed.", actor_ref=actor_ref)

    @staticmethod
    def update_delivery(order_id, delivery_required=None, delivery_address=None):
        if delivery_address is not None:
            delivery_address = clean_text(delivery_address, "delivery_address")
        order = RentalService.get_order(order_id, for_update=True)
        if order.is_terminal:
            raise PreconditionFailed(f"Rental {order.id} is {order.status}; delivery details are frozen.")
        if delivery_required is not None:
            order.delivery_required = bool(delivery_required)
        if delivery_address is not None:
            order.delivery_address = delivery_address or None
        order.updated_at = utcnow()
        RentalService._commit(order)
        return order

    @staticmethod
    def record_payment_status(order_id, payment_status):
        """Ingress for the payment service; not a workflow transition."""
        status = normalize_status(payment_status, PAYMENT_STATUSES, "payment status")
        order = RentalService.get_order(order_id, for_update=True)
        if order.payment_status == status:
            return order
        logger.info("Rental %s payment status %s -> %s.", order.id, order.payment_status, status)
        order.payment_status = status
        order.updated_at = utcnow()
        RentalService._commit(order)
        return order

    @staticmethod
    def list_orders(
        statuses=None,
        payment_status=None,
        start_date_after=None,
        end_date_before=None,
        search=None,
        page=1,
        per_page=20,
    ):
        query = RentalOrder.query.order_by(RentalOrder.created_at.desc(), RentalOrder.id.desc())
        if statuses:
            wanted = [normalize_status(s, RENTAL_STATUSES) for s in statuses]
            query = query.filter(RentalOrder.status.in_(wanted))
        if payment_status:
            query = query.filter(
                RentalOrder.payment_status == normalize_status(payment_status, PAYMENT_STATUSES, "payment status")
            )
        if start_date_after:
            query = query.filter(RentalOrder.start_date >= parse_datetime(start_date_after, "start_date_after"))
        if end_date_before:
            query = query.filter(RentalOrder.end_date <= parse_datetime(end_date_before, "end_date_before"))
        term = (search or "").strip()
        if term:
            like = f"%{term}%"
            query = query.filter(or_(RentalOrder.customer_ref.ilike(like), RentalOrder.equipment_ref.ilike(like)))
        return query.paginate(page=page, per_page=per_page, error_out=False)

    @staticmethod
    def pending_approvals():
        return RentalOrder.query.filter_by(status="pending").order_by(RentalOrder.created_at.asc()).all()

    @staticmethod
    def active_rentals():
        return (
            RentalOrder.query.filter(RentalOrder.status.in_(transitions.ACTIVE_STATUSES))
            .order_by(RentalOrder.end_date.asc())
            .all()
        )

    @staticmethod
    def status_summary():
        rows = db.session.query(RentalOrder.status, func.count(RentalOrder.id)).group_by(RentalOrder.status).all()
        counts = {status: 0 for status in RENTAL_STATUSES}
        counts.update({status: int(total) for status, total in rows})
        return counts

