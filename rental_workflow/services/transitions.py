"""Rental lifecycle rules.

``ALLOWED_FROM`` is the only place that says which status changes exist.
``GUARDS`` attaches named predicates to specific (current, target) pairs;
``"*"`` on either side matches any status. Dispatch lives in
``RentalService``; everything here is pure and can be tested without a
database.
"""

from collections import namedtuple

from rental_workflow.models.rental_order import RENTAL_STATUSES, TERMINAL_STATUSES

ALLOWED_FROM = {
    "approved": frozenset({"pending"}),
    "payment_pending": frozenset({"approved"}),
    "confirmed": frozenset({"payment_pending", "approved"}),
    "preparing": frozenset({"confirmed"}),
    "ready_for_pickup": frozenset({"preparing"}),
    "out_for_delivery": frozenset({"ready_for_pickup"}),
    "delivered": frozenset({"out_for_delivery"}),
    "in_progress": frozenset({"delivered"}),
    "return_requested": frozenset({"in_progress"}),
    "returning": frozenset({"return_requested"}),
    "completed": frozenset({"returning", "in_progress"}),
    "cancelled": frozenset({"pending", "approved", "payment_pending"}),
    "overdue": frozenset({"in_progress", "delivered"}),
    "dispute": frozenset({"in_progress", "delivered", "return_requested"}),
}

# Statuses in which an order is out of the approval queue but not yet closed.
ACTIVE_STATUSES = frozenset(
    {
        "confirmed",
        "preparing",
        "ready_for_pickup",
        "out_for_delivery",
        "delivered",
        "in_progress",
        "return_requested",
        "returning",
        "overdue",
        "dispute",
    }
)

TransitionContext = namedtuple("TransitionContext", ["payment_waived"])
DEFAULT_CONTEXT = TransitionContext(payment_waived=False)


def is_allowed(current, target):
    return current in ALLOWED_FROM.get(target, ())


def allowed_targets(current):
    if current in TERMINAL_STATUSES:
        return []
    return [status for status in RENTAL_STATUSES if is_allowed(current, status)]


def delivery_address_present(order, _context):
    if not order.delivery_required:
        return True
    return bool((order.delivery_address or "").strip())


def payment_received(order, _context):
    return order.payment_status == "paid"


def payment_not_required(order, context):
    return bool(context.payment_waived) or order.payment_status == "paid"


Guard = namedtuple("Guard", ["name", "check", "message"])

DELIVERY_ADDRESS_GUARD = Guard(
    "delivery_address_present",
    delivery_address_present,
    "A delivery address is required before this order can move on.",
)
PAYMENT_RECEIVED_GUARD = Guard(
    "payment_received",
    payment_received,
    "Payment must be received before the rental can be confirmed.",
)
PAYMENT_NOT_REQUIRED_GUARD = Guard(
    "payment_not_required",
    payment_not_required,
    "Confirming directly from approved requires the payment to be waived or already paid.",
)

GUARDS = {
    ("confirmed", "*"): (DELIVERY_ADDRESS_GUARD,),
    ("*", "out_for_delivery"): (DELIVERY_ADDRESS_GUARD,),
    ("delivered", "in_progress"): (DELIVERY_ADDRESS_GUARD,),
    ("payment_pending", "confirmed"): (PAYMENT_RECEIVED_GUARD,),
    ("approved", "confirmed"): (PAYMENT_NOT_REQUIRED_GUARD,),
}


def guards_for(current, target):
    found = []
    for key in ((current, target), (current, "*"), ("*", target)):
        for guard in GUARDS.get(key, ()):
            if guard not in found:
                found.append(guard)
    return found


def failed_guard(order, target, context=DEFAULT_CONTEXT):
    """Return the first guard that rejects ``order -> target``, or ``None``."""
    for guard in guards_for(order.status, target):
        if not guard.check(order, context):
            return guard
    return None
