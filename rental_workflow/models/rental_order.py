from datetime import timedelta
from decimal import Decimal

from sqlalchemy import event

from rental_workflow.errors import ValidationError
from rental_workflow.extensions import db
from rental_workflow.models.base import PKType, TimestampMixin, as_utc

RENTAL_STATUSES = (
    "pending",
    "approved",
    "payment_pending",
    "confirmed",
    "preparing",
    "ready_for_pickup",
    "out_for_delivery",
    "delivered",
    "in_progress",
    "return_requested",
    "returning",
    "completed",
    "cancelled",
    "overdue",
    "dispute",
)
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

STATUS_LABELS = {
    "pending": "Pending Approval",
    "approved": "Approved",
    "payment_pending": "Payment Pending",
    "confirmed": "Confirmed",
    "preparing": "Preparing Equipment",
    "ready_for_pickup": "Ready for Pickup",
    "out_for_delivery": "Out for Delivery",
    "delivered": "Equipment Delivered",
    "in_progress": "Rental in Progress",
    "return_requested": "Return Requested",
    "returning": "Equipment Returning",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "overdue": "Overdue",
    "dispute": "Under Dispute",
}

PAYMENT_STATUSES = ("pending", "partial", "paid", "overdue", "refunded")

# Fee columns that add up to total_amount. daily_rate is a rate and stays out.
AMOUNT_FIELDS = (
    "subtotal",
    "delivery_fee",
    "insurance_fee",
    "security_deposit",
    "late_fees",
    "damage_fees",
)

CENTS = Decimal("0.01")


def to_money(value):
    if value is None or value == "":
        return Decimal("0.00")
    try:
        amount = Decimal(str(value)).quantize(CENTS)
    except Exception as exc:
        raise ValidationError(f"Invalid amount: {value!r}.") from exc
    if amount < 0:
        raise ValidationError("Amounts cannot be negative.")
    return amount


class RentalOrder(TimestampMixin, db.Model):
    __tablename__ = "rental_orders"

    id = db.Column(PKType, primary_key=True, autoincrement=True)
    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    customer_ref = db.Column(db.String(64), nullable=False, index=True)
    equipment_ref = db.Column(db.String(64), nullable=False, index=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)

    daily_rate = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    insurance_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    security_deposit = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    late_fees = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    damage_fees = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    delivery_required = db.Column(db.Boolean, nullable=False, default=False)
    delivery_address = db.Column(db.Text, nullable=True)

    history = db.relationship(
        "StatusHistoryEntry",
        back_populates="rental_order",
        order_by="StatusHistoryEntry.id",
        cascade="all, delete-orphan",
    )
    documents = db.relationship(
        "Document",
        back_populates="rental_order",
        order_by="Document.id",
        cascade="all, delete-orphan",
    )
    notifications = db.relationship(
        "Notification",
        back_populates="rental_order",
        order_by="Notification.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        db.Index("ix_rental_orders_status_payment", "status", "payment_status"),
        db.CheckConstraint("start_date < end_date", name="ck_rental_dates_ordered"),
        db.CheckConstraint(
            "abs(total_amount - (subtotal + delivery_fee + insurance_fee + security_deposit"
            " + late_fees + damage_fees)) < 0.005",
            name="ck_rental_total_matches_fees",
        ),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def status_display(self):
        return STATUS_LABELS.get(self.status, (self.status or "").replace("_", " ").title())

    @property
    def total_days(self):
        start, end = as_utc(self.start_date), as_utc(self.end_date)
        if not start or not end:
            return 0
        return max((end - start) // timedelta(days=1), 1)

    def expected_total(self):
        return sum((to_money(getattr(self, name)) for name in AMOUNT_FIELDS), Decimal("0.00"))

    def recalc_total(self):
        self.total_amount = self.expected_total()
        return self.total_amount

    def check_invariants(self):
        if to_money(self.total_amount) != self.expected_total():
            raise ValidationError("total_amount must equal the sum of the order's fees.")
        start, end = as_utc(self.start_date), as_utc(self.end_date)
        if start and end and not start < end:
            raise ValidationError("start_date must be before end_date.")


@event.listens_for(RentalOrder, "before_insert")
@event.listens_for(RentalOrder, "before_update")
def _reject_inconsistent_order(_mapper, _connection, target):
    target.check_invariants()
