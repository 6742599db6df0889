from datetime import datetime, timezone

from sqlalchemy import BigInteger, Integer

from rental_workflow.extensions import db

# Use BIGINT in PostgreSQL, but INTEGER in SQLite so autoincrement works.
PKType = BigInteger().with_variant(Integer, "sqlite")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
