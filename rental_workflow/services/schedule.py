import math
from datetime import timedelta

from rental_workflow.models.base import as_utc, utcnow

ONE_DAY = timedelta(days=1)


def progress_fraction(order, now=None):
    """Elapsed share of the rental period, clamped to [0, 1]."""
    start, end = as_utc(order.start_date), as_utc(order.end_date)
    if start is None or end is None or end <= start:
        return None
    now = as_utc(now) or utcnow()
    fraction = (now - start) / (end - start)
    return min(max(fraction, 0.0), 1.0)


def days_remaining(order, now=None):
    end = as_utc(order.end_date)
    if end is None:
        return None
    now = as_utc(now) or utcnow()
    return max(math.ceil((end - now) / ONE_DAY), 0)
