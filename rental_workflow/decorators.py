from functools import wraps

from flask import abort
from flask_login import UserMixin, current_user


class Actor(UserMixin):
    """Whoever initiated a request, as asserted by the upstream gateway.

    Authentication happens before requests reach this service; the actor
    reference is only recorded for audit.
    """

    def __init__(self, ref, role="staff"):
        self.id = ref
        self.role = role

    @property
    def ref(self):
        return self.id


def actor_ref():
    if current_user and current_user.is_authenticated:
        return current_user.ref
    return None


def role_required(*roles):
    def wrapper(func):
        @wraps(func)
        def inner(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if current_user.role not in roles:
                abort(403)
            return func(*args, **kwargs)

        return inner

    return wrapper
