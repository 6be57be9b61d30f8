"""Authorization rules, one function per operation.

Each rule takes the caller's identity (and the resource, where ownership
matters) and returns True to allow. Handlers and services call
:func:`require` to turn a denial into a 403.
"""
from errors import PermissionDeniedError
from models import Role


def can_shop(identity):
    return identity is not None and identity.role == Role.MEMBER


def can_manage_catalog(identity):
    return identity is not None and identity.role in (Role.STAFF, Role.ADMIN)


def can_fulfill_orders(identity):
    return identity is not None and identity.role == Role.STAFF


def can_view_all_orders(identity):
    return identity is not None and identity.role in (Role.STAFF, Role.ADMIN)


def can_manage_accounts(identity):
    return identity is not None and identity.role == Role.ADMIN


def can_manage_announcements(identity):
    return identity is not None and identity.role == Role.ADMIN


def owns_order(identity, order):
    return can_shop(identity) and order.member_id == identity.subject_id


def can_modify_review(identity, review):
    if identity is None:
        return False
    if identity.role == Role.ADMIN:
        return True
    return identity.role == Role.MEMBER and review.member_id == identity.subject_id


def require(allowed, message=None):
    if not allowed:
        raise PermissionDeniedError(message)
