"""Role- and ownership-based access checks.

``is_allowed`` is a pure function of the verified identity, the action, the
resource being acted on and the caller's stored role. Routes evaluate it
before calling any mutating service function.
"""
from __future__ import annotations

from enum import Enum

from ..models import Role
from .exceptions import Forbidden, Unauthorized


class Action(str, Enum):
    CREATE_CLUB = "create_club"
    DELETE_CLUB = "delete_club"
    CREATE_EVENT = "create_event"
    DELETE_EVENT = "delete_event"
    MODERATE = "moderate"
    VIEW_PAYMENTS = "view_payments"
    CONFIRM_PAYMENT = "confirm_payment"


# actions checked against the resource's creator email
_OWNER_ACTIONS = {
    Action.CREATE_CLUB,
    Action.DELETE_CLUB,
    Action.CREATE_EVENT,
    Action.DELETE_EVENT,
}

_FORBIDDEN_MESSAGES = {
    Action.CREATE_CLUB: "Forbidden: Email mismatch",
    Action.MODERATE: "Forbidden: Admin only",
}


def _owner_of(resource) -> str | None:
    if isinstance(resource, dict):
        return resource.get("creator_email")
    return getattr(resource, "creator_email", None)


def is_allowed(identity: str | None, action: Action, resource=None, role: Role | None = None) -> bool:
    """Return True if ``identity`` may perform ``action`` on ``resource``.

    Emails are compared exactly; no case folding is applied.
    """
    if action is Action.CONFIRM_PAYMENT:
        # anonymous confirmation is trusted on the session alone
        return identity is None or identity == resource
    if identity is None:
        return False
    if action in _OWNER_ACTIONS:
        owner = _owner_of(resource)
        return owner is not None and owner == identity
    if action is Action.MODERATE:
        return role is Role.ADMIN
    if action is Action.VIEW_PAYMENTS:
        return resource == identity
    return False


def enforce(identity: str | None, action: Action, resource=None, role: Role | None = None) -> None:
    """Raise ``Unauthorized`` or ``Forbidden`` unless the action is allowed."""
    if is_allowed(identity, action, resource, role):
        return
    if identity is None:
        raise Unauthorized("Unauthorized access: No token provided")
    raise Forbidden(_FORBIDDEN_MESSAGES.get(action, "Forbidden access"))
