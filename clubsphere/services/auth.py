from __future__ import annotations
from fastapi import Request
from .exceptions import Unauthorized
from .policy import Action, enforce
from ..models import Role


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


def require_auth(authorization: str | None, request: Request) -> str:
    """Validate the token from the ``Authorization`` header and return the email."""

    header = authorization
    if not header:
        header = request.headers.get("Authorization")

    token = _bearer(header)
    if not token:
        raise Unauthorized("Unauthorized access: No token provided")
    return request.app.state.verifier.verify(token)


def optional_auth(authorization: str | None, request: Request) -> str | None:
    """Return the verified email if a credential was sent, else ``None``."""
    if not _bearer(authorization or request.headers.get("Authorization")):
        return None
    return require_auth(authorization, request)


def require_admin(email: str, request: Request) -> None:
    user = request.app.state.store.get_user_by_email(email)
    enforce(email, Action.MODERATE, role=user.role if user else Role.USER)
