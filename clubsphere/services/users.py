from __future__ import annotations
import logging
from .exceptions import BadRequest
from .helpers import get_user_or_404
from ..models import Role, User
from ..storage import DuplicateKeyError, Store

logger = logging.getLogger(__name__)


def parse_role(value: str | None) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise BadRequest("Invalid role")


def create_user(store: Store, email: str, name: str | None = None, photo_url: str | None = None) -> tuple[User, bool]:
    """Register a user with the default role; returns ``(user, created)``."""
    existing = store.get_user_by_email(email)
    if existing:
        return existing, False
    user = User(email=email, name=name, photo_url=photo_url)
    try:
        store.create_user(user)
    except DuplicateKeyError:
        # registered concurrently
        return store.get_user_by_email(email), False
    logger.info("Registered user %s", email)
    return user, True


def list_users(store: Store) -> list[User]:
    return store.list_users()


def change_role(store: Store, user_id: str, role: str) -> User:
    new_role = parse_role(role)
    get_user_or_404(store, user_id)
    store.update_user_role(user_id, new_role)
    logger.info("User %s role set to %s", user_id, new_role.value)
    return store.get_user(user_id)


def get_role(store: Store, email: str) -> Role:
    user = store.get_user_by_email(email)
    return user.role if user else Role.USER


def set_role_by_email(store: Store, email: str, role: str) -> User:
    """Assign ``role`` to ``email``, creating the account if necessary."""
    user, _ = create_user(store, email)
    return change_role(store, user.id, role)
