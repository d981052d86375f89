from .exceptions import BadRequest, NotFound
from ..models import Club, Event, User
from ..storage import Store


def get_user_or_404(store: Store, user_id: str) -> User:
    user = store.get_user(user_id)
    if not user:
        raise NotFound("User not found")
    return user


def get_club_or_404(store: Store, club_id: str) -> Club:
    club = store.get_club(club_id)
    if not club:
        raise NotFound("Club not found")
    return club


def get_event_or_404(store: Store, event_id: str) -> Event:
    event = store.get_event(event_id)
    if not event:
        raise NotFound("Event not found")
    return event


def validate_amount(amount) -> int:
    """Return ``amount`` if it is a positive whole number of minor units."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequest("Amount must be a positive number of minor currency units")
    return amount
