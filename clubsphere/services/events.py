from __future__ import annotations
import logging
from .exceptions import AlreadyRegistered, BadRequest, Conflict, Full, NotFound
from .helpers import get_club_or_404, get_event_or_404, validate_amount
from .policy import Action, enforce
from ..models import Event, EventKind, EventRegistration, EventStatus, RegistrationStatus
from ..storage import DuplicateKeyError, Store

logger = logging.getLogger(__name__)


class _SeatUnavailable(Exception):
    pass


def create_event(
    store: Store,
    identity: str,
    club_id: str,
    title: str,
    date_time: str,
    creator_email: str,
    kind: EventKind = EventKind.FREE,
    price: int = 0,
    max_attendees: int | None = None,
    description: str | None = None,
    location: str | None = None,
) -> Event:
    if not club_id or not title or not date_time or not creator_email:
        raise BadRequest("Missing required fields")
    enforce(identity, Action.CREATE_EVENT, {"creator_email": creator_email})
    club = get_club_or_404(store, club_id)
    # events can only be attached to a club the caller created
    enforce(identity, Action.CREATE_EVENT, club)
    if kind is EventKind.PAID:
        price = validate_amount(price)
    elif price:
        raise BadRequest("Free events cannot have a price")
    if max_attendees is not None and max_attendees <= 0:
        raise BadRequest("maxAttendees must be positive")
    event = Event(
        club_id=club.id,
        club_name=club.name,
        title=title,
        date_time=date_time,
        creator_email=creator_email,
        kind=kind,
        price=price,
        max_attendees=max_attendees,
        description=description,
        location=location,
    )
    store.create_event(event)
    logger.info("Event %s created for club %s by %s", event.id, club.id, creator_email)
    return event


def delete_event(store: Store, identity: str, event_id: str) -> None:
    event = get_event_or_404(store, event_id)
    enforce(identity, Action.DELETE_EVENT, event)
    if store.count_paid_registrations(event_id):
        raise Conflict("Event has paid registrations and cannot be deleted")
    if not store.delete_event(event_id):
        raise NotFound("Event not found")
    logger.info("Event %s deleted by %s", event_id, identity)


def list_upcoming(store: Store, search: str | None = None) -> list[Event]:
    return store.list_events(status=EventStatus.UPCOMING, search=search or None)


def list_club_events(store: Store, club_id: str) -> list[Event]:
    return store.list_events(status=EventStatus.UPCOMING, club_id=club_id)


def list_my_events(store: Store, email: str) -> list[Event]:
    return store.list_events(creator_email=email)


def list_registrations(store: Store, email: str) -> list[EventRegistration]:
    return store.list_registrations(email)


def check_paid_eligibility(store: Store, event: Event, email: str) -> None:
    """Reject a paid checkout that could never turn into a registration."""
    if event.kind is not EventKind.PAID:
        raise BadRequest("Event is free; use free registration")
    existing = store.get_registration(event.id, email)
    if existing:
        raise AlreadyRegistered(registration=existing)
    if event.is_full:
        raise Full()


def register_free(store: Store, event_id: str, email: str) -> EventRegistration:
    """Register ``email`` for a free event.

    The registration insert and the capacity-guarded seat increment share
    one transaction, so the unique (event, email) index and the conditional
    update decide concurrent attempts.
    """
    event = get_event_or_404(store, event_id)
    if event.kind is not EventKind.FREE:
        raise BadRequest("Event requires payment")
    existing = store.get_registration(event_id, email)
    if existing:
        raise AlreadyRegistered(registration=existing)
    if event.is_full:
        raise Full()

    reg = EventRegistration(
        event_id=event.id,
        event_title=event.title,
        email=email,
        payment_status=RegistrationStatus.FREE,
    )
    try:
        with store.transaction() as conn:
            store.create_registration(reg, conn=conn)
            if not store.reserve_seat(event.id, conn=conn):
                raise _SeatUnavailable()
    except DuplicateKeyError:
        logger.info("Concurrent duplicate registration for %s on %s", email, event_id)
        raise AlreadyRegistered(registration=store.get_registration(event_id, email))
    except _SeatUnavailable:
        if not store.get_event(event_id):
            raise NotFound("Event not found")
        raise Full()
    logger.info("Registered %s for free event %s", email, event_id)
    return reg
