from __future__ import annotations
import logging
from .exceptions import BadRequest, Conflict, NotFound
from .helpers import get_club_or_404, validate_amount
from .policy import Action, enforce
from ..models import Club, ClubStatus, PaymentStatus
from ..storage import Store

logger = logging.getLogger(__name__)


def create_club(
    store: Store,
    identity: str,
    name: str,
    creator_email: str,
    membership_fee: int,
    **details,
) -> Club:
    """Submit a new club; it starts pending moderation and pending payment."""
    if not name or not name.strip() or not creator_email:
        raise BadRequest("Club name or creator email missing")
    enforce(identity, Action.CREATE_CLUB, {"creator_email": creator_email})
    club = Club(
        name=name.strip(),
        creator_email=creator_email,
        membership_fee=validate_amount(membership_fee),
        description=details.get("description"),
        category=details.get("category"),
        location=details.get("location"),
        banner_url=details.get("banner_url"),
    )
    store.create_club(club)
    logger.info("Club %s (%s) submitted by %s", club.id, club.name, creator_email)
    return club


def delete_club(store: Store, identity: str, club_id: str) -> None:
    """Delete a club owned by ``identity``.

    Clubs with a completed membership payment keep their record so the
    ledger entries still point at an existing subject.
    """
    club = get_club_or_404(store, club_id)
    enforce(identity, Action.DELETE_CLUB, club)
    if club.payment_status is PaymentStatus.PAID:
        raise Conflict("Club has payment history and cannot be deleted")
    if not store.delete_club(club_id):
        raise NotFound("Club not found")
    logger.info("Club %s deleted by owner %s", club_id, identity)


def approve_club(store: Store, club_id: str) -> Club:
    if not store.approve_club(club_id):
        raise NotFound("Club not found")
    logger.info("Club %s approved", club_id)
    return store.get_club(club_id)


def reject_club(store: Store, club_id: str) -> None:
    club = get_club_or_404(store, club_id)
    store.delete_club(club_id)
    if club.payment_status is PaymentStatus.PAID:
        logger.warning("Rejected club %s had a paid membership; payment records retained", club_id)
    else:
        logger.info("Club %s rejected", club_id)


def list_clubs(store: Store, email: str | None = None) -> list[Club]:
    return store.list_clubs(creator_email=email or None)


def list_paid_clubs(store: Store) -> list[Club]:
    return store.list_clubs(payment_status=PaymentStatus.PAID)


def list_approved_clubs(store: Store, club_name: str | None = None, search: str | None = None) -> list[Club]:
    """Approved clubs, narrowed by an exact name or else a name search."""
    if club_name and club_name != "ALL":
        return store.list_clubs(status=ClubStatus.APPROVED, name=club_name)
    if search and search.strip():
        return store.list_clubs(status=ClubStatus.APPROVED, search=search.strip())
    return store.list_clubs(status=ClubStatus.APPROVED)


def approved_club_names(store: Store) -> list[dict]:
    return [{"id": c.id, "name": c.name} for c in store.list_clubs(status=ClubStatus.APPROVED)]
