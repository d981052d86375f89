"""Checkout creation and payment confirmation.

The checkout session retrieved from the gateway is the only source of truth
for whether money moved. Intent travels through the session metadata,
written by ``create_checkout`` and decoded by ``confirm``; query parameters
from the client are only used to look the session up.

Confirmation writes the ledger row first and then applies the secondary
update (club paid flag or attendee count) inside the same transaction. The
unique index on the transaction id settles concurrent confirmations of the
same session: the loser rolls back and reports the stored record.
"""
from __future__ import annotations

import logging
import secrets
import time

from .events import check_paid_eligibility
from .exceptions import BadRequest, Conflict, InvalidMetadata, PaymentIncomplete, UpstreamFailure
from .helpers import get_club_or_404, get_event_or_404, validate_amount
from .policy import Action, enforce
from ..config import Settings
from ..gateway import CheckoutSession
from ..models import (
    CheckoutIntent,
    EventRegistration,
    Payment,
    PaymentKind,
    PaymentStatus,
    RegistrationStatus,
    SubjectKind,
)
from ..storage import DuplicateKeyError, Store

logger = logging.getLogger(__name__)

SUCCESS_PATHS = {
    SubjectKind.CLUB_MEMBERSHIP: "/dashboard/payment-success",
    SubjectKind.EVENT_REGISTRATION: "/dashboard/event-payment-success",
}
CANCEL_PATH = "/dashboard/payment-cancelled"
TRACKING_CODE_ATTEMPTS = 3


def generate_tracking_code(prefix: str = "TRK") -> str:
    """Return a human readable tracking code such as ``TRK-1718000000000-3FA2``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


def create_checkout(
    store: Store,
    gateway,
    settings: Settings,
    subject_kind: SubjectKind,
    subject_ref: str,
    payer_email: str | None = None,
) -> str:
    """Open a gateway checkout for a club fee or paid event and return its URL.

    Amount and description come from the stored subject. No local state is
    written.
    """
    if not subject_ref:
        raise BadRequest("Subject id missing")
    if subject_kind is SubjectKind.CLUB_MEMBERSHIP:
        club = get_club_or_404(store, subject_ref)
        if club.payment_status is PaymentStatus.PAID:
            raise Conflict("Club membership already paid")
        amount = validate_amount(club.membership_fee)
        description = club.name
        payer_email = club.creator_email
    else:
        if not payer_email:
            raise BadRequest("Payer email missing")
        event = get_event_or_404(store, subject_ref)
        check_paid_eligibility(store, event, payer_email)
        amount = validate_amount(event.price)
        description = event.title

    intent = CheckoutIntent(
        subject_kind=subject_kind,
        subject_ref=subject_ref,
        payer_email=payer_email,
        display_name=description,
    )
    site = settings.site_domain
    session = gateway.create_session(
        amount=amount,
        currency=settings.currency,
        description=description,
        customer_email=payer_email,
        metadata=intent.to_metadata(),
        success_url=f"{site}{SUCCESS_PATHS[subject_kind]}?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{site}{CANCEL_PATH}",
    )
    if not session.url:
        logger.error("Gateway returned session %s without a redirect url", session.id)
        raise UpstreamFailure("Payment gateway returned no checkout url")
    logger.info(
        "Checkout session %s opened for %s %s (%s %s)",
        session.id, subject_kind.value, subject_ref, amount, settings.currency,
    )
    return session.url


def _outcome(payment: Payment | None, registration: EventRegistration | None = None, duplicate: bool = False) -> dict:
    result = {
        "success": True,
        "duplicate": duplicate,
        "payment": payment.to_dict() if payment else None,
    }
    if registration is not None:
        result["registration"] = registration.to_dict()
    return result


def confirm(
    store: Store,
    gateway,
    session_id: str | None,
    identity: str | None = None,
    expected_kind: SubjectKind | None = None,
) -> dict:
    """Apply the state changes for a completed checkout exactly once."""
    if not session_id:
        raise BadRequest("session_id missing")

    session = gateway.retrieve_session(session_id)
    if not session.is_paid:
        logger.info("Session %s not paid (status=%s)", session_id, session.payment_status)
        raise PaymentIncomplete()

    try:
        intent = CheckoutIntent.from_metadata(session.metadata, session.payer_email)
    except ValueError as exc:
        logger.warning("Session %s has invalid metadata: %s", session_id, exc)
        raise InvalidMetadata(f"Invalid session metadata: {exc}")
    if expected_kind is not None and intent.subject_kind is not expected_kind:
        raise InvalidMetadata(f"Session is not a {expected_kind.value} payment")

    enforce(identity, Action.CONFIRM_PAYMENT, intent.payer_email)

    if intent.subject_kind is SubjectKind.CLUB_MEMBERSHIP:
        return _confirm_club(store, session, intent)
    return _confirm_event(store, session, intent)


def _confirm_club(store: Store, session: CheckoutSession, intent: CheckoutIntent) -> dict:
    tx = session.transaction_id
    existing = store.get_payment_by_transaction(tx)
    if existing:
        logger.info("Payment %s already recorded; returning existing record", tx)
        return _outcome(existing, duplicate=True)

    club = store.get_club(intent.subject_ref)
    payment = Payment(
        kind=PaymentKind.LEGACY if intent.legacy else PaymentKind.CLUB_MEMBERSHIP,
        subject_id=intent.subject_ref,
        subject_name=club.name if club else intent.display_name,
        owner_email=club.creator_email if club else None,
        amount_minor=session.amount_total,
        currency=session.currency,
        payer_email=intent.payer_email,
        transaction_id=tx,
        status=session.payment_status,
    )
    for attempt in range(TRACKING_CODE_ATTEMPTS):
        try:
            with store.transaction() as conn:
                store.create_payment(payment, conn=conn)
                updated = store.mark_club_paid(
                    intent.subject_ref, generate_tracking_code(), payment.paid_at, conn=conn
                )
            break
        except DuplicateKeyError:
            existing = store.get_payment_by_transaction(tx)
            if existing is not None:
                logger.warning("Concurrent confirmation of %s settled by unique index", tx)
                return _outcome(existing, duplicate=True)
            # tracking code collision; the whole transaction was rolled back
            logger.warning("Tracking code collision for club %s (attempt %d)", intent.subject_ref, attempt + 1)
    else:
        raise Conflict("Could not allocate a tracking code, please retry")

    if not updated:
        if club is None:
            logger.warning("Payment %s recorded for missing club %s", tx, intent.subject_ref)
        else:
            logger.info("Club %s was already paid; payment %s recorded only", club.id, tx)
    else:
        logger.info("Club %s membership paid (transaction %s)", intent.subject_ref, tx)
    return _outcome(payment)


def _confirm_event(store: Store, session: CheckoutSession, intent: CheckoutIntent) -> dict:
    tx = session.transaction_id
    existing_payment = store.get_payment_by_transaction(tx)
    existing_reg = store.get_registration(intent.subject_ref, intent.payer_email)
    if existing_payment or existing_reg:
        logger.info("Event payment %s already applied; returning existing records", tx)
        return _outcome(
            existing_payment,
            existing_reg or store.get_registration_by_transaction(tx),
            duplicate=True,
        )

    event = store.get_event(intent.subject_ref)
    title = event.title if event else intent.display_name
    reg = EventRegistration(
        event_id=intent.subject_ref,
        event_title=title,
        email=intent.payer_email,
        payment_status=RegistrationStatus.PAID,
        transaction_id=tx,
        amount_minor=session.amount_total,
        currency=session.currency,
    )
    payment = Payment(
        kind=PaymentKind.EVENT_REGISTRATION,
        subject_id=intent.subject_ref,
        subject_name=title,
        owner_email=event.creator_email if event else None,
        amount_minor=session.amount_total,
        currency=session.currency,
        payer_email=intent.payer_email,
        transaction_id=tx,
        status=session.payment_status,
    )
    try:
        with store.transaction() as conn:
            store.create_registration(reg, conn=conn)
            store.create_payment(payment, conn=conn)
            incremented = store.increment_attendees(intent.subject_ref, conn=conn)
    except DuplicateKeyError:
        logger.warning("Concurrent confirmation of %s settled by unique index", tx)
        return _outcome(
            store.get_payment_by_transaction(tx),
            store.get_registration(intent.subject_ref, intent.payer_email),
            duplicate=True,
        )

    if not incremented:
        logger.warning("Payment %s recorded for missing event %s", tx, intent.subject_ref)
    elif event and event.max_attendees is not None and event.attendees >= event.max_attendees:
        # paid seats are not capacity-checked
        logger.warning("Event %s over capacity after paid registration %s", event.id, tx)
    logger.info("Registered %s for paid event %s (transaction %s)", intent.payer_email, intent.subject_ref, tx)
    return _outcome(payment, reg)


def payment_history(store: Store, identity: str, email: str | None) -> list[Payment]:
    """Ledger entries for the clubs and events owned by ``email``."""
    if not email:
        raise BadRequest("Email query missing")
    enforce(identity, Action.VIEW_PAYMENTS, email)
    return store.list_payments_for_owner(email)
