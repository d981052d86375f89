from fastapi import APIRouter, Header, Request
from pydantic import BaseModel
from ..models import SubjectKind
from ..services import payments as payment_service
from ..services.auth import optional_auth, require_auth
from ..services.exceptions import AlreadyRegistered

router = APIRouter()


class ClubCheckout(BaseModel):
    club_id: str


class EventCheckout(BaseModel):
    event_id: str


@router.post("/create-club-checkout-session")
def create_club_checkout(data: ClubCheckout, request: Request):
    state = request.app.state
    url = payment_service.create_checkout(
        state.store, state.gateway, state.settings, SubjectKind.CLUB_MEMBERSHIP, data.club_id
    )
    return {"url": url}


@router.patch("/club-payment-success")
def club_payment_success(request: Request, session_id: str | None = None, authorization: str | None = Header(None)):
    identity = optional_auth(authorization, request)
    state = request.app.state
    return payment_service.confirm(
        state.store,
        state.gateway,
        session_id,
        identity=identity,
        expected_kind=SubjectKind.CLUB_MEMBERSHIP,
    )


@router.post("/create-event-payment")
def create_event_payment(data: EventCheckout, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    state = request.app.state
    try:
        url = payment_service.create_checkout(
            state.store,
            state.gateway,
            state.settings,
            SubjectKind.EVENT_REGISTRATION,
            data.event_id,
            payer_email=email,
        )
    except AlreadyRegistered as e:
        registration = e.registration.to_dict() if e.registration else None
        return {"success": True, "duplicate": True, "message": e.message, "registration": registration}
    return {"url": url}


@router.patch("/event-payment-success")
def event_payment_success(request: Request, session_id: str | None = None, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    state = request.app.state
    return payment_service.confirm(
        state.store,
        state.gateway,
        session_id,
        identity=email,
        expected_kind=SubjectKind.EVENT_REGISTRATION,
    )


@router.get("/payments")
def payment_history(request: Request, email: str | None = None, authorization: str | None = Header(None)):
    identity = require_auth(authorization, request)
    payments = payment_service.payment_history(request.app.state.store, identity, email)
    return [p.to_dict() for p in payments]
