from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, StrictInt
from ..models import EventKind
from ..services import events as event_service
from ..services.auth import require_auth
from ..services.exceptions import AlreadyRegistered
from ..services.helpers import get_event_or_404

router = APIRouter()


class EventCreate(BaseModel):
    club_id: str
    title: str
    date_time: str
    creator_email: str
    kind: EventKind = EventKind.FREE
    # minor currency units
    price: StrictInt = 0
    max_attendees: StrictInt | None = None
    description: str | None = None
    location: str | None = None


class FreeRegistration(BaseModel):
    event_id: str


@router.get("/events")
def list_events(request: Request, search: str | None = None):
    return [e.to_dict() for e in event_service.list_upcoming(request.app.state.store, search)]


@router.get("/events/{event_id}")
def get_event(event_id: str, request: Request):
    return get_event_or_404(request.app.state.store, event_id).to_dict()


@router.get("/clubs/{club_id}/events")
def list_club_events(club_id: str, request: Request):
    return [e.to_dict() for e in event_service.list_club_events(request.app.state.store, club_id)]


@router.get("/my-events")
def my_events(request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    return [e.to_dict() for e in event_service.list_my_events(request.app.state.store, email)]


@router.post("/events")
def create_event(data: EventCreate, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    event = event_service.create_event(
        request.app.state.store,
        email,
        data.club_id,
        data.title,
        data.date_time,
        data.creator_email,
        kind=data.kind,
        price=data.price,
        max_attendees=data.max_attendees,
        description=data.description,
        location=data.location,
    )
    return {"success": True, "event_id": event.id}


@router.delete("/events/{event_id}")
def delete_event(event_id: str, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    event_service.delete_event(request.app.state.store, email, event_id)
    return {"status": "ok"}


@router.post("/event-register-free")
def register_free(data: FreeRegistration, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    try:
        reg = event_service.register_free(request.app.state.store, data.event_id, email)
    except AlreadyRegistered as e:
        registration = e.registration.to_dict() if e.registration else None
        return {"success": True, "duplicate": True, "message": e.message, "registration": registration}
    return {"success": True, "duplicate": False, "registration": reg.to_dict()}


@router.get("/my-registrations")
def my_registrations(request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    return [r.to_dict() for r in event_service.list_registrations(request.app.state.store, email)]
