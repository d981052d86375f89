from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, StrictInt
from ..services import clubs as club_service
from ..services.auth import require_auth, require_admin
from ..services.helpers import get_club_or_404

router = APIRouter()


class ClubCreate(BaseModel):
    name: str
    creator_email: str
    # minor currency units
    membership_fee: StrictInt
    description: str | None = None
    category: str | None = None
    location: str | None = None
    banner_url: str | None = None


@router.get("/clubs")
def list_clubs(request: Request, email: str | None = None):
    return [c.to_dict() for c in club_service.list_clubs(request.app.state.store, email)]


@router.get("/clubs/{club_id}")
def get_club(club_id: str, request: Request):
    return get_club_or_404(request.app.state.store, club_id).to_dict()


@router.post("/clubs")
def create_club(data: ClubCreate, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    club = club_service.create_club(
        request.app.state.store,
        email,
        data.name,
        data.creator_email,
        data.membership_fee,
        description=data.description,
        category=data.category,
        location=data.location,
        banner_url=data.banner_url,
    )
    return {"success": True, "club_id": club.id, "message": "Club created successfully"}


@router.delete("/clubs/{club_id}")
def delete_club(club_id: str, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    club_service.delete_club(request.app.state.store, email, club_id)
    return {"status": "ok"}


@router.get("/approved-club-names")
def approved_club_names(request: Request):
    return club_service.approved_club_names(request.app.state.store)


@router.get("/approved-clubs")
def approved_clubs(request: Request, clubName: str | None = None, search: str | None = None):
    clubs = club_service.list_approved_clubs(request.app.state.store, clubName, search)
    return [c.to_dict() for c in clubs]


@router.get("/admin/paid-clubs")
def paid_clubs(request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    require_admin(email, request)
    return [c.to_dict() for c in club_service.list_paid_clubs(request.app.state.store)]


@router.patch("/admin/clubs/approve/{club_id}")
def approve_club(club_id: str, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    require_admin(email, request)
    club = club_service.approve_club(request.app.state.store, club_id)
    return {"status": "ok", "club": club.to_dict()}


@router.delete("/admin/clubs/reject/{club_id}")
def reject_club(club_id: str, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    require_admin(email, request)
    club_service.reject_club(request.app.state.store, club_id)
    return {"status": "ok"}
