from fastapi import APIRouter, Header, Request
from pydantic import BaseModel
from ..services import users as user_service
from ..services.auth import require_auth, require_admin

router = APIRouter()


class UserCreate(BaseModel):
    email: str
    name: str | None = None
    photo_url: str | None = None


class RoleUpdate(BaseModel):
    role: str


@router.post("/users")
def register_user_api(data: UserCreate, request: Request):
    user, created = user_service.create_user(
        request.app.state.store, data.email, name=data.name, photo_url=data.photo_url
    )
    if not created:
        return {"message": "user already exists", "user_id": user.id}
    return {"status": "ok", "user_id": user.id}


@router.get("/users")
def list_users_api(request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    require_admin(email, request)
    return [u.to_dict() for u in user_service.list_users(request.app.state.store)]


@router.patch("/users/{user_id}")
def change_role_api(user_id: str, data: RoleUpdate, request: Request, authorization: str | None = Header(None)):
    email = require_auth(authorization, request)
    require_admin(email, request)
    user = user_service.change_role(request.app.state.store, user_id, data.role)
    return {"status": "ok", "user": user.to_dict()}


@router.get("/users/{email}/role")
def get_role_api(email: str, request: Request):
    return {"role": user_service.get_role(request.app.state.store, email).value}
