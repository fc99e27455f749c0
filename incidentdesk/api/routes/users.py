"""User routes — profile registration, self-service edits and the directory."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...auth.rbac import DEFAULT_ROLES, PERM_ASSIGN, Role, has_permission, role_permissions
from ...auth.session import SessionContext
from ...dependencies import get_session_context, get_token_identity, get_user_directory
from ...errors import PermissionDeniedError

router = APIRouter(prefix="/users", tags=["users"])


class RegisterRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    role: str = Field(default=Role.REPORTER.value, pattern=r"^(Reporter|Reviewer|Responder|Admin)$")
    email: Optional[str] = Field(default=None, max_length=255)
    department: Optional[str] = None
    phone: Optional[str] = None
    skills: Optional[list[str]] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class UpdateProfileRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    department: Optional[str] = None
    phone: Optional[str] = None
    skills: Optional[list[str]] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class AvailabilityRequest(BaseModel):
    status: str = Field(pattern=r"^(available|busy|offline)$")


class PushTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    identity: dict = Depends(get_token_identity),
):
    """Create the profile for the authenticated identity (token ``sub``)."""
    data = body.model_dump(exclude_none=True)
    data["id"] = identity["sub"]
    data["email"] = identity.get("email") or body.email
    return await get_user_directory().register(data)


@router.get("/me")
async def me(session: SessionContext = Depends(get_session_context)):
    user = await get_user_directory().get(session.user_id)
    return {**user, "permissions": role_permissions(session.role)}


@router.get("/roles")
async def list_roles(session: SessionContext = Depends(get_session_context)):
    """Roles and the capabilities each one grants."""
    return [
        {"role": role.value, "description": entry["description"], "permissions": entry["permissions"]}
        for role, entry in DEFAULT_ROLES.items()
    ]


@router.get("/")
async def list_users(
    role: Optional[str] = None,
    session: SessionContext = Depends(get_session_context),
):
    """Directory listing. Non-managers may only list responders."""
    if not has_permission(session, PERM_ASSIGN) and role != Role.RESPONDER.value:
        raise PermissionDeniedError("cannot list users: only responders are visible to your role")
    return await get_user_directory().list_users(role=role)


@router.get("/{user_id}")
async def get_user(user_id: str, session: SessionContext = Depends(get_session_context)):
    return await get_user_directory().get(user_id)


@router.patch("/{user_id}")
async def update_profile(
    user_id: str,
    body: UpdateProfileRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_user_directory().update_profile(user_id, body.model_dump(exclude_unset=True), session)


@router.put("/{user_id}/availability")
async def set_availability(
    user_id: str,
    body: AvailabilityRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_user_directory().set_availability(user_id, body.status, session)


@router.put("/{user_id}/push-token")
async def save_push_token(
    user_id: str,
    body: PushTokenRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_user_directory().save_push_token(user_id, body.token, session)
