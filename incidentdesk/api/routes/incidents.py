"""Incident routes — reporting, triage, assignment, status changes and messages."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ...auth.rbac import PERM_MANAGE_INCIDENTS, PERM_VIEW_ALL_INCIDENTS, has_permission, require_permission
from ...auth.session import SessionContext
from ...dependencies import (
    get_assignment_resolver,
    get_incident_store,
    get_lifecycle_engine,
    get_message_threads,
    get_session_context,
)
from ...engine.assignment import CandidateFilter
from ...errors import PermissionDeniedError
from ...live.views import incident_query_for_view

router = APIRouter(prefix="/incidents", tags=["incidents"])


# --- Request bodies ---

class CreateIncidentRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=5000)
    category: str = Field(min_length=1, max_length=100)
    subcategory: Optional[str] = None
    department: Optional[str] = None
    office: Optional[str] = None
    area: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    photo_urls: Optional[list[str]] = None
    priority: Optional[str] = Field(default=None, pattern=r"^(Low|Medium|High|Critical)$")


class EditIncidentRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    subcategory: Optional[str] = None
    department: Optional[str] = None
    office: Optional[str] = None
    area: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    photo_urls: Optional[list[str]] = None


class TransitionRequest(BaseModel):
    status: str
    note: Optional[str] = Field(default=None, max_length=5000)


class PriorityRequest(BaseModel):
    priority: str = Field(pattern=r"^(Low|Medium|High|Critical)$")


class ApproveRequest(BaseModel):
    responder_id: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=5000)


class AssignRequest(BaseModel):
    responder_id: str


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)


def _ensure_visible(incident: dict, session: SessionContext) -> dict:
    if has_permission(session, PERM_VIEW_ALL_INCIDENTS):
        return incident
    if session.user_id in (incident["reporter_id"], incident["assigned_to"]):
        return incident
    raise PermissionDeniedError(
        "cannot view incident: it was not reported by or assigned to you",
        incident_id=incident["id"],
    )


# --- Endpoints ---

@router.get("/")
async def list_incidents(
    view: str = Query("mine", pattern=r"^(mine|assigned|unassigned|all)$"),
    status: Optional[list[str]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=500),
    session: SessionContext = Depends(get_session_context),
):
    """List incidents for one of the named views."""
    query = incident_query_for_view(view, session, tuple(status) if status else None, limit)
    return await get_incident_store().query(query)


@router.post("/", status_code=201)
async def create_incident(
    body: CreateIncidentRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_lifecycle_engine().create_incident(body.model_dump(exclude_none=True), session)


@router.get("/recent")
async def recent_incidents(
    limit: int = Query(5, ge=1, le=50),
    session: SessionContext = Depends(require_permission(PERM_VIEW_ALL_INCIDENTS)),
):
    return await get_incident_store().recent(limit)


@router.get("/stats")
async def incident_stats(
    session: SessionContext = Depends(require_permission(PERM_VIEW_ALL_INCIDENTS)),
):
    """Incident counts by status."""
    return await get_incident_store().count_by_status()


@router.get("/{incident_id}")
async def get_incident(
    incident_id: str,
    session: SessionContext = Depends(get_session_context),
):
    incident = await get_incident_store().get(incident_id)
    return _ensure_visible(incident, session)


@router.patch("/{incident_id}")
async def edit_incident(
    incident_id: str,
    body: EditIncidentRequest,
    session: SessionContext = Depends(get_session_context),
):
    """Edit descriptive fields (reporter while Open, or an incident manager)."""
    changes = body.model_dump(exclude_unset=True)
    return await get_lifecycle_engine().edit_details(incident_id, changes, session)


@router.post("/{incident_id}/transition")
async def transition_incident(
    incident_id: str,
    body: TransitionRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_lifecycle_engine().transition(incident_id, body.status, session, note=body.note)


@router.post("/{incident_id}/priority")
async def change_priority(
    incident_id: str,
    body: PriorityRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_lifecycle_engine().change_priority(incident_id, body.priority, session)


@router.post("/{incident_id}/approve")
async def approve_incident(
    incident_id: str,
    body: Optional[ApproveRequest] = None,
    session: SessionContext = Depends(get_session_context),
):
    responder_id = body.responder_id if body else None
    return await get_lifecycle_engine().approve(incident_id, session, responder_id=responder_id)


@router.post("/{incident_id}/reject")
async def reject_incident(
    incident_id: str,
    body: RejectRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_lifecycle_engine().reject(incident_id, body.reason, session)


@router.get("/{incident_id}/candidates")
async def list_candidates(
    incident_id: str,
    available_only: bool = False,
    skill: Optional[str] = None,
    search: Optional[str] = None,
    sort_by_distance: bool = False,
    session: SessionContext = Depends(require_permission(PERM_MANAGE_INCIDENTS)),
):
    """Responders that could take this incident, optionally nearest first."""
    return await get_assignment_resolver().list_candidates(CandidateFilter(
        available_only=available_only,
        skill=skill,
        search=search,
        sort_by_distance=sort_by_distance,
        incident_id=incident_id,
    ))


@router.post("/{incident_id}/assign")
async def assign_responder(
    incident_id: str,
    body: AssignRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_assignment_resolver().assign(incident_id, body.responder_id, session)


@router.get("/{incident_id}/messages")
async def list_messages(
    incident_id: str,
    session: SessionContext = Depends(get_session_context),
):
    _ensure_visible(await get_incident_store().get(incident_id), session)
    return await get_message_threads().list_messages(incident_id)


@router.post("/{incident_id}/messages", status_code=201)
async def send_message(
    incident_id: str,
    body: MessageRequest,
    session: SessionContext = Depends(get_session_context),
):
    _ensure_visible(await get_incident_store().get(incident_id), session)
    return await get_message_threads().send_message(incident_id, body.message, session)
