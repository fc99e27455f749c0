"""Assignment Resolver — picks a responder and binds it to an incident."""

import math
from dataclasses import dataclass
from typing import Optional

from ..auth.rbac import PERM_ASSIGN, Role, check_permission
from ..auth.session import SessionContext
from ..errors import InvalidTransitionError, NotAvailableError
from ..utils.logging import get_logger
from .states import ASSIGNABLE_STATUSES, IncidentStatus, parse_status
from .user_directory import Availability

logger = get_logger("engine.assignment")

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class CandidateFilter:
    available_only: bool = False
    skill: Optional[str] = None
    search: Optional[str] = None
    sort_by_distance: bool = False
    incident_id: Optional[str] = None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def distance_between(incident: Optional[dict], responder: dict) -> Optional[float]:
    if not incident:
        return None
    coords = (incident.get("latitude"), incident.get("longitude"),
              responder.get("latitude"), responder.get("longitude"))
    if any(c is None for c in coords):
        return None
    return round(haversine_km(*coords), 3)


def ensure_available(responder: dict) -> None:
    """Raise NotAvailableError unless ``responder`` can take an assignment."""
    if responder["role"] != Role.RESPONDER.value:
        raise NotAvailableError(
            f"cannot assign: {responder['full_name']} is a {responder['role']}, not a Responder",
            responder_id=responder["id"],
        )
    if responder["status"] != Availability.AVAILABLE.value:
        raise NotAvailableError(
            f"cannot assign: responder {responder['full_name']} is {responder['status']}",
            responder_id=responder["id"],
            responder_status=responder["status"],
        )


def assignment_changes(responder: dict) -> dict:
    return {
        "assigned_to": responder["id"],
        "assigned_to_name": responder["full_name"],
        "assigned_to_role": responder["role"],
    }


class AssignmentResolver:
    """Lists responder candidates and performs the compound assign operation."""

    def __init__(self, store, users, dispatcher=None, messages=None) -> None:
        self._store = store
        self._users = users
        self._dispatcher = dispatcher
        self._messages = messages

    async def list_candidates(self, candidate_filter: CandidateFilter = CandidateFilter()) -> list[dict]:
        """Responders matching the filter, each with a ``distance_km`` field."""
        responders = await self._users.list_users(role=Role.RESPONDER.value)
        incident = None
        if candidate_filter.incident_id:
            incident = await self._store.get(candidate_filter.incident_id)

        skill = (candidate_filter.skill or "").strip().lower()
        search = (candidate_filter.search or "").strip().lower()

        candidates = []
        for responder in responders:
            skills = [s.lower() for s in responder["skills"]]
            if candidate_filter.available_only and responder["status"] != Availability.AVAILABLE.value:
                continue
            if skill and skill not in skills:
                continue
            if search and search not in responder["full_name"].lower() and not any(search in s for s in skills):
                continue
            candidates.append({**responder, "distance_km": distance_between(incident, responder)})

        if candidate_filter.sort_by_distance:
            candidates.sort(key=lambda c: (c["distance_km"] is None, c["distance_km"] or 0.0))
        return candidates

    async def assign(self, incident_id: str, responder_id: str, session: SessionContext) -> dict:
        """Bind ``responder_id`` to the incident and move it to In Progress.

        The assignment fields, the status change and the history entry are
        written in one atomic update.
        """
        check_permission(session, PERM_ASSIGN, "assign responders")
        responder = await self._users.get(responder_id)
        ensure_available(responder)

        previous: dict = {}

        def _guard(current: dict) -> None:
            if parse_status(current["status"]) not in ASSIGNABLE_STATUSES:
                raise InvalidTransitionError(
                    f"cannot assign: incident is {current['status']}",
                    current=current["status"],
                )
            previous.update(current)

        incident = await self._store.append_history(
            incident_id,
            {
                "status": IncidentStatus.IN_PROGRESS.value,
                "note": f"Assigned to {responder['full_name']}",
                "user": session.name,
            },
            changes=assignment_changes(responder),
            guard=_guard,
        )
        logger.info(
            "incident_assigned",
            id=incident_id,
            responder_id=responder_id,
            previous_assignee=previous.get("assigned_to"),
            actor=session.user_id,
        )

        if self._messages is not None:
            try:
                await self._messages.add_system_message(
                    incident_id, f"{responder['full_name']} was assigned to this incident."
                )
            except Exception as exc:
                logger.error("assignment_system_message_failed", id=incident_id, error=str(exc))
        if self._dispatcher is not None:
            await self._dispatcher.on_assigned(incident, session)
        return incident
