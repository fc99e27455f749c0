"""Lifecycle Engine — validated status changes for incidents.

All writes go through ``IncidentStore.append_history`` with a guard, so the
transition check and the history append happen against the same version
of the incident. Notifications are sent after the write has committed.
"""

from typing import Optional

from ..auth.rbac import (
    PERM_APPROVE,
    PERM_CHANGE_PRIORITY,
    PERM_MANAGE_INCIDENTS,
    PERM_REJECT,
    PERM_REPORT,
    PERM_UPDATE_STATUS,
    check_permission,
    has_permission,
)
from ..auth.session import SessionContext
from ..errors import InvalidTransitionError, PermissionDeniedError, ValidationError
from ..models.base import utcnow
from ..utils.logging import get_logger
from .assignment import assignment_changes, ensure_available
from .incident_store import DESCRIPTIVE_FIELDS
from .states import (
    ASSIGNED_STATUSES,
    IncidentStatus,
    check_transition,
    is_terminal,
    parse_priority,
    parse_status,
)

logger = get_logger("engine.lifecycle")

# Assignment columns cleared when an incident goes back to the queue
CLEARED_ASSIGNMENT = {
    "assigned_to": None,
    "assigned_to_name": None,
    "assigned_to_role": None,
}


class LifecycleEngine:
    """Owns every status change on an incident."""

    def __init__(self, store, users, dispatcher=None, messages=None) -> None:
        self._store = store
        self._users = users
        self._dispatcher = dispatcher
        self._messages = messages

    async def create_incident(self, data: dict, session: SessionContext) -> dict:
        check_permission(session, PERM_REPORT, "report incidents")
        incident = await self._store.create(data, session)
        if self._dispatcher is not None:
            await self._dispatcher.on_incident_created(incident)
        return incident

    async def transition(
        self,
        incident_id: str,
        target: str,
        session: SessionContext,
        note: Optional[str] = None,
    ) -> dict:
        """Move an incident to ``target`` if the transition table allows it.

        Approved and Rejected are routed through ``approve`` and ``reject``
        so their review fields are always recorded.
        """
        check_permission(session, PERM_UPDATE_STATUS, "update incident status")
        destination = parse_status(target)
        if destination == IncidentStatus.APPROVED:
            return await self.approve(incident_id, session)
        if destination == IncidentStatus.REJECTED:
            return await self.reject(incident_id, note or "", session)

        previous: dict = {}
        changes: dict = {}

        def _guard(current: dict) -> None:
            self._check_can_work(current, session)
            check_transition(current["status"], destination.value)
            if destination in ASSIGNED_STATUSES and not current["assigned_to"]:
                raise ValidationError(
                    f"cannot move to {destination.value}: assign a responder first",
                    incident_id=incident_id,
                )
            previous["status"] = current["status"]

        if destination == IncidentStatus.RESOLVED:
            changes["resolved_at"] = utcnow()
        elif destination == IncidentStatus.OPEN:
            changes.update(CLEARED_ASSIGNMENT)

        incident = await self._store.append_history(
            incident_id,
            {"status": destination.value, "note": note, "user": session.name},
            changes=changes,
            guard=_guard,
        )
        logger.info(
            "incident_transitioned",
            id=incident_id,
            from_status=previous["status"],
            to_status=destination.value,
            actor=session.user_id,
        )
        await self._after_status_change(incident, session, previous["status"])
        return incident

    async def change_priority(self, incident_id: str, priority: str, session: SessionContext) -> dict:
        """Set the priority. Allowed in any status; the status is left as is."""
        check_permission(session, PERM_CHANGE_PRIORITY, "change priority")
        new_priority = parse_priority(priority).value
        previous: dict = {}

        def _entry(current: dict) -> dict:
            previous["priority"] = current["priority"]
            return {
                "note": f"Priority changed from {current['priority']} to {new_priority}",
                "user": session.name,
            }

        incident = await self._store.append_history(
            incident_id, _entry, changes={"priority": new_priority}
        )
        logger.info(
            "incident_priority_changed",
            id=incident_id,
            from_priority=previous["priority"],
            to_priority=new_priority,
            actor=session.user_id,
        )
        if self._dispatcher is not None and previous["priority"] != new_priority:
            await self._dispatcher.on_priority_changed(incident, session, previous["priority"])
        return incident

    async def approve(
        self,
        incident_id: str,
        session: SessionContext,
        responder_id: Optional[str] = None,
    ) -> dict:
        """Approve an Open incident.

        The incident must already have a responder, or ``responder_id`` names
        one to bind in the same write.
        """
        check_permission(session, PERM_APPROVE, "approve incidents")
        changes = {"reviewed_by": session.name, "reviewed_at": utcnow()}
        if responder_id:
            responder = await self._users.get(responder_id)
            ensure_available(responder)
            changes.update(assignment_changes(responder))

        def _guard(current: dict) -> None:
            if parse_status(current["status"]) != IncidentStatus.OPEN:
                raise InvalidTransitionError(
                    f"cannot approve: incident is {current['status']}, not Open",
                    current=current["status"],
                )
            if not responder_id and not current["assigned_to"]:
                raise ValidationError(
                    "cannot approve: assign a responder first", incident_id=incident_id
                )

        incident = await self._store.append_history(
            incident_id,
            {
                "status": IncidentStatus.APPROVED.value,
                "note": f"Incident approved by {session.name}",
                "user": session.name,
            },
            changes=changes,
            guard=_guard,
        )
        logger.info(
            "incident_approved",
            id=incident_id,
            assigned_to=incident["assigned_to"],
            actor=session.user_id,
        )
        if responder_id and self._dispatcher is not None:
            await self._dispatcher.on_assigned(incident, session)
        await self._after_status_change(incident, session, IncidentStatus.OPEN.value)
        return incident

    async def reject(self, incident_id: str, reason: str, session: SessionContext) -> dict:
        check_permission(session, PERM_REJECT, "reject incidents")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required", field="reason")
        previous: dict = {}

        def _guard(current: dict) -> None:
            if is_terminal(current["status"]):
                raise InvalidTransitionError(
                    f"cannot reject: incident is already {current['status']}",
                    current=current["status"],
                )
            previous["status"] = current["status"]

        incident = await self._store.append_history(
            incident_id,
            {
                "status": IncidentStatus.REJECTED.value,
                "note": f"Incident rejected: {reason}",
                "user": session.name,
            },
            changes={
                "rejection_reason": reason,
                "reviewed_by": session.name,
                "reviewed_at": utcnow(),
            },
            guard=_guard,
        )
        logger.info("incident_rejected", id=incident_id, reason=reason, actor=session.user_id)
        await self._after_status_change(incident, session, previous["status"])
        return incident

    async def edit_details(self, incident_id: str, changes: dict, session: SessionContext) -> dict:
        """Edit descriptive fields.

        The reporter may edit while the incident is Open. Incident managers
        may edit at any time.
        """
        if not changes:
            raise ValidationError("No fields to update")
        not_editable = sorted(set(changes) - set(DESCRIPTIVE_FIELDS))
        if not_editable:
            raise ValidationError(
                f"Fields cannot be edited: {', '.join(not_editable)}", fields=not_editable
            )
        for field in ("title", "description", "category"):
            if field in changes and not str(changes[field] or "").strip():
                raise ValidationError(f"{field} cannot be empty", field=field)

        def _guard(current: dict) -> None:
            if has_permission(session, PERM_MANAGE_INCIDENTS):
                return
            if current["reporter_id"] != session.user_id:
                raise PermissionDeniedError(
                    "cannot edit incident: only its reporter may do this", incident_id=incident_id
                )
            if current["status"] != IncidentStatus.OPEN.value:
                raise PermissionDeniedError(
                    f"cannot edit incident: it is {current['status']}, edits close once work starts",
                    incident_id=incident_id,
                )

        incident = await self._store.update_fields(incident_id, changes, guard=_guard)
        logger.info("incident_edited", id=incident_id, fields=sorted(changes), actor=session.user_id)
        return incident

    @staticmethod
    def _check_can_work(current: dict, session: SessionContext) -> None:
        if has_permission(session, PERM_MANAGE_INCIDENTS):
            return
        if current["assigned_to"] != session.user_id:
            raise PermissionDeniedError(
                "cannot update status: incident is not assigned to you",
                incident_id=current["id"],
            )

    async def _after_status_change(self, incident: dict, session: SessionContext, previous_status: str) -> None:
        if self._messages is not None:
            try:
                await self._messages.add_system_message(
                    incident["id"],
                    f"Status changed from {previous_status} to {incident['status']} by {session.name}.",
                )
            except Exception as exc:
                logger.error("status_system_message_failed", id=incident["id"], error=str(exc))
        if self._dispatcher is not None:
            await self._dispatcher.on_status_changed(incident, session, previous_status)
