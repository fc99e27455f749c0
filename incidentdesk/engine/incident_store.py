"""Incident Store — durable incident documents and their status history.

Every mutation is one atomic read-modify-write: the row is read, the
caller's guard validates it, and the new values are written with a
compare-and-swap on ``version`` inside the same transaction. Writers in
this process are additionally serialised per incident by an asyncio lock,
so the CAS only fails when another process wrote in between.
"""

import asyncio
import json
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from sqlalchemy import func as sa_func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from ..auth.session import SYSTEM_USER, SessionContext
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.base import isoformat, new_id, utcnow
from ..models.incident import Incident
from ..utils.logging import get_logger
from ..utils.timeouts import with_timeout
from .states import IncidentStatus, parse_priority

logger = get_logger("engine.incident_store")

REQUIRED_FIELDS = ("title", "description", "category")

DESCRIPTIVE_FIELDS = (
    "title", "description", "category", "subcategory", "department",
    "office", "area", "location", "latitude", "longitude", "photo_urls",
)

# Columns a guarded update may touch besides the descriptive fields
WORKFLOW_FIELDS = (
    "priority", "assigned_to", "assigned_to_name", "assigned_to_role",
    "rejection_reason", "reviewed_by", "reviewed_at", "resolved_at",
)

Guard = Callable[[dict], None]
EntryBuilder = Union[dict, Callable[[dict], dict]]


@dataclass(frozen=True)
class IncidentQuery:
    """Predicate for incident queries and live subscriptions."""

    reporter_id: Optional[str] = None
    assigned_to: Optional[str] = None
    statuses: Optional[tuple[str, ...]] = None
    unassigned: bool = False
    created_after: Optional[datetime] = None
    limit: Optional[int] = None


class IncidentStore:
    """Owns incident rows and their append-only status history."""

    def __init__(
        self,
        db_session_factory,
        live=None,
        operation_timeout: float = 10.0,
        max_cas_retries: int = 5,
    ) -> None:
        self._session_factory = db_session_factory
        self._live = live
        self._timeout = operation_timeout
        self._max_retries = max_cas_retries
        # Entries vanish once no writer holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, incident_id: str) -> asyncio.Lock:
        lock = self._locks.get(incident_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[incident_id] = lock
        return lock

    async def _with_timeout(self, coro, operation: str):
        return await with_timeout(coro, self._timeout, operation)

    def _publish(self, incident_id: str) -> None:
        if self._live is not None:
            self._live.publish("incidents", incident_id)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(self, data: dict, session: SessionContext) -> dict:
        """Persist a new incident in status Open with one history entry."""
        missing = [f for f in REQUIRED_FIELDS if not str(data.get(f) or "").strip()]
        if not session.user_id:
            missing.append("reporter_id")
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", fields=missing
            )
        unknown = set(data) - set(DESCRIPTIVE_FIELDS) - {"priority"}
        if unknown:
            raise ValidationError(
                f"Unknown incident fields: {', '.join(sorted(unknown))}", fields=sorted(unknown)
            )
        priority = parse_priority(data.get("priority") or "Medium").value

        now = utcnow()
        history = [{
            "status": IncidentStatus.OPEN.value,
            "note": "Incident reported",
            "user": session.name,
            "timestamp": now.isoformat(),
        }]
        values = self._column_values({k: v for k, v in data.items() if k != "priority"})

        async def _create() -> dict:
            async with self._session_factory() as db:
                incident = Incident(
                    id=new_id(),
                    priority=priority,
                    status=IncidentStatus.OPEN.value,
                    reporter_id=session.user_id,
                    reporter_name=session.name,
                    status_history_json=json.dumps(history),
                    version=1,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
                db.add(incident)
                await db.commit()
                return self._to_dict(incident)

        result = await self._with_timeout(_create(), "create_incident")
        self._publish(result["id"])
        logger.info(
            "incident_created",
            id=result["id"],
            category=result["category"],
            priority=priority,
            reporter_id=session.user_id,
        )
        return result

    async def get(self, incident_id: str) -> dict:
        async def _get() -> dict:
            async with self._session_factory() as db:
                return self._to_dict(await self._load(db, incident_id))

        return await self._with_timeout(_get(), "get_incident")

    async def query(self, predicate: IncidentQuery) -> list[dict]:
        """Incidents matching ``predicate``, newest first."""
        async def _query() -> list[dict]:
            async with self._session_factory() as db:
                stmt = select(Incident).order_by(Incident.created_at.desc(), Incident.id)
                if predicate.reporter_id:
                    stmt = stmt.where(Incident.reporter_id == predicate.reporter_id)
                if predicate.assigned_to:
                    stmt = stmt.where(Incident.assigned_to == predicate.assigned_to)
                if predicate.statuses:
                    stmt = stmt.where(Incident.status.in_(list(predicate.statuses)))
                if predicate.unassigned:
                    stmt = stmt.where(Incident.assigned_to.is_(None))
                if predicate.created_after is not None:
                    stmt = stmt.where(Incident.created_at >= predicate.created_after)
                if predicate.limit:
                    stmt = stmt.limit(predicate.limit)
                result = await db.execute(stmt)
                return [self._to_dict(i) for i in result.scalars().all()]

        return await self._with_timeout(_query(), "query_incidents")

    async def recent(self, limit: int = 5) -> list[dict]:
        return await self.query(IncidentQuery(limit=limit))

    async def count_by_status(self) -> dict:
        async def _count() -> dict:
            async with self._session_factory() as db:
                rows = (await db.execute(
                    select(Incident.status, sa_func.count(Incident.id)).group_by(Incident.status)
                )).all()
                counts = {s.value: 0 for s in IncidentStatus}
                for status, count in rows:
                    counts[status] = count
                return {"total": sum(counts.values()), "by_status": counts}

        return await self._with_timeout(_count(), "count_incidents")

    # ------------------------------------------------------------------
    # Atomic mutations
    # ------------------------------------------------------------------

    async def append_history(
        self,
        incident_id: str,
        entry: EntryBuilder,
        changes: Optional[dict] = None,
        guard: Optional[Guard] = None,
    ) -> dict:
        """Append one status-history entry and move ``status`` to match it.

        ``entry`` is a dict with ``status``, ``note`` and ``user`` keys, or a
        callable that builds one from the current incident. A missing status
        keeps the current one. ``guard`` runs against the current incident
        inside the transaction and may raise to abort.
        """
        def _build(incident: Incident, current: dict, now: datetime) -> dict:
            record = entry(current) if callable(entry) else dict(entry)
            status = record.get("status") or current["status"]
            history = json.loads(incident.status_history_json or "[]")
            history.append({
                "status": status,
                "note": record.get("note") or f"Status changed to {status}",
                "user": record.get("user") or SYSTEM_USER,
                "timestamp": now.isoformat(),
            })
            values = self._column_values(changes or {})
            values["status"] = status
            values["status_history_json"] = json.dumps(history)
            return values

        return await self._mutate(incident_id, _build, guard, "append_history")

    async def update_fields(
        self,
        incident_id: str,
        changes: dict,
        guard: Optional[Guard] = None,
    ) -> dict:
        """Atomically overwrite fields without touching status or history."""
        def _build(incident: Incident, current: dict, now: datetime) -> dict:
            return self._column_values(changes)

        return await self._mutate(incident_id, _build, guard, "update_fields")

    async def _mutate(self, incident_id: str, build_values, guard: Optional[Guard], operation: str) -> dict:
        """Read, guard and CAS-write one incident, retrying lost races.

        The timeout bounds waiting for the lock and staging the write. Once
        the CAS has matched, the commit and the publish always run, so a
        caller never sees a retryable timeout for a write that landed.
        """
        lock = self._lock_for(incident_id)
        await self._with_timeout(lock.acquire(), operation)
        try:
            for attempt in range(1, self._max_retries + 1):
                async with self._session_factory() as db:
                    staged = await self._with_timeout(
                        self._stage(db, incident_id, build_values, guard), operation
                    )
                    if staged is None:
                        await db.rollback()
                        logger.warning(
                            "incident_version_conflict",
                            id=incident_id,
                            operation=operation,
                            attempt=attempt,
                        )
                        continue

                    incident, values = staged
                    await db.commit()
                    for key, value in values.items():
                        set_committed_value(incident, key, value)
                    self._publish(incident_id)
                    return self._to_dict(incident)
        finally:
            lock.release()

        raise ConflictError(
            f"{operation} on incident {incident_id} lost {self._max_retries} concurrent-write races",
            incident_id=incident_id,
        )

    async def _stage(self, db, incident_id: str, build_values, guard: Optional[Guard]):
        """Run the guarded CAS update; None when another writer got there first."""
        incident = await self._load(db, incident_id)
        current = self._to_dict(incident)
        if guard is not None:
            guard(current)

        now = utcnow()
        seen_version = incident.version
        values = build_values(incident, current, now)
        values["updated_at"] = now
        values["version"] = seen_version + 1

        result = await db.execute(
            update(Incident)
            .where(Incident.id == incident_id, Incident.version == seen_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return incident, values

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(db, incident_id: str) -> Incident:
        incident = (await db.execute(
            select(Incident).where(Incident.id == incident_id)
        )).scalar_one_or_none()
        if incident is None:
            raise NotFoundError(f"Incident {incident_id} not found", incident_id=incident_id)
        return incident

    @staticmethod
    def _column_values(changes: dict) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for key, value in changes.items():
            if key == "photo_urls":
                if value is not None and not all(isinstance(u, str) for u in value):
                    raise ValidationError("photo_urls must be a list of URL strings", field="photo_urls")
                values["photo_urls_json"] = json.dumps(list(value)) if value else None
            elif key in DESCRIPTIVE_FIELDS or key in WORKFLOW_FIELDS:
                values[key] = value
            else:
                raise ValidationError(f"Field {key!r} cannot be written", field=key)
        return values

    @staticmethod
    def _to_dict(incident: Incident) -> dict:
        return {
            "id": incident.id,
            "title": incident.title,
            "description": incident.description,
            "category": incident.category,
            "subcategory": incident.subcategory,
            "department": incident.department,
            "office": incident.office,
            "area": incident.area,
            "location": incident.location,
            "latitude": incident.latitude,
            "longitude": incident.longitude,
            "photo_urls": json.loads(incident.photo_urls_json) if incident.photo_urls_json else [],
            "priority": incident.priority,
            "status": incident.status,
            "reporter_id": incident.reporter_id,
            "reporter_name": incident.reporter_name,
            "assigned_to": incident.assigned_to,
            "assigned_to_name": incident.assigned_to_name,
            "assigned_to_role": incident.assigned_to_role,
            "status_history": json.loads(incident.status_history_json) if incident.status_history_json else [],
            "rejection_reason": incident.rejection_reason,
            "reviewed_by": incident.reviewed_by,
            "reviewed_at": isoformat(incident.reviewed_at),
            "resolved_at": isoformat(incident.resolved_at),
            "version": incident.version,
            "created_at": isoformat(incident.created_at),
            "updated_at": isoformat(incident.updated_at),
        }
