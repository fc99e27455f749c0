"""Notification dispatcher — fans lifecycle events out to user feeds."""

from typing import Iterable, Optional

from sqlalchemy import func as sa_func, select, update

from ..auth.rbac import PERM_MANAGE_USERS, Role, has_permission
from ..auth.session import SessionContext
from ..errors import NotFoundError, PermissionDeniedError, ValidationError
from ..models.base import isoformat, new_id, utcnow
from ..models.notification import Notification
from ..utils.logging import get_logger
from ..utils.timeouts import with_timeout

logger = get_logger("notifications.dispatcher")

# Notification kinds produced by lifecycle fan-out
SUPPORTED_EVENT_TYPES = {
    "incident_created",
    "assigned",
    "status_changed",
    "priority_changed",
    "message",
    "info",
}


class NotificationDispatcher:
    """Writes notifications into recipients' feeds.

    ``notify`` is a plain append and surfaces its errors. The ``on_*``
    fan-out hooks are called after a lifecycle commit and never raise:
    a failed notification is logged and the transition stands.
    """

    def __init__(
        self,
        db_session_factory,
        users=None,
        live=None,
        feed_limit: int = 50,
        operation_timeout: float = 10.0,
    ) -> None:
        self._session_factory = db_session_factory
        self._users = users
        self._live = live
        self._feed_limit = feed_limit
        self._timeout = operation_timeout

    async def _with_timeout(self, coro, operation: str):
        return await with_timeout(coro, self._timeout, operation)

    def _publish(self, user_id: str) -> None:
        if self._live is not None:
            self._live.publish("notifications", user_id)

    # ------------------------------------------------------------------
    # Feed operations
    # ------------------------------------------------------------------

    async def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        incident_id: Optional[str] = None,
    ) -> str:
        """Append one unread notification to ``user_id``'s feed."""
        if not user_id:
            raise ValidationError("Notification recipient is required", field="user_id")
        if kind not in SUPPORTED_EVENT_TYPES:
            logger.warning("notification_unknown_kind", kind=kind)

        async def _insert() -> str:
            async with self._session_factory() as db:
                notification = Notification(
                    id=new_id(),
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=kind,
                    incident_id=incident_id,
                    read=False,
                    created_at=utcnow(),
                )
                db.add(notification)
                await db.commit()
                return notification.id

        notification_id = await self._with_timeout(_insert(), "notify")
        self._publish(user_id)
        logger.debug("notification_created", id=notification_id, user_id=user_id, kind=kind)
        return notification_id

    async def mark_read(self, notification_id: str, session: SessionContext) -> None:
        async def _mark() -> str:
            async with self._session_factory() as db:
                notification = (await db.execute(
                    select(Notification).where(Notification.id == notification_id)
                )).scalar_one_or_none()
                if notification is None:
                    raise NotFoundError(
                        f"Notification {notification_id} not found", notification_id=notification_id
                    )
                if notification.user_id != session.user_id and not has_permission(session, PERM_MANAGE_USERS):
                    raise PermissionDeniedError("cannot mark another user's notification as read")
                notification.read = True
                await db.commit()
                return notification.user_id

        owner = await self._with_timeout(_mark(), "mark_read")
        self._publish(owner)

    async def mark_all_read(self, session: SessionContext) -> int:
        async def _mark_all() -> int:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Notification)
                    .where(Notification.user_id == session.user_id, Notification.read == False)  # noqa: E712
                    .values(read=True)
                )
                await db.commit()
                return result.rowcount or 0

        count = await self._with_timeout(_mark_all(), "mark_all_read")
        if count:
            self._publish(session.user_id)
        return count

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> list[dict]:
        """Newest notifications first, capped at the feed limit."""
        async def _list() -> list[dict]:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Notification)
                    .where(Notification.user_id == user_id)
                    .order_by(Notification.created_at.desc(), Notification.id)
                    .limit(limit or self._feed_limit)
                )
                return [self._to_dict(n) for n in result.scalars().all()]

        return await self._with_timeout(_list(), "list_notifications")

    async def unread_count(self, user_id: str) -> int:
        async def _count() -> int:
            async with self._session_factory() as db:
                return (await db.execute(
                    select(sa_func.count(Notification.id)).where(
                        Notification.user_id == user_id,
                        Notification.read == False,  # noqa: E712
                    )
                )).scalar() or 0

        return await self._with_timeout(_count(), "unread_count")

    # ------------------------------------------------------------------
    # Lifecycle fan-out (best effort)
    # ------------------------------------------------------------------

    async def on_incident_created(self, incident: dict) -> None:
        try:
            reviewers = await self._users.list_users(role=Role.REVIEWER.value) if self._users else []
        except Exception as exc:
            logger.error("notification_recipient_lookup_failed", hook="incident_created", error=str(exc))
            return
        await self._fan_out(
            "incident_created",
            [r["id"] for r in reviewers if r["id"] != incident["reporter_id"]],
            "New incident reported",
            f"{incident['reporter_name'] or 'A reporter'} reported \"{incident['title']}\" ({incident['category']}).",
            incident,
        )

    async def on_assigned(self, incident: dict, session: SessionContext) -> None:
        await self._fan_out(
            "assigned",
            self._exclude([incident["assigned_to"]], session),
            "New assignment",
            f"You have been assigned to \"{incident['title']}\".",
            incident,
        )
        await self._fan_out(
            "assigned",
            self._exclude([incident["reporter_id"]], session),
            "Incident assigned",
            f"\"{incident['title']}\" was assigned to {incident['assigned_to_name']}.",
            incident,
        )

    async def on_status_changed(self, incident: dict, session: SessionContext, previous_status: str) -> None:
        message = f"\"{incident['title']}\" moved from {previous_status} to {incident['status']}."
        if incident.get("rejection_reason") and incident["status"] == "Rejected":
            message += f" Reason: {incident['rejection_reason']}"
        await self._fan_out(
            "status_changed",
            self._exclude([incident["reporter_id"], incident.get("assigned_to")], session),
            f"Incident {incident['status']}",
            message,
            incident,
        )

    async def on_priority_changed(self, incident: dict, session: SessionContext, previous_priority: str) -> None:
        await self._fan_out(
            "priority_changed",
            self._exclude([incident["reporter_id"], incident.get("assigned_to")], session),
            "Priority updated",
            f"\"{incident['title']}\" priority changed from {previous_priority} to {incident['priority']}.",
            incident,
        )

    @staticmethod
    def _exclude(recipients: Iterable[Optional[str]], session: SessionContext) -> list[str]:
        seen: list[str] = []
        for user_id in recipients:
            if user_id and user_id != session.user_id and user_id not in seen:
                seen.append(user_id)
        return seen

    async def _fan_out(self, kind: str, recipients: list[str], title: str, message: str, incident: dict) -> None:
        for user_id in recipients:
            try:
                await self.notify(user_id, kind, title, message, incident_id=incident["id"])
            except Exception as exc:
                logger.error(
                    "notification_delivery_failed",
                    kind=kind,
                    user_id=user_id,
                    incident_id=incident["id"],
                    error=str(exc),
                )

    @staticmethod
    def _to_dict(notification: Notification) -> dict:
        return {
            "id": notification.id,
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "type": notification.type,
            "incident_id": notification.incident_id,
            "read": notification.read,
            "created_at": isoformat(notification.created_at),
        }
