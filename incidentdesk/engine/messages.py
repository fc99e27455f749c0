"""Per-incident discussion threads."""

from sqlalchemy import select

from ..auth.rbac import PERM_MESSAGE, check_permission
from ..auth.session import SessionContext
from ..errors import ValidationError
from ..models.base import isoformat, new_id, utcnow
from ..models.message import Message
from ..utils.logging import get_logger
from ..utils.timeouts import with_timeout

logger = get_logger("engine.messages")

MAX_MESSAGE_LENGTH = 5000


class MessageThreads:
    """Append-only message threads keyed by incident id."""

    def __init__(self, db_session_factory, store, live=None, operation_timeout: float = 10.0) -> None:
        self._session_factory = db_session_factory
        self._store = store
        self._live = live
        self._timeout = operation_timeout

    async def _with_timeout(self, coro, operation: str):
        return await with_timeout(coro, self._timeout, operation)

    async def send_message(self, incident_id: str, text: str, session: SessionContext) -> dict:
        check_permission(session, PERM_MESSAGE, "send messages")
        await self._store.get(incident_id)
        return await self._append(
            incident_id,
            text,
            kind="user",
            user_id=session.user_id,
            user_name=session.name,
            user_role=session.role.value,
        )

    async def add_system_message(self, incident_id: str, text: str) -> dict:
        return await self._append(incident_id, text, kind="system")

    async def list_messages(self, incident_id: str) -> list[dict]:
        """Thread in chronological order."""
        async def _list() -> list[dict]:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Message)
                    .where(Message.incident_id == incident_id)
                    .order_by(Message.timestamp.asc(), Message.id)
                )
                return [self._to_dict(m) for m in result.scalars().all()]

        return await self._with_timeout(_list(), "list_messages")

    async def _append(self, incident_id: str, text: str, kind: str, **author) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required", field="message")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message exceeds {MAX_MESSAGE_LENGTH} characters", field="message"
            )

        async def _insert() -> dict:
            async with self._session_factory() as db:
                message = Message(
                    id=new_id(),
                    incident_id=incident_id,
                    message=text,
                    type=kind,
                    timestamp=utcnow(),
                    **author,
                )
                db.add(message)
                await db.commit()
                return self._to_dict(message)

        result = await self._with_timeout(_insert(), "send_message")
        if self._live is not None:
            self._live.publish("messages", incident_id)
        logger.debug("message_added", incident_id=incident_id, type=kind)
        return result

    @staticmethod
    def _to_dict(message: Message) -> dict:
        return {
            "id": message.id,
            "incident_id": message.incident_id,
            "user_id": message.user_id,
            "user_name": message.user_name,
            "user_role": message.user_role,
            "message": message.message,
            "type": message.type,
            "timestamp": isoformat(message.timestamp),
        }
