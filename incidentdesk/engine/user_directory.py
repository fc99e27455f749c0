"""User directory — registration, profiles and responder availability."""

import json
from enum import Enum
from typing import Optional

from sqlalchemy import select

from ..auth.rbac import PERM_MANAGE_USERS, Role, has_permission, parse_role
from ..auth.session import SessionContext
from ..errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..models.base import isoformat, new_id, utcnow
from ..models.user import User
from ..utils.logging import get_logger
from ..utils.timeouts import with_timeout

logger = get_logger("engine.user_directory")

PROFILE_FIELDS = ("full_name", "department", "phone", "skills", "latitude", "longitude")

DEFAULT_SKILLS = ["General"]


class Availability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class UserDirectory:
    """Stores user profiles. Roles are fixed once a user registers."""

    def __init__(self, db_session_factory, live=None, operation_timeout: float = 10.0) -> None:
        self._session_factory = db_session_factory
        self._live = live
        self._timeout = operation_timeout

    async def _with_timeout(self, coro, operation: str):
        return await with_timeout(coro, self._timeout, operation)

    def _publish(self, user_id: str) -> None:
        if self._live is not None:
            self._live.publish("users", user_id)

    async def register(self, data: dict) -> dict:
        """Create a profile for a newly authenticated identity."""
        full_name = (data.get("full_name") or "").strip()
        email = (data.get("email") or "").strip().lower()
        if not full_name or not email:
            raise ValidationError("full_name and email are required", fields=["full_name", "email"])
        try:
            role = parse_role(data.get("role") or Role.REPORTER.value)
        except ValueError as exc:
            raise ValidationError(str(exc), field="role") from None

        skills = data.get("skills") or DEFAULT_SKILLS
        now = utcnow()

        async def _register() -> dict:
            async with self._session_factory() as db:
                existing = (await db.execute(
                    select(User).where(User.email == email)
                )).scalar_one_or_none()
                if existing is not None:
                    raise ValidationError(f"Email {email} is already registered", field="email")
                user = User(
                    id=data.get("id") or new_id(),
                    full_name=full_name,
                    email=email,
                    role=role.value,
                    department=data.get("department"),
                    phone=data.get("phone"),
                    skills_json=json.dumps(list(skills)),
                    status=Availability.AVAILABLE.value,
                    latitude=data.get("latitude"),
                    longitude=data.get("longitude"),
                    created_at=now,
                    updated_at=now,
                )
                db.add(user)
                await db.commit()
                return self._to_dict(user)

        result = await self._with_timeout(_register(), "register_user")
        self._publish(result["id"])
        logger.info("user_registered", id=result["id"], role=role.value)
        return result

    async def get(self, user_id: str) -> dict:
        async def _get() -> dict:
            async with self._session_factory() as db:
                return self._to_dict(await self._load(db, user_id))

        return await self._with_timeout(_get(), "get_user")

    async def list_users(self, role: Optional[str] = None) -> list[dict]:
        """All users, newest first, optionally restricted to one role."""
        try:
            role_value = parse_role(role).value if role else None
        except ValueError as exc:
            raise ValidationError(str(exc), field="role") from None

        async def _list() -> list[dict]:
            async with self._session_factory() as db:
                stmt = select(User).order_by(User.created_at.desc(), User.id)
                if role_value:
                    stmt = stmt.where(User.role == role_value)
                result = await db.execute(stmt)
                return [self._to_dict(u) for u in result.scalars().all()]

        return await self._with_timeout(_list(), "list_users")

    async def list_by_role(self) -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {role.value: [] for role in Role}
        for user in await self.list_users():
            grouped.setdefault(user["role"], []).append(user)
        return grouped

    async def update_profile(self, user_id: str, changes: dict, session: SessionContext) -> dict:
        self._check_self_or_admin(user_id, session, "update profile")
        if "role" in changes:
            raise ValidationError("Role cannot be changed after registration", field="role")
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown profile fields: {', '.join(sorted(unknown))}", fields=sorted(unknown)
            )
        if "full_name" in changes and not (changes["full_name"] or "").strip():
            raise ValidationError("full_name cannot be empty", field="full_name")

        values = dict(changes)
        if "skills" in values:
            values["skills_json"] = json.dumps(list(values.pop("skills") or DEFAULT_SKILLS))
        return await self._write(user_id, values, "update_profile")

    async def set_availability(self, user_id: str, status: str, session: SessionContext) -> dict:
        self._check_self_or_admin(user_id, session, "change availability")
        try:
            availability = Availability(status)
        except ValueError:
            allowed = ", ".join(a.value for a in Availability)
            raise ValidationError(
                f"Unknown availability {status!r}. Expected one of: {allowed}", field="status"
            ) from None
        result = await self._write(user_id, {"status": availability.value}, "set_availability")
        logger.info("user_availability_changed", id=user_id, status=availability.value)
        return result

    async def save_push_token(self, user_id: str, token: str, session: SessionContext) -> dict:
        self._check_self_or_admin(user_id, session, "register push token")
        return await self._write(user_id, {"push_token": token}, "save_push_token")

    async def _write(self, user_id: str, values: dict, operation: str) -> dict:
        async def _update() -> dict:
            async with self._session_factory() as db:
                user = await self._load(db, user_id)
                for key, value in values.items():
                    setattr(user, key, value)
                user.updated_at = utcnow()
                await db.commit()
                return self._to_dict(user)

        result = await self._with_timeout(_update(), operation)
        self._publish(user_id)
        return result

    @staticmethod
    def _check_self_or_admin(user_id: str, session: SessionContext, action: str) -> None:
        if session.user_id != user_id and not has_permission(session, PERM_MANAGE_USERS):
            raise PermissionDeniedError(
                f"cannot {action}: only the user or an admin may do this", user_id=user_id
            )

    @staticmethod
    async def _load(db, user_id: str) -> User:
        user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
        if user is None:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)
        return user

    @staticmethod
    def _to_dict(user: User) -> dict:
        return {
            "id": user.id,
            "full_name": user.full_name,
            "email": user.email,
            "role": user.role,
            "department": user.department,
            "phone": user.phone,
            "skills": json.loads(user.skills_json) if user.skills_json else list(DEFAULT_SKILLS),
            "status": user.status or Availability.AVAILABLE.value,
            "latitude": user.latitude,
            "longitude": user.longitude,
            "has_push_token": bool(user.push_token),
            "created_at": isoformat(user.created_at),
            "updated_at": isoformat(user.updated_at),
        }
