"""Explicit per-call session context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rbac import Role


@dataclass(frozen=True)
class SessionContext:
    """Who is performing an operation.

    Built once per request from the authenticated identity and passed
    explicitly into every engine call.
    """

    user_id: str
    role: "Role"
    display_name: str = ""
    email: str = ""

    @property
    def name(self) -> str:
        return self.display_name or self.email or self.user_id

    @classmethod
    def from_user(cls, user: dict) -> "SessionContext":
        from .rbac import parse_role

        return cls(
            user_id=user["id"],
            role=parse_role(user["role"]),
            display_name=user.get("full_name") or "",
            email=user.get("email") or "",
        )


SYSTEM_USER = "System"
