"""Role-Based Access Control — roles and their capability sets."""

from enum import Enum

from fastapi import Depends

from ..errors import PermissionDeniedError
from ..utils.logging import get_logger
from .session import SessionContext

logger = get_logger("auth.rbac")


class Role(str, Enum):
    REPORTER = "Reporter"
    REVIEWER = "Reviewer"
    RESPONDER = "Responder"
    ADMIN = "Admin"


# Capability constants
PERM_REPORT = "report"
PERM_VIEW_ALL_INCIDENTS = "view_all_incidents"
PERM_UPDATE_STATUS = "update_status"
PERM_MANAGE_INCIDENTS = "manage_incidents"
PERM_APPROVE = "approve"
PERM_REJECT = "reject"
PERM_CHANGE_PRIORITY = "change_priority"
PERM_ASSIGN = "assign"
PERM_MESSAGE = "message"
PERM_MANAGE_USERS = "manage_users"
PERM_MANAGE_CATEGORIES = "manage_categories"
PERM_VIEW_ANALYTICS = "view_analytics"

ALL_PERMISSIONS = [
    PERM_REPORT, PERM_VIEW_ALL_INCIDENTS, PERM_UPDATE_STATUS,
    PERM_MANAGE_INCIDENTS, PERM_APPROVE, PERM_REJECT,
    PERM_CHANGE_PRIORITY, PERM_ASSIGN, PERM_MESSAGE,
    PERM_MANAGE_USERS, PERM_MANAGE_CATEGORIES, PERM_VIEW_ANALYTICS,
]

DEFAULT_ROLES = {
    Role.ADMIN: {
        "description": "Full system access",
        "permissions": ALL_PERMISSIONS,
    },
    Role.REVIEWER: {
        "description": "Safety officer — triage, approve, reject and assign",
        "permissions": [
            PERM_REPORT, PERM_VIEW_ALL_INCIDENTS, PERM_UPDATE_STATUS,
            PERM_MANAGE_INCIDENTS, PERM_APPROVE, PERM_REJECT,
            PERM_CHANGE_PRIORITY, PERM_ASSIGN, PERM_MESSAGE,
            PERM_VIEW_ANALYTICS,
        ],
    },
    Role.RESPONDER: {
        "description": "Technician — works assigned incidents to resolution",
        "permissions": [PERM_REPORT, PERM_UPDATE_STATUS, PERM_MESSAGE],
    },
    Role.REPORTER: {
        "description": "Reports incidents and follows their progress",
        "permissions": [PERM_REPORT, PERM_MESSAGE],
    },
}


def parse_role(value: str) -> Role:
    """Map a stored role string onto the Role enum, case-insensitively."""
    for role in Role:
        if role.value.lower() == str(value).strip().lower():
            return role
    raise ValueError(f"Unknown role: {value!r}")


def role_permissions(role: Role) -> list[str]:
    return DEFAULT_ROLES[role]["permissions"]


def has_permission(session: SessionContext, permission: str) -> bool:
    return permission in role_permissions(session.role)


def check_permission(session: SessionContext, permission: str, action: str) -> None:
    """Raise PermissionDeniedError unless the session's role grants ``permission``."""
    if not has_permission(session, permission):
        logger.warning(
            "permission_denied",
            user_id=session.user_id,
            role=session.role.value,
            permission=permission,
            action=action,
        )
        raise PermissionDeniedError(
            f"cannot {action}: role {session.role.value} lacks '{permission}'",
            permission=permission,
        )


def require_permission(*required_perms: str):
    """FastAPI dependency factory that checks the caller holds every permission."""
    from ..dependencies import get_session_context

    async def _check(session: SessionContext = Depends(get_session_context)) -> SessionContext:
        for perm in required_perms:
            check_permission(session, perm, perm.replace("_", " "))
        return session

    return _check
