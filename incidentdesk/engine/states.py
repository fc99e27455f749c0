"""Incident states, priorities and the allowed-transition table.

    Open         -> In Progress | Approved | Rejected
    Approved     -> In Progress | Rejected
    In Progress  -> Resolved | Open (reassignment) | Rejected
    Resolved, Rejected, Closed: terminal

Closed has no inbound edge; it only appears on incidents imported from
older data.
"""

from enum import Enum

from ..errors import InvalidTransitionError, ValidationError


class IncidentStatus(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


VALID_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.OPEN: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.APPROVED,
        IncidentStatus.REJECTED,
    }),
    IncidentStatus.APPROVED: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.REJECTED,
    }),
    IncidentStatus.IN_PROGRESS: frozenset({
        IncidentStatus.RESOLVED,
        IncidentStatus.OPEN,
        IncidentStatus.REJECTED,
    }),
    IncidentStatus.RESOLVED: frozenset(),
    IncidentStatus.REJECTED: frozenset(),
    IncidentStatus.CLOSED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)

# Statuses that require a bound responder
ASSIGNED_STATUSES = frozenset({IncidentStatus.IN_PROGRESS, IncidentStatus.APPROVED})

# Statuses from which a responder may be (re)assigned
ASSIGNABLE_STATUSES = frozenset({
    IncidentStatus.OPEN,
    IncidentStatus.APPROVED,
    IncidentStatus.IN_PROGRESS,
})


def parse_status(value: str) -> IncidentStatus:
    try:
        return IncidentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in IncidentStatus)
        raise InvalidTransitionError(
            f"Unknown status {value!r}. Expected one of: {allowed}"
        ) from None


def parse_priority(value: str) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        allowed = ", ".join(p.value for p in Priority)
        raise ValidationError(
            f"Unknown priority {value!r}. Expected one of: {allowed}", field="priority"
        ) from None


def is_terminal(status: str) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def allowed_targets(status: str) -> list[str]:
    return sorted(s.value for s in VALID_TRANSITIONS[parse_status(status)])


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is in the table."""
    source = parse_status(current)
    destination = parse_status(target)
    if destination not in VALID_TRANSITIONS[source]:
        allowed = allowed_targets(current)
        raise InvalidTransitionError(
            f"Cannot transition from {source.value} to {destination.value}. "
            f"Allowed: {allowed}",
            current=source.value,
            target=destination.value,
        )
