"""Typed live queries over the IncidentDesk collections."""

from typing import Callable, Optional

from ..auth.rbac import PERM_VIEW_ALL_INCIDENTS, check_permission
from ..auth.session import SessionContext
from ..engine.incident_store import IncidentQuery
from ..engine.states import IncidentStatus
from ..errors import ValidationError
from .gateway import ErrorFn, LiveQueryGateway, UpdateFn

INCIDENT_VIEWS = ("mine", "assigned", "unassigned", "all")
AWAITING_ASSIGNMENT = (IncidentStatus.OPEN.value, IncidentStatus.APPROVED.value)


def incident_query_for_view(
    view: str,
    session: SessionContext,
    statuses: Optional[tuple[str, ...]] = None,
    limit: Optional[int] = None,
) -> IncidentQuery:
    """Map a named incident list onto a query scoped to the caller.

    ``mine`` is what the caller reported and ``assigned`` is what they work
    on. ``unassigned`` and ``all`` are triage views for reviewers; ``unassigned``
    is the queue still awaiting a responder (Open or Approved) unless other
    statuses are asked for.
    """
    if view == "mine":
        return IncidentQuery(reporter_id=session.user_id, statuses=statuses, limit=limit)
    if view == "assigned":
        return IncidentQuery(assigned_to=session.user_id, statuses=statuses, limit=limit)
    if view == "unassigned":
        check_permission(session, PERM_VIEW_ALL_INCIDENTS, "view unassigned incidents")
        return IncidentQuery(
            unassigned=True, statuses=statuses or AWAITING_ASSIGNMENT, limit=limit
        )
    if view == "all":
        check_permission(session, PERM_VIEW_ALL_INCIDENTS, "view all incidents")
        return IncidentQuery(statuses=statuses, limit=limit)
    raise ValidationError(
        f"Unknown view {view!r}. Expected one of: {', '.join(INCIDENT_VIEWS)}", field="view"
    )


class LiveViews:
    """Binds gateway subscriptions to the services that own each collection."""

    def __init__(
        self,
        gateway: LiveQueryGateway,
        store,
        users=None,
        dispatcher=None,
        messages=None,
        categories=None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._users = users
        self._dispatcher = dispatcher
        self._messages = messages
        self._categories = categories

    def subscribe_incidents(
        self, query: IncidentQuery, on_update: UpdateFn, on_error: Optional[ErrorFn] = None
    ) -> Callable[[], None]:
        return self._gateway.subscribe(
            "incidents", lambda: self._store.query(query), on_update, on_error
        )

    def subscribe_incident(
        self, incident_id: str, on_update: UpdateFn, on_error: Optional[ErrorFn] = None
    ) -> Callable[[], None]:
        """Follow one incident. A deleted or unknown id ends in ``on_error``."""
        return self._gateway.subscribe(
            "incidents", lambda: self._store.get(incident_id), on_update, on_error
        )

    def subscribe_notifications(
        self, user_id: str, on_update: UpdateFn, on_error: Optional[ErrorFn] = None
    ) -> Callable[[], None]:
        return self._gateway.subscribe(
            "notifications", lambda: self._dispatcher.list_for_user(user_id), on_update, on_error
        )

    def subscribe_messages(
        self, incident_id: str, on_update: UpdateFn, on_error: Optional[ErrorFn] = None
    ) -> Callable[[], None]:
        return self._gateway.subscribe(
            "messages", lambda: self._messages.list_messages(incident_id), on_update, on_error
        )

    def subscribe_users(
        self, on_update: UpdateFn, on_error: Optional[ErrorFn] = None, role: Optional[str] = None
    ) -> Callable[[], None]:
        return self._gateway.subscribe(
            "users", lambda: self._users.list_users(role=role), on_update, on_error
        )

    def subscribe_categories(
        self, on_update: UpdateFn, on_error: Optional[ErrorFn] = None
    ) -> Callable[[], None]:
        return self._gateway.subscribe(
            "categories", self._categories.list_categories, on_update, on_error
        )
