"""Tests for NotificationDispatcher — user feeds and lifecycle fan-out."""

from unittest.mock import AsyncMock

import pytest

from incidentdesk.auth.rbac import Role
from incidentdesk.errors import NotFoundError, PermissionDeniedError, ValidationError
from incidentdesk.notifications.dispatcher import NotificationDispatcher


class TestFeed:
    @pytest.mark.asyncio
    async def test_notify_appends_unread(self, dispatcher, reporter):
        notification_id = await dispatcher.notify("U1", "info", "Hello", "Welcome aboard")
        feed = await dispatcher.list_for_user("U1")
        assert len(feed) == 1
        assert feed[0]["id"] == notification_id
        assert feed[0]["read"] is False
        assert feed[0]["type"] == "info"
        assert await dispatcher.unread_count("U1") == 1

    @pytest.mark.asyncio
    async def test_feed_is_newest_first_and_capped(self, db_factory, users, reporter):
        dispatcher = NotificationDispatcher(db_factory, users=users, feed_limit=3)
        for n in range(5):
            await dispatcher.notify("U1", "info", f"n{n}", "body")
        feed = await dispatcher.list_for_user("U1")
        assert [n["title"] for n in feed] == ["n4", "n3", "n2"]
        assert len(await dispatcher.list_for_user("U1", limit=5)) == 5

    @pytest.mark.asyncio
    async def test_missing_recipient(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.notify("", "info", "t", "m")

    @pytest.mark.asyncio
    async def test_mark_read(self, dispatcher, reporter):
        _, session = reporter
        notification_id = await dispatcher.notify("U1", "info", "t", "m")
        await dispatcher.mark_read(notification_id, session)
        assert await dispatcher.unread_count("U1") == 0

    @pytest.mark.asyncio
    async def test_cannot_mark_someone_elses(self, dispatcher, reporter, responder):
        _, session = responder
        notification_id = await dispatcher.notify("U1", "info", "t", "m")
        with pytest.raises(PermissionDeniedError):
            await dispatcher.mark_read(notification_id, session)

    @pytest.mark.asyncio
    async def test_admin_can_mark_any(self, dispatcher, reporter, admin):
        _, session = admin
        notification_id = await dispatcher.notify("U1", "info", "t", "m")
        await dispatcher.mark_read(notification_id, session)
        assert await dispatcher.unread_count("U1") == 0

    @pytest.mark.asyncio
    async def test_mark_unknown(self, dispatcher, reporter):
        _, session = reporter
        with pytest.raises(NotFoundError):
            await dispatcher.mark_read("missing", session)

    @pytest.mark.asyncio
    async def test_mark_all_read_only_touches_own_feed(self, dispatcher, reporter, responder):
        _, session = reporter
        await dispatcher.notify("U1", "info", "a", "m")
        await dispatcher.notify("U1", "info", "b", "m")
        await dispatcher.notify("R1", "info", "c", "m")

        assert await dispatcher.mark_all_read(session) == 2
        assert await dispatcher.unread_count("U1") == 0
        assert await dispatcher.unread_count("R1") == 1
        assert await dispatcher.mark_all_read(session) == 0


class TestFanOut:
    @pytest.mark.asyncio
    async def test_new_incident_goes_to_reviewers(
        self, lifecycle, dispatcher, register_user, reporter, reviewer, leak_report
    ):
        await register_user("V2", "Vic Reviewer", Role.REVIEWER)
        _, session = reporter
        await lifecycle.create_incident(leak_report, session)

        for reviewer_id in ("V1", "V2"):
            feed = await dispatcher.list_for_user(reviewer_id)
            assert [n["type"] for n in feed] == ["incident_created"]
        assert await dispatcher.list_for_user("U1") == []

    @pytest.mark.asyncio
    async def test_actor_is_not_notified(self, dispatcher, reporter, reviewer):
        _, session = reviewer
        incident = {
            "id": "inc1",
            "title": "Leak",
            "status": "In Progress",
            "reporter_id": "U1",
            "assigned_to": "V1",
            "assigned_to_name": "Val Reviewer",
        }
        await dispatcher.on_status_changed(incident, session, "Open")
        assert await dispatcher.list_for_user("V1") == []
        assert len(await dispatcher.list_for_user("U1")) == 1

    @pytest.mark.asyncio
    async def test_rejection_reason_in_message(self, dispatcher, reporter, reviewer):
        _, session = reviewer
        incident = {
            "id": "inc1",
            "title": "Leak",
            "status": "Rejected",
            "reporter_id": "U1",
            "assigned_to": None,
            "rejection_reason": "duplicate",
        }
        await dispatcher.on_status_changed(incident, session, "Open")
        feed = await dispatcher.list_for_user("U1")
        assert feed[0]["message"].endswith("Reason: duplicate")

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self, dispatcher, reporter, reviewer):
        _, session = reviewer
        dispatcher.notify = AsyncMock(side_effect=RuntimeError("disk full"))
        incident = {
            "id": "inc1",
            "title": "Leak",
            "priority": "High",
            "reporter_id": "U1",
            "assigned_to": "R1",
        }
        await dispatcher.on_priority_changed(incident, session, "Medium")
        assert dispatcher.notify.await_count == 2

    @pytest.mark.asyncio
    async def test_recipient_lookup_failure(self, db_factory):
        users = AsyncMock()
        users.list_users = AsyncMock(side_effect=RuntimeError("boom"))
        dispatcher = NotificationDispatcher(db_factory, users=users)
        await dispatcher.on_incident_created(
            {"id": "i", "reporter_id": "U1", "reporter_name": "Uma", "title": "t", "category": "c"}
        )
