"""Tests for the LiveQueryGateway and the typed live views."""

import asyncio

import pytest

from incidentdesk.auth.rbac import Role
from incidentdesk.auth.session import SessionContext
from incidentdesk.errors import NotFoundError, OperationTimeoutError, PermissionDeniedError, ValidationError
from incidentdesk.live.gateway import LiveQueryGateway, SubscriptionError
from incidentdesk.live.views import incident_query_for_view


async def _until(predicate, timeout=2.0):
    """Poll until ``predicate()`` holds; fail the test if it never does."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestGateway:
    @pytest.mark.asyncio
    async def test_initial_result_then_updates(self):
        gateway = LiveQueryGateway()
        state = {"value": 1}
        seen = []

        async def fetch():
            return state["value"]

        cancel = gateway.subscribe("incidents", fetch, seen.append)
        await _until(lambda: seen == [1])

        state["value"] = 2
        gateway.publish("incidents", "abc")
        await _until(lambda: seen == [1, 2])
        cancel()
        await gateway.close()

    @pytest.mark.asyncio
    async def test_unchanged_result_is_not_redelivered(self):
        gateway = LiveQueryGateway()
        seen = []
        calls = []

        async def fetch():
            calls.append(1)
            return ["same"]

        gateway.subscribe("incidents", fetch, seen.append)
        await _until(lambda: len(seen) == 1)
        gateway.publish("incidents")
        await _until(lambda: len(calls) >= 2)
        await asyncio.sleep(0.05)
        assert seen == [["same"]]
        await gateway.close()

    @pytest.mark.asyncio
    async def test_other_collections_do_not_trigger(self):
        gateway = LiveQueryGateway()
        calls = []

        async def fetch():
            calls.append(1)
            return len(calls)

        gateway.subscribe("incidents", fetch, lambda _: None)
        await _until(lambda: len(calls) == 1)
        gateway.publish("users")
        await asyncio.sleep(0.05)
        assert len(calls) == 1
        await gateway.close()

    @pytest.mark.asyncio
    async def test_fetch_failure_reports_once_and_ends(self):
        gateway = LiveQueryGateway()
        errors = []

        async def fetch():
            raise RuntimeError("db gone")

        gateway.subscribe("incidents", fetch, lambda _: None, errors.append)
        await _until(lambda: len(errors) == 1)
        assert isinstance(errors[0], SubscriptionError)
        assert errors[0].retryable is True
        assert gateway.subscriber_count("incidents") == 0

        gateway.publish("incidents")
        await asyncio.sleep(0.05)
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_domain_error_is_passed_through(self):
        gateway = LiveQueryGateway()
        errors = []

        async def fetch():
            raise NotFoundError("Incident x not found")

        gateway.subscribe("incidents", fetch, lambda _: None, errors.append)
        await _until(lambda: len(errors) == 1)
        assert isinstance(errors[0], NotFoundError)

    @pytest.mark.asyncio
    async def test_fetch_timeout(self):
        gateway = LiveQueryGateway(fetch_timeout=0.05)
        errors = []

        async def fetch():
            await asyncio.sleep(1)

        gateway.subscribe("incidents", fetch, lambda _: None, errors.append)
        await _until(lambda: len(errors) == 1)
        assert isinstance(errors[0], OperationTimeoutError)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        gateway = LiveQueryGateway()
        seen = []

        async def fetch():
            return len(seen)

        cancel = gateway.subscribe("incidents", fetch, seen.append)
        await _until(lambda: len(seen) == 1)
        cancel()
        cancel()
        assert gateway.subscriber_count() == 0

        gateway.publish("incidents")
        await asyncio.sleep(0.05)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_callback_error_keeps_subscription(self):
        gateway = LiveQueryGateway()
        state = {"value": 0}
        seen = []

        def on_update(value):
            seen.append(value)
            if value == 0:
                raise ValueError("bad render")

        async def fetch():
            return state["value"]

        gateway.subscribe("incidents", fetch, on_update)
        await _until(lambda: seen == [0])
        state["value"] = 1
        gateway.publish("incidents")
        await _until(lambda: seen == [0, 1])
        await gateway.close()

    @pytest.mark.asyncio
    async def test_stats(self):
        gateway = LiveQueryGateway()

        async def fetch():
            return None

        gateway.subscribe("users", fetch, lambda _: None)
        gateway.publish("users")
        stats = gateway.get_stats()
        assert stats["total_subscribed"] == 1
        assert stats["total_published"] == 1
        assert stats["collections"] == ["users"]
        await gateway.close()
        assert gateway.subscriber_count() == 0


class TestIncidentViews:
    def test_view_mapping(self):
        reporter = SessionContext(user_id="U1", role=Role.REPORTER)
        reviewer = SessionContext(user_id="V1", role=Role.REVIEWER)

        assert incident_query_for_view("mine", reporter).reporter_id == "U1"
        assert incident_query_for_view("assigned", reporter).assigned_to == "U1"
        unassigned = incident_query_for_view("unassigned", reviewer)
        assert unassigned.unassigned is True
        assert unassigned.statuses == ("Open", "Approved")
        assert incident_query_for_view("unassigned", reviewer, statuses=("Rejected",)).statuses == ("Rejected",)
        assert incident_query_for_view("all", reviewer).unassigned is False
        assert incident_query_for_view("all", reviewer).statuses is None
        with pytest.raises(PermissionDeniedError):
            incident_query_for_view("all", reporter)
        with pytest.raises(ValidationError):
            incident_query_for_view("everything", reviewer)

    @pytest.mark.asyncio
    async def test_subscribe_incidents_follows_writes(
        self, views, lifecycle, resolver, reporter, reviewer, responder, leak_report
    ):
        _, reporter_session = reporter
        _, reviewer_session = reviewer
        snapshots = []

        cancel = views.subscribe_incidents(
            incident_query_for_view("assigned", responder[1]), snapshots.append
        )
        await _until(lambda: snapshots == [[]])

        incident = await lifecycle.create_incident(leak_report, reporter_session)
        await resolver.assign(incident["id"], "R1", reviewer_session)
        await _until(lambda: snapshots and [i["id"] for i in snapshots[-1]] == [incident["id"]])
        assert snapshots[-1][0]["status"] == "In Progress"
        cancel()

    @pytest.mark.asyncio
    async def test_subscribe_unknown_incident_errors(self, views):
        errors = []
        views.subscribe_incident("missing", lambda _: None, errors.append)
        await _until(lambda: len(errors) == 1)
        assert isinstance(errors[0], NotFoundError)

    @pytest.mark.asyncio
    async def test_subscribe_notifications(self, views, dispatcher, reporter):
        feeds = []
        cancel = views.subscribe_notifications("U1", feeds.append)
        await _until(lambda: feeds == [[]])
        await dispatcher.notify("U1", "info", "Hi", "there")
        await _until(lambda: len(feeds) == 2 and feeds[-1][0]["title"] == "Hi")
        cancel()

    @pytest.mark.asyncio
    async def test_unassigned_queue_drops_rejected_incidents(
        self, views, store, lifecycle, reporter, reviewer, leak_report
    ):
        _, reporter_session = reporter
        _, reviewer_session = reviewer
        queue = incident_query_for_view("unassigned", reviewer_session)

        waiting = await lifecycle.create_incident(leak_report, reporter_session)
        rejected = await lifecycle.create_incident({**leak_report, "title": "Dup"}, reporter_session)
        await lifecycle.reject(rejected["id"], "duplicate", reviewer_session)
        assert [i["id"] for i in await store.query(queue)] == [waiting["id"]]

        snapshots = []
        cancel = views.subscribe_incidents(queue, snapshots.append)
        await _until(lambda: len(snapshots) == 1)
        await lifecycle.reject(waiting["id"], "not ours", reviewer_session)
        await _until(lambda: snapshots[-1] == [])
        cancel()


class TestCollectionViews:
    @pytest.mark.asyncio
    async def test_subscribe_messages(self, views, lifecycle, messages, reporter, leak_report):
        _, session = reporter
        incident = await lifecycle.create_incident(leak_report, session)
        threads = []

        cancel = views.subscribe_messages(incident["id"], threads.append)
        await _until(lambda: threads == [[]])
        await messages.send_message(incident["id"], "Still dripping", session)
        await _until(lambda: len(threads) == 2)
        assert [m["message"] for m in threads[-1]] == ["Still dripping"]
        cancel()

    @pytest.mark.asyncio
    async def test_subscribe_users_by_role(self, views, users, responder, register_user):
        rosters = []

        cancel = views.subscribe_users(rosters.append, role=Role.RESPONDER.value)
        await _until(lambda: len(rosters) == 1)
        assert [u["id"] for u in rosters[0]] == ["R1"]

        await users.set_availability("R1", "busy", responder[1])
        await _until(lambda: rosters[-1][0]["status"] == "busy")

        await register_user("R2", "Ria Responder", Role.RESPONDER)
        await _until(lambda: sorted(u["id"] for u in rosters[-1]) == ["R1", "R2"])
        cancel()

    @pytest.mark.asyncio
    async def test_subscribe_categories(self, views, categories, admin):
        _, session = admin
        catalogs = []

        cancel = views.subscribe_categories(catalogs.append)
        await _until(lambda: catalogs == [[]])
        category = await categories.add_category({"name": "Cleaning"}, session)
        await _until(lambda: [c["name"] for c in catalogs[-1]] == ["Cleaning"])

        await categories.add_subcategory(category["id"], "Spill", session)
        await _until(lambda: [s["name"] for s in catalogs[-1][0]["subcategories"]] == ["Spill"])
        cancel()
