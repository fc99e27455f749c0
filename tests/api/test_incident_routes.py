"""API tests — auth, error envelope and the report → assign → resolve flow over HTTP."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import incidentdesk.database as db_mod
import incidentdesk.dependencies as dep_mod
from incidentdesk.models.base import Base
from incidentdesk.utils.security import create_identity_token, read_identity_claims

SECRET = "test-secret-key-for-incidentdesk"
API = "/api/v1"


def _auth(sub, **claims):
    token = create_identity_token(sub, SECRET, **claims)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(tmp_path):
    """App wired to a fresh SQLite file, with every singleton reset."""
    dep_mod.reset_singletons()
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    from incidentdesk.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await dep_mod.get_live_gateway().close()
    await db_mod.close_engine()
    dep_mod.reset_singletons()


async def _register(client, sub, name, role, **extra):
    response = await client.post(
        f"{API}/users/register",
        json={"full_name": name, "role": role, **extra},
        headers=_auth(sub, email=f"{sub.lower()}@example.com"),
    )
    assert response.status_code == 201, response.text
    return _auth(sub)


@pytest_asyncio.fixture
async def people(client):
    return {
        "reporter": await _register(client, "U1", "Uma Reporter", "Reporter"),
        "reviewer": await _register(client, "V1", "Val Reviewer", "Reviewer"),
        "responder": await _register(
            client, "R1", "Rob Responder", "Responder", skills=["Plumbing"],
            latitude=51.5007, longitude=-0.1246,
        ),
    }


REPORT = {
    "title": "Leak",
    "description": "Water under the sink",
    "category": "Maintenance",
    "latitude": 51.5014,
    "longitude": -0.1419,
}


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"{API}/incidents/")
        assert response.status_code == 401
        body = response.json()
        assert body["detail"] == "Not authenticated"
        assert body["request_id"]
        assert response.headers["X-Request-ID"] == body["request_id"]

    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        token = create_identity_token("U1", "wrong-secret")
        response = await client.get(f"{API}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        token = create_identity_token("U1", SECRET, expires_minutes=-1)
        response = await client.get(f"{API}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    def test_identity_claims(self):
        token = create_identity_token("U1", SECRET, email="u1@example.com")
        claims = read_identity_claims(token, SECRET)
        assert claims["sub"] == "U1"
        assert claims["email"] == "u1@example.com"
        assert read_identity_claims(create_identity_token("", SECRET), SECRET) is None
        assert read_identity_claims("not-a-token", SECRET) is None

    @pytest.mark.asyncio
    async def test_valid_token_without_profile(self, client):
        response = await client.get(f"{API}/users/me", headers=_auth("ghost"))
        assert response.status_code == 401
        assert response.json()["detail"] == "No profile registered for this identity"

    @pytest.mark.asyncio
    async def test_me(self, client, people):
        response = await client.get(f"{API}/users/me", headers=people["responder"])
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "r1@example.com"
        assert "update_status" in body["permissions"]

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestIncidentFlow:
    @pytest.mark.asyncio
    async def test_report_assign_resolve(self, client, people):
        created = await client.post(f"{API}/incidents/", json=REPORT, headers=people["reporter"])
        assert created.status_code == 201
        incident = created.json()
        assert incident["status"] == "Open"
        incident_id = incident["id"]

        candidates = await client.get(
            f"{API}/incidents/{incident_id}/candidates",
            params={"sort_by_distance": True},
            headers=people["reviewer"],
        )
        assert candidates.status_code == 200
        assert candidates.json()[0]["id"] == "R1"
        assert candidates.json()[0]["distance_km"] is not None

        assigned = await client.post(
            f"{API}/incidents/{incident_id}/assign",
            json={"responder_id": "R1"},
            headers=people["reviewer"],
        )
        assert assigned.status_code == 200
        assert assigned.json()["status"] == "In Progress"

        mine = await client.get(f"{API}/incidents/", params={"view": "assigned"}, headers=people["responder"])
        assert [i["id"] for i in mine.json()] == [incident_id]

        resolved = await client.post(
            f"{API}/incidents/{incident_id}/transition",
            json={"status": "Resolved", "note": "Replaced washer"},
            headers=people["responder"],
        )
        assert resolved.status_code == 200
        body = resolved.json()
        assert body["status"] == "Resolved"
        assert body["resolved_at"]
        assert [h["status"] for h in body["status_history"]] == ["Open", "In Progress", "Resolved"]

        feed = await client.get(f"{API}/notifications/", headers=people["reporter"])
        assert {n["type"] for n in feed.json()} == {"assigned", "status_changed"}
        unread = await client.get(f"{API}/notifications/unread-count", headers=people["reporter"])
        assert unread.json() == {"unread": 2}
        marked = await client.post(f"{API}/notifications/read-all", headers=people["reporter"])
        assert marked.json() == {"marked": 2}

    @pytest.mark.asyncio
    async def test_messages(self, client, people):
        incident = (await client.post(f"{API}/incidents/", json=REPORT, headers=people["reporter"])).json()
        sent = await client.post(
            f"{API}/incidents/{incident['id']}/messages",
            json={"message": "Any update?"},
            headers=people["reporter"],
        )
        assert sent.status_code == 201
        thread = await client.get(f"{API}/incidents/{incident['id']}/messages", headers=people["reviewer"])
        assert [m["message"] for m in thread.json()] == ["Any update?"]

        # Not the reporter, not assigned, no triage rights
        hidden = await client.get(f"{API}/incidents/{incident['id']}/messages", headers=people["responder"])
        assert hidden.status_code == 403


class TestErrorEnvelope:
    @pytest.mark.asyncio
    async def test_invalid_transition(self, client, people):
        incident = (await client.post(f"{API}/incidents/", json=REPORT, headers=people["reporter"])).json()
        response = await client.post(
            f"{API}/incidents/{incident['id']}/transition",
            json={"status": "Resolved"},
            headers=people["reviewer"],
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "InvalidTransitionError"
        assert body["context"] == {"current": "Open", "target": "Resolved"}
        assert body["retryable"] is False

    @pytest.mark.asyncio
    async def test_permission_denied(self, client, people):
        incident = (await client.post(f"{API}/incidents/", json=REPORT, headers=people["reporter"])).json()
        response = await client.post(
            f"{API}/incidents/{incident['id']}/assign",
            json={"responder_id": "R1"},
            headers=people["reporter"],
        )
        assert response.status_code == 403
        assert response.json()["error"] == "PermissionDeniedError"

    @pytest.mark.asyncio
    async def test_not_found(self, client, people):
        response = await client.get(f"{API}/incidents/missing", headers=people["reviewer"])
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_request_validation(self, client, people):
        response = await client.post(f"{API}/incidents/", json={"title": ""}, headers=people["reporter"])
        assert response.status_code == 422
        assert response.json()["errors"]

    @pytest.mark.asyncio
    async def test_reporter_cannot_list_all(self, client, people):
        response = await client.get(f"{API}/incidents/", params={"view": "all"}, headers=people["reporter"])
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_reporter_only_lists_responders(self, client, people):
        denied = await client.get(f"{API}/users/", headers=people["reporter"])
        assert denied.status_code == 403
        allowed = await client.get(f"{API}/users/", params={"role": "Responder"}, headers=people["reporter"])
        assert [u["id"] for u in allowed.json()] == ["R1"]


class TestCategoriesAndAnalytics:
    @pytest.mark.asyncio
    async def test_admin_manages_categories(self, client, people):
        admin = await _register(client, "A1", "Ada Admin", "Admin")
        created = await client.post(
            f"{API}/categories/", json={"name": "Cleaning", "subcategories": ["Spill"]}, headers=admin
        )
        assert created.status_code == 201
        listed = await client.get(f"{API}/categories/", headers=people["reporter"])
        assert [c["name"] for c in listed.json()] == ["Cleaning"]

        denied = await client.post(f"{API}/categories/", json={"name": "Other"}, headers=people["reviewer"])
        assert denied.status_code == 403

    @pytest.mark.asyncio
    async def test_analytics(self, client, people):
        await client.post(f"{API}/incidents/", json=REPORT, headers=people["reporter"])
        response = await client.get(f"{API}/analytics/", params={"date_range": "7d"}, headers=people["reviewer"])
        assert response.status_code == 200
        assert response.json()["total"] == 1
        denied = await client.get(f"{API}/analytics/", headers=people["reporter"])
        assert denied.status_code == 403


class TestWebSocketAuth:
    def test_missing_token_is_refused(self):
        from fastapi.testclient import TestClient
        from starlette.websockets import WebSocketDisconnect

        from incidentdesk.main import app

        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/incidents?view=mine") as ws:
                ws.receive_text()
        assert exc_info.value.code == 4001
