# tests/test_api.py
"""
HTTP surface: SSE chat stream, admin login, dashboard and health.
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from chatsales.api.dashboard import get_lead_store, get_ticket_store
from chatsales.auth.jwt_handler import create_access_token, get_password_hash, login, verify_password
from chatsales.auth.models import InvalidCredentials, LoginOk
from chatsales.config import ConfigValidationError, settings, validate_config
from chatsales.main import app
from chatsales.models.lead import LeadStatus
from chatsales.models.support_ticket import TicketStatus
from chatsales.services.openai_service import NonRetryableProviderError
from chatsales.utils.circuit_breaker import CircuitBreaker
from chatsales.utils.rate_limit import limiter

from tests.conftest import FakeProvider


MANDATORY = dict(
    name="Maria",
    business_type="plumbing",
    lead_source="google",
    leads_per_week="15",
    deal_value="$1500",
    after_hours_pain="voicemail",
    email="maria@plumb.co",
)


def parse_sse(body: str):
    return [json.loads(block[len("data: "):]) for block in body.split("\n\n") if block.startswith("data: ")]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(make_orchestrator, provider, leads, tickets):
    app.state.orchestrator = make_orchestrator(provider)
    app.dependency_overrides[get_lead_store] = lambda: leads
    app.dependency_overrides[get_ticket_store] = lambda: tickets
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.orchestrator = None


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# CHAT
# ============================================================================

class TestChatEndpoints:

    def test_start_returns_session_id(self, client):
        resp = client.post("/api/chat/start", json={"userName": "Maria"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"]
        assert data["sessionId"].startswith("session_")
        assert data["conversation"]["userName"] == "Maria"

    def test_message_streams_sse(self, client, provider):
        provider.stream_scripts = [["Hi ", "there!"]]

        resp = client.post("/api/chat/message", json={"sessionId": "s-1", "message": "hello"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(resp.text)
        assert events == [
            {"chunk": "Hi ", "done": False},
            {"chunk": "there!", "done": False},
            {"chunk": "", "done": True},
        ]

    def test_message_error_event(self, client, provider):
        provider.stream_scripts = [[NonRetryableProviderError("invalid_credentials")]]

        resp = client.post("/api/chat/message", json={"sessionId": "s-1", "message": "hello"})

        assert parse_sse(resp.text) == [{"error": "No response from AI. Please try again.", "done": True}]

    @pytest.mark.parametrize("body", [
        {"message": "hello"},
        {"sessionId": "s-1"},
        {"sessionId": "  ", "message": "hello"},
        {"sessionId": "s-1", "message": "   "},
    ])
    def test_message_requires_session_and_text(self, client, body):
        resp = client.post("/api/chat/message", json=body)
        assert resp.status_code == 400

    def test_overlong_message_rejected_not_truncated(self, client, provider):
        resp = client.post("/api/chat/message", json={"sessionId": "s-long", "message": "x" * 4001})

        assert resp.status_code == 400
        assert "4000" in resp.json()["detail"]
        assert provider.stream_calls == 0
        assert client.get("/api/chat/conversation/s-long").status_code == 404

    def test_conversation_roundtrip(self, client):
        client.post("/api/chat/message", json={"sessionId": "s-1", "message": "hello"})

        resp = client.get("/api/chat/conversation/s-1")

        assert resp.status_code == 200
        messages = resp.json()["conversation"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["content"] == "Thanks! Tell me more."

    def test_unknown_conversation_404(self, client):
        assert client.get("/api/chat/conversation/missing").status_code == 404

    def test_save_message_validates_role(self, client):
        ok = client.post("/api/chat/save-message", json={"sessionId": "s-1", "role": "assistant", "content": "Hi!"})
        bad = client.post("/api/chat/save-message", json={"sessionId": "s-1", "role": "robot", "content": "Hi!"})
        assert ok.status_code == 200
        assert bad.status_code == 400

    def test_end_and_list(self, client):
        client.post("/api/chat/start", json={"sessionId": "s-1"})
        assert [c["sessionId"] for c in client.get("/api/chat/conversations").json()["conversations"]] == ["s-1"]

        assert client.post("/api/chat/end", json={"sessionId": "s-1"}).status_code == 200
        assert client.get("/api/chat/conversations").json()["conversations"] == []
        assert client.post("/api/chat/end", json={"sessionId": "missing"}).status_code == 404

    def test_engine_not_ready(self):
        app.state.orchestrator = None
        with TestClient(app) as c:
            app.state.orchestrator = None
            resp = c.post("/api/chat/start", json={})
        assert resp.status_code == 503


# ============================================================================
# AUTH
# ============================================================================

class TestAuth:

    def test_login_success(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "correct-horse"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"]
        assert data["user"] == {"username": "admin", "role": "admin"}

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.json()["username"] == "admin"

    @pytest.mark.parametrize("username,password", [("admin", "wrong"), ("root", "correct-horse")])
    def test_login_rejected(self, client, username, password):
        resp = client.post("/api/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid credentials"

    def test_login_result_is_typed(self):
        assert isinstance(login("admin", "correct-horse"), LoginOk)
        assert isinstance(login("admin", ""), InvalidCredentials)

    def test_password_hash_takes_precedence(self, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_PASSWORD_HASH", get_password_hash("hashed-secret"))
        assert isinstance(login("admin", "hashed-secret"), LoginOk)
        assert isinstance(login("admin", "correct-horse"), InvalidCredentials)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


# ============================================================================
# DASHBOARD
# ============================================================================

class TestDashboard:

    def test_requires_token(self, client):
        assert client.get("/api/dashboard/leads").status_code == 401
        assert client.get("/api/dashboard/tickets", headers={"Authorization": "Bearer junk"}).status_code == 401

    def test_non_admin_role_forbidden(self, client):
        token = create_access_token({"sub": "viewer", "role": "viewer"})
        resp = client.get("/api/dashboard/leads", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_lists_leads(self, client, admin_headers):
        client.post("/api/chat/message", json={"sessionId": "s-1", "message": "hello"})

        resp = client.get("/api/dashboard/leads", headers=admin_headers)

        assert resp.status_code == 200
        assert [l["session_id"] for l in resp.json()["leads"]] == ["s-1"]

    def test_ticket_status_update(self, client, admin_headers, tickets):
        ticket = asyncio.run(tickets.create({"session_id": "s-1", "transcript": "t"}))

        resp = client.patch(f"/api/dashboard/tickets/{ticket.ticket_id}", json={"status": "resolved"}, headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()["ticket"]["status"] == "resolved"
        missing = client.patch("/api/dashboard/tickets/TKT-0", json={"status": "closed"}, headers=admin_headers)
        assert missing.status_code == 404

    def test_reopen_conflict_is_409(self, client, admin_headers, tickets):
        old = asyncio.run(tickets.create({"session_id": "s-1", "transcript": "t"}))
        asyncio.run(tickets.update_status(old.ticket_id, TicketStatus.CLOSED))
        asyncio.run(tickets.create({"session_id": "s-1", "transcript": "t2"}))

        resp = client.patch(f"/api/dashboard/tickets/{old.ticket_id}", json={"status": "open"}, headers=admin_headers)

        assert resp.status_code == 409

    def test_lead_status_advances(self, client, admin_headers, leads):
        asyncio.run(leads.create({"session_id": "s-1", **MANDATORY}))

        for status in ("qualified", "contacted", "booked"):
            resp = client.patch("/api/dashboard/leads/s-1", json={"status": status}, headers=admin_headers)
            assert resp.status_code == 200
            assert resp.json()["lead"]["status"] == status

        assert asyncio.run(leads.get("s-1")).qualified_at is not None

    def test_lead_status_backwards_is_409(self, client, admin_headers, leads):
        asyncio.run(leads.create({"session_id": "s-1", **MANDATORY, "status": LeadStatus.BOOKED}))

        resp = client.patch("/api/dashboard/leads/s-1", json={"status": "new"}, headers=admin_headers)

        assert resp.status_code == 409
        assert asyncio.run(leads.get("s-1")).status == LeadStatus.BOOKED

    def test_qualified_without_mandatory_fields_is_409(self, client, admin_headers, leads):
        asyncio.run(leads.create({"session_id": "s-1", "name": "Maria"}))
        resp = client.patch("/api/dashboard/leads/s-1", json={"status": "qualified"}, headers=admin_headers)
        assert resp.status_code == 409

    def test_correction_can_send_lead_back_to_new(self, client, admin_headers, leads):
        asyncio.run(leads.create({"session_id": "s-1", **MANDATORY, "status": LeadStatus.QUALIFIED}))

        bare = client.patch("/api/dashboard/leads/s-1", json={"status": "new"}, headers=admin_headers)
        corrected = client.patch(
            "/api/dashboard/leads/s-1",
            json={"status": "new", "fields": {"email": None}},
            headers=admin_headers,
        )

        assert bare.status_code == 409
        assert corrected.status_code == 200
        assert corrected.json()["lead"]["status"] == "new"
        assert corrected.json()["lead"]["email"] is None

    def test_lead_update_errors(self, client, admin_headers, leads):
        asyncio.run(leads.create({"session_id": "s-1"}))

        missing = client.patch("/api/dashboard/leads/nope", json={"status": "lost"}, headers=admin_headers)
        unknown = client.patch("/api/dashboard/leads/s-1", json={"fields": {"tags": "x"}}, headers=admin_headers)
        empty = client.patch("/api/dashboard/leads/s-1", json={}, headers=admin_headers)
        bad_status = client.patch("/api/dashboard/leads/s-1", json={"status": "won"}, headers=admin_headers)

        assert missing.status_code == 404
        assert unknown.status_code == 400
        assert empty.status_code == 400
        assert bad_status.status_code == 422
        assert client.patch("/api/dashboard/leads/s-1", json={"status": "lost"}).status_code == 401

    def test_stats(self, client, admin_headers, leads, tickets):
        asyncio.run(leads.create({"session_id": "s-1"}))
        asyncio.run(leads.create({"session_id": "s-2", **MANDATORY, "status": LeadStatus.QUALIFIED}))
        asyncio.run(tickets.create({"session_id": "s-1", "transcript": "t"}))

        resp = client.get("/api/dashboard/stats", headers=admin_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["leads"]["total"] == 2
        assert data["leads"]["by_status"] == {"new": 1, "qualified": 1, "contacted": 0, "booked": 0, "lost": 0}
        assert data["tickets"]["total"] == 1
        assert data["tickets"]["by_status"]["open"] == 1
        assert client.get("/api/dashboard/stats").status_code == 401

    def test_push_receivers(self, client):
        resp = client.post("/api/dashboard/ticket", json={"ticketId": "TKT-1", "sessionId": "s-1"})
        assert resp.json() == {"success": True, "message": "Ticket received successfully", "ticketId": "TKT-1"}
        assert client.post("/api/dashboard/lead", json={"session_id": "s-1"}).json()["success"]


# ============================================================================
# HEALTH / CONFIG
# ============================================================================

class TestHealth:

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["config"]["openai_configured"]
        assert data["checks"]["session_locks"] == 0
        assert data["checks"]["pending_notifications"] == 0

    def test_open_breaker_degrades_health(self, client, provider):
        breaker = CircuitBreaker("openai-aux", failure_threshold=1, timeout=60.0)

        async def failing():
            raise TimeoutError()

        with pytest.raises(TimeoutError):
            asyncio.run(breaker.call(failing))
        provider.breaker = breaker

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["checks"]["llm_breaker"]["state"] == "open"
        assert data["checks"]["llm_breaker"]["retry_in"] > 0

    def test_simple_and_root(self, client):
        assert client.get("/health/simple").json() == {"status": "ok"}
        assert client.get("/").json()["status"] == "running"


class TestHttpHardening:

    def test_security_headers(self, client):
        resp = client.get("/api/chat/conversations")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]
        assert resp.headers["Cache-Control"] == "no-store, private"
        assert "Strict-Transport-Security" not in resp.headers

    def test_sse_keeps_its_own_cache_control(self, client):
        resp = client.post("/api/chat/message", json={"sessionId": "s-1", "message": "hello"})
        assert resp.headers["Cache-Control"] == "no-cache"

    def test_login_is_rate_limited(self, client):
        limiter.reset()
        limiter.enabled = True
        try:
            codes = [
                client.post("/api/auth/login", json={"username": "admin", "password": "wrong"}).status_code
                for _ in range(11)
            ]
        finally:
            limiter.enabled = False
            limiter.reset()

        assert codes[:10] == [401] * 10
        assert codes[10] == 429


class TestConfigValidation:

    def test_missing_api_key_is_an_error(self, monkeypatch):
        monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
        result = validate_config(raise_on_error=False)
        assert "OPENAI_API_KEY is required for chat replies" in result["errors"]
        with pytest.raises(ConfigValidationError):
            validate_config(raise_on_error=True)

    def test_missing_smtp_is_only_a_warning(self, monkeypatch):
        monkeypatch.setattr(settings, "SMTP_HOST", None)
        result = validate_config(raise_on_error=True)
        assert result["errors"] == []
        assert any("SMTP_HOST" in w for w in result["warnings"])
