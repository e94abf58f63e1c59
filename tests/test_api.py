"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from sms_orchestrator.models import ProfileContext
from sms_orchestrator.runtime import build_runtime
from sms_orchestrator.server import app
from sms_orchestrator.services.llm_client import ChatResult
from sms_orchestrator.services.profile_client import ProfileService
from sms_orchestrator.services.sms_transport import ConsoleSmsTransport

PHONE = "+447700900123"


@pytest.fixture
def transport():
    return ConsoleSmsTransport()


@pytest.fixture
def runtime(store, clock, transport):
    """Build a runtime on the in-memory store and attach it like the lifespan does."""
    profiles = MagicMock(spec=ProfileService)
    profiles.get_context.return_value = ProfileContext(found=False)
    generator = MagicMock()
    generator.generate.return_value = ChatResult(
        content=json.dumps({"reply": "Thanks, looking into it.", "actions": []}),
        model_used="claude-sonnet-4-5",
        provider="anthropic",
        fallbacks_used=0,
        success=True,
        total_time_ms=10.0,
    )
    rt = build_runtime(
        store=store,
        transport=transport,
        profiles=profiles,
        generator=generator,
        clock=clock,
        iteration_delay=0,
    )
    app.state.runtime = rt
    yield rt
    app.state.runtime = None


@pytest.fixture
def client(runtime):
    with patch("sms_orchestrator.api.routes.config.PROCESS_INLINE", False):
        yield TestClient(app)


def _inbound(sid: str = "SM100", body: str = "Any news on my claim?", phone: str = "07700 900123"):
    return {"from_phone": phone, "body": body, "provider_message_id": sid}


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "sms-orchestrator"}

    def test_root_lists_docs(self, client):
        data = client.get("/").json()
        assert data["docs"] == "/docs"

    def test_request_id_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestInboundWebhook:
    def test_enqueues_normalised_phone(self, client, runtime):
        response = client.post("/api/webhooks/sms", json=_inbound())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        message = runtime.queue.get(data["message_id"])
        assert message.phone_number == PHONE
        assert message.body == "Any news on my claim?"

    def test_provider_retry_is_duplicate(self, client, runtime):
        client.post("/api/webhooks/sms", json=_inbound())
        response = client.post("/api/webhooks/sms", json=_inbound())

        assert response.json() == {"status": "duplicate", "message_id": None}
        assert runtime.queue.depth() == 1

    def test_validates_missing_message_id(self, client):
        response = client.post("/api/webhooks/sms", json={"from_phone": PHONE, "body": "hi"})
        assert response.status_code == 422

    def test_enqueue_error_returns_generic_500(self, client, runtime):
        with patch.object(runtime.queue, "enqueue", side_effect=RuntimeError("redis gone")):
            response = client.post("/api/webhooks/sms", json=_inbound())
        assert response.status_code == 500
        assert "redis" not in response.json()["detail"]

    def test_inline_processing_runs_turn(self, runtime, transport):
        with patch("sms_orchestrator.api.routes.config.PROCESS_INLINE", True):
            response = TestClient(app).post("/api/webhooks/sms", json=_inbound())

        assert response.json()["status"] == "queued"
        assert [r.message for r in transport.sent] == ["Thanks, looking into it."]
        assert runtime.queue.depth() == 0

    def test_missing_runtime_returns_503(self, client):
        app.state.runtime = None
        response = client.post("/api/webhooks/sms", json=_inbound())
        assert response.status_code == 503


class TestCronEndpoints:
    def test_queue_processor_drains_queue(self, client, runtime, transport):
        client.post("/api/webhooks/sms", json=_inbound())

        response = client.post("/api/cron/queue-processor")

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["completed"] == 1
        assert data["recovered"] == 0
        assert len(transport.sent) == 1

    def test_followup_sweep(self, client, runtime, transport, clock):
        runtime.scheduler.schedule_followup(PHONE, "Did the documents arrive?", 30)
        clock.advance(30)

        response = client.post("/api/cron/followups")

        assert response.status_code == 200
        assert response.json()["delivered"] == 1
        assert transport.sent[0].message == "Did the documents arrive?"

    def test_cron_secret_enforced(self, client):
        with patch("sms_orchestrator.api.routes.config.CRON_SECRET", "s3cret"):
            denied = client.post("/api/cron/followups")
            wrong = client.post("/api/cron/followups", headers={"Authorization": "Bearer nope"})
            allowed = client.post(
                "/api/cron/followups", headers={"Authorization": "Bearer s3cret"},
            )

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200


class TestAdminEndpoints:
    def test_queue_status(self, client):
        client.post("/api/webhooks/sms", json=_inbound())

        data = client.get("/api/queue/status").json()

        assert data["queue_depth"] == 1
        assert data["healthy"] is True
        assert data["processor_running"] is False

    def test_halt_lifecycle(self, client, runtime):
        response = client.put("/api/halts/07700900123", json={"reason": "agent_takeover"})
        assert response.json() == {
            "phone_number": PHONE, "halted": True, "reason": "agent_takeover",
        }
        assert runtime.halts.is_halted(PHONE)

        status = client.get("/api/halts/07700900123").json()
        assert status["halted"] is True
        assert status["reason"] == "agent_takeover"

        cleared = client.delete("/api/halts/07700900123").json()
        assert cleared["halted"] is False
        assert runtime.halts.is_halted(PHONE) is False

    def test_halt_ttl_validated(self, client):
        response = client.put("/api/halts/07700900123", json={"ttl_seconds": 5})
        assert response.status_code == 422

    def test_halt_changes_require_cron_secret(self, client, runtime):
        auth = {"Authorization": "Bearer s3cret"}
        with patch("sms_orchestrator.api.routes.config.CRON_SECRET", "s3cret"):
            denied_put = client.put("/api/halts/07700900123", json={"reason": "manual"})
            assert denied_put.status_code == 401
            assert runtime.halts.is_halted(PHONE) is False

            allowed_put = client.put(
                "/api/halts/07700900123", json={"reason": "manual"}, headers=auth,
            )
            assert allowed_put.status_code == 200

            denied_delete = client.delete("/api/halts/07700900123")
            assert denied_delete.status_code == 401
            assert runtime.halts.is_halted(PHONE) is True

            allowed_delete = client.delete("/api/halts/07700900123", headers=auth)
            assert allowed_delete.status_code == 200
            assert runtime.halts.is_halted(PHONE) is False


class TestRuntimeWiring:
    def test_configured_attempt_budget_reaches_generator(self, runtime, store, clock, transport):
        generator = MagicMock()
        generator.generate.return_value = runtime.generator.generate.return_value
        with patch("sms_orchestrator.runtime.config.LLM_MAX_ATTEMPTS", 1):
            rt = build_runtime(
                store=store,
                transport=transport,
                profiles=runtime.profiles,
                generator=generator,
                clock=clock,
                iteration_delay=0,
            )
        rt.queue.enqueue(PHONE, "hello", "SM900")
        rt.run_turn(rt.queue.dequeue())

        assert generator.generate.call_args[0][0].max_retries == 1
