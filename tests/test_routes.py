import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from waha_relay import main
from waha_relay.config import Settings
from waha_relay.events import EventHub, sse_stream
from waha_relay.orchestrator import SessionLocked
from waha_relay.session_state import SessionStatus
from waha_relay.tasks import Runtime


def make_runtime(db):
    orch = MagicMock()
    orch.session_name = "default"
    orch.candidate_urls = ["https://host/events"]
    orch.tracker.get_status = AsyncMock(return_value=SessionStatus.WORKING)
    orch.setup_webhook_after_auth = AsyncMock(return_value={"ensured": True})
    orch.snapshot.return_value = {"phase": "STEADY", "logout_locked": False}
    processor = MagicMock()
    processor.ai_configured.return_value = True
    return Runtime(
        settings=Settings(session_name="default"),
        db=db,
        client=MagicMock(),
        hub=EventHub(),
        orchestrator=orch,
        processor=processor,
        queue=asyncio.Queue(),
    )


@pytest.fixture
def rt(db):
    runtime = make_runtime(db)
    main.app.dependency_overrides[main.get_runtime] = lambda: runtime
    yield runtime
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(rt):
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"ok": True, "version": main.VERSION}


def test_message_delivery_is_acknowledged_and_queued(client, rt):
    resp = client.post("/waha-events", json={"event": "message", "session": "default", "payload": {"body": "hi"}})
    assert resp.status_code == 200
    assert resp.json() == {"status": "received"}
    assert rt.queue.qsize() == 1


def test_invalid_json_is_rejected(client):
    resp = client.post("/waha-events", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_json"


async def test_dispatch_routes_events(rt):
    sub = rt.hub.subscribe()

    assert main.dispatch_event({"event": "message.any", "payload": {"body": "x"}}, rt) == ["broadcast", "queued"]
    assert main.dispatch_event({"event": "session.status", "payload": {"status": "SCAN_QR_CODE"}}, rt) == ["broadcast"]
    assert main.dispatch_event({"event": "session.status", "payload": {"status": "WORKING"}}, rt) == ["broadcast", "webhook_setup"]
    assert main.dispatch_event({"event": "state.change", "payload": {}}, rt) == ["broadcast", "webhook_setup"]
    await asyncio.gather(*list(main._background))

    assert rt.orchestrator.setup_webhook_after_auth.await_count == 2
    first = sub.get_nowait()
    assert first["type"] == "message.any"
    assert first["session"] == "default"
    assert first["payload"] == {"body": "x"}
    assert "timestamp" in first


def test_status_reports_readiness(client, rt):
    rt.db.record_processed()
    body = client.get("/status").json()
    assert body["session_status"] == "WORKING"
    assert body["is_authenticated"] is True
    assert body["system_ready"] is True
    assert body["messages_processed"] == 1
    assert body["phase"] == "STEADY"


def test_status_when_gateway_unreachable(client, rt):
    rt.orchestrator.tracker.get_status = AsyncMock(side_effect=RuntimeError("down"))
    body = client.get("/status").json()
    assert body["waha_connected"] is False
    assert body["session_status"] == "UNKNOWN"
    assert body["system_ready"] is False


def test_qr_unlocks_then_retries(client, rt):
    rt.orchestrator.get_qr_code = AsyncMock(side_effect=[SessionLocked("default"), {"success": True, "qr": "data:x"}])
    resp = client.get("/qr")
    assert resp.json()["qr"] == "data:x"
    rt.orchestrator.unlock_logout.assert_called_once()


def test_qr_still_locked_returns_409(client, rt):
    rt.orchestrator.get_qr_code = AsyncMock(side_effect=SessionLocked("default"))
    resp = client.get("/qr")
    assert resp.status_code == 409
    assert resp.json()["locked"] is True


def test_session_routes_report_gateway_errors(client, rt):
    rt.orchestrator.restart_session = AsyncMock(side_effect=RuntimeError("gateway exploded"))
    resp = client.post("/session/restart")
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "gateway exploded"}


def test_config_masks_key_and_validates(client, rt):
    resp = client.post("/config", json={"gemini_api_key": "AIzaSECRETKEY1234", "system_prompt": "Be kind"})
    assert resp.status_code == 200
    cfg = resp.json()["config"]
    assert cfg["gemini_api_key"] == "AIza****1234"
    assert cfg["system_prompt"] == "Be kind"
    rt.processor.reset_responder.assert_called_once()

    assert client.post("/config", json={"log_level": "LOUD"}).status_code == 400
    assert client.post("/config", json={"products": "tea"}).status_code == 400


def test_log_level_round_trip(client, rt):
    assert client.post("/log-level", json={"level": "debug"}).json() == {"success": True, "level": "DEBUG"}
    assert client.get("/log-level").json()["level"] == "DEBUG"
    assert rt.db.get_setting("log_level") == "DEBUG"
    assert client.post("/log-level", json={"level": "chatty"}).status_code == 400
    client.post("/log-level", json={"level": "INFO"})


def test_conversations(client, rt):
    rt.db.save_message("a@c.us", "user", "hello")
    assert client.get("/conversations").json()["conversations"][0]["chat_id"] == "a@c.us"
    assert client.get("/conversations/a@c.us").json()["messages"][0]["content"] == "hello"
    assert client.delete("/conversations").json()["deleted"] == 1


async def test_sse_stream_frames_events_and_pings():
    hub = EventHub()
    queue = hub.subscribe()
    stream = sse_stream(hub, ping_interval=0.01, subscription=queue)

    assert (await stream.__anext__()).startswith("event: connected")
    hub.broadcast({"type": "session.status", "status": "WORKING"})
    frame = await stream.__anext__()
    assert frame.startswith("data: ") and '"WORKING"' in frame
    assert await stream.__anext__() == ": ping\n\n"
    await stream.aclose()
    assert hub.subscriber_count == 0
