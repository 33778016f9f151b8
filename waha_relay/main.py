import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Set

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from . import tasks
from .config import Settings
from .container import ContainerLifecycleManager
from .db import Database
from .events import EventHub, sse_stream
from .logs import LEVELS, configure_logging, get_level, json_log, set_level
from .messages import MessageProcessor
from .orchestrator import QRNotReady, SessionLifecycleOrchestrator, SessionLocked, SessionValidationFailed
from .session_state import AUTHENTICATED_STATUSES, SessionStatus
from .tasks import Runtime, workers
from .waha_api import WAHAClient, response_message, status_code

APP_TITLE = "WAHA LLM Relay"
VERSION = "1.0.0"

AUTH_EVENTS = ("ready", "auth", "state.change")
MESSAGE_EVENTS = ("message", "message.any")

app = FastAPI(title=APP_TITLE, version=VERSION)

_background: Set[asyncio.Task] = set()


def build_runtime(settings: Settings, db: Database) -> Runtime:
    client = WAHAClient.from_env(settings)
    hub = EventHub()
    container = None
    if settings.auto_start_container:
        container = ContainerLifecycleManager(
            name=settings.container_name,
            image=settings.container_image,
            probe=client.list_sessions,
        )
    orchestrator = SessionLifecycleOrchestrator(
        client,
        settings.session_name,
        settings.candidate_webhook_urls(),
        container=container,
        broadcast=hub.broadcast,
        record_error=db.add_error,
    )
    processor = MessageProcessor(db, client, settings.session_name, env_api_key=settings.gemini_api_key)
    return Runtime(settings=settings, db=db, client=client, hub=hub, orchestrator=orchestrator, processor=processor, started_at=time.monotonic())


def get_runtime() -> Runtime:
    if tasks.runtime is None:
        raise HTTPException(status_code=503, detail="service starting")
    return tasks.runtime


@app.on_event("startup")
async def on_startup():
    db = Database()
    db.init()
    settings = Settings.from_env(db)
    configure_logging(settings.log_level)
    rt = build_runtime(settings, db)
    tasks.runtime = rt
    json_log("startup", version=VERSION, waha_url=settings.waha_url, session=settings.session_name, webhook_urls=settings.candidate_webhook_urls())

    for i in range(max(1, settings.workers)):
        workers.append(asyncio.create_task(worker_loop(i, rt)))
    workers.append(asyncio.create_task(rt.orchestrator.start()))


@app.on_event("shutdown")
async def on_shutdown():
    json_log("shutdown")
    if tasks.runtime is not None:
        await tasks.runtime.orchestrator.shutdown()
    for w in workers + list(_background):
        w.cancel()
    await asyncio.gather(*workers, *_background, return_exceptions=True)
    workers.clear()


async def worker_loop(worker_id: int, rt: Runtime):
    while True:
        event = await rt.queue.get()
        try:
            res = await rt.processor.process(event)
            json_log("message_handled", worker_id=worker_id, **res)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("message_failed", worker_id=worker_id, error=response_message(e), level=logging.ERROR)
            rt.db.add_error("message", response_message(e))
        finally:
            rt.queue.task_done()


def _spawn(coro):
    task = asyncio.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


async def _setup_webhook(rt: Runtime, session: str):
    try:
        res = await rt.orchestrator.setup_webhook_after_auth(session)
        json_log("webhook_setup_after_auth", session=session, **res)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        json_log("webhook_setup_after_auth_failed", session=session, error=response_message(e), level=logging.WARNING)


def dispatch_event(payload: Dict[str, Any], rt: Runtime) -> List[str]:
    """Route one gateway delivery. Returns the actions taken, for logging and tests."""
    event_type = payload.get("event") or payload.get("type") or "unknown"
    session = payload.get("session") or rt.settings.session_name
    body = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    actions: List[str] = []

    rt.hub.broadcast({"type": event_type, "session": session, "payload": body, "timestamp": datetime.utcnow().isoformat() + "Z"})
    actions.append("broadcast")

    if event_type in MESSAGE_EVENTS:
        rt.queue.put_nowait(payload)
        actions.append("queued")
    elif event_type == "session.status":
        status = SessionStatus.parse(body.get("status"))
        rt.orchestrator.tracker.invalidate(session)
        if status in AUTHENTICATED_STATUSES:
            _spawn(_setup_webhook(rt, session))
            actions.append("webhook_setup")
    elif event_type in AUTH_EVENTS:
        _spawn(_setup_webhook(rt, session))
        actions.append("webhook_setup")
    return actions


def _error(e: Exception, status: int = 500) -> JSONResponse:
    return JSONResponse({"success": False, "error": response_message(e)}, status_code=status)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_json")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="expected a JSON object")
    return data


@app.post("/waha-events")
@app.post("/webhook")
async def waha_events(request: Request, rt: Runtime = Depends(get_runtime)):
    try:
        payload = await request.json()
    except ValueError:
        raw = await request.body()
        return JSONResponse({"ok": False, "error": "invalid_json", "raw": raw.decode("utf-8", "ignore")[:500]}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"ok": False, "error": "expected a JSON object"}, status_code=400)
    actions = dispatch_event(payload, rt)
    json_log("waha_event", type=payload.get("event"), session=payload.get("session"), actions=actions, level=logging.DEBUG)
    return {"status": "received"}


@app.get("/health")
async def health():
    return {"ok": True, "version": VERSION}


@app.get("/status")
async def status(rt: Runtime = Depends(get_runtime)):
    orch = rt.orchestrator
    waha_connected = True
    try:
        session_status = await orch.tracker.get_status(orch.session_name)
    except Exception as e:
        json_log("status_session_unavailable", error=response_message(e), level=logging.DEBUG)
        waha_connected = False
        session_status = SessionStatus.UNKNOWN
    ai_configured = rt.processor.ai_configured()
    authenticated = session_status == SessionStatus.WORKING
    stats = rt.db.get_status()
    return {
        "waha_connected": waha_connected,
        "ai_configured": ai_configured,
        "session_status": session_status.value,
        "is_authenticated": authenticated,
        "system_ready": waha_connected and authenticated and ai_configured,
        "uptime": round(time.monotonic() - rt.started_at, 1),
        **stats,
        **orch.snapshot(),
    }


@app.get("/qr")
async def qr(rt: Runtime = Depends(get_runtime)):
    orch = rt.orchestrator
    try:
        try:
            return await orch.get_qr_code()
        except SessionLocked:
            # QR request doubles as the unlock signal
            orch.unlock_logout()
            return await orch.get_qr_code()
    except SessionLocked:
        return JSONResponse({"success": False, "locked": True, "error": "session is logout-locked"}, status_code=409)
    except QRNotReady as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=504)
    except Exception as e:
        return _error(e)


@app.post("/session/start")
async def session_start(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, "session": await rt.orchestrator.ensure_session_started()}
    except Exception as e:
        return _error(e)


@app.post("/session/stop")
async def session_stop(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, **await rt.orchestrator.stop_and_lock_session(wait=True)}
    except Exception as e:
        return _error(e)


@app.post("/session/logout")
async def session_logout(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, **await rt.orchestrator.logout_session()}
    except Exception as e:
        return _error(e)


@app.post("/session/unlock")
async def session_unlock(rt: Runtime = Depends(get_runtime)):
    return {"success": True, "unlocked": rt.orchestrator.unlock_logout()}


@app.post("/session/restart")
async def session_restart(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, "result": await rt.orchestrator.restart_session()}
    except SessionLocked:
        return JSONResponse({"success": False, "locked": True, "error": "session is logout-locked"}, status_code=409)
    except Exception as e:
        return _error(e)


@app.delete("/session")
async def session_delete(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, "result": await rt.orchestrator.delete_session()}
    except Exception as e:
        return _error(e)


@app.post("/session/validate")
async def session_validate(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, **await rt.orchestrator.retry_validation()}
    except SessionValidationFailed as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=409)
    except Exception as e:
        return _error(e)


@app.post("/session/webhook")
async def session_webhook(rt: Runtime = Depends(get_runtime)):
    try:
        return {"success": True, **await rt.orchestrator.setup_webhook_after_auth()}
    except Exception as e:
        return _error(e)


def _masked_config(rt: Runtime) -> Dict[str, Any]:
    cfg = rt.db.get_config()
    key = cfg.pop("gemini_api_key", None) or rt.settings.gemini_api_key
    cfg["gemini_api_key_set"] = bool(key)
    if key:
        cfg["gemini_api_key"] = key[:4] + "****" + key[-4:] if len(key) > 8 else "****"
    return cfg


@app.get("/config")
async def get_config(rt: Runtime = Depends(get_runtime)):
    return _masked_config(rt)


@app.post("/config")
async def post_config(request: Request, rt: Runtime = Depends(get_runtime)):
    data = await _json_body(request)
    if data.get("log_level") is not None:
        if str(data["log_level"]).upper() not in LEVELS:
            return JSONResponse({"success": False, "error": f"log_level must be one of {', '.join(LEVELS)}"}, status_code=400)
        data["log_level"] = set_level(data["log_level"])
    if data.get("products") is not None and not isinstance(data["products"], list):
        return JSONResponse({"success": False, "error": "products must be a list"}, status_code=400)
    rt.db.save_config(data)
    if "gemini_api_key" in data or "ai_model" in data:
        rt.processor.reset_responder()
    json_log("config_updated", keys=sorted(data))
    return {"success": True, "config": _masked_config(rt)}


@app.get("/log-level")
async def log_level_get():
    return {"level": get_level(), "levels": list(LEVELS)}


@app.post("/log-level")
async def log_level_post(request: Request, rt: Runtime = Depends(get_runtime)):
    data = await _json_body(request)
    try:
        level = set_level(str(data.get("level") or ""))
    except ValueError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    rt.db.set_setting("log_level", level)
    return {"success": True, "level": level}


@app.get("/conversations")
async def conversations(rt: Runtime = Depends(get_runtime)):
    return {"conversations": rt.db.list_conversations()}


@app.get("/conversations/{chat_id}")
async def conversation(chat_id: str, rt: Runtime = Depends(get_runtime)):
    return {"chat_id": chat_id, "messages": rt.db.get_conversation(chat_id)}


@app.delete("/conversations")
async def clear_conversations(rt: Runtime = Depends(get_runtime)):
    return {"success": True, "deleted": rt.db.clear_conversations()}


@app.get("/events")
async def events(request: Request, rt: Runtime = Depends(get_runtime)):
    return StreamingResponse(
        sse_stream(rt.hub, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/debug-webhook")
async def debug_webhook_get(rt: Runtime = Depends(get_runtime)):
    orch = rt.orchestrator
    try:
        registered = await rt.client.get_webhooks(orch.session_name)
    except Exception as e:
        registered = {"error": response_message(e), "status_code": status_code(e)}
    return {
        "session": orch.session_name,
        "candidate_urls": orch.candidate_urls,
        "registered": registered,
        "ensured": orch.engine.is_ensured(orch.session_name),
    }


@app.post("/debug-webhook")
async def debug_webhook_post(request: Request, rt: Runtime = Depends(get_runtime)):
    data = await _json_body(request)
    json_log("debug_webhook", payload=data)
    rt.hub.broadcast({"type": "debug", "payload": data})
    return {"received": True, "payload": data}


def run():
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("waha_relay.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
