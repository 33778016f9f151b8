import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from waha_relay.db import Database


def http_error(status: int, message: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://waha.test/api/sessions/start")
    response = httpx.Response(status, json={"message": message}, request=request)
    return httpx.HTTPStatusError(message or f"HTTP {status}", request=request, response=response)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeGateway:
    """
    In-memory stand-in for WAHAClient. `statuses` is consumed one per session read;
    the last entry repeats forever.
    """

    base_url = "http://waha.test"

    def __init__(self, statuses: Optional[List[str]] = None):
        self.statuses = list(statuses or ["NOT_FOUND"])
        self.webhooks: List[Dict[str, Any]] = []
        self.config: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.create_error: Optional[Exception] = None
        self.post_webhook_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.reachable = True

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def _next_status(self) -> str:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def set_status(self, status: str):
        self.statuses = [status]

    async def list_sessions(self):
        self.calls.append(("list_sessions",))
        if not self.reachable:
            raise httpx.ConnectError("connection refused")
        return []

    async def get_session(self, name):
        self.calls.append(("get_session", name))
        status = self._next_status()
        if status == "NOT_FOUND":
            raise http_error(404, "Session not found")
        return {"name": name, "status": status, "config": self.config, "me": {"id": "15550001@c.us", "pushName": "Ann"}}

    async def create_session(self, payload):
        self.calls.append(("create_session", payload))
        if self.create_error is not None:
            raise self.create_error
        self.created.append(payload)
        return {"name": payload["name"], "status": "STARTING"}

    async def start_session(self, name):
        self.calls.append(("start_session", name))
        return {"name": name, "status": "STARTING"}

    async def stop_session(self, name):
        self.calls.append(("stop_session", name))
        if self.stop_error is not None:
            raise self.stop_error
        return {"name": name, "status": "STOPPED"}

    async def restart_session(self, name):
        self.calls.append(("restart_session", name))
        return {"name": name, "status": "STARTING"}

    async def delete_session(self, name):
        self.calls.append(("delete_session", name))
        return {}

    async def logout_session(self, name):
        self.calls.append(("logout_session", name))
        return {}

    async def get_webhooks(self, name):
        self.calls.append(("get_webhooks", name))
        return list(self.webhooks)

    async def post_webhook(self, name, webhook):
        self.calls.append(("post_webhook", webhook))
        if self.post_webhook_error is not None:
            raise self.post_webhook_error
        self.webhooks.append(webhook)
        return webhook

    async def patch_session_config(self, name, config):
        self.calls.append(("patch_session_config", config))
        self.config = dict(config)
        return {}

    async def get_qr(self, name):
        self.calls.append(("get_qr", name))
        return "data:image/png;base64,QUJD"

    async def send_text(self, chat_id, text, session):
        self.calls.append(("send_text", chat_id, text, session))
        return {"id": "sent"}

    async def start_typing(self, chat_id, session):
        self.calls.append(("start_typing", chat_id))
        return {}

    async def stop_typing(self, chat_id, session):
        self.calls.append(("stop_typing", chat_id))
        return {}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "app.db")
    database.init()
    return database
