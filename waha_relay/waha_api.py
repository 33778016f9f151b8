from typing import Any, Dict, List, Optional

import httpx

from .config import Settings


def response_message(exc: BaseException) -> str:
    """Best-effort human message for an error, including the gateway's JSON body when present."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            return exc.response.text or str(exc)
        if isinstance(body, dict):
            msg = body.get("message") or body.get("error")
            if isinstance(msg, list):
                msg = "; ".join(str(m) for m in msg)
            if msg:
                return str(msg)
        return str(body)
    return str(exc)


def status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_already_exists(exc: BaseException) -> bool:
    return status_code(exc) == 422 and "already exists" in response_message(exc).lower()


class WAHAClient:
    """
    Thin async wrapper over the WAHA REST surface. No retry policy lives here:
    every call raises httpx.HTTPStatusError on non-2xx responses.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport

    @classmethod
    def from_env(cls, settings: Optional[Settings] = None) -> "WAHAClient":
        settings = settings or Settings.from_env()
        return cls(base_url=settings.waha_url, api_key=settings.waha_api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, timeout: float, payload: Optional[Dict[str, Any]] = None) -> Any:
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            resp = await client.request(method, f"{self.base_url}{path}", json=payload, headers=self._headers())
            resp.raise_for_status()
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError:
                return {"raw": resp.text}

    # Sessions

    async def list_sessions(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/sessions", timeout=5)

    async def get_session(self, name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/sessions/{name}", timeout=10)

    async def create_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/sessions/start", timeout=30, payload=payload)

    async def start_session(self, name: str) -> Dict[str, Any]:
        # Legacy start for an existing (stopped) session
        return await self._request("POST", "/api/sessions/start", timeout=30, payload={"name": name})

    async def stop_session(self, name: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/sessions/stop", timeout=15, payload={"name": name})

    async def restart_session(self, name: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/sessions/{name}/restart", timeout=20)

    async def delete_session(self, name: str) -> Dict[str, Any]:
        try:
            return await self._request("DELETE", f"/api/sessions/{name}", timeout=20)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return {"status": "not_found"}
            raise

    async def logout_session(self, name: str) -> Dict[str, Any]:
        try:
            return await self._request("POST", f"/api/sessions/{name}/logout", timeout=20)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return {"status": "not_found"}
            raise

    # Webhooks

    async def get_webhooks(self, name: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/api/sessions/{name}/webhooks", timeout=7)
        if isinstance(data, dict):
            data = data.get("webhooks") or []
        return [w for w in data if isinstance(w, dict)]

    async def post_webhook(self, name: str, webhook: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/api/sessions/{name}/webhooks", timeout=10, payload=webhook)

    async def patch_session_config(self, name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/api/sessions/{name}/config", timeout=10, payload=config)

    # Auth

    async def get_qr(self, name: str) -> str:
        """Return the QR image as a data URI."""
        data = await self._request("GET", f"/api/{name}/auth/qr", timeout=15)
        if isinstance(data, dict) and data.get("data"):
            mimetype = data.get("mimetype") or "image/png"
            return f"data:{mimetype};base64,{data['data']}"
        if isinstance(data, dict) and data.get("value"):
            return str(data["value"])
        raise ValueError("QR payload missing image data")

    # Messaging

    async def send_text(self, chat_id: str, text: str, session: str) -> Dict[str, Any]:
        payload = {"chatId": chat_id, "text": text, "session": session}
        return await self._request("POST", "/api/sendText", timeout=30, payload=payload)

    async def start_typing(self, chat_id: str, session: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/startTyping", timeout=10, payload={"chatId": chat_id, "session": session})

    async def stop_typing(self, chat_id: str, session: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/stopTyping", timeout=10, payload={"chatId": chat_id, "session": session})
