import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .ai import GeminiResponder
from .config import DEFAULT_MODEL, DEFAULT_SYSTEM_PROMPT
from .db import Database
from .logs import json_log
from .utils import to_chat_id
from .waha_api import response_message

MAX_REPLY_CHARS = 4000
TRUNCATED_REPLY_CHARS = 3900
HISTORY_LIMIT = 10
TEXT_TYPES = ("text", "chat")


def truncate_reply(text: str) -> str:
    if len(text) <= MAX_REPLY_CHARS:
        return text
    return text[:TRUNCATED_REPLY_CHARS] + "... (message truncated)"


def build_system_prompt(config: Dict[str, Any]) -> str:
    prompt = config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    products = config.get("products") or []
    lines = []
    for p in products:
        if isinstance(p, dict) and p.get("name"):
            price = f" - {p['price']}" if p.get("price") not in (None, "") else ""
            lines.append(f"- {p['name']}{price}")
    if lines:
        prompt += "\n\nProducts:\n" + "\n".join(lines)
    return prompt


def _message_type(msg: Dict[str, Any]) -> Optional[str]:
    data = msg.get("_data") if isinstance(msg.get("_data"), dict) else {}
    return msg.get("type") or data.get("type")


def default_responder_factory(api_key: str, model_name: str):
    return GeminiResponder(api_key=api_key, model_name=model_name)


class MessageProcessor:
    """Turns an incoming text message into one LLM reply sent back to the same chat."""

    def __init__(
        self,
        db: Database,
        client,
        session_name: str,
        env_api_key: Optional[str] = None,
        responder_factory: Callable[[str, str], Any] = default_responder_factory,
    ):
        self.db = db
        self.client = client
        self.session_name = session_name
        self.env_api_key = env_api_key
        self.responder_factory = responder_factory
        self._responder = None
        self._responder_key = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def ai_configured(self) -> bool:
        return bool(self.db.get_config().get("gemini_api_key") or self.env_api_key)

    def reset_responder(self):
        self._responder = None
        self._responder_key = None

    def _get_responder(self, config: Dict[str, Any]):
        api_key = config.get("gemini_api_key") or self.env_api_key
        if not api_key:
            return None
        model = config.get("ai_model") or DEFAULT_MODEL
        key = (api_key, model)
        if self._responder is None or self._responder_key != key:
            self._responder = self.responder_factory(api_key, model)
            self._responder_key = key
        return self._responder

    def _is_duplicate(self, msg_id: Optional[str]) -> bool:
        if not msg_id:
            return False
        if msg_id in self._seen or self.db.has_message(msg_id):
            return True
        self._seen[msg_id] = None
        while len(self._seen) > 1000:
            self._seen.popitem(last=False)
        return False

    async def process(self, event: Dict[str, Any]) -> Dict[str, Any]:
        msg = event.get("payload") or {}
        if msg.get("fromMe"):
            return {"status": "skipped", "reason": "from_me"}
        msg_type = _message_type(msg)
        if msg_type not in TEXT_TYPES and not (msg_type is None and not msg.get("hasMedia")):
            return {"status": "skipped", "reason": "unsupported_type", "type": msg_type}
        body = (msg.get("body") or "").strip()
        if not body:
            return {"status": "skipped", "reason": "empty"}
        chat_id = to_chat_id(msg.get("from") or msg.get("chatId"))
        if not chat_id:
            return {"status": "skipped", "reason": "no_chat"}
        msg_id = msg.get("id")
        if isinstance(msg_id, dict):
            msg_id = msg_id.get("_serialized")
        if self._is_duplicate(msg_id):
            return {"status": "skipped", "reason": "duplicate"}

        config = self.db.get_config()
        responder = self._get_responder(config)
        if responder is None:
            json_log("ai_not_configured", chat_id=chat_id, level=logging.WARNING)
            return {"status": "skipped", "reason": "ai_not_configured"}

        session = event.get("session") or self.session_name
        history: List[Dict[str, Any]] = self.db.get_conversation(chat_id, limit=HISTORY_LIMIT)
        self.db.save_message(chat_id, "user", body, msg_type or "text", msg_id=msg_id, raw=msg)

        try:
            await self.client.start_typing(chat_id, session)
        except Exception as e:
            json_log("typing_failed", chat_id=chat_id, error=response_message(e), level=logging.DEBUG)
        try:
            reply = await asyncio.to_thread(responder.generate, body, build_system_prompt(config), history)
            reply = truncate_reply(reply)
            await self.client.send_text(chat_id, reply, session)
        finally:
            try:
                await self.client.stop_typing(chat_id, session)
            except Exception as e:
                json_log("typing_failed", chat_id=chat_id, error=response_message(e), level=logging.DEBUG)

        self.db.save_message(chat_id, "ai", reply, "text")
        self.db.record_processed()
        json_log("reply_sent", chat_id=chat_id, chars=len(reply))
        return {"status": "replied", "chat_id": chat_id}
