import os
from dataclasses import dataclass
from typing import List, Optional

from .db import Database

DEFAULT_SYSTEM_PROMPT = "You are a concise helpful WhatsApp assistant."
DEFAULT_MODEL = "gemini-2.5-flash-lite"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    waha_url: str = "http://localhost:3000"
    session_name: str = "default"
    waha_api_key: Optional[str] = None
    events_webhook_url: Optional[str] = None
    public_base_url: Optional[str] = None
    webhook_path: str = "/waha-events"
    host: str = "0.0.0.0"
    port: int = 3001
    workers: int = 2
    log_level: str = "INFO"
    auto_start_container: bool = False
    container_name: str = "waha"
    container_image: str = "devlikeapro/waha"
    gemini_api_key: Optional[str] = None
    ai_model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls, db: Optional[Database] = None) -> "Settings":
        # Prefer DB settings if available, fall back to environment variables
        db = db or Database()

        def pick(key: str, env: str, default: Optional[str] = None) -> Optional[str]:
            return db.get_setting(key, None) or os.getenv(env, default)

        return cls(
            waha_url=pick("waha_base_url", "WAHA_URL", "http://localhost:3000").rstrip("/"),
            session_name=pick("session_name", "WAHA_SESSION_NAME", "default"),
            waha_api_key=os.getenv("WAHA_API_KEY") or None,
            events_webhook_url=db.get_setting("webhook_url", None)
            or os.getenv("WAHA_EVENTS_WEBHOOK_URL")
            or os.getenv("EVENTS_WEBHOOK_URL")
            or None,
            public_base_url=os.getenv("PUBLIC_BASE_URL") or None,
            webhook_path=os.getenv("WEBHOOK_PATH", "/waha-events"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3001")),
            workers=int(os.getenv("WORKERS", "2")),
            log_level=pick("log_level", "LOG_LEVEL", "INFO").upper(),
            auto_start_container=_env_flag("WAHA_AUTO_START_CONTAINER"),
            container_name=os.getenv("WAHA_CONTAINER_NAME", "waha"),
            container_image=os.getenv("WAHA_IMAGE", "devlikeapro/waha"),
            gemini_api_key=pick("gemini_api_key", "GEMINI_API_KEY"),
            ai_model=pick("ai_model", "GEMINI_MODEL", DEFAULT_MODEL),
            system_prompt=pick("system_prompt", "GEMINI_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        )

    def candidate_webhook_urls(self) -> List[str]:
        """
        URLs the gateway may call back on. An explicit URL wins; otherwise derive one from
        the public base URL; otherwise assume the gateway runs in docker on this host.
        """
        if self.events_webhook_url:
            return [self.events_webhook_url]
        path = "/" + self.webhook_path.lstrip("/")
        if self.public_base_url:
            return [self.public_base_url.rstrip("/") + path]
        return [f"http://host.docker.internal:{self.port}{path}"]
