import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Settings
from .db import Database
from .events import EventHub
from .messages import MessageProcessor
from .orchestrator import SessionLifecycleOrchestrator
from .waha_api import WAHAClient


@dataclass
class Runtime:
    """Components shared by routes and background workers, built once at startup."""

    settings: Settings
    db: Database
    client: WAHAClient
    hub: EventHub
    orchestrator: SessionLifecycleOrchestrator
    processor: MessageProcessor
    queue: "asyncio.Queue[Dict[str, Any]]" = field(default_factory=asyncio.Queue)
    started_at: float = 0.0


# Kept in a separate module to avoid circular imports between main and the workers.
runtime: Optional[Runtime] = None
workers: List[asyncio.Task] = []
