import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .logs import json_log


class SessionStatus(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    STARTING = "STARTING"
    SCAN_QR_CODE = "SCAN_QR_CODE"
    WORKING = "WORKING"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "SessionStatus":
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


AUTHENTICATED_STATUSES = (SessionStatus.WORKING, SessionStatus.AUTHENTICATED)


class SessionStateTracker:
    """
    Reads the remote session status with a short per-name cache so that bursts
    of callers (monitor ticks, routes, convergence) collapse into one request.
    A 404 from the gateway is reported as NOT_FOUND rather than raised.
    """

    def __init__(self, client, cache_ttl: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get_info(self, name: str, fresh: bool = False) -> Dict[str, Any]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            if not fresh:
                hit = self._cache.get(name)
                if hit and self.clock() - hit[0] < self.cache_ttl:
                    return hit[1]
            try:
                info = await self.client.get_session(name)
            except httpx.HTTPStatusError as e:
                if e.response.status_code != 404:
                    raise
                info = {"name": name, "status": SessionStatus.NOT_FOUND.value}
            if not isinstance(info, dict):
                info = {"name": name, "status": SessionStatus.UNKNOWN.value}
            self._cache[name] = (self.clock(), info)
            return info

    async def get_status(self, name: str, fresh: bool = False) -> SessionStatus:
        info = await self.get_info(name, fresh=fresh)
        return SessionStatus.parse(info.get("status"))

    async def get_status_safe(self, name: str, fresh: bool = False) -> SessionStatus:
        try:
            return await self.get_status(name, fresh=fresh)
        except Exception as e:
            json_log("session_status_unavailable", session=name, error=str(e))
            return SessionStatus.UNKNOWN

    async def is_authenticated(self, name: str) -> bool:
        """Strictly WORKING. Convergence gating also accepts AUTHENTICATED via AUTHENTICATED_STATUSES."""
        return await self.get_status(name) == SessionStatus.WORKING

    async def is_stopped(self, name: str) -> bool:
        return await self.get_status(name) == SessionStatus.STOPPED

    async def is_not_found(self, name: str) -> bool:
        return await self.get_status(name) == SessionStatus.NOT_FOUND

    def invalidate(self, name: Optional[str] = None):
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)


class ConsecutiveMatches:
    """Counts how many observations in a row satisfied a predicate; any miss resets the run."""

    def __init__(self, predicate: Callable[[Any], bool], threshold: int = 2):
        self.predicate = predicate
        self.threshold = threshold
        self.count = 0

    def observe(self, value: Any) -> bool:
        if self.predicate(value):
            self.count += 1
        else:
            self.count = 0
        return self.count >= self.threshold

    def reset(self):
        self.count = 0
