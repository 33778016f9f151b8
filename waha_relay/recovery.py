import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .logs import json_log
from .waha_api import is_already_exists, response_message


class ErrorKind(str, Enum):
    CONFLICT_ALREADY_EXISTS = "CONFLICT_ALREADY_EXISTS"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    TIMEOUT = "TIMEOUT"
    SESSION_NOT_WORKING = "SESSION_NOT_WORKING"
    UNKNOWN = "UNKNOWN"


class SessionNotWorking(Exception):
    pass


def classify(error: BaseException) -> ErrorKind:
    if is_already_exists(error):
        return ErrorKind.CONFLICT_ALREADY_EXISTS
    text = response_message(error).lower()
    if isinstance(error, httpx.ConnectError) or "econnrefused" in text or "connection refused" in text:
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)) or "timeout" in text or "timed out" in text or "etimedout" in text:
        return ErrorKind.TIMEOUT
    if isinstance(error, SessionNotWorking) or "not working" in text or "session_not_working" in text:
        return ErrorKind.SESSION_NOT_WORKING
    return ErrorKind.UNKNOWN


@dataclass
class RecoveryOutcome:
    kind: ErrorKind
    handled: bool
    recovered: bool
    error: Optional[str] = None


RecoveryFn = Callable[[BaseException, Dict[str, Any]], Awaitable[bool]]


class ErrorRecovery:
    """
    Maps a classified error to one bounded recovery action. Each kind gets
    max_per_kind attempts per rolling window; beyond that the error is only logged.
    """

    def __init__(
        self,
        orchestrator,
        container=None,
        max_per_kind: int = 3,
        window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_give_up: Optional[Callable[[ErrorKind, BaseException], Any]] = None,
    ):
        self.orchestrator = orchestrator
        self.container = container
        self.max_per_kind = max_per_kind
        self.window = window
        self.clock = clock
        self.sleep = sleep
        self.on_give_up = on_give_up
        self._counts: Dict[ErrorKind, int] = {}
        self._gave_up: Dict[ErrorKind, bool] = {}
        self._window_start = clock()
        self._strategies: Dict[ErrorKind, RecoveryFn] = {
            ErrorKind.CONFLICT_ALREADY_EXISTS: self._recover_conflict,
            ErrorKind.CONNECTION_REFUSED: self._recover_connection_refused,
            ErrorKind.TIMEOUT: self._recover_timeout,
            ErrorKind.SESSION_NOT_WORKING: self._recover_session_not_working,
        }

    def register(self, kind: ErrorKind, fn: RecoveryFn):
        self._strategies[kind] = fn

    def remove(self, kind: ErrorKind):
        self._strategies.pop(kind, None)

    def stats(self) -> Dict[str, Any]:
        self._roll_window()
        return {
            "counts": {k.value: v for k, v in self._counts.items()},
            "max_per_kind": self.max_per_kind,
            "strategies": sorted(k.value for k in self._strategies),
        }

    def reset(self):
        self._counts.clear()
        self._gave_up.clear()
        self._window_start = self.clock()

    def _roll_window(self):
        if self.clock() - self._window_start >= self.window:
            self.reset()

    async def handle(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> RecoveryOutcome:
        context = context or {}
        kind = classify(error)
        self._roll_window()
        count = self._counts.get(kind, 0) + 1
        self._counts[kind] = count
        json_log("error_classified", kind=kind.value, count=count, operation=context.get("name"), error=response_message(error))

        if count > self.max_per_kind:
            if not self._gave_up.get(kind):
                self._gave_up[kind] = True
                json_log("recovery_budget_exhausted", kind=kind.value, count=count, level=logging.WARNING)
                if self.on_give_up is not None:
                    self.on_give_up(kind, error)
            return RecoveryOutcome(kind=kind, handled=False, recovered=False, error=str(error))

        fn = self._strategies.get(kind)
        if fn is None:
            return RecoveryOutcome(kind=kind, handled=False, recovered=False, error=str(error))
        try:
            recovered = bool(await fn(error, context))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("recovery_failed", kind=kind.value, error=response_message(e), level=logging.WARNING)
            recovered = False
        if recovered:
            self._counts.pop(kind, None)
            self._gave_up.pop(kind, None)
        json_log("recovery_result", kind=kind.value, recovered=recovered)
        return RecoveryOutcome(kind=kind, handled=True, recovered=recovered, error=None if recovered else str(error))

    def _session(self, context: Dict[str, Any]) -> str:
        return context.get("session") or self.orchestrator.session_name

    async def _recover_conflict(self, error: BaseException, context: Dict[str, Any]) -> bool:
        await self.orchestrator.restart_session(self._session(context))
        return True

    async def _recover_connection_refused(self, error: BaseException, context: Dict[str, Any]) -> bool:
        if self.container is not None:
            status = await self.container.get_status()
            if not status.get("is_running"):
                return await self.container.ensure_running()
        # Gateway process is up but refusing; try the session itself
        await self.orchestrator.restart_session(self._session(context))
        return True

    async def _recover_timeout(self, error: BaseException, context: Dict[str, Any]) -> bool:
        await self.sleep(min(float(context.get("timeout", 10.0)), 10.0))
        operation = context.get("operation")
        if operation is not None:
            await operation()
            return True
        if await self.orchestrator.check_reachability():
            return True
        return await self.orchestrator.reinitialize()

    async def _recover_session_not_working(self, error: BaseException, context: Dict[str, Any]) -> bool:
        session = self._session(context)
        try:
            await self.orchestrator.recreate_session_with_webhook(session)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("recreate_failed_fallback_restart", session=session, error=response_message(e))
            await self.orchestrator.restart_session(session)
            return True
