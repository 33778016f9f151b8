import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from .backoff import BackoffAttemptLimiter
from .logs import json_log
from .recovery import ErrorRecovery
from .session_state import AUTHENTICATED_STATUSES, SessionStateTracker, SessionStatus, ConsecutiveMatches
from .utils import describe_user
from .waha_api import is_already_exists, response_message
from .webhooks import REQUIRED_EVENTS, ConvergenceResult, WebhookConvergenceEngine, WebhookConvergenceFailed, webhook_payload


class LifecyclePhase(str, Enum):
    IDLE = "IDLE"
    CHECKING_REACHABILITY = "CHECKING_REACHABILITY"
    ENSURING_SESSION = "ENSURING_SESSION"
    MONITORING_AUTH = "MONITORING_AUTH"
    CONVERGING_WEBHOOK = "CONVERGING_WEBHOOK"
    STEADY = "STEADY"
    LOGOUT_LOCKED = "LOGOUT_LOCKED"


P = LifecyclePhase

# Allowed phase changes. Once locked, the only way out is an explicit unlock back to IDLE.
_TRANSITIONS: Dict[LifecyclePhase, set] = {
    P.IDLE: {P.CHECKING_REACHABILITY, P.ENSURING_SESSION, P.MONITORING_AUTH, P.CONVERGING_WEBHOOK, P.LOGOUT_LOCKED},
    P.CHECKING_REACHABILITY: {P.IDLE, P.ENSURING_SESSION, P.MONITORING_AUTH, P.CONVERGING_WEBHOOK, P.LOGOUT_LOCKED},
    P.ENSURING_SESSION: {P.IDLE, P.MONITORING_AUTH, P.CONVERGING_WEBHOOK, P.LOGOUT_LOCKED},
    P.MONITORING_AUTH: {P.IDLE, P.CHECKING_REACHABILITY, P.ENSURING_SESSION, P.CONVERGING_WEBHOOK, P.LOGOUT_LOCKED},
    P.CONVERGING_WEBHOOK: {P.IDLE, P.ENSURING_SESSION, P.MONITORING_AUTH, P.STEADY, P.LOGOUT_LOCKED},
    P.STEADY: {P.IDLE, P.CHECKING_REACHABILITY, P.ENSURING_SESSION, P.MONITORING_AUTH, P.CONVERGING_WEBHOOK, P.LOGOUT_LOCKED},
    P.LOGOUT_LOCKED: {P.IDLE},
}


class InvalidTransition(Exception):
    pass


class SessionLocked(Exception):
    pass


class QRNotReady(Exception):
    pass


class SessionValidationFailed(Exception):
    pass


class SessionLifecycleOrchestrator:
    """
    Drives the single gateway session: create or start it, watch for authentication,
    then converge the webhook registration. A logout puts the orchestrator in
    LOGOUT_LOCKED, where nothing recreates or restarts the session until unlocked.
    """

    def __init__(
        self,
        client,
        session_name: str = "default",
        candidate_urls: Sequence[str] = (),
        *,
        tracker: Optional[SessionStateTracker] = None,
        engine: Optional[WebhookConvergenceEngine] = None,
        limiter: Optional[BackoffAttemptLimiter] = None,
        recovery: Optional[ErrorRecovery] = None,
        container=None,
        broadcast: Optional[Callable[[Dict[str, Any]], Any]] = None,
        record_error: Optional[Callable[[str, str], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 2.0,
        monitor_timeout: float = 600.0,
        ensure_attempts: int = 3,
        ensure_retry_delay: float = 3.0,
        logout_timeout: float = 15.0,
        logout_poll_interval: float = 0.5,
        qr_timeout: float = 60.0,
        qr_poll_interval: float = 1.5,
    ):
        if not candidate_urls:
            raise ValueError("at least one webhook URL is required")
        self.client = client
        self.session_name = session_name
        self.candidate_urls = list(candidate_urls)
        self.container = container
        self.broadcast = broadcast
        self.record_error = record_error
        self.sleep = sleep
        self.clock = clock
        self.poll_interval = poll_interval
        self.monitor_timeout = monitor_timeout
        self.ensure_attempts = ensure_attempts
        self.ensure_retry_delay = ensure_retry_delay
        self.logout_timeout = logout_timeout
        self.logout_poll_interval = logout_poll_interval
        self.qr_timeout = qr_timeout
        self.qr_poll_interval = qr_poll_interval

        self.tracker = tracker or SessionStateTracker(client, clock=clock)
        self.engine = engine or WebhookConvergenceEngine(client, self.tracker)
        self.limiter = limiter or BackoffAttemptLimiter(sleep=sleep, clock=clock, on_give_up=self._backoff_exhausted)
        self.recovery = recovery or ErrorRecovery(self, container=container, clock=clock, sleep=sleep, on_give_up=self._recovery_exhausted)
        self.phase = LifecyclePhase.IDLE
        self._monitors: Dict[str, asyncio.Task] = {}
        # Bumped whenever the webhook engine is reset; a convergence that sees a new value drops its result
        self._generation = 0

    # Phase handling

    def is_logout_locked(self) -> bool:
        return self.phase == LifecyclePhase.LOGOUT_LOCKED

    def transition(self, phase: LifecyclePhase):
        if phase == self.phase:
            return
        if phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.phase.value} -> {phase.value}")
        previous, self.phase = self.phase, phase
        json_log("lifecycle_phase", session=self.session_name, previous=previous.value, phase=phase.value)
        self._emit("lifecycle", previous=previous.value, phase=phase.value)

    def _advance(self, phase: LifecyclePhase) -> bool:
        """Transition unless the session is locked; locked callers simply stop."""
        if self.is_logout_locked():
            return False
        self.transition(phase)
        return True

    def _emit(self, event_type: str, **data):
        if self.broadcast is None:
            return
        event = {"type": event_type, "session": self.session_name, "timestamp": datetime.utcnow().isoformat() + "Z", **data}
        try:
            self.broadcast(event)
        except Exception as e:
            json_log("broadcast_failed", event_type=event_type, error=str(e), level=logging.DEBUG)

    def _record(self, context: str, error: BaseException):
        json_log("session_error", context=context, error=response_message(error), level=logging.WARNING)
        if self.record_error is not None:
            try:
                self.record_error(context, response_message(error))
            except Exception as e:
                json_log("record_error_failed", error=str(e), level=logging.DEBUG)

    def _backoff_exhausted(self, session: str, context: str, error: BaseException):
        self._emit("backoff.exhausted", context=context, error=response_message(error))
        self._record(f"backoff:{context}", error)

    def _recovery_exhausted(self, kind, error: BaseException):
        self._emit("recovery.exhausted", kind=kind.value, error=response_message(error))
        self._record(f"recovery:{kind.value}", error)

    # Startup

    async def start(self):
        """Best-effort startup; failures are recorded and leave the HTTP surface running."""
        if self.is_logout_locked():
            json_log("startup_skipped_locked", session=self.session_name)
            return
        self._advance(LifecyclePhase.CHECKING_REACHABILITY)
        await self.check_reachability()
        try:
            await self.ensure_default_session()
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record("startup", e)
            outcome = await self.recovery.handle(e, {"name": "ensure_default_session", "session": self.session_name})
        if outcome.recovered and not self.is_logout_locked():
            try:
                await self.ensure_default_session()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record("startup_retry", e)
        self._advance(LifecyclePhase.IDLE)

    async def check_reachability(self) -> bool:
        try:
            await self.client.list_sessions()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("waha_unreachable", url=getattr(self.client, "base_url", None), error=response_message(e), level=logging.WARNING)
            return False
        json_log("waha_reachable", url=getattr(self.client, "base_url", None))
        return True

    def create_payload(self, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "start": True,
            "config": {
                "proxy": None,
                "debug": False,
                "noweb": {"store": {"enabled": True, "fullSync": False}},
                "webhooks": [webhook_payload(self.candidate_urls[0], REQUIRED_EVENTS, retries=None)],
            },
        }

    async def _create_session(self, name: str) -> str:
        try:
            await self.client.create_session(self.create_payload(name))
            json_log("session_created", session=name)
            return "created"
        except httpx.HTTPStatusError as e:
            if is_already_exists(e):
                json_log("session_already_exists", session=name)
                return "exists"
            if e.response.status_code == 409:
                json_log("session_create_conflict_legacy_start", session=name)
                await self.client.start_session(name)
                return "started"
            raise
        finally:
            self.tracker.invalidate(name)

    async def ensure_default_session(self) -> SessionStatus:
        name = self.session_name
        self._advance(LifecyclePhase.ENSURING_SESSION)
        status = await self.tracker.get_status(name, fresh=True)
        json_log("session_checked", session=name, status=status.value)
        if status == SessionStatus.NOT_FOUND:
            await self._create_session(name)
        self._advance(LifecyclePhase.MONITORING_AUTH)
        self.start_auth_monitor(name)
        return status

    # Authentication monitor

    def start_auth_monitor(self, name: Optional[str] = None) -> bool:
        name = name or self.session_name
        if self.is_logout_locked():
            return False
        task = self._monitors.get(name)
        if task is not None and not task.done():
            return False
        if self.phase != LifecyclePhase.CONVERGING_WEBHOOK:
            self._advance(LifecyclePhase.MONITORING_AUTH)
        self._monitors[name] = asyncio.create_task(self._auth_monitor(name))
        json_log("auth_monitor_started", session=name)
        return True

    def monitor_task(self, name: Optional[str] = None) -> Optional[asyncio.Task]:
        return self._monitors.get(name or self.session_name)

    def is_monitoring(self, name: Optional[str] = None) -> bool:
        task = self.monitor_task(name)
        return task is not None and not task.done()

    async def _auth_monitor(self, name: str):
        stable = ConsecutiveMatches(lambda s: s in AUTHENTICATED_STATUSES, threshold=2)
        deadline = self.clock() + self.monitor_timeout
        last: Optional[SessionStatus] = None
        try:
            while self.clock() < deadline:
                if self.is_logout_locked():
                    return
                try:
                    status = await self.tracker.get_status(name, fresh=True)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    json_log("auth_monitor_tick_error", session=name, error=response_message(e), level=logging.DEBUG)
                    await self.sleep(self.poll_interval)
                    continue
                if status != last:
                    json_log("session_status_changed", session=name, previous=last.value if last else None, status=status.value)
                    self._emit("session.status", status=status.value)
                    last = status
                if stable.observe(status):
                    await self._converge_with_retries(name)
                    return
                if status in (SessionStatus.FAILED, SessionStatus.STOPPED):
                    json_log("auth_monitor_stopped", session=name, status=status.value)
                    self._advance(LifecyclePhase.IDLE)
                    return
                await self.sleep(self.poll_interval)
            json_log("auth_monitor_timeout", session=name, timeout=self.monitor_timeout, level=logging.WARNING)
        finally:
            if self._monitors.get(name) is asyncio.current_task():
                self._monitors.pop(name, None)

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation or self.phase != LifecyclePhase.CONVERGING_WEBHOOK

    def _drop(self, name: str, generation: int, result: ConvergenceResult) -> ConvergenceResult:
        """Another operation moved the session on while this convergence was suspended."""
        json_log("webhook_convergence_superseded", session=name, phase=self.phase.value, ensured=result.ensured)
        if generation != self._generation:
            return ConvergenceResult(ensured=False, session=name, reason="superseded")
        return result

    async def _converge_with_retries(self, name: str) -> ConvergenceResult:
        if not self._advance(LifecyclePhase.CONVERGING_WEBHOOK):
            return ConvergenceResult(ensured=False, session=name, reason="logout_locked")
        generation = self._generation
        result = ConvergenceResult(ensured=False, session=name)
        for attempt in range(1, self.ensure_attempts + 1):
            try:
                result = await self.engine.ensure(name, self.candidate_urls)
            except asyncio.CancelledError:
                raise
            except WebhookConvergenceFailed as e:
                json_log("webhook_ensure_attempt_failed", session=name, attempt=attempt, error=str(e))
                result = ConvergenceResult(ensured=False, session=name, reason=str(e))
            if self._superseded(generation):
                return self._drop(name, generation, result)
            if result.ensured:
                break
            if attempt < self.ensure_attempts:
                await self.sleep(self.ensure_retry_delay)
                if self._superseded(generation):
                    return self._drop(name, generation, result)
        if not result.ensured:
            verified = await self.engine.verify(name, self.candidate_urls)
            if self._superseded(generation):
                return self._drop(name, generation, result)
            if verified:
                result = self.engine.mark_ensured(ConvergenceResult(ensured=True, session=name, method="final_verify", assumed=True))
        if result.ensured:
            self._advance(LifecyclePhase.STEADY)
            self._emit("webhook.ensured", **result.to_dict())
        else:
            json_log("webhook_not_ensured", session=name, reason=result.reason, level=logging.WARNING)
            self._advance(LifecyclePhase.IDLE)
        return result

    async def setup_webhook_after_auth(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Converge once in response to an authentication-related delivery."""
        name = name or self.session_name
        if self.is_logout_locked():
            return {"status": "skipped", "reason": "logout_locked"}
        status = await self.tracker.get_status_safe(name)
        if status not in AUTHENTICATED_STATUSES:
            self.start_auth_monitor(name)
            return {"status": "deferred", "session_status": status.value}
        result = await self._converge_with_retries(name)
        return result.to_dict()

    # Session control

    async def ensure_session_started(self) -> Dict[str, Any]:
        name = self.session_name
        if self.is_logout_locked():
            return {"name": name, "status": "LOCKED", "locked": True}
        info = await self.tracker.get_info(name, fresh=True)
        status = SessionStatus.parse(info.get("status"))
        if status == SessionStatus.WORKING:
            return info
        if status == SessionStatus.NOT_FOUND:
            self._advance(LifecyclePhase.ENSURING_SESSION)
            await self._create_session(name)
        elif status == SessionStatus.STOPPED:
            self._advance(LifecyclePhase.ENSURING_SESSION)
            await self.client.start_session(name)
            self.tracker.invalidate(name)
        self.start_auth_monitor(name)
        return await self.tracker.get_info(name, fresh=True)

    async def _cancel_monitors(self):
        current = asyncio.current_task()
        tasks: List[asyncio.Task] = [t for t in self._monitors.values() if t is not current]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()

    async def stop_and_lock_session(self, wait: bool = True, logout: bool = False) -> Dict[str, Any]:
        name = self.session_name
        self.transition(LifecyclePhase.LOGOUT_LOCKED)
        self._generation += 1
        self.engine.reset(name)
        await self._cancel_monitors()
        self.tracker.invalidate(name)
        self.limiter.reset()
        if logout:
            try:
                await self.client.logout_session(name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record("logout", e)
        try:
            await self.client.stop_session(name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Lock stays on; nothing may bring the session back implicitly
            self._record("stop", e)
            raise
        if not wait:
            return {"locked": True, "stopped": None}
        deadline = self.clock() + self.logout_timeout
        status = SessionStatus.UNKNOWN
        while self.clock() < deadline:
            status = await self.tracker.get_status_safe(name, fresh=True)
            if status in (SessionStatus.STOPPED, SessionStatus.NOT_FOUND):
                return {"locked": True, "stopped": True, "status": status.value}
            await self.sleep(self.logout_poll_interval)
        json_log("stop_wait_timeout", session=name, status=status.value, level=logging.WARNING)
        return {"locked": True, "stopped": False, "status": status.value}

    def unlock_logout(self) -> bool:
        if not self.is_logout_locked():
            return False
        self.transition(LifecyclePhase.IDLE)
        json_log("logout_unlocked", session=self.session_name)
        return True

    async def logout_session(self) -> Dict[str, Any]:
        return await self.stop_and_lock_session(wait=True, logout=True)

    async def restart_session(self, name: Optional[str] = None) -> Dict[str, Any]:
        name = name or self.session_name
        if self.is_logout_locked():
            raise SessionLocked(name)
        self._generation += 1
        self.engine.reset(name)
        self.tracker.invalidate(name)
        resp = await self.client.restart_session(name)
        json_log("session_restarted", session=name)
        self.start_auth_monitor(name)
        return resp

    async def delete_session(self, name: Optional[str] = None) -> Dict[str, Any]:
        name = name or self.session_name
        task = self._monitors.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._generation += 1
        self.engine.reset(name)
        resp = await self.client.delete_session(name)
        self.tracker.invalidate(name)
        json_log("session_deleted", session=name)
        self._advance(LifecyclePhase.IDLE)
        return resp

    async def recreate_session_with_webhook(self, name: Optional[str] = None) -> str:
        name = name or self.session_name
        if self.is_logout_locked():
            raise SessionLocked(name)
        self._generation += 1
        self.engine.reset(name)
        status = await self.tracker.get_status(name, fresh=True)
        if status != SessionStatus.NOT_FOUND:
            await self.client.delete_session(name)
        self.tracker.invalidate(name)
        self._advance(LifecyclePhase.ENSURING_SESSION)
        outcome = await self._create_session(name)
        self.start_auth_monitor(name)
        return outcome

    async def validate_session(self) -> Dict[str, Any]:
        info = await self.tracker.get_info(self.session_name, fresh=True)
        status = SessionStatus.parse(info.get("status"))
        return {"valid": status == SessionStatus.WORKING, "status": status.value}

    async def retry_validation(self, max_retries: int = 3, base_delay: float = 5.0) -> Dict[str, Any]:
        name = self.session_name
        result: Dict[str, Any] = {}
        for attempt in range(1, max_retries + 1):
            try:
                result = await self.validate_session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = {"valid": False, "status": SessionStatus.UNKNOWN.value, "error": response_message(e)}
            if result["valid"]:
                return result
            json_log("session_validation_failed", session=name, attempt=attempt, status=result["status"])
            if attempt == max_retries:
                break
            if result["status"] == SessionStatus.FAILED.value:
                try:
                    await self.client.restart_session(name)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    json_log("validation_restart_failed", session=name, error=response_message(e))
                self.tracker.invalidate(name)
                await self.sleep(2.0)
            else:
                await self.sleep(base_delay * 2 ** (attempt - 1))
        raise SessionValidationFailed(f"session {name} not WORKING after {max_retries} attempts (last: {result.get('status')})")

    async def reinitialize(self) -> bool:
        if self.is_logout_locked():
            return False
        if self.container is not None and not await self.check_reachability():
            await self.container.ensure_running()
        if not await self.check_reachability():
            return False
        self._generation += 1
        self.engine.reset()
        self.tracker.invalidate()
        try:
            await self.ensure_default_session()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record("reinitialize", e)
            return False
        return True

    # QR flow

    async def _revive(self, name: str, status: SessionStatus):
        if status == SessionStatus.FAILED:
            await self.client.restart_session(name)
        elif status == SessionStatus.STOPPED:
            await self.client.start_session(name)
        else:
            await self._create_session(name)
        self.tracker.invalidate(name)

    async def get_qr_code(self) -> Dict[str, Any]:
        name = self.session_name
        if self.is_logout_locked():
            raise SessionLocked(name)
        try:
            info = await self.tracker.get_info(name, fresh=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("qr_status_unavailable", session=name, error=response_message(e))
            info = {}
        status = SessionStatus.parse(info.get("status"))
        if status == SessionStatus.WORKING:
            return {"success": True, "already_connected": True, "user": describe_user(info)}
        if status == SessionStatus.STOPPED:
            await self.limiter.attempt(name, "initial-check", lambda: self._revive(name, SessionStatus.STOPPED))
        elif status in (SessionStatus.NOT_FOUND, SessionStatus.UNKNOWN):
            await self.limiter.attempt(name, "not-exists", lambda: self._revive(name, SessionStatus.NOT_FOUND))

        deadline = self.clock() + self.qr_timeout
        while self.clock() < deadline:
            status = await self.tracker.get_status_safe(name, fresh=True)
            if status in AUTHENTICATED_STATUSES:
                info = await self.tracker.get_info(name)
                self.start_auth_monitor(name)
                return {"success": True, "already_connected": True, "user": describe_user(info)}
            if status in (SessionStatus.STOPPED, SessionStatus.FAILED):
                await self.limiter.attempt(name, f"poll-{status.value.lower()}", lambda s=status: self._revive(name, s))
            elif status == SessionStatus.SCAN_QR_CODE:
                qr = await self.client.get_qr(name)
                self.start_auth_monitor(name)
                return {"success": True, "qr": qr, "status": status.value}
            await self.sleep(self.qr_poll_interval)
        raise QRNotReady("QR not ready yet")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session": self.session_name,
            "phase": self.phase.value,
            "logout_locked": self.is_logout_locked(),
            "webhook_ensured": self.engine.is_ensured(self.session_name),
            "monitoring": self.is_monitoring(),
            "webhook_urls": self.candidate_urls,
            "recovery": self.recovery.stats(),
        }

    async def shutdown(self):
        self._generation += 1
        self.engine.reset()
        await self._cancel_monitors()
