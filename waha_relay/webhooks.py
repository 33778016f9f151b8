import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from .logs import json_log
from .session_state import AUTHENTICATED_STATUSES, SessionStateTracker
from .waha_api import response_message

REQUIRED_EVENTS = ("message", "session.status", "message.any")
MINIMAL_EVENTS = ("message", "session.status")
DEFAULT_RETRIES = {"policy": "constant", "delaySeconds": 2, "attempts": 3}


class WebhookConvergenceFailed(Exception):
    pass


@dataclass
class ConvergenceResult:
    ensured: bool
    session: str
    method: Optional[str] = None
    cached: bool = False
    assumed: bool = False
    deferred: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, False) or k == "ensured"}


def webhook_payload(url: str, events: Sequence[str] = REQUIRED_EVENTS, retries: Optional[Dict[str, Any]] = DEFAULT_RETRIES) -> Dict[str, Any]:
    return {
        "url": url,
        "events": list(events),
        "hmac": None,
        "retries": dict(retries) if retries else None,
        "customHeaders": None,
    }


def matching_webhook(items: Iterable[Any], candidate_urls: Sequence[str], required_events: Sequence[str]) -> Optional[Dict[str, Any]]:
    """First registration whose URL is a candidate (case-insensitive) and whose events cover the required set."""
    wanted = {u.lower() for u in candidate_urls}
    needed = set(required_events)
    for item in items or []:
        if not isinstance(item, dict):
            continue
        url = str(item.get("url") or "").lower()
        events = set(item.get("events") or [])
        if url in wanted and needed.issubset(events):
            return item
    return None


Strategy = Callable[[Any, str, Sequence[str], Sequence[str]], Awaitable[str]]


async def via_webhooks_endpoint(client, session: str, candidate_urls: Sequence[str], events: Sequence[str]) -> str:
    """POST each candidate to the dedicated webhooks endpoint, degrading to the minimal event set once."""
    for url in candidate_urls:
        try:
            await client.post_webhook(session, webhook_payload(url, events))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("webhook_post_failed", session=session, url=url, error=response_message(e), level=logging.DEBUG)
            await client.post_webhook(session, webhook_payload(url, MINIMAL_EVENTS))
            return "webhooks_endpoint_minimal"
    return "webhooks_endpoint"


async def via_config_endpoint(client, session: str, candidate_urls: Sequence[str], events: Sequence[str]) -> str:
    """Write only the webhooks fragment of the session config."""
    await client.patch_session_config(session, {"webhooks": [webhook_payload(u, events) for u in candidate_urls]})
    return "config_endpoint"


# A full session PUT would also work on some gateway versions but restarts the session.
DEFAULT_STRATEGIES: Sequence[Strategy] = (via_webhooks_endpoint, via_config_endpoint)


class WebhookConvergenceEngine:
    def __init__(
        self,
        client,
        tracker: SessionStateTracker,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
        on_ensured: Optional[Callable[[ConvergenceResult], Any]] = None,
    ):
        self.client = client
        self.tracker = tracker
        self.strategies = list(strategies)
        self.on_ensured = on_ensured
        self._ensured: Set[str] = set()
        self._inflight: Dict[str, "asyncio.Task[ConvergenceResult]"] = {}

    def is_ensured(self, session: str) -> bool:
        return session in self._ensured

    def reset(self, session: Optional[str] = None):
        """Forget ensured state and cancel any convergence still running for the session."""
        for name in list(self._inflight) if session is None else [session]:
            task = self._inflight.pop(name, None)
            if task is not None and not task.done():
                task.cancel()
                json_log("webhook_convergence_cancelled", session=name)
        if session is None:
            self._ensured.clear()
        else:
            self._ensured.discard(session)

    async def verify(self, session: str, candidate_urls: Sequence[str], events: Sequence[str] = REQUIRED_EVENTS) -> bool:
        try:
            if matching_webhook(await self.client.get_webhooks(session), candidate_urls, events):
                return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("webhook_list_failed", session=session, error=response_message(e), level=logging.DEBUG)
        try:
            info = await self.tracker.get_info(session, fresh=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("webhook_verify_info_failed", session=session, error=response_message(e), level=logging.DEBUG)
            return False
        config = info.get("config") or {}
        items: List[Any] = list(config.get("webhooks") or [])
        if isinstance(config.get("webhook"), dict):
            items.append(config["webhook"])
        return matching_webhook(items, candidate_urls, events) is not None

    async def ensure(self, session: str, candidate_urls: Sequence[str], required_events: Sequence[str] = REQUIRED_EVENTS) -> ConvergenceResult:
        try:
            status = await self.tracker.get_status(session)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("webhook_ensure_deferred", session=session, reason="no session info", error=str(e))
            return ConvergenceResult(ensured=False, session=session, deferred=True, reason="no session info")
        if status not in AUTHENTICATED_STATUSES:
            json_log("webhook_ensure_deferred", session=session, status=status.value)
            return ConvergenceResult(ensured=False, session=session, deferred=True, reason=f"session {status.value}")

        task = self._inflight.get(session)
        if task is None or task.done():
            task = asyncio.ensure_future(self._converge(session, list(candidate_urls), list(required_events)))
            self._inflight[session] = task
            task.add_done_callback(lambda t, s=session: self._inflight.pop(s, None) if self._inflight.get(s) is t else None)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Only a reset cancels the shared task; a cancelled caller leaves it running
            if not task.cancelled():
                raise
            return ConvergenceResult(ensured=False, session=session, reason="cancelled")

    async def _converge(self, session: str, urls: List[str], events: List[str]) -> ConvergenceResult:
        if session in self._ensured:
            if await self.verify(session, urls, events):
                return ConvergenceResult(ensured=True, session=session, method="cache", cached=True)
            json_log("webhook_cache_stale", session=session)
            self._ensured.discard(session)
        elif await self.verify(session, urls, events):
            return self.mark_ensured(ConvergenceResult(ensured=True, session=session, method="existing"))

        for strategy in self.strategies:
            name = getattr(strategy, "__name__", "strategy")
            raised = False
            try:
                method = await strategy(self.client, session, urls, events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raised = True
                method = name
                json_log("webhook_strategy_failed", session=session, strategy=name, error=response_message(e))
            if await self.verify(session, urls, events):
                return self.mark_ensured(ConvergenceResult(ensured=True, session=session, method=method, assumed=raised))

        if await self.verify(session, urls, events):
            return self.mark_ensured(ConvergenceResult(ensured=True, session=session, method="final_verify", assumed=True))
        json_log("webhook_convergence_failed", session=session, urls=urls, level=logging.WARNING)
        raise WebhookConvergenceFailed(f"could not register webhook for session {session}")

    def mark_ensured(self, result: ConvergenceResult) -> ConvergenceResult:
        self._ensured.add(result.session)
        json_log("webhook_ensured", **result.to_dict())
        if self.on_ensured is not None:
            self.on_ensured(result)
        return result
