import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .logs import json_log
from .waha_api import is_already_exists

Key = Tuple[str, str]


class BackoffAttemptLimiter:
    """
    Bounded exponential backoff per (session, context). Each call makes at most one
    attempt; callers such as poll loops drive the repetition. Once the budget is
    spent further calls are no-ops until the episode expires or is cleared.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        episode_ttl: float = 300.0,
        on_give_up: Optional[Callable[[str, str, BaseException], Any]] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock
        self.episode_ttl = episode_ttl
        self.on_give_up = on_give_up
        self._counts: Dict[Key, int] = {}
        self._exhausted_at: Dict[Key, float] = {}

    def attempts(self, session: str, context: str) -> int:
        return self._counts.get((session, context), 0)

    def clear(self, session: str, context: str):
        self._counts.pop((session, context), None)
        self._exhausted_at.pop((session, context), None)

    def reset(self):
        self._counts.clear()
        self._exhausted_at.clear()

    def _expire(self, key: Key):
        at = self._exhausted_at.get(key)
        if at is not None and self.clock() - at >= self.episode_ttl:
            self.clear(*key)

    async def attempt(self, session: str, context: str, action: Callable[[], Awaitable[Any]]) -> bool:
        key = (session, context)
        self._expire(key)
        count = self._counts.get(key, 0)
        if count >= self.max_attempts:
            json_log("backoff_exhausted_skip", session=session, context=context, attempts=count)
            return False

        self._counts[key] = count + 1
        delay = self.base_delay * (2 ** count)
        json_log("backoff_attempt", session=session, context=context, attempt=count + 1, delay=delay)
        await self.sleep(delay)
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_already_exists(e):
                json_log("backoff_already_exists", session=session, context=context)
                self.clear(session, context)
                return True
            if count + 1 >= self.max_attempts:
                json_log("backoff_gave_up", session=session, context=context, attempts=count + 1, error=str(e))
                self._exhausted_at[key] = self.clock()
                if self.on_give_up is not None:
                    self.on_give_up(session, context, e)
            else:
                json_log("backoff_attempt_failed", session=session, context=context, attempt=count + 1, error=str(e))
            return False
        self.clear(session, context)
        return True
