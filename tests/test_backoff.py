from waha_relay.backoff import BackoffAttemptLimiter
from tests.conftest import http_error


def make_limiter(clock, **kwargs):
    return BackoffAttemptLimiter(sleep=clock.sleep, clock=clock, **kwargs)


async def test_budget_is_exhausted_after_three_failures(clock):
    gave_up = []
    limiter = make_limiter(clock, on_give_up=lambda s, c, e: gave_up.append((s, c, str(e))))
    calls = []

    async def action():
        calls.append(1)
        raise RuntimeError("still failing")

    results = [await limiter.attempt("default", "poll-failed", action) for _ in range(4)]

    assert results == [False, False, False, False]
    assert len(calls) == 3
    assert clock.sleeps == [1.0, 2.0, 4.0]
    assert gave_up == [("default", "poll-failed", "still failing")]
    assert limiter.attempts("default", "poll-failed") == 3


async def test_success_clears_counter(clock):
    limiter = make_limiter(clock)
    outcomes = iter([RuntimeError("first"), None])

    async def action():
        err = next(outcomes)
        if err:
            raise err

    assert await limiter.attempt("default", "not-exists", action) is False
    assert limiter.attempts("default", "not-exists") == 1
    assert await limiter.attempt("default", "not-exists", action) is True
    assert limiter.attempts("default", "not-exists") == 0


async def test_already_exists_counts_as_success(clock):
    limiter = make_limiter(clock)

    async def action():
        raise http_error(422, "Session 'default' already exists")

    assert await limiter.attempt("default", "not-exists", action) is True
    assert limiter.attempts("default", "not-exists") == 0


async def test_contexts_are_independent(clock):
    limiter = make_limiter(clock, max_attempts=1)

    async def action():
        raise RuntimeError("nope")

    await limiter.attempt("default", "initial-check", action)
    assert limiter.attempts("default", "initial-check") == 1
    assert limiter.attempts("default", "poll-stopped") == 0


async def test_exhausted_episode_expires(clock):
    limiter = make_limiter(clock, episode_ttl=300)
    calls = []

    async def action():
        calls.append(1)
        raise RuntimeError("down")

    for _ in range(3):
        await limiter.attempt("default", "poll-stopped", action)
    clock.now += 301
    await limiter.attempt("default", "poll-stopped", action)
    assert len(calls) == 4
    assert limiter.attempts("default", "poll-stopped") == 1
