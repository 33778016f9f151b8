import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from waha_relay.recovery import ErrorKind, ErrorRecovery, SessionNotWorking, classify
from tests.conftest import http_error


@pytest.mark.parametrize(
    "error,kind",
    [
        (http_error(422, "Session 'default' already exists"), ErrorKind.CONFLICT_ALREADY_EXISTS),
        (http_error(422, "Unprocessable"), ErrorKind.UNKNOWN),
        (httpx.ConnectError("[Errno 111] Connection refused"), ErrorKind.CONNECTION_REFUSED),
        (RuntimeError("connect ECONNREFUSED 127.0.0.1:3000"), ErrorKind.CONNECTION_REFUSED),
        (httpx.ReadTimeout("read timed out"), ErrorKind.TIMEOUT),
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (RuntimeError("ETIMEDOUT"), ErrorKind.TIMEOUT),
        (SessionNotWorking("default"), ErrorKind.SESSION_NOT_WORKING),
        (http_error(400, "Session status is not working"), ErrorKind.SESSION_NOT_WORKING),
        (ValueError("odd"), ErrorKind.UNKNOWN),
    ],
)
def test_classify(error, kind):
    assert classify(error) == kind


def make_orchestrator():
    orch = MagicMock()
    orch.session_name = "default"
    orch.restart_session = AsyncMock(return_value={})
    orch.recreate_session_with_webhook = AsyncMock(return_value="created")
    orch.check_reachability = AsyncMock(return_value=True)
    orch.reinitialize = AsyncMock(return_value=True)
    return orch


async def test_conflict_restarts_session(clock):
    orch = make_orchestrator()
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)
    outcome = await recovery.handle(http_error(422, "already exists"), {"session": "default"})
    assert outcome.kind == ErrorKind.CONFLICT_ALREADY_EXISTS
    assert outcome.recovered
    orch.restart_session.assert_awaited_once_with("default")


async def test_connection_refused_starts_stopped_container(clock):
    orch = make_orchestrator()
    container = MagicMock()
    container.get_status = AsyncMock(return_value={"exists": True, "is_running": False, "status": "exited"})
    container.ensure_running = AsyncMock(return_value=True)
    recovery = ErrorRecovery(orch, container=container, clock=clock, sleep=clock.sleep)

    outcome = await recovery.handle(httpx.ConnectError("refused"))
    assert outcome.recovered
    container.ensure_running.assert_awaited_once()
    orch.restart_session.assert_not_awaited()


async def test_connection_refused_with_running_container_restarts_session(clock):
    orch = make_orchestrator()
    container = MagicMock()
    container.get_status = AsyncMock(return_value={"exists": True, "is_running": True, "status": "running"})
    container.ensure_running = AsyncMock()
    recovery = ErrorRecovery(orch, container=container, clock=clock, sleep=clock.sleep)

    outcome = await recovery.handle(httpx.ConnectError("refused"))
    assert outcome.recovered
    container.ensure_running.assert_not_awaited()
    orch.restart_session.assert_awaited_once()


async def test_timeout_retries_operation_after_bounded_sleep(clock):
    orch = make_orchestrator()
    operation = AsyncMock()
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)

    outcome = await recovery.handle(httpx.ReadTimeout("slow"), {"timeout": 30, "operation": operation})
    assert outcome.recovered
    assert clock.sleeps == [10.0]
    operation.assert_awaited_once()


async def test_timeout_without_operation_reinitializes_when_unreachable(clock):
    orch = make_orchestrator()
    orch.check_reachability.return_value = False
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)

    outcome = await recovery.handle(httpx.ConnectTimeout("slow"), {"timeout": 5})
    assert clock.sleeps == [5.0]
    assert outcome.recovered
    orch.reinitialize.assert_awaited_once()


async def test_session_not_working_falls_back_to_restart(clock):
    orch = make_orchestrator()
    orch.recreate_session_with_webhook.side_effect = RuntimeError("delete failed")
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)

    outcome = await recovery.handle(SessionNotWorking("default"))
    assert outcome.recovered
    orch.restart_session.assert_awaited_once_with("default")


async def test_budget_per_kind_and_window(clock):
    orch = make_orchestrator()
    orch.recreate_session_with_webhook.side_effect = RuntimeError("no")
    orch.restart_session.side_effect = RuntimeError("no")
    gave_up = []
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep, on_give_up=lambda k, e: gave_up.append(k))

    outcomes = [await recovery.handle(SessionNotWorking("x")) for _ in range(5)]
    assert [o.handled for o in outcomes] == [True, True, True, False, False]
    assert not any(o.recovered for o in outcomes)
    assert gave_up == [ErrorKind.SESSION_NOT_WORKING]
    assert orch.recreate_session_with_webhook.await_count == 3
    assert recovery.stats()["counts"]["SESSION_NOT_WORKING"] == 5

    clock.now += 301
    assert recovery.stats()["counts"] == {}
    assert (await recovery.handle(SessionNotWorking("x"))).handled


async def test_success_resets_kind_count(clock):
    orch = make_orchestrator()
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)
    await recovery.handle(http_error(422, "already exists"))
    assert recovery.stats()["counts"] == {}


async def test_unknown_has_no_strategy_and_custom_ones_can_be_registered(clock):
    orch = make_orchestrator()
    recovery = ErrorRecovery(orch, clock=clock, sleep=clock.sleep)
    outcome = await recovery.handle(ValueError("odd"))
    assert outcome.kind == ErrorKind.UNKNOWN and not outcome.handled

    custom = AsyncMock(return_value=True)
    recovery.register(ErrorKind.UNKNOWN, custom)
    assert (await recovery.handle(ValueError("odd"))).recovered
    recovery.remove(ErrorKind.UNKNOWN)
    assert "UNKNOWN" not in recovery.stats()["strategies"]
