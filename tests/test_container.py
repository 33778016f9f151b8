import asyncio
from unittest.mock import AsyncMock

from waha_relay.container import ContainerLifecycleManager


def make_manager(responses, probe=None, clock=None):
    manager = ContainerLifecycleManager(name="waha", probe=probe, sleep=clock.sleep if clock else asyncio.sleep)
    manager._docker = AsyncMock(side_effect=responses)
    return manager


async def test_running_container_is_left_alone():
    manager = make_manager([(0, "running", "")])
    assert await manager.ensure_running() is True
    assert manager._docker.await_count == 1


async def test_exited_container_is_started_and_probed(clock):
    probe = AsyncMock(side_effect=[RuntimeError("not yet"), []])
    manager = make_manager([(0, "exited", ""), (0, "waha", "")], probe=probe, clock=clock)
    assert await manager.ensure_running() is True
    assert manager._docker.await_args_list[1].args == ("start", "waha")
    assert clock.sleeps == [2.0]


async def test_missing_container_is_created():
    manager = make_manager([(1, "", "No such object"), (0, "abc123", "")])
    assert await manager.ensure_running() is True
    args = manager._docker.await_args_list[1].args
    assert args[:4] == ("run", "-d", "--name", "waha")
    assert args[-1] == "devlikeapro/waha"


async def test_missing_docker_binary():
    manager = make_manager([FileNotFoundError("docker")])
    assert await manager.get_status() == {"exists": False, "is_running": False, "status": "docker_unavailable"}
    manager._docker = AsyncMock(side_effect=[FileNotFoundError("docker")])
    assert await manager.ensure_running() is False
