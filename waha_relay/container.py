import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .logs import json_log


class ContainerLifecycleManager:
    """
    Keeps a local docker container for the gateway running. Only consulted when
    the gateway refuses connections.
    """

    def __init__(
        self,
        name: str = "waha",
        image: str = "devlikeapro/waha",
        port: int = 3000,
        probe: Optional[Callable[[], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        ready_timeout: float = 60.0,
    ):
        self.name = name
        self.image = image
        self.port = port
        self.probe = probe
        self.sleep = sleep
        self.ready_timeout = ready_timeout

    async def _docker(self, *args: str) -> Tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            "docker", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return proc.returncode, stdout.decode("utf-8", "ignore").strip(), stderr.decode("utf-8", "ignore").strip()

    async def get_status(self) -> Dict[str, Any]:
        try:
            code, out, err = await self._docker("inspect", "-f", "{{.State.Status}}", self.name)
        except FileNotFoundError:
            json_log("docker_missing", level=logging.WARNING)
            return {"exists": False, "is_running": False, "status": "docker_unavailable"}
        if code != 0:
            return {"exists": False, "is_running": False, "status": "not_found"}
        return {"exists": True, "is_running": out == "running", "status": out}

    async def start_existing(self) -> bool:
        code, _, err = await self._docker("start", self.name)
        if code != 0:
            json_log("container_start_failed", name=self.name, stderr=err[:300])
        return code == 0

    async def create_and_start(self) -> bool:
        args: List[str] = ["run", "-d", "--name", self.name, "-p", f"{self.port}:3000", "--restart", "unless-stopped", self.image]
        code, _, err = await self._docker(*args)
        if code != 0:
            json_log("container_create_failed", name=self.name, stderr=err[:300])
        return code == 0

    async def wait_until_ready(self) -> bool:
        if self.probe is None:
            return True
        waited = 0.0
        while waited < self.ready_timeout:
            try:
                await self.probe()
                return True
            except asyncio.CancelledError:
                raise
            except Exception:
                await self.sleep(2.0)
                waited += 2.0
        json_log("container_not_ready", name=self.name, waited=waited, level=logging.WARNING)
        return False

    async def ensure_running(self) -> bool:
        status = await self.get_status()
        if status["is_running"]:
            return True
        if status["status"] == "docker_unavailable":
            return False
        json_log("container_starting", name=self.name, existing=status["exists"])
        ok = await (self.start_existing() if status["exists"] else self.create_and_start())
        if not ok:
            return False
        return await self.wait_until_ready()
