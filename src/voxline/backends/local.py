"""Backend running as a local child process."""

from __future__ import annotations

import asyncio
import logging
import os
import signal

import httpx

from voxline.backends.http import HttpBackendTransport
from voxline.config import BackendConfig

__all__ = ["LocalProcessTransport"]

logger = logging.getLogger(__name__)


class LocalProcessTransport(HttpBackendTransport):
    """Spawn ``config.command`` in its own session and talk HTTP to it.

    The process group is signalled on stop so helper processes spawned by the
    inference server go down with it.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        client: httpx.AsyncClient | None = None,
        stop_timeout_s: float = 8.0,
    ) -> None:
        super().__init__(config, client=client)
        self.stop_timeout_s = stop_timeout_s
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> None:
        if not self.config.command:
            raise OSError(f"Backend '{self.config.name}' has no command configured")
        if self._proc is not None and self._proc.returncode is None:
            return
        env = os.environ.copy()
        env.update(self.config.env)
        self._proc = await asyncio.create_subprocess_exec(
            *self.config.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
            env=env,
        )
        logger.info("Spawned backend %s (pid %d)", self.config.name, self._proc.pid)

    async def wait_exit(self) -> int | None:
        if self._proc is None:
            return None
        return await self._proc.wait()

    async def stop(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), self.stop_timeout_s)
        except TimeoutError:
            logger.warning("Backend %s ignored SIGTERM; killing", self.config.name)
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            except ProcessLookupError:
                return
            await proc.wait()
