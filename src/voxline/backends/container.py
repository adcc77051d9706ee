"""Backend running inside a Docker container driven through the CLI."""

from __future__ import annotations

import asyncio
import logging

import httpx

from voxline.backends.http import HttpBackendTransport
from voxline.config import BackendConfig

__all__ = ["ContainerTransport"]

logger = logging.getLogger(__name__)


class ContainerTransport(HttpBackendTransport):
    """Run ``config.image`` with ``docker run -d --gpus all`` and publish its port."""

    def __init__(
        self,
        config: BackendConfig,
        *,
        client: httpx.AsyncClient | None = None,
        docker: str = "docker",
        gpus: str | None = "all",
    ) -> None:
        super().__init__(config, client=client)
        self.docker = docker
        self.gpus = gpus
        self.container_id: str | None = None

    def run_args(self) -> list[str]:
        """Return the ``docker run`` argv for this backend."""

        if not self.config.image:
            raise OSError(f"Backend '{self.config.name}' has no image configured")
        args = [self.docker, "run", "-d", "--rm", "--name", f"voxline-{self.config.name}"]
        if self.gpus:
            args += ["--gpus", self.gpus]
        args += ["-p", f"{self.config.port}:{self.config.port}"]
        for key, value in sorted(self.config.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(self.config.image)
        args += list(self.config.command)
        return args

    async def _docker(self, *args: str) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
        if proc.returncode != 0:
            logger.debug("%s failed: %s", " ".join(args[:2]), err.decode(errors="replace").strip())
        return proc.returncode or 0, out.decode(errors="replace").strip()

    async def start(self) -> None:
        code, out = await self._docker(*self.run_args())
        if code != 0 or not out:
            raise OSError(f"docker run for backend '{self.config.name}' exited with {code}")
        self.container_id = out.splitlines()[-1]
        logger.info("Started container %s for backend %s", self.container_id[:12], self.config.name)

    async def wait_exit(self) -> int | None:
        if self.container_id is None:
            return None
        code, out = await self._docker(self.docker, "wait", self.container_id)
        if code != 0:
            # container already gone (--rm)
            return None
        try:
            return int(out.splitlines()[-1])
        except (ValueError, IndexError):
            return None

    async def stop(self) -> None:
        cid, self.container_id = self.container_id, None
        if cid is None:
            return
        code, _ = await self._docker(self.docker, "stop", cid)
        if code != 0:
            logger.warning("docker stop %s exited with %d", cid[:12], code)
