"""Lifecycle supervision and capacity-gated checkout of inference backends.

Each configured backend gets a :class:`BackendHandle` and a dedicated
supervising task that drives its state machine::

    Stopped -> Starting -> Ready <-> Degraded -> Dead -> Restarting -> Starting
                                                   \\-> Dead (permanent)

Request-handling tasks never touch processes directly. They obtain a
:class:`BackendSlot` from :meth:`BackendSupervisor.checkout`, which admits at
most ``capacity`` concurrent slots per backend and only on ``Ready`` backends.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import numpy as np

from voxline.backends.base import BackendTransport, InferenceRequest, InferenceResponse
from voxline.config import BackendConfig
from voxline.errors import (
    BackendCrashed,
    BackendUnavailable,
    InferenceTimeout,
    VoxlineError,
)

__all__ = ["BackendState", "BackendHandle", "BackendSlot", "BackendSupervisor"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransportFactory = Callable[[BackendConfig], BackendTransport]


class BackendState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    DEAD = "dead"
    RESTARTING = "restarting"


class BackendHandle:
    """Supervisor-owned state of one backend process.

    Attributes:
        config: Static backend configuration.
        transport: Process/container handle.
        state: Current lifecycle state.
        active: Number of slots currently checked out.
        consecutive_failures: Failed requests/heartbeats since the last success.
        restarts: Relaunches since the last successful inference.
        permanent: ``True`` once the restart budget is exhausted.
    """

    def __init__(self, config: BackendConfig, transport: BackendTransport) -> None:
        self.config = config
        self.transport = transport
        self.state = BackendState.STOPPED
        self.active = 0
        self.consecutive_failures = 0
        self.restarts = 0
        self.permanent = False
        self.last_used = 0.0
        self.crashed = asyncio.Event()
        self.wake = asyncio.Event()
        self.start_requested = asyncio.Event()
        self.exit_task: asyncio.Task | None = None
        self.task: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def has_capacity(self) -> bool:
        return self.state is BackendState.READY and self.active < self.config.capacity

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.config.role,
            "state": self.state.value,
            "active": self.active,
            "capacity": self.config.capacity,
            "restarts": self.restarts,
            "permanent": self.permanent,
        }

    def __repr__(self) -> str:
        return f"BackendHandle({self.name!r}, {self.state.value}, {self.active}/{self.config.capacity})"


class BackendSlot:
    """A checked-out capacity slot on one backend."""

    def __init__(self, supervisor: BackendSupervisor, handle: BackendHandle) -> None:
        self._supervisor = supervisor
        self._handle = handle

    @property
    def backend(self) -> str:
        return self._handle.name

    async def synthesize(self, request: InferenceRequest) -> InferenceResponse:
        return await self._supervisor._invoke(
            self._handle, lambda: self._handle.transport.synthesize(request)
        )

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        return await self._supervisor._invoke(
            self._handle, lambda: self._handle.transport.transcribe(samples, sample_rate)
        )


class BackendSupervisor:
    """Own the backend processes and broker access to them.

    Args:
        configs: Backend configurations.
        transport_factory: Builds a transport for each config; defaults to
            :func:`create_transport`.
        checkout_timeout_s: Default checkout deadline.
        probe_interval_s: Poll interval while waiting for a starting backend.
    """

    def __init__(
        self,
        configs: Sequence[BackendConfig],
        *,
        transport_factory: TransportFactory | None = None,
        checkout_timeout_s: float = 30.0,
        probe_interval_s: float = 0.3,
    ) -> None:
        if transport_factory is None:
            from voxline.backends.registry import create_transport

            transport_factory = create_transport
        self.checkout_timeout_s = checkout_timeout_s
        self.probe_interval_s = probe_interval_s
        self._handles = [BackendHandle(cfg, transport_factory(cfg)) for cfg in configs]
        self._changed = asyncio.Event()
        self._running = False

    # ----- introspection -------------------------------------------------
    def handles(self, role: str | None = None) -> list[BackendHandle]:
        return [h for h in self._handles if role is None or h.config.role == role]

    def handle(self, name: str) -> BackendHandle:
        for h in self._handles:
            if h.name == name:
                return h
        raise KeyError(f"Unknown backend: {name}")

    def has_role(self, role: str) -> bool:
        return any(h.config.role == role for h in self._handles)

    def snapshot(self) -> list[dict[str, Any]]:
        return [h.snapshot() for h in self._handles]

    # ----- lifecycle -----------------------------------------------------
    async def start(self) -> None:
        """Spawn one supervising task per backend. Returns without waiting for readiness."""

        if self._running:
            return
        self._running = True
        for h in self._handles:
            if not h.config.lazy_start:
                h.start_requested.set()
            h.task = asyncio.create_task(self._supervise(h), name=f"supervise-{h.name}")

    async def stop(self) -> None:
        """Cancel supervision, stop every process and fail in-flight calls."""

        if not self._running:
            return
        self._running = False
        tasks = [h.task for h in self._handles if h.task is not None]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for h in self._handles:
            h.task = None
            self._set_state(h, BackendState.STOPPED)
            h.crashed.set()
            await self._shutdown_process(h)
            await h.transport.aclose()
        logger.info("Backend supervisor stopped")

    async def wait_ready(self, role: str, timeout: float | None = None) -> None:
        """Wait until some backend of ``role`` is Ready.

        Raises:
            BackendUnavailable: If none becomes Ready in time.
        """

        async with self.checkout(role, timeout=timeout):
            pass

    def _set_state(self, h: BackendHandle, state: BackendState) -> None:
        if h.state is state:
            return
        level = logging.WARNING if state is BackendState.DEAD else logging.INFO
        logger.log(level, "Backend %s: %s -> %s", h.name, h.state.value, state.value)
        h.state = state
        if state is BackendState.DEAD:
            h.crashed.set()
        self._notify()

    def _notify(self) -> None:
        """Wake every checkout waiter; they re-evaluate and wait on a fresh event."""

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # ----- supervision ---------------------------------------------------
    async def _supervise(self, h: BackendHandle) -> None:
        loop = asyncio.get_running_loop()
        while True:
            if h.state is BackendState.STOPPED:
                await h.start_requested.wait()
                h.start_requested.clear()
                self._set_state(h, BackendState.STARTING)
            elif h.state is BackendState.STARTING:
                if await self._launch(h):
                    h.last_used = loop.time()
                    self._set_state(h, BackendState.READY)
                    await self._monitor(h)
                else:
                    self._set_state(h, BackendState.DEAD)
            elif h.state is BackendState.DEAD:
                await self._shutdown_process(h)
                if h.restarts >= h.config.max_restarts:
                    h.permanent = True
                    logger.error(
                        "Backend %s exhausted its restart budget (%d); marked unavailable",
                        h.name,
                        h.config.max_restarts,
                    )
                    self._notify()
                    return
                backoff = h.config.restart_backoff_s
                delay = backoff[min(h.restarts, len(backoff) - 1)]
                h.restarts += 1
                self._set_state(h, BackendState.RESTARTING)
                await asyncio.sleep(delay)
                self._set_state(h, BackendState.STARTING)
            else:
                # READY/DEGRADED left by _monitor without a transition
                await self._monitor(h)

    async def _launch(self, h: BackendHandle) -> bool:
        """Start the process and poll its health endpoint until ready."""

        h.crashed = asyncio.Event()
        h.consecutive_failures = 0
        try:
            await h.transport.start()
        except (OSError, VoxlineError) as exc:
            logger.warning("Backend %s failed to start: %s", h.name, exc)
            return False
        h.exit_task = asyncio.create_task(h.transport.wait_exit(), name=f"exit-{h.name}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + h.config.startup_timeout_s
        while loop.time() < deadline:
            if h.exit_task.done():
                logger.warning("Backend %s exited during startup (code %s)", h.name, _exit_code(h.exit_task))
                return False
            if await h.transport.probe():
                return True
            await asyncio.sleep(self.probe_interval_s)
        logger.warning("Backend %s not ready after %.1fs", h.name, h.config.startup_timeout_s)
        return False

    async def _monitor(self, h: BackendHandle) -> None:
        """Heartbeat a running backend until it dies, goes idle or is stopped."""

        loop = asyncio.get_running_loop()
        cfg = h.config
        next_probe = loop.time() + cfg.heartbeat_interval_s
        while h.state in (BackendState.READY, BackendState.DEGRADED):
            now = loop.time()
            wait_s = max(0.0, next_probe - now)
            if cfg.idle_timeout_s is not None and h.active == 0:
                idle_left = cfg.idle_timeout_s - (now - h.last_used)
                if idle_left <= 0:
                    logger.info("Backend %s idle for %.0fs; stopping", h.name, cfg.idle_timeout_s)
                    self._set_state(h, BackendState.STOPPED)
                    await self._shutdown_process(h)
                    return
                wait_s = min(wait_s, idle_left)

            h.wake.clear()
            waker = asyncio.ensure_future(h.wake.wait())
            watch: set[asyncio.Future] = {waker}
            if h.exit_task is not None:
                watch.add(h.exit_task)
            try:
                await asyncio.wait(watch, timeout=wait_s, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waker.cancel()

            if h.exit_task is not None and h.exit_task.done():
                logger.warning("Backend %s crashed (exit code %s)", h.name, _exit_code(h.exit_task))
                self._set_state(h, BackendState.DEAD)
                return
            if h.state is BackendState.DEAD:
                return
            woke = h.wake.is_set() and h.state is BackendState.DEGRADED
            if woke or loop.time() >= next_probe:
                next_probe = loop.time() + cfg.heartbeat_interval_s
                if await h.transport.probe():
                    if h.state is BackendState.DEGRADED:
                        self._set_state(h, BackendState.READY)
                else:
                    self._record_failure(h, "missed heartbeat")

    async def _shutdown_process(self, h: BackendHandle) -> None:
        exit_task, h.exit_task = h.exit_task, None
        if exit_task is not None and not exit_task.done():
            exit_task.cancel()
        try:
            await h.transport.stop()
        except (OSError, VoxlineError) as exc:
            logger.warning("Stopping backend %s failed: %s", h.name, exc)

    # ----- failure accounting ------------------------------------------
    def _record_failure(self, h: BackendHandle, reason: str) -> None:
        if h.state not in (BackendState.READY, BackendState.DEGRADED):
            return
        h.consecutive_failures += 1
        logger.warning(
            "Backend %s failure %d/%d: %s",
            h.name,
            h.consecutive_failures,
            h.config.max_consecutive_failures,
            reason,
        )
        if h.consecutive_failures >= h.config.max_consecutive_failures:
            self._set_state(h, BackendState.DEAD)
        else:
            self._set_state(h, BackendState.DEGRADED)
        h.wake.set()

    def _record_success(self, h: BackendHandle) -> None:
        h.consecutive_failures = 0
        h.restarts = 0
        if h.state is BackendState.DEGRADED:
            self._set_state(h, BackendState.READY)

    # ----- checkout ------------------------------------------------------
    def _pick(self, role: str) -> BackendHandle | None:
        if not self._running:
            raise BackendUnavailable("Backend supervisor is not running")
        handles = self.handles(role)
        if not handles:
            raise BackendUnavailable(f"No '{role}' backend configured")
        if all(h.permanent for h in handles):
            raise BackendUnavailable(f"All '{role}' backends are permanently unavailable")
        ready = [h for h in handles if h.has_capacity]
        if not ready:
            for h in handles:
                if h.state is BackendState.STOPPED:
                    h.start_requested.set()
            return None
        return min(ready, key=lambda h: (h.active / h.config.capacity, h.name))

    @asynccontextmanager
    async def checkout(self, role: str, *, timeout: float | None = None) -> AsyncIterator[BackendSlot]:
        """Hold one capacity slot on a Ready backend of ``role``.

        Suspends the calling task until a slot frees up.

        Raises:
            BackendUnavailable: If no slot is acquired within ``timeout``
                (default :attr:`checkout_timeout_s`), or no backend of the
                role can ever become Ready.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self.checkout_timeout_s if timeout is None else timeout)
        while True:
            h = self._pick(role)
            if h is not None:
                break
            changed = self._changed
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BackendUnavailable(f"No '{role}' backend became available in time")
            try:
                await asyncio.wait_for(changed.wait(), remaining)
            except TimeoutError:
                raise BackendUnavailable(f"No '{role}' backend became available in time") from None

        h.active += 1
        h.last_used = loop.time()
        try:
            yield BackendSlot(self, h)
        finally:
            h.active -= 1
            h.last_used = loop.time()
            self._notify()

    async def _invoke(self, h: BackendHandle, call: Callable[[], Awaitable[T]]) -> T:
        """Run one inference call against ``h`` racing its crash signal and deadline."""

        crashed = h.crashed
        if crashed.is_set():
            raise BackendCrashed(f"Backend {h.name} is not running")
        work = asyncio.ensure_future(call())
        crash_wait = asyncio.ensure_future(crashed.wait())
        try:
            done, _ = await asyncio.wait(
                {work, crash_wait},
                timeout=h.config.inference_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            crash_wait.cancel()
            if not work.done():
                work.cancel()

        if work in done:
            try:
                result = work.result()
            except VoxlineError as exc:
                if crashed.is_set() or (h.exit_task is not None and h.exit_task.done()):
                    raise BackendCrashed(f"Backend {h.name} terminated during inference") from exc
                self._record_failure(h, str(exc))
                raise
            self._record_success(h)
            return result
        if crash_wait in done:
            raise BackendCrashed(f"Backend {h.name} terminated during inference")
        self._record_failure(h, "inference timeout")
        raise InferenceTimeout(f"Backend {h.name} exceeded {h.config.inference_timeout_s:.1f}s")


def _exit_code(task: asyncio.Task) -> Any:
    if task.cancelled():
        return None
    exc = task.exception()
    return exc if exc is not None else task.result()
