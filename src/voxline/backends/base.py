"""Inference contract and transport capability interface for backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass(frozen=True, slots=True)
class InferenceRequest:
    """One synthesis call.

    Attributes:
        text: Canonical dialogue text.
        voice: Voice name.
        location: Voice location (``"global"`` or a game name).
        params: Backend voice parameters (reference sample, language, ...).
    """

    text: str
    voice: str
    location: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InferenceResponse:
    """Raw waveform returned by a synthesis backend."""

    samples: np.ndarray
    sample_rate: int


class BackendTransport:
    """Abstract process/container handle for one inference backend.

    The supervisor drives the lifecycle (``start``/``probe``/``wait_exit``/
    ``stop``); checked-out slots issue ``synthesize`` and ``transcribe``.
    Subclasses must override every method except :meth:`aclose`.
    """

    async def start(self) -> None:
        """Launch the backend process. Must return without waiting for readiness.

        Raises:
            OSError: If the process cannot be spawned.
            NotImplementedError: If the subclass does not override this method.
        """

        raise NotImplementedError

    async def stop(self) -> None:
        """Terminate the backend process. Idempotent."""

        raise NotImplementedError

    async def probe(self) -> bool:
        """Return ``True`` when the backend answers its health check. Never raises."""

        raise NotImplementedError

    async def wait_exit(self) -> int | None:
        """Block until the running process exits and return its exit code."""

        raise NotImplementedError

    async def synthesize(self, request: InferenceRequest) -> InferenceResponse:
        """Synthesize ``request``.

        Raises:
            InferenceFailed: If the backend reports an error.
            InferenceTimeout: If the transport gave up waiting.
        """

        raise NotImplementedError

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        """Return the transcript of ``samples``.

        Raises:
            InferenceFailed: If the backend reports an error.
        """

        raise NotImplementedError

    async def aclose(self) -> None:
        """Release client resources held across restarts."""

        return None
