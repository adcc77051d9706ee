"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
from pathlib import Path

import numpy as np
import soundfile as sf

from voxline.backends.base import BackendTransport, InferenceRequest, InferenceResponse
from voxline.config import BackendConfig


def sine(sr: int = 24000, seconds: float = 1.0, freq: float = 440.0, amp: float = 0.3) -> np.ndarray:
    t = np.arange(int(sr * seconds)) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class FakeTransport(BackendTransport):
    """In-process stand-in for a backend process."""

    def __init__(self, config: BackendConfig, *, sample_rate: int = 24000) -> None:
        self.config = config
        self.sample_rate = sample_rate
        self.running = False
        self.healthy = True
        self.fail_start = False
        self.starts = 0
        self.stops = 0
        self.requests: list[InferenceRequest] = []
        self.transcripts: list[str] = []
        self.errors: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.transcript: str | None = None
        self.response: np.ndarray | None = None
        self._exit: asyncio.Event | None = None

    @property
    def synth_calls(self) -> int:
        return len(self.requests)

    async def start(self) -> None:
        if self.fail_start:
            raise OSError("cannot spawn")
        self.starts += 1
        self.running = True
        self._exit = asyncio.Event()

    async def stop(self) -> None:
        self.stops += 1
        self.running = False

    async def probe(self) -> bool:
        return self.running and self.healthy

    async def wait_exit(self) -> int | None:
        ev = self._exit
        if ev is None:
            return None
        await ev.wait()
        return -9

    def crash(self) -> None:
        self.running = False
        if self._exit is not None:
            self._exit.set()

    async def synthesize(self, request: InferenceRequest) -> InferenceResponse:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        samples = self.response if self.response is not None else sine(self.sample_rate)
        return InferenceResponse(samples, self.sample_rate)

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        text = self.transcript if self.transcript is not None else self.requests[-1].text if self.requests else ""
        self.transcripts.append(text)
        return text


def backend_config(name: str = "tts-0", **overrides) -> BackendConfig:
    """Backend config tuned for fast tests."""

    values = {
        "name": name,
        "role": "synthesis",
        "kind": "fake",
        "capacity": 1,
        "startup_timeout_s": 2.0,
        "heartbeat_interval_s": 0.05,
        "restart_backoff_s": [0.01],
        "max_restarts": 3,
        "inference_timeout_s": 5.0,
    }
    values.update(overrides)
    return BackendConfig(**values)


class FakeFactory:
    """Transport factory remembering every transport it built, by backend name."""

    def __init__(self) -> None:
        self.transports: dict[str, FakeTransport] = {}

    def __call__(self, config: BackendConfig) -> FakeTransport:
        transport = FakeTransport(config)
        self.transports[config.name] = transport
        return transport


def write_voice(root: Path, location: str, name: str, *, transcript: str | None = "Reference line.") -> Path:
    vdir = root / "global" / name if location == "global" else root / "games" / location / name
    vdir.mkdir(parents=True, exist_ok=True)
    wav = vdir / "sample_000.wav"
    sf.write(wav, sine(16000, 0.5), 16000, subtype="PCM_16")
    if transcript:
        wav.with_suffix(".txt").write_text(transcript, encoding="utf-8")
    return wav


