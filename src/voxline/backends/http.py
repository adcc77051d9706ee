"""HTTP inference client shared by process and container transports.

Wire contract spoken by every managed backend:

* ``GET /health`` answers 200 once the model is loaded;
* ``POST /synthesize`` takes ``{"text", "voice", "location", "params"}`` and
  answers an ``audio/wav`` body, or ``{"error": ...}`` with a non-2xx status;
* ``POST /transcribe`` takes a WAV body and answers ``{"text": ...}``.
"""

from __future__ import annotations

import logging

import httpx
import numpy as np

from voxline.audio.encode import decode, encode
from voxline.backends.base import BackendTransport, InferenceRequest, InferenceResponse
from voxline.config import BackendConfig
from voxline.errors import EmptyAudioError, EncodeError, InferenceFailed, InferenceTimeout

__all__ = ["HttpInferenceClient", "HttpBackendTransport"]

logger = logging.getLogger(__name__)


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(payload, dict) and "error" in payload:
        return str(payload["error"])
    return str(payload)[:200]


class HttpInferenceClient:
    """Thin async client for the backend wire contract."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def health(self) -> bool:
        try:
            resp = await self._client.get("/health", timeout=5.0)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.post(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise InferenceTimeout(f"{self.base_url}{path} timed out") from exc
        except httpx.HTTPError as exc:
            raise InferenceFailed(f"{self.base_url}{path} request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise InferenceFailed(f"{path} returned {resp.status_code}: {_error_message(resp)}")
        return resp

    async def synthesize(self, request: InferenceRequest) -> InferenceResponse:
        resp = await self._post(
            "/synthesize",
            json={
                "text": request.text,
                "voice": request.voice,
                "location": request.location,
                "params": request.params,
            },
        )
        try:
            samples, sr = decode(resp.content)
        except EmptyAudioError as exc:
            raise InferenceFailed(f"Backend returned undecodable audio: {exc}") from exc
        return InferenceResponse(samples=samples, sample_rate=sr)

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        try:
            body = encode(samples, sample_rate, "wav")
        except EncodeError as exc:
            raise InferenceFailed(f"Cannot encode audio for transcription: {exc}") from exc
        resp = await self._post("/transcribe", content=body, headers={"Content-Type": "audio/wav"})
        try:
            return str(resp.json()["text"])
        except (ValueError, KeyError, TypeError) as exc:
            raise InferenceFailed(f"Malformed transcription response: {exc}") from exc


class HttpBackendTransport(BackendTransport):
    """Transport whose inference calls go over :class:`HttpInferenceClient`.

    Subclasses supply the process lifecycle.
    """

    def __init__(self, config: BackendConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.http = HttpInferenceClient(config.base_url, client=client, timeout=config.inference_timeout_s)

    async def probe(self) -> bool:
        return await self.http.health()

    async def synthesize(self, request: InferenceRequest) -> InferenceResponse:
        return await self.http.synthesize(request)

    async def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        return await self.http.transcribe(samples, sample_rate)

    async def aclose(self) -> None:
        await self.http.aclose()
