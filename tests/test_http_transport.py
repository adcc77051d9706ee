import json
import sys

import httpx
import numpy as np
import pytest

from tests.helpers import backend_config, sine
from voxline.audio.encode import decode, encode
from voxline.backends.base import InferenceRequest
from voxline.backends.container import ContainerTransport
from voxline.backends.http import HttpInferenceClient
from voxline.backends.local import LocalProcessTransport
from voxline.errors import InferenceFailed, InferenceTimeout

pytestmark = pytest.mark.anyio


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://tts")


async def test_synthesize_posts_json_and_decodes_wav():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=encode(sine(22050, 0.5), 22050, "wav"), headers={"Content-Type": "audio/wav"})

    client = HttpInferenceClient("http://tts", client=_client(handler))
    resp = await client.synthesize(InferenceRequest("Halt!", "guard", "skyrim", {"language": "en"}))
    await client.aclose()

    assert seen["path"] == "/synthesize"
    assert seen["body"] == {"text": "Halt!", "voice": "guard", "location": "skyrim", "params": {"language": "en"}}
    assert resp.sample_rate == 22050
    assert resp.samples.shape[0] == 11025


async def test_error_status_raises_inference_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "CUDA out of memory"})

    client = HttpInferenceClient("http://tts", client=_client(handler))
    with pytest.raises(InferenceFailed, match="CUDA out of memory"):
        await client.synthesize(InferenceRequest("Halt!", "guard", "global"))


async def test_undecodable_body_raises_inference_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not audio")

    client = HttpInferenceClient("http://tts", client=_client(handler))
    with pytest.raises(InferenceFailed):
        await client.synthesize(InferenceRequest("Halt!", "guard", "global"))


async def test_read_timeout_maps_to_inference_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = HttpInferenceClient("http://tts", client=_client(handler))
    with pytest.raises(InferenceTimeout) as info:
        await client.synthesize(InferenceRequest("Halt!", "guard", "global"))
    assert info.value.kind == "inference_timeout"


async def test_transcribe_sends_wav_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ctype"] = request.headers["content-type"]
        samples, sr = decode(request.content)
        seen["sr"] = sr
        return httpx.Response(200, json={"text": "Halt!"})

    client = HttpInferenceClient("http://stt", client=_client(handler))
    assert await client.transcribe(sine(16000, 0.25), 16000) == "Halt!"
    assert seen == {"ctype": "audio/wav", "sr": 16000}


async def test_malformed_transcription_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"words": []})

    client = HttpInferenceClient("http://stt", client=_client(handler))
    with pytest.raises(InferenceFailed):
        await client.transcribe(np.zeros(1600, dtype=np.float32) + 0.1, 16000)


async def test_health_false_on_connect_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = HttpInferenceClient("http://tts", client=_client(handler))
    assert await client.health() is False


async def test_health_true_on_200():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "ok"})

    transport = ContainerTransport(backend_config(kind="container", image="tts"), client=_client(handler))
    assert await transport.probe() is True
    await transport.aclose()


def test_container_run_args():
    config = backend_config(
        "xtts-1",
        kind="container",
        image="ghcr.io/acme/xtts:2",
        port=8021,
        command=["--model", "v2"],
        env={"B": "2", "A": "1"},
    )
    args = ContainerTransport(config).run_args()
    assert args == [
        "docker", "run", "-d", "--rm", "--name", "voxline-xtts-1",
        "--gpus", "all",
        "-p", "8021:8021",
        "-e", "A=1", "-e", "B=2",
        "ghcr.io/acme/xtts:2", "--model", "v2",
    ]


def test_container_without_image_cannot_start():
    with pytest.raises(OSError):
        ContainerTransport(backend_config(kind="container"), gpus=None).run_args()


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
async def test_local_process_start_and_stop():
    config = backend_config(kind="local", command=[sys.executable, "-c", "import time; time.sleep(30)"])
    transport = LocalProcessTransport(config, stop_timeout_s=2.0)
    await transport.start()
    assert transport.pid is not None
    await transport.stop()
    assert transport.pid is None
    assert await transport.wait_exit() is None
    await transport.stop()
    await transport.aclose()


async def test_local_process_without_command_fails():
    with pytest.raises(OSError):
        await LocalProcessTransport(backend_config(kind="local")).start()
