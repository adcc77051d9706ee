"""Container encoding and decoding through :mod:`soundfile`."""

from __future__ import annotations

import io

import numpy as np
import soundfile as sf

from voxline.errors import EmptyAudioError, EncodeError

__all__ = ["FORMATS", "encode", "decode"]

# output_format -> (libsndfile format, subtype, file extension)
FORMATS: dict[str, tuple[str, str, str]] = {
    "ogg": ("OGG", "VORBIS", "ogg"),
    "flac": ("FLAC", "PCM_16", "flac"),
    "wav": ("WAV", "PCM_16", "wav"),
}


def encode(y: np.ndarray, sr: int, output_format: str, quality: float = 0.6) -> bytes:
    """Encode float samples in ``[-1, 1]`` to container bytes.

    Args:
        y: Samples shaped ``(frames,)`` or ``(frames, channels)``.
        sr: Sample rate in Hz.
        output_format: One of :data:`FORMATS`.
        quality: Vorbis quality in ``[-0.1, 1.0]``; ignored for lossless
            formats. libsndfile expresses it as ``compression_level = 1 - quality``.

    Raises:
        EncodeError: For unknown formats or libsndfile failures.
    """

    try:
        fmt, subtype, _ext = FORMATS[output_format]
    except KeyError:
        raise EncodeError(f"Unsupported output format: {output_format}") from None
    kwargs = {}
    if fmt == "OGG":
        kwargs["compression_level"] = float(np.clip(1.0 - quality, 0.0, 1.0))
    buf = io.BytesIO()
    try:
        sf.write(buf, np.asarray(y, dtype=np.float32), sr, format=fmt, subtype=subtype, **kwargs)
    except (RuntimeError, TypeError, ValueError) as exc:
        raise EncodeError(f"Encoding {output_format} failed: {exc}") from exc
    return buf.getvalue()


def decode(data: bytes) -> tuple[np.ndarray, int]:
    """Decode container bytes to ``float32`` samples and their sample rate.

    Raises:
        EmptyAudioError: If the payload is not decodable audio.
    """

    try:
        samples, sr = sf.read(io.BytesIO(data), dtype="float32")
    except (RuntimeError, TypeError, ValueError) as exc:
        raise EmptyAudioError(f"Cannot decode audio payload: {exc}") from exc
    return samples, int(sr)
