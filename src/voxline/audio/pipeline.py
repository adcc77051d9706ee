"""Post-processing pipeline applied to every freshly synthesized waveform.

Stages, in order: validate -> resample -> (trim silence) -> loudness
normalize -> (filter) -> encode. :meth:`AudioPipeline.process` is pure: it
returns bytes and metadata and never touches the filesystem.
:func:`write_atomic` materializes the result.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import numpy as np

from voxline.audio.encode import FORMATS, encode
from voxline.audio.mastering import (
    apply_filters,
    as_frames,
    clip_peaks,
    design_filters,
    duration_s,
    measure_loudness,
    normalize_loudness,
    peak_dbfs,
    resample,
    trim_silence,
)
from voxline.config import PipelineConfig

__all__ = ["AudioMetadata", "ProcessedAudio", "AudioPipeline", "artifact_path", "write_atomic"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AudioMetadata:
    """Measurements of the final, pre-encode waveform."""

    sample_rate: int
    loudness_lufs: float
    duration_s: float
    peak_dbfs: float
    channels: int
    format: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ProcessedAudio:
    data: bytes
    metadata: AudioMetadata

    @property
    def extension(self) -> str:
        return FORMATS[self.metadata.format][2]


class AudioPipeline:
    """Deterministic mastering chain configured by :class:`PipelineConfig`."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        cfg = self.config
        self._sos = None
        if cfg.filter_enabled:
            self._sos = design_filters(
                cfg.sample_rate, highpass_hz=cfg.highpass_hz, lowpass_hz=cfg.lowpass_hz
            )

    def process(self, samples: np.ndarray, sample_rate: int) -> ProcessedAudio:
        """Master and encode one waveform.

        Args:
            samples: Raw float samples, ``(frames,)`` or ``(frames, channels)``.
            sample_rate: Rate of ``samples`` in Hz.

        Returns:
            Encoded bytes with metadata.

        Raises:
            PipelineError: One of its subclasses, naming the failed stage.
        """

        cfg = self.config
        y = as_frames(samples)
        y = resample(y, int(sample_rate), cfg.sample_rate)
        if cfg.trim_silence:
            y = trim_silence(y, cfg.silence_threshold)
        y = normalize_loudness(
            y,
            cfg.sample_rate,
            target_lufs=cfg.target_lufs,
            ceiling_dbfs=cfg.peak_ceiling_dbfs,
            sos=self._sos,
        )
        if self._sos is not None:
            y = clip_peaks(apply_filters(y, self._sos), cfg.peak_ceiling_dbfs)

        data = encode(y, cfg.sample_rate, cfg.output_format, cfg.quality)
        meta = AudioMetadata(
            sample_rate=cfg.sample_rate,
            loudness_lufs=round(measure_loudness(y, cfg.sample_rate), 3),
            duration_s=round(duration_s(y, cfg.sample_rate), 4),
            peak_dbfs=round(peak_dbfs(y), 3),
            channels=1 if y.ndim == 1 else int(y.shape[1]),
            format=cfg.output_format,
        )
        logger.debug("Processed %.2fs clip: %s", meta.duration_s, meta)
        return ProcessedAudio(data=data, metadata=meta)


def artifact_path(lines_dir: Path, location: str, voice: str, extension: str) -> Path:
    """Return a fresh ``<lines_dir>/<location>/<voice>/<uuid>.<ext>`` path."""

    return Path(lines_dir) / location / voice / f"{uuid.uuid4().hex}.{extension}"


def write_atomic(data: bytes, dest: Path) -> Path:
    """Write ``data`` to ``dest`` through a temporary sibling and ``os.replace``.

    Readers never observe a partially written file; on failure the temporary
    file is removed and the exception propagates.
    """

    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.tmp")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, dest)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    return dest
