"""Signal-level helpers for voice-line mastering.

All functions take and return ``float64`` arrays shaped ``(frames,)`` for mono
or ``(frames, channels)`` for multi-channel audio.
"""

from __future__ import annotations

import logging
from math import gcd

import numpy as np
import pyloudnorm as pyln
from scipy.signal import butter, resample_poly, sosfilt

from voxline.errors import EmptyAudioError, FilterError, LoudnessError, ResampleError

__all__ = [
    "as_frames",
    "resample",
    "trim_silence",
    "measure_loudness",
    "normalize_loudness",
    "clip_peaks",
    "design_filters",
    "apply_filters",
    "peak_dbfs",
    "duration_s",
]

logger = logging.getLogger(__name__)

# Gating block length of ITU-R BS.1770 in seconds.
_BLOCK_S = 0.4


def as_frames(samples: np.ndarray) -> np.ndarray:
    """Validate raw samples and return them as a ``float64`` array.

    Raises:
        EmptyAudioError: If the array is empty, has more than two dimensions
            or contains non-finite values.
    """

    try:
        y = np.asarray(samples, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise EmptyAudioError(f"Samples are not numeric: {exc}") from exc
    if y.ndim == 2 and y.shape[1] == 1:
        y = y[:, 0]
    if y.ndim not in (1, 2) or y.shape[0] == 0 or y.size == 0:
        raise EmptyAudioError(f"Expected non-empty (frames[, channels]) samples, got shape {y.shape}")
    if not np.all(np.isfinite(y)):
        raise EmptyAudioError("Samples contain NaN or infinite values")
    return y


def resample(y: np.ndarray, sr_in: int, sr_out: int) -> np.ndarray:
    """Polyphase-resample ``y`` from ``sr_in`` to ``sr_out``; no-op if equal."""

    if sr_in <= 0 or sr_out <= 0:
        raise ResampleError(f"Invalid sample rates {sr_in} -> {sr_out}")
    if sr_in == sr_out:
        return y
    g = gcd(sr_in, sr_out)
    try:
        out = resample_poly(y, sr_out // g, sr_in // g, axis=0)
    except (ValueError, MemoryError) as exc:
        raise ResampleError(f"Resampling {sr_in} -> {sr_out} failed: {exc}") from exc
    if out.shape[0] == 0:
        raise ResampleError(f"Resampling {sr_in} -> {sr_out} produced no samples")
    return np.asarray(out, dtype=np.float64)


def trim_silence(y: np.ndarray, threshold: float) -> np.ndarray:
    """Drop leading and trailing frames whose samples are all <= ``threshold``.

    Whole frames are removed so channels stay aligned. A fully silent clip is
    returned unchanged; loudness measurement rejects it later.
    """

    level = np.abs(y) if y.ndim == 1 else np.max(np.abs(y), axis=1)
    loud = np.flatnonzero(level > threshold)
    if loud.size == 0:
        return y
    return y[loud[0] : loud[-1] + 1]


def measure_loudness(y: np.ndarray, sr: int) -> float:
    """Return integrated loudness (LUFS), ``-inf`` when it cannot be measured.

    Clips shorter than one gating block are measured with a single block
    spanning the clip.
    """

    frames = y.shape[0]
    if frames < 2:
        return float("-inf")
    block = min(_BLOCK_S, (frames - 1) / sr)
    try:
        meter = pyln.Meter(sr, block_size=block)
        loud = float(meter.integrated_loudness(y))
    except ValueError as exc:
        logger.debug("Loudness measurement failed: %s", exc)
        return float("-inf")
    if not np.isfinite(loud):
        return float("-inf")
    return loud


def clip_peaks(y: np.ndarray, ceiling_dbfs: float) -> np.ndarray:
    """Hard-limit samples to ``+-10**(ceiling_dbfs/20)``."""

    amp = 10 ** (ceiling_dbfs / 20)
    return np.clip(y, -amp, amp)


def normalize_loudness(
    y: np.ndarray,
    sr: int,
    *,
    target_lufs: float,
    ceiling_dbfs: float,
    sos: np.ndarray | None = None,
) -> np.ndarray:
    """Apply one gain to reach ``target_lufs`` and clip peaks at the ceiling.

    With ``sos`` the loudness is measured on the filtered clip, so the clip
    reaches ``target_lufs`` once the same filters are applied after the gain.

    Raises:
        LoudnessError: If the integrated loudness is not measurable, for
            example on an all-silence clip.
    """

    loud = measure_loudness(apply_filters(y, sos), sr)
    if not np.isfinite(loud):
        raise LoudnessError("Integrated loudness is not measurable (silent or too short)")
    gain = 10 ** ((target_lufs - loud) / 20)
    logger.debug("Loudness %.2f LUFS -> %.2f LUFS (gain x%.3f)", loud, target_lufs, gain)
    return clip_peaks(y * gain, ceiling_dbfs)


def design_filters(
    sr: int, *, highpass_hz: float | None = None, lowpass_hz: float | None = None
) -> np.ndarray | None:
    """Design the second-order Butterworth chain as SOS biquads.

    Returns:
        Stacked second-order sections, or ``None`` when no filter is enabled.

    Raises:
        FilterError: If a cutoff is not within ``(0, sr/2)``.
    """

    nyquist = sr / 2
    sections = []
    for btype, hz in (("highpass", highpass_hz), ("lowpass", lowpass_hz)):
        if hz is None:
            continue
        if not 0 < hz < nyquist:
            raise FilterError(f"{btype} cutoff {hz} Hz outside (0, {nyquist}) Hz")
        try:
            sections.append(butter(2, hz, btype=btype, fs=sr, output="sos"))
        except ValueError as exc:
            raise FilterError(f"Cannot design {btype} at {hz} Hz: {exc}") from exc
    if not sections:
        return None
    return np.vstack(sections)


def apply_filters(y: np.ndarray, sos: np.ndarray | None) -> np.ndarray:
    """Run ``y`` through ``sos``; pass-through when ``sos`` is ``None``."""

    if sos is None:
        return y
    try:
        return sosfilt(sos, y, axis=0)
    except ValueError as exc:
        raise FilterError(f"Filtering failed: {exc}") from exc


def peak_dbfs(y: np.ndarray) -> float:
    """Return sample peak in dBFS."""

    peak = float(np.max(np.abs(y)))
    if peak <= 0:
        return float("-inf")
    return float(20 * np.log10(peak))


def duration_s(y: np.ndarray, sr: int) -> float:
    """Return duration of ``y`` in seconds."""

    return float(y.shape[0]) / float(sr)
