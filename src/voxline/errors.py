"""Error taxonomy for voice-line resolution.

Every failure that reaches a caller of
:meth:`voxline.coordinator.GenerationCoordinator.resolve` is an instance of
:class:`VoxlineError`. The ``kind`` attribute is the stable classification
string shared by every waiter of a failed job; subclasses refine the message
but keep the classification of their family unless noted otherwise.
"""

from __future__ import annotations

__all__ = [
    "VoxlineError",
    "NotFound",
    "InvalidText",
    "VoiceNotFound",
    "BackendUnavailable",
    "BackendCrashed",
    "InferenceFailed",
    "InferenceTimeout",
    "GenerationRejected",
    "PipelineError",
    "EmptyAudioError",
    "ResampleError",
    "LoudnessError",
    "FilterError",
    "EncodeError",
    "StoreError",
    "ConfigError",
]


class VoxlineError(RuntimeError):
    """Base class for all classified errors."""

    kind = "internal"


class NotFound(VoxlineError):
    """Character, dialogue or voice has no resolvable identity."""

    kind = "not_found"


class InvalidText(NotFound):
    """Dialogue text is empty once canonicalized."""


class VoiceNotFound(NotFound):
    """Requested voice does not exist or has no reference samples."""

    def __init__(self, voice: str, reason: str = "does not exist") -> None:
        super().__init__(f"Requested voice '{voice}' {reason}")
        self.voice = voice


class BackendUnavailable(VoxlineError):
    """No Ready backend with free capacity was acquired before the deadline."""

    kind = "backend_unavailable"


class BackendCrashed(VoxlineError):
    """Backend process terminated while a job held one of its slots."""

    kind = "backend_crashed"


class InferenceFailed(VoxlineError):
    """Backend answered a request with an error."""

    kind = "inference_failed"


class InferenceTimeout(InferenceFailed):
    """A single inference call exceeded its deadline."""

    kind = "inference_timeout"


class GenerationRejected(InferenceFailed):
    """Transcription of the generated audio did not match the requested text."""

    kind = "generation_rejected"

    def __init__(self, score: float, threshold: float) -> None:
        super().__init__(f"Generated line scored {score:.2f} against threshold {threshold:.2f}")
        self.score = score
        self.threshold = threshold


class PipelineError(VoxlineError):
    """Post-processing failed; the produced audio is discarded."""

    kind = "pipeline_error"


class EmptyAudioError(PipelineError):
    """Input waveform is empty or malformed."""


class ResampleError(PipelineError):
    """Resampling to the target rate failed."""


class LoudnessError(PipelineError):
    """Integrated loudness could not be measured (e.g. all-silence input)."""


class FilterError(PipelineError):
    """Biquad filter design or application failed."""


class EncodeError(PipelineError):
    """Encoding to the output container failed."""


class StoreError(VoxlineError):
    """Persistence layer failure; nothing partial was committed."""

    kind = "store_error"


class ConfigError(ValueError):
    """Invalid configuration value."""
