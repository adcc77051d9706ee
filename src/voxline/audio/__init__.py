"""Audio post-processing: mastering, encoding and atomic artifact output."""

from voxline.audio.pipeline import (
    AudioMetadata,
    AudioPipeline,
    ProcessedAudio,
    artifact_path,
    write_atomic,
)

__all__ = ["AudioMetadata", "AudioPipeline", "ProcessedAudio", "artifact_path", "write_atomic"]
