"""Voice-line resolution, deduplication and generation coordination for game TTS.

Subpackages:

* :mod:`voxline.dialogue` – text canonicalization and near-duplicate matching.
* :mod:`voxline.audio` – deterministic mastering and encoding pipeline.
* :mod:`voxline.backends` – supervised inference backends and transports.
* :mod:`voxline.coordinator` – single-flight resolve-or-generate entry point.
"""

from voxline.errors import VoxlineError

__version__ = "0.1.0"

__all__ = ["VoxlineError", "__version__"]
