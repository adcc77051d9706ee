"""Voice reference catalog backed by a directory tree.

Layout::

    <root>/global/<voice>/*.wav          voices usable by every game
    <root>/games/<game>/<voice>/*.wav    voices private to one game

Each ``.wav`` sample may carry a sibling ``.txt`` with its transcript.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from voxline.errors import VoiceNotFound

__all__ = ["GLOBAL", "VoiceReference", "VoiceSample", "VoiceCatalog"]

logger = logging.getLogger(__name__)

GLOBAL = "global"


@dataclass(frozen=True, slots=True, order=True)
class VoiceReference:
    """A voice name plus where it lives: ``"global"`` or a game name."""

    name: str
    location: str = GLOBAL

    @classmethod
    def parse(cls, value: str) -> VoiceReference:
        """Parse ``"name"`` (global) or ``"game/name"``."""

        location, sep, name = value.rpartition("/")
        if not sep:
            return cls(value, GLOBAL)
        return cls(name, location or GLOBAL)

    def __str__(self) -> str:
        return self.name if self.location == GLOBAL else f"{self.location}/{self.name}"


@dataclass(frozen=True, slots=True)
class VoiceSample:
    audio: Path
    transcript: str | None = None


def _safe_component(value: str) -> bool:
    return bool(value) and value not in (".", "..") and "/" not in value and "\\" not in value


class VoiceCatalog:
    """Resolve voice references to their reference samples on disk."""

    def __init__(self, root: Path, *, language: str = "en") -> None:
        self.root = Path(root)
        self.language = language

    def directory(self, ref: VoiceReference) -> Path:
        """Return the directory a reference maps to, existing or not.

        Raises:
            VoiceNotFound: If the name or location cannot form a path.
        """

        if not _safe_component(ref.name) or not _safe_component(ref.location):
            raise VoiceNotFound(str(ref), "is not a valid voice name")
        if ref.location == GLOBAL:
            return self.root / GLOBAL / ref.name
        return self.root / "games" / ref.location / ref.name

    def exists(self, ref: VoiceReference) -> bool:
        try:
            return self.directory(ref).is_dir()
        except VoiceNotFound:
            return False

    def list_voices(self, game: str | None = None) -> list[VoiceReference]:
        """Return global voices followed by the voices of ``game``, each sorted."""

        found = [VoiceReference(p.name, GLOBAL) for p in self._subdirs(self.root / GLOBAL)]
        if game:
            found.extend(VoiceReference(p.name, game) for p in self._subdirs(self.root / "games" / game))
        return found

    @staticmethod
    def _subdirs(path: Path) -> list[Path]:
        if not path.is_dir():
            return []
        return sorted(p for p in path.iterdir() if p.is_dir())

    def samples(self, ref: VoiceReference) -> list[VoiceSample]:
        """Return the sorted reference samples of a voice.

        Raises:
            VoiceNotFound: If the voice directory is missing or holds no ``.wav``.
        """

        vdir = self.directory(ref)
        if not vdir.is_dir():
            raise VoiceNotFound(str(ref))
        wavs = sorted(vdir.glob("*.wav"))
        if not wavs:
            raise VoiceNotFound(str(ref), "has no reference samples")
        out = []
        for wav in wavs:
            txt = wav.with_suffix(".txt")
            transcript = txt.read_text(encoding="utf-8").strip() if txt.is_file() else None
            out.append(VoiceSample(wav, transcript or None))
        return out

    def params(self, ref: VoiceReference) -> dict[str, Any]:
        """Return the voice parameters sent to a synthesis backend."""

        sample = self.samples(ref)[0]
        return {
            "reference_audio": str(sample.audio),
            "reference_text": sample.transcript,
            "language": self.language,
        }

    def store_sample(
        self, ref: VoiceReference, data: bytes, *, transcript: str | None = None
    ) -> Path:
        """Add a reference sample to ``ref``, creating the voice if needed.

        Samples are numbered ``sample_<n>.wav`` after the existing ones.
        """

        vdir = self.directory(ref)
        vdir.mkdir(parents=True, exist_ok=True)
        index = len(list(vdir.glob("*.wav")))
        dest = vdir / f"sample_{index:03d}.wav"
        while dest.exists():
            index += 1
            dest = vdir / f"sample_{index:03d}.wav"
        dest.write_bytes(data)
        if transcript:
            dest.with_suffix(".txt").write_text(transcript.strip() + "\n", encoding="utf-8")
        logger.info("Stored voice sample %s for %s", dest.name, ref)
        return dest
