"""SQL-backed store facade used by the generation coordinator.

Every public method is one transaction. SQLAlchemy failures surface as
:class:`voxline.errors.StoreError` after the transaction is rolled back, so a
failed call never leaves partial rows visible. Artifact files superseded by a
replace or orphaned by a cascade are deleted only after the commit succeeded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from voxline.dialogue import DialogueCandidate
from voxline.errors import StoreError
from voxline.voices import VoiceReference

from . import models, repository
from .session import create_db_engine, init_db, make_session_factory, session_scope

__all__ = ["CharacterRecord", "VoiceLineKey", "VoiceLineRecord", "SqlStore"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CharacterRecord:
    id: int
    name: str
    gender: str
    voice: VoiceReference


@dataclass(frozen=True, slots=True)
class VoiceLineKey:
    """Cache key of a voice line."""

    dialogue_id: int
    voice_name: str
    voice_location: str


@dataclass(frozen=True, slots=True)
class VoiceLineRecord:
    """A cached artifact: where it lives and what it measured."""

    key: VoiceLineKey
    path: Path
    metadata: dict[str, Any]
    created_at: datetime


def _character(row: models.Character) -> CharacterRecord:
    return CharacterRecord(
        id=row.id,
        name=row.name,
        gender=row.gender,
        voice=VoiceReference(row.voice_name, row.voice_location),
    )


def _voice_line(row: models.VoiceLine) -> VoiceLineRecord:
    return VoiceLineRecord(
        key=VoiceLineKey(row.dialogue_id, row.voice_name, row.voice_location),
        path=Path(row.file_path),
        metadata={
            "format": row.format,
            "sample_rate": row.sample_rate,
            "loudness_lufs": row.loudness_lufs,
            "duration_s": row.duration_s,
            "peak_dbfs": row.peak_dbfs,
        },
        created_at=row.created_at,
    )


class SqlStore:
    """Persistence facade over characters, dialogue and voice lines.

    Args:
        database_url: SQLAlchemy URL.
        create_schema: Create missing tables on construction.
    """

    def __init__(self, database_url: str, *, create_schema: bool = True) -> None:
        self.database_url = database_url
        self.engine = create_db_engine(database_url)
        self._factory = make_session_factory(self.engine)
        if create_schema:
            init_db(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _scope(self, action: str) -> Iterator[Session]:
        try:
            with session_scope(self._factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.warning("Store %s failed: %s", action, exc)
            raise StoreError(f"{action} failed: {exc}") from exc

    def _retry_on_conflict(self, action: str, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` once more if a concurrent insert won a uniqueness race."""

        try:
            with self._scope(action) as session:
                return fn(session)
        except StoreError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
        with self._scope(action) as session:
            return fn(session)

    # ----- characters ----------------------------------------------------
    def find_character(self, name: str, gender: str = "") -> CharacterRecord | None:
        with self._scope("find_character") as session:
            row = repository.get_character(session, name, gender)
            return _character(row) if row else None

    def get_character(self, character_id: int) -> CharacterRecord | None:
        with self._scope("get_character") as session:
            row = session.get(models.Character, character_id)
            return _character(row) if row else None

    def create_character(self, name: str, gender: str, voice: VoiceReference) -> CharacterRecord:
        """Insert a character; returns the existing one if it already exists."""

        def _create(session: Session) -> CharacterRecord:
            row = repository.get_character(session, name, gender)
            if row is None:
                row = repository.add_character(session, name, gender, voice.name, voice.location)
                logger.info("Created character %r (%s) with voice %s", name, gender or "-", voice)
            return _character(row)

        return self._retry_on_conflict("create_character", _create)

    def set_character_voice(self, character_id: int, voice: VoiceReference) -> CharacterRecord:
        """Change the default voice of a character. Existing voice lines are kept.

        Raises:
            StoreError: If the character does not exist.
        """

        with self._scope("set_character_voice") as session:
            row = repository.set_character_voice(session, character_id, voice.name, voice.location)
            if row is None:
                raise StoreError(f"Character {character_id} does not exist")
            record = _character(row)
        logger.info("Character %r now uses voice %s", record.name, voice)
        return record

    def delete_character(self, character_id: int) -> bool:
        """Delete a character with its dialogue, voice lines and artifact files."""

        with self._scope("delete_character") as session:
            paths = repository.voice_line_paths_for_character(session, character_id)
            deleted = repository.delete_character(session, character_id)
        if deleted:
            self._remove_files(paths)
        return deleted

    def voice_usage_counts(self) -> dict[VoiceReference, int]:
        with self._scope("voice_usage_counts") as session:
            counts = repository.voice_usage_counts(session)
        return {VoiceReference(n, loc): c for (n, loc), c in counts.items()}

    # ----- dialogue ------------------------------------------------------
    def list_dialogue(self, character_id: int) -> list[DialogueCandidate]:
        with self._scope("list_dialogue") as session:
            return [
                DialogueCandidate(d.id, d.text)
                for d in repository.list_dialogue(session, character_id)
            ]

    def upsert_dialogue(self, character_id: int, text: str) -> int:
        """Return the id of the dialogue with exactly ``text``, inserting it if new."""

        def _upsert(session: Session) -> int:
            return repository.upsert_dialogue(session, character_id, text).id

        return self._retry_on_conflict("upsert_dialogue", _upsert)

    def delete_dialogue(self, dialogue_id: int) -> bool:
        with self._scope("delete_dialogue") as session:
            paths = repository.voice_line_paths_for_dialogue(session, dialogue_id)
            deleted = repository.delete_dialogue(session, dialogue_id)
        if deleted:
            self._remove_files(paths)
        return deleted

    # ----- voice lines ---------------------------------------------------
    def find_voice_line(self, key: VoiceLineKey) -> VoiceLineRecord | None:
        with self._scope("find_voice_line") as session:
            row = repository.get_voice_line(
                session, key.dialogue_id, key.voice_name, key.voice_location
            )
            return _voice_line(row) if row else None

    def replace_voice_line(
        self, key: VoiceLineKey, path: Path, metadata: Mapping[str, Any]
    ) -> VoiceLineRecord:
        """Point ``key`` at ``path``, deleting the superseded file after commit."""

        def _put(session: Session) -> tuple[VoiceLineRecord, str | None]:
            row, previous = repository.put_voice_line(
                session,
                key.dialogue_id,
                key.voice_name,
                key.voice_location,
                str(path),
                metadata,
            )
            return _voice_line(row), previous

        record, previous = self._retry_on_conflict("replace_voice_line", _put)
        if previous and Path(previous) != Path(path):
            self._remove_files([previous])
        return record

    def list_voice_lines(self, voice: VoiceReference) -> list[VoiceLineRecord]:
        """Return every cached line generated with ``voice``, oldest first."""

        with self._scope("list_voice_lines") as session:
            return [
                _voice_line(row)
                for row in repository.list_voice_lines(session, voice.name, voice.location)
            ]

    @staticmethod
    def _remove_files(paths: list[str]) -> None:
        for p in paths:
            try:
                Path(p).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove artifact %s: %s", p, exc)
