"""CRUD helpers around the SQLAlchemy session.

Each helper takes an open :class:`Session` and leaves transaction control to
the caller (see :func:`db.session.session_scope`).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from . import models


def get_character(session: Session, name: str, gender: str) -> models.Character | None:
    stmt = select(models.Character).where(
        models.Character.name == name, models.Character.gender == gender
    )
    return session.scalars(stmt).first()


def add_character(
    session: Session,
    name: str,
    gender: str,
    voice_name: str,
    voice_location: str,
) -> models.Character:
    """Insert a character and flush so its id is assigned."""
    character = models.Character(
        name=name, gender=gender, voice_name=voice_name, voice_location=voice_location
    )
    session.add(character)
    session.flush()
    return character


def list_dialogue(session: Session, character_id: int) -> list[models.Dialogue]:
    """Return a character's dialogue, oldest first."""
    stmt = (
        select(models.Dialogue)
        .where(models.Dialogue.character_id == character_id)
        .order_by(models.Dialogue.id)
    )
    return list(session.scalars(stmt))


def get_dialogue_by_text(session: Session, character_id: int, text: str) -> models.Dialogue | None:
    stmt = select(models.Dialogue).where(
        models.Dialogue.character_id == character_id, models.Dialogue.text == text
    )
    return session.scalars(stmt).first()


def upsert_dialogue(session: Session, character_id: int, text: str) -> models.Dialogue:
    """Return the dialogue with exactly ``text``, inserting it if missing."""
    existing = get_dialogue_by_text(session, character_id, text)
    if existing is not None:
        return existing
    dialogue = models.Dialogue(character_id=character_id, text=text)
    session.add(dialogue)
    session.flush()
    return dialogue


def get_voice_line(
    session: Session, dialogue_id: int, voice_name: str, voice_location: str
) -> models.VoiceLine | None:
    stmt = select(models.VoiceLine).where(
        models.VoiceLine.dialogue_id == dialogue_id,
        models.VoiceLine.voice_name == voice_name,
        models.VoiceLine.voice_location == voice_location,
    )
    return session.scalars(stmt).first()


def put_voice_line(
    session: Session,
    dialogue_id: int,
    voice_name: str,
    voice_location: str,
    file_path: str,
    meta: Mapping[str, Any],
) -> tuple[models.VoiceLine, str | None]:
    """Insert or overwrite the voice line for a key.

    Returns:
        The persistent row and the file path it previously pointed to
        (``None`` for a fresh insert).
    """
    fields = {
        "file_path": file_path,
        "format": meta["format"],
        "sample_rate": int(meta["sample_rate"]),
        "loudness_lufs": float(meta["loudness_lufs"]),
        "duration_s": float(meta["duration_s"]),
        "peak_dbfs": meta.get("peak_dbfs"),
    }
    line = get_voice_line(session, dialogue_id, voice_name, voice_location)
    previous = None
    if line is None:
        line = models.VoiceLine(
            dialogue_id=dialogue_id,
            voice_name=voice_name,
            voice_location=voice_location,
            **fields,
        )
        session.add(line)
    else:
        previous = line.file_path
        for key, value in fields.items():
            setattr(line, key, value)
        line.created_at = datetime.now(UTC)
    session.flush()
    return line, previous


def voice_line_paths_for_character(session: Session, character_id: int) -> list[str]:
    stmt = (
        select(models.VoiceLine.file_path)
        .join(models.Dialogue, models.VoiceLine.dialogue_id == models.Dialogue.id)
        .where(models.Dialogue.character_id == character_id)
    )
    return list(session.scalars(stmt))


def voice_line_paths_for_dialogue(session: Session, dialogue_id: int) -> list[str]:
    stmt = select(models.VoiceLine.file_path).where(models.VoiceLine.dialogue_id == dialogue_id)
    return list(session.scalars(stmt))


def delete_character(session: Session, character_id: int) -> bool:
    """Delete a character; dialogue and voice lines go with it via FK cascade."""
    result = session.execute(delete(models.Character).where(models.Character.id == character_id))
    return bool(result.rowcount)


def delete_dialogue(session: Session, dialogue_id: int) -> bool:
    result = session.execute(delete(models.Dialogue).where(models.Dialogue.id == dialogue_id))
    return bool(result.rowcount)


def voice_usage_counts(session: Session) -> dict[tuple[str, str], int]:
    """Return how many characters use each ``(voice_name, voice_location)``."""
    stmt = select(
        models.Character.voice_name,
        models.Character.voice_location,
        func.count(models.Character.id),
    ).group_by(models.Character.voice_name, models.Character.voice_location)
    return {(name, loc): int(n) for name, loc, n in session.execute(stmt)}


def set_character_voice(
    session: Session, character_id: int, voice_name: str, voice_location: str
) -> models.Character | None:
    character = session.get(models.Character, character_id)
    if character is None:
        return None
    character.voice_name = voice_name
    character.voice_location = voice_location
    session.flush()
    return character


def list_voice_lines(session: Session, voice_name: str, voice_location: str) -> list[models.VoiceLine]:
    """Return the voice lines generated with one voice, oldest first."""
    stmt = (
        select(models.VoiceLine)
        .where(
            models.VoiceLine.voice_name == voice_name,
            models.VoiceLine.voice_location == voice_location,
        )
        .order_by(models.VoiceLine.created_at, models.VoiceLine.id)
    )
    return list(session.scalars(stmt))
