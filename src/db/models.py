"""Database models.

SQLAlchemy ORM models for characters, their dialogue and the cached voice
lines generated for that dialogue. Deleting a character cascades to its
dialogue, deleting dialogue cascades to its voice lines; the cascade is
enforced by the database (``ON DELETE CASCADE``).
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Project Declarative base class."""

    pass


class Character(Base):
    """A speaking character and its default voice."""

    __tablename__ = "characters"
    __table_args__ = (UniqueConstraint("name", "gender", name="uq_character_name_gender"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # "" when the caller did not tag a gender
    gender: Mapped[str] = mapped_column(String, nullable=False, default="")
    voice_name: Mapped[str] = mapped_column(String, nullable=False)
    voice_location: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    dialogue = relationship(
        "Dialogue",
        back_populates="character",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Dialogue(Base):
    """Canonical line of text owned by one character."""

    __tablename__ = "dialogue"
    __table_args__ = (UniqueConstraint("character_id", "text", name="uq_dialogue_character_text"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("characters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    character = relationship("Character", back_populates="dialogue")
    voice_lines = relationship(
        "VoiceLine",
        back_populates="dialogue",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class VoiceLine(Base):
    """Generated artifact for one (dialogue, voice, location) key."""

    __tablename__ = "voice_lines"
    __table_args__ = (
        UniqueConstraint(
            "dialogue_id", "voice_name", "voice_location", name="uq_voice_line_key"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dialogue_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("dialogue.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    voice_name: Mapped[str] = mapped_column(String, nullable=False)
    voice_location: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    format: Mapped[str] = mapped_column(String, nullable=False)
    sample_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    loudness_lufs: Mapped[float] = mapped_column(Float, nullable=False)
    duration_s: Mapped[float] = mapped_column(Float, nullable=False)
    peak_dbfs: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    dialogue = relationship("Dialogue", back_populates="voice_lines")
