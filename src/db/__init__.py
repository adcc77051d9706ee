"""Database package export surface.

Re-exports the store facade, session helpers and repository for convenience at
import sites.
"""

from . import repository  # noqa: F401
from .session import create_db_engine, init_db, session_scope  # noqa: F401
from .store import CharacterRecord, SqlStore, VoiceLineKey, VoiceLineRecord  # noqa: F401

__all__ = [
    "CharacterRecord",
    "SqlStore",
    "VoiceLineKey",
    "VoiceLineRecord",
    "create_db_engine",
    "init_db",
    "repository",
    "session_scope",
]
