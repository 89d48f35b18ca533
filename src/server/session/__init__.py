"""Session and message persistence backed by SQLite, plus the session REST routes."""

from .dependencies import get_session_store
from .models import MessageRecord, SessionRecord
from .store import SQLiteSessionStore

__all__ = ["MessageRecord", "SQLiteSessionStore", "SessionRecord", "get_session_store"]
