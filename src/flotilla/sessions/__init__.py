"""Worker sessions, run statistics and persisted scheduler state."""

from .models import (
    IntegrationStats,
    PersistedSession,
    PersistedState,
    Session,
    SessionMetrics,
    SessionRole,
    SessionStatus,
)
from .registry import SessionBusyError, SessionError, SessionRegistry
from .store import StateStore, StateStoreError

__all__ = [
    "IntegrationStats",
    "PersistedSession",
    "PersistedState",
    "Session",
    "SessionBusyError",
    "SessionError",
    "SessionMetrics",
    "SessionRegistry",
    "SessionRole",
    "SessionStatus",
    "StateStore",
    "StateStoreError",
]
