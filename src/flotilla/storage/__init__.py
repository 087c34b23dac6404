"""Optional run journal backed by ChromaDB."""

from .chroma import RUN_SESSION, ChromaStore, ChromaUnavailableError, EventJournal, JournalEntry

__all__ = [
    "ChromaStore",
    "ChromaUnavailableError",
    "EventJournal",
    "JournalEntry",
    "RUN_SESSION",
]
