"""Database helpers for Trackvault."""

from db.library import LibraryEntry, LibraryIndex
from db.watched import WatchedPlaylistStore

__all__ = ["LibraryEntry", "LibraryIndex", "WatchedPlaylistStore"]
