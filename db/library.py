"""Library index: one row per archived, playable track."""

from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any, Iterator

from db.migrations import connect, ensure_schema, utc_now

logger = logging.getLogger(__name__)

_SORT_ORDERS = {
    "recent": "created_at DESC, rowid DESC",
    "artist": "artist COLLATE NOCASE ASC, title COLLATE NOCASE ASC",
    "title": "title COLLATE NOCASE ASC, artist COLLATE NOCASE ASC",
}


@dataclass(frozen=True)
class LibraryEntry:
    id: str
    job_id: str | None
    title: str
    artist: str | None
    album: str | None
    file_path: str
    file_size: int | None
    duration: int | None
    codec: str | None
    bitrate: int | None
    thumbnail: str | None
    source: str | None
    external_ref: str | None
    created_at: str

    def file_exists(self) -> bool:
        return bool(self.file_path) and os.path.isfile(self.file_path)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _row_to_entry(row: sqlite3.Row | None) -> LibraryEntry | None:
    if row is None:
        return None
    return LibraryEntry(
        id=row["id"],
        job_id=row["job_id"],
        title=row["title"],
        artist=row["artist"],
        album=row["album"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        duration=row["duration"],
        codec=row["codec"],
        bitrate=row["bitrate"],
        thumbnail=row["thumbnail"],
        source=row["source"],
        external_ref=row["external_ref"],
        created_at=row["created_at"],
    )


def remove_empty_parent(file_path: str, stop_at: str | None = None) -> bool:
    """Remove the directory holding ``file_path`` when it is empty.

    ``stop_at`` (usually the library root) is never removed.
    """
    directory = os.path.dirname(os.path.abspath(file_path))
    if stop_at and os.path.abspath(directory) == os.path.abspath(stop_at):
        return False
    try:
        if os.path.isdir(directory) and not os.listdir(directory):
            os.rmdir(directory)
            return True
    except OSError:
        logger.warning("Could not remove empty directory %s", directory, exc_info=True)
    return False


class LibraryIndex:
    def __init__(self, db_path: str, library_dir: str | None = None) -> None:
        self.db_path = db_path
        self.library_dir = library_dir
        conn = self._connect()
        try:
            ensure_schema(conn)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def add(
        self,
        *,
        job_id: str | None,
        title: str,
        artist: str | None,
        file_path: str,
        album: str | None = None,
        duration: int | None = None,
        codec: str | None = None,
        bitrate: int | None = None,
        thumbnail: str | None = None,
        source: str | None = None,
        external_ref: str | None = None,
    ) -> LibraryEntry:
        """Insert a track. The size is read from disk at this moment."""
        file_size = os.path.getsize(file_path)
        entry_id = uuid.uuid4().hex[:16]
        now = utc_now()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO library (
                    id, job_id, title, artist, album, file_path, file_size, duration,
                    codec, bitrate, thumbnail, source, external_ref, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    job_id,
                    title,
                    artist,
                    album or "Singles",
                    file_path,
                    file_size,
                    duration,
                    codec,
                    bitrate,
                    thumbnail,
                    source,
                    external_ref,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get(entry_id)

    def get(self, entry_id: str) -> LibraryEntry | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM library WHERE id=?", (entry_id,)).fetchone()
            return _row_to_entry(row)
        finally:
            conn.close()

    def find_by_external_ref(self, external_ref: str) -> list[LibraryEntry]:
        if not external_ref:
            return []
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM library WHERE external_ref=? ORDER BY created_at DESC",
                (external_ref,),
            ).fetchall()
            return [_row_to_entry(row) for row in rows]
        finally:
            conn.close()

    def has_artist_title(self, artist: str, title: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM library WHERE LOWER(artist)=? AND LOWER(title)=? LIMIT 1",
                ((artist or "").strip().lower(), (title or "").strip().lower()),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def iter_entries(self) -> Iterator[LibraryEntry]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM library ORDER BY created_at ASC").fetchall()
        finally:
            conn.close()
        for row in rows:
            yield _row_to_entry(row)

    def external_refs(self) -> set[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT DISTINCT external_ref FROM library WHERE external_ref IS NOT NULL AND external_ref != ''"
            ).fetchall()
            return {row[0] for row in rows}
        finally:
            conn.close()

    def list_tracks(
        self,
        *,
        sort: str = "recent",
        query: str | None = None,
        limit: int = 25,
        offset: int = 0,
    ) -> list[LibraryEntry]:
        order_by = _SORT_ORDERS.get(sort, _SORT_ORDERS["recent"])
        conn = self._connect()
        try:
            if query:
                pattern = f"%{query}%"
                rows = conn.execute(
                    f"SELECT * FROM library WHERE title LIKE ? OR artist LIKE ? "
                    f"ORDER BY {order_by} LIMIT ? OFFSET ?",
                    (pattern, pattern, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM library ORDER BY {order_by} LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
            return [_row_to_entry(row) for row in rows]
        finally:
            conn.close()

    def count(self, query: str | None = None) -> int:
        conn = self._connect()
        try:
            if query:
                pattern = f"%{query}%"
                row = conn.execute(
                    "SELECT COUNT(*) FROM library WHERE title LIKE ? OR artist LIKE ?",
                    (pattern, pattern),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM library").fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def stats(self) -> dict[str, int]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*), SUM(file_size), SUM(duration) FROM library"
            ).fetchone()
        finally:
            conn.close()
        return {
            "track_count": int(row[0] or 0),
            "total_size": int(row[1] or 0),
            "total_duration": int(row[2] or 0),
        }

    def artists(self) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT artist, COUNT(*) AS track_count FROM library GROUP BY artist ORDER BY artist"
            ).fetchall()
            return [{"artist": row["artist"], "track_count": int(row["track_count"])} for row in rows]
        finally:
            conn.close()

    def remove_entry(self, entry_id: str) -> bool:
        """Drop the index row only. The file, if any, is left alone."""
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM library WHERE id=?", (entry_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def delete_track(self, entry_id: str) -> bool:
        """User deletion: remove the file, the row, its job and stale rows sharing its reference."""
        entry = self.get(entry_id)
        if entry is None:
            return False

        if entry.file_path and os.path.isfile(entry.file_path):
            os.remove(entry.file_path)
            remove_empty_parent(entry.file_path, stop_at=self.library_dir)

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM library WHERE id=?", (entry.id,))
            deleted = cur.rowcount > 0
            if entry.job_id:
                cur.execute(
                    "DELETE FROM jobs WHERE id=? AND status != 'processing'",
                    (entry.job_id,),
                )
            if entry.external_ref:
                cur.execute(
                    """
                    DELETE FROM jobs
                    WHERE external_ref=? AND status IN ('completed', 'failed')
                      AND id NOT IN (SELECT job_id FROM library WHERE job_id IS NOT NULL)
                    """,
                    (entry.external_ref,),
                )
                cur.execute(
                    "DELETE FROM watched_playlist_tracks WHERE external_ref=?",
                    (entry.external_ref,),
                )
            conn.commit()
        finally:
            conn.close()
        logger.info("Deleted library track id=%s path=%s", entry.id, entry.file_path)
        return deleted
