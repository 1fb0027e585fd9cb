"""Watched playlists: a playlist's desired contents, tracked per track.

Track status mirrors the outcome of the job downloading it:
``pending`` -> ``queued`` -> ``downloaded`` | ``failed``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from db.migrations import connect, ensure_schema, utc_now
from engine.errors import NotFoundError
from playlist.export import m3u_path, write_m3u

logger = logging.getLogger(__name__)

TRACK_PENDING = "pending"
TRACK_QUEUED = "queued"
TRACK_DOWNLOADED = "downloaded"
TRACK_FAILED = "failed"

SYNC_APPEND = "append"
SYNC_MIRROR = "mirror"
SYNC_MODES = (SYNC_APPEND, SYNC_MIRROR)

_PLATFORM_MARKERS = (
    ("spotify", ("spotify.com",)),
    ("youtube", ("youtube.com", "youtu.be")),
    ("amazon", ("music.amazon",)),
    ("tidal", ("tidal.com",)),
)

_PLAYLIST_SUMMARY_SQL = """
    SELECT wp.*,
           COUNT(wpt.id) AS total_tracks,
           SUM(CASE WHEN wpt.status = 'downloaded' THEN 1 ELSE 0 END) AS downloaded_tracks,
           SUM(CASE WHEN wpt.status = 'pending' THEN 1 ELSE 0 END) AS pending_tracks,
           SUM(CASE WHEN wpt.status = 'queued' THEN 1 ELSE 0 END) AS queued_tracks,
           SUM(CASE WHEN wpt.status = 'failed' THEN 1 ELSE 0 END) AS failed_tracks
    FROM watched_playlists wp
    LEFT JOIN watched_playlist_tracks wpt
        ON wp.id = wpt.playlist_id AND wpt.removed_at IS NULL
"""


def track_hash(artist: str, title: str) -> str:
    normalized = f"{(artist or '').strip().lower()}|{(title or '').strip().lower()}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def detect_platform(url: str) -> str | None:
    value = (url or "").lower()
    for platform, markers in _PLATFORM_MARKERS:
        if any(marker in value for marker in markers):
            return platform
    return None


def parse_track(track: Any) -> dict[str, Any]:
    """Normalize a fetched track: ``"Artist - Title"`` strings or dicts."""
    if isinstance(track, str):
        artist, sep, title = track.partition(" - ")
        if not sep:
            return {"artist": "Unknown Artist", "title": track.strip() or "Unknown Title", "external_ref": None}
        return {"artist": artist.strip(), "title": title.strip(), "external_ref": None}
    if isinstance(track, dict):
        return {
            "artist": str(track.get("artist") or "Unknown Artist"),
            "title": str(track.get("title") or "Unknown Title"),
            "external_ref": track.get("external_ref") or track.get("id") or None,
        }
    return {"artist": "Unknown Artist", "title": "Unknown Title", "external_ref": None}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WatchedPlaylistStore:
    def __init__(self, db_path: str, playlists_dir: str | None = None) -> None:
        self.db_path = db_path
        self.playlists_dir = playlists_dir
        conn = self._connect()
        try:
            ensure_schema(conn)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    # -- playlists ----------------------------------------------------------

    def add_playlist(
        self,
        url: str,
        *,
        name: str | None = None,
        sync_mode: str = SYNC_APPEND,
        make_m3u: bool = True,
        refresh_interval_hours: int = 24,
    ) -> dict[str, Any]:
        """Register a playlist. Its tracks are populated on the first refresh."""
        platform = detect_platform(url)
        if not platform:
            raise ValueError("Unsupported playlist URL")
        if sync_mode not in SYNC_MODES:
            raise ValueError(f"sync_mode must be one of: {', '.join(SYNC_MODES)}")
        playlist_id = uuid.uuid4().hex[:16]
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO watched_playlists (
                    id, url, name, platform, sync_mode, make_m3u,
                    refresh_interval_hours, last_track_count, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    playlist_id,
                    url,
                    name or "Untitled Playlist",
                    platform,
                    sync_mode,
                    1 if make_m3u else 0,
                    int(refresh_interval_hours),
                    utc_now(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Watching playlist id=%s platform=%s", playlist_id, platform)
        return self.require_playlist(playlist_id)

    def list_playlists(self) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                _PLAYLIST_SUMMARY_SQL + " GROUP BY wp.id ORDER BY wp.created_at DESC"
            ).fetchall()
            return [_summary(row) for row in rows]
        finally:
            conn.close()

    def get_playlist(self, playlist_id: str) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            row = conn.execute(
                _PLAYLIST_SUMMARY_SQL + " WHERE wp.id = ? GROUP BY wp.id",
                (playlist_id,),
            ).fetchone()
            return _summary(row) if row else None
        finally:
            conn.close()

    def require_playlist(self, playlist_id: str) -> dict[str, Any]:
        playlist = self.get_playlist(playlist_id)
        if playlist is None:
            raise NotFoundError(f"playlist not found: {playlist_id}")
        return playlist

    def delete_playlist(self, playlist_id: str) -> bool:
        playlist = self.require_playlist(playlist_id)
        if playlist["make_m3u"] and self.playlists_dir:
            path = m3u_path(self.playlists_dir, playlist["name"])
            if path.exists():
                path.unlink()
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM watched_playlists WHERE id=?", (playlist_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def toggle_playlist(self, playlist_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE watched_playlists SET enabled = CASE WHEN enabled = 1 THEN 0 ELSE 1 END WHERE id=?",
                (playlist_id,),
            )
            conn.commit()
            if cur.rowcount == 0:
                raise NotFoundError(f"playlist not found: {playlist_id}")
        finally:
            conn.close()
        return bool(self.require_playlist(playlist_id)["enabled"])

    def needs_refresh(self, playlist: dict[str, Any], now: datetime | None = None) -> bool:
        if not playlist.get("enabled"):
            return False
        last_checked = _parse_timestamp(playlist.get("last_checked"))
        if last_checked is None:
            return True
        now = now or datetime.now(timezone.utc)
        interval = timedelta(hours=int(playlist.get("refresh_interval_hours") or 24))
        return now - last_checked >= interval

    def due_for_refresh(self, now: datetime | None = None) -> list[dict[str, Any]]:
        return [p for p in self.list_playlists() if self.needs_refresh(p, now)]

    # -- tracks -------------------------------------------------------------

    def apply_refresh(self, playlist_id: str, tracks: Iterable[Any]) -> dict[str, int]:
        """Merge a freshly fetched track list into the stored one.

        New tracks start ``pending`` (``downloaded`` when the library already
        holds that artist/title). Tracks that come back after removal are
        restored. In ``mirror`` mode tracks missing upstream get ``removed_at``.
        """
        playlist = self.require_playlist(playlist_id)
        parsed_tracks = [parse_track(track) for track in tracks]
        now = utc_now()
        new_tracks = 0
        removed_tracks = 0

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            current_hashes = {
                row["track_hash"]
                for row in cur.execute(
                    "SELECT track_hash FROM watched_playlist_tracks WHERE playlist_id=? AND removed_at IS NULL",
                    (playlist_id,),
                ).fetchall()
            }
            fetched_hashes = set()
            for track in parsed_tracks:
                digest = track_hash(track["artist"], track["title"])
                fetched_hashes.add(digest)
                existing = cur.execute(
                    "SELECT id, removed_at FROM watched_playlist_tracks WHERE playlist_id=? AND track_hash=?",
                    (playlist_id, digest),
                ).fetchone()
                if existing is None:
                    match = cur.execute(
                        "SELECT external_ref FROM library WHERE LOWER(artist)=? AND LOWER(title)=? LIMIT 1",
                        (track["artist"].strip().lower(), track["title"].strip().lower()),
                    ).fetchone()
                    in_library = match is not None
                    external_ref = track["external_ref"] or (match["external_ref"] if match else None)
                    cur.execute(
                        """
                        INSERT INTO watched_playlist_tracks (
                            playlist_id, track_hash, artist, title, external_ref,
                            status, added_at, downloaded_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            playlist_id,
                            digest,
                            track["artist"],
                            track["title"],
                            external_ref,
                            TRACK_DOWNLOADED if in_library else TRACK_PENDING,
                            now,
                            now if in_library else None,
                        ),
                    )
                    new_tracks += 1
                elif existing["removed_at"]:
                    cur.execute(
                        "UPDATE watched_playlist_tracks SET removed_at=NULL WHERE id=?",
                        (existing["id"],),
                    )

            if playlist["sync_mode"] == SYNC_MIRROR:
                to_remove = sorted(current_hashes - fetched_hashes)
                if to_remove:
                    placeholders = ",".join("?" for _ in to_remove)
                    cur.execute(
                        f"""
                        UPDATE watched_playlist_tracks SET removed_at=?
                        WHERE playlist_id=? AND track_hash IN ({placeholders}) AND removed_at IS NULL
                        """,
                        (now, playlist_id, *to_remove),
                    )
                    removed_tracks = len(to_remove)

            cur.execute(
                "UPDATE watched_playlists SET last_checked=?, last_track_count=? WHERE id=?",
                (now, len(parsed_tracks), playlist_id),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

        return {
            "new_tracks": new_tracks,
            "removed_tracks": removed_tracks,
            "total_tracks": len(parsed_tracks),
        }

    def list_tracks(
        self,
        playlist_id: str,
        *,
        status: str | None = None,
        limit: int = 25,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM watched_playlist_tracks WHERE playlist_id=? AND status=?
                    ORDER BY added_at DESC, id DESC LIMIT ? OFFSET ?
                    """,
                    (playlist_id, status, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM watched_playlist_tracks WHERE playlist_id=?
                    ORDER BY added_at DESC, id DESC LIMIT ? OFFSET ?
                    """,
                    (playlist_id, limit, offset),
                ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def pending_tracks(self, playlist_id: str, limit: int = 10) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT * FROM watched_playlist_tracks
                WHERE playlist_id=? AND status=? AND removed_at IS NULL
                ORDER BY added_at ASC, id ASC LIMIT ?
                """,
                (playlist_id, TRACK_PENDING, limit),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def update_track_status(
        self,
        track_id: int,
        status: str,
        *,
        job_id: str | None = None,
        external_ref: str | None = None,
    ) -> None:
        assignments = ["status=?"]
        params: list[Any] = [status]
        if job_id is not None:
            assignments.append("job_id=?")
            params.append(job_id)
        if external_ref is not None:
            assignments.append("external_ref=?")
            params.append(external_ref)
        if status == TRACK_DOWNLOADED:
            assignments.append("downloaded_at=?")
            params.append(utc_now())
        params.append(track_id)
        conn = self._connect()
        try:
            conn.execute(
                f"UPDATE watched_playlist_tracks SET {', '.join(assignments)} WHERE id=?",
                params,
            )
            conn.commit()
        finally:
            conn.close()

    def mark_job_outcome(self, job_id: str, succeeded: bool) -> int:
        """Completion hook: move tracks queued behind ``job_id`` to their terminal status."""
        conn = self._connect()
        try:
            if succeeded:
                cur = conn.execute(
                    """
                    UPDATE watched_playlist_tracks SET status=?, downloaded_at=?
                    WHERE job_id=? AND status=?
                    """,
                    (TRACK_DOWNLOADED, utc_now(), job_id, TRACK_QUEUED),
                )
            else:
                cur = conn.execute(
                    "UPDATE watched_playlist_tracks SET status=? WHERE job_id=? AND status=?",
                    (TRACK_FAILED, job_id, TRACK_QUEUED),
                )
            updated = cur.rowcount
            playlist_ids = [
                row[0]
                for row in conn.execute(
                    "SELECT DISTINCT playlist_id FROM watched_playlist_tracks WHERE job_id=?",
                    (job_id,),
                ).fetchall()
            ]
            conn.commit()
        finally:
            conn.close()
        if succeeded and updated:
            for playlist_id in playlist_ids:
                self.generate_m3u(playlist_id)
        return updated

    def sync_track_statuses(self) -> int:
        """Catch up queued tracks whose jobs finished without the hook firing."""
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                UPDATE watched_playlist_tracks SET status=?, downloaded_at=?
                WHERE status=? AND job_id IN (SELECT id FROM jobs WHERE status='completed')
                """,
                (TRACK_DOWNLOADED, now, TRACK_QUEUED),
            )
            downloaded = cur.rowcount
            conn.execute(
                """
                UPDATE watched_playlist_tracks SET status=?
                WHERE status=? AND job_id IN (SELECT id FROM jobs WHERE status='failed')
                """,
                (TRACK_FAILED, TRACK_QUEUED),
            )
            conn.commit()
        finally:
            conn.close()
        if downloaded:
            self.regenerate_all_m3u()
        return downloaded

    def retry_failed(self, playlist_id: str) -> int:
        self.require_playlist(playlist_id)
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE watched_playlist_tracks SET status=?, job_id=NULL WHERE playlist_id=? AND status=?",
                (TRACK_PENDING, playlist_id, TRACK_FAILED),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def downloaded_tracks(self) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM watched_playlist_tracks WHERE status=?",
                (TRACK_DOWNLOADED,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def reset_track(self, track_id: int) -> bool:
        """``downloaded`` -> ``pending`` for a track whose file is no longer archived."""
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                UPDATE watched_playlist_tracks SET status=?, job_id=NULL, downloaded_at=NULL
                WHERE id=? AND status=?
                """,
                (TRACK_PENDING, track_id, TRACK_DOWNLOADED),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # -- m3u ----------------------------------------------------------------

    def generate_m3u(self, playlist_id: str) -> dict[str, Any]:
        playlist = self.get_playlist(playlist_id)
        if playlist is None:
            return {"success": False, "error": "Playlist not found"}
        if not playlist["make_m3u"]:
            return {"success": False, "error": "M3U generation disabled for this playlist"}
        if not self.playlists_dir:
            return {"success": False, "error": "No playlists directory configured"}

        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT wpt.artist, wpt.title, l.file_path
                FROM watched_playlist_tracks wpt
                JOIN library l ON wpt.external_ref = l.external_ref
                WHERE wpt.playlist_id=? AND wpt.status=? AND wpt.removed_at IS NULL
                GROUP BY wpt.id
                ORDER BY wpt.added_at ASC, wpt.id ASC
                """,
                (playlist_id, TRACK_DOWNLOADED),
            ).fetchall()
        finally:
            conn.close()

        entries = [(row["file_path"], f"{row['artist']} - {row['title']}") for row in rows if row["file_path"]]
        path, count = write_m3u(self.playlists_dir, playlist["name"], entries)
        return {"success": True, "path": os.fspath(path), "track_count": count}

    def regenerate_all_m3u(self) -> None:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id FROM watched_playlists WHERE make_m3u = 1").fetchall()
        finally:
            conn.close()
        for row in rows:
            self.generate_m3u(row["id"])


def _summary(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    for key in ("total_tracks", "downloaded_tracks", "pending_tracks", "queued_tracks", "failed_tracks"):
        data[key] = int(data.get(key) or 0)
    data["enabled"] = bool(data.get("enabled"))
    data["make_m3u"] = bool(data.get("make_m3u"))
    return data
