"""SQLite schema for jobs, library entries and watched playlists."""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timedelta, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def utc_days_ago(days: float) -> str:
    moment = datetime.now(timezone.utc) - timedelta(days=days)
    return moment.replace(microsecond=0).isoformat()


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with the pragmas every store relies on."""
    directory = os.path.dirname(os.path.abspath(db_path))
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_jobs_table(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            source TEXT NOT NULL,
            external_ref TEXT,
            title TEXT NOT NULL,
            artist TEXT NOT NULL,
            url TEXT,
            thumbnail TEXT,
            convert_to_flac INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'queued',
            error TEXT,
            file_path TEXT,
            codec TEXT,
            bitrate INTEGER,
            duration INTEGER,
            metadata_source TEXT,
            claim_token TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
        """
    )
    cur.execute("PRAGMA table_info(jobs)")
    existing_columns = {row[1] for row in cur.fetchall()}
    for column in ("thumbnail", "metadata_source", "claim_token"):
        if column not in existing_columns:
            cur.execute(f"ALTER TABLE jobs ADD COLUMN {column} TEXT")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs (status, created_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_external_ref ON jobs (external_ref)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_claim_token ON jobs (claim_token)")
    conn.commit()


def ensure_library_table(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS library (
            id TEXT PRIMARY KEY,
            job_id TEXT,
            title TEXT NOT NULL,
            artist TEXT,
            album TEXT DEFAULT 'Singles',
            file_path TEXT NOT NULL,
            file_size INTEGER,
            duration INTEGER,
            codec TEXT,
            bitrate INTEGER,
            thumbnail TEXT,
            source TEXT,
            external_ref TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_library_artist ON library (artist)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_library_title ON library (title)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_library_external_ref ON library (external_ref)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_library_job_id ON library (job_id)")
    conn.commit()


def ensure_watched_tables(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS watched_playlists (
            id TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            name TEXT NOT NULL,
            platform TEXT NOT NULL,
            sync_mode TEXT NOT NULL DEFAULT 'append',
            make_m3u INTEGER NOT NULL DEFAULT 1,
            enabled INTEGER NOT NULL DEFAULT 1,
            refresh_interval_hours INTEGER NOT NULL DEFAULT 24,
            last_checked TEXT,
            last_track_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS watched_playlist_tracks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            playlist_id TEXT NOT NULL,
            track_hash TEXT NOT NULL,
            artist TEXT,
            title TEXT,
            external_ref TEXT,
            job_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            added_at TEXT NOT NULL,
            downloaded_at TEXT,
            removed_at TEXT,
            FOREIGN KEY (playlist_id) REFERENCES watched_playlists(id) ON DELETE CASCADE,
            UNIQUE (playlist_id, track_hash)
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_watched_tracks_playlist ON watched_playlist_tracks (playlist_id)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_watched_tracks_status ON watched_playlist_tracks (status)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_watched_tracks_job ON watched_playlist_tracks (job_id)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_watched_tracks_external_ref "
        "ON watched_playlist_tracks (external_ref)"
    )
    conn.commit()


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_jobs_table(conn)
    ensure_library_table(conn)
    ensure_watched_tables(conn)


def init_db(db_path: str) -> None:
    conn = connect(db_path)
    try:
        ensure_schema(conn)
    finally:
        conn.close()
