"""Durable ledger of download jobs.

Every state change is a conditional ``UPDATE`` whose ``WHERE`` clause pins the
expected current status, so concurrent request threads acting as ad-hoc
workers can never both win the same transition.
"""

import logging
import os
import sqlite3
import uuid
from dataclasses import asdict, dataclass

from db.library import LibraryIndex
from db.migrations import connect, ensure_schema, utc_days_ago, utc_now
from engine.errors import ConcurrencyViolation, InvalidTransition, NotFoundError

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

JOB_STATUSES = (
    JOB_STATUS_QUEUED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
)
TERMINAL_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)
ACTIVE_STATUSES = (JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING)

ALLOWED_TRANSITIONS = frozenset(
    {
        (JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING),
        (JOB_STATUS_PROCESSING, JOB_STATUS_COMPLETED),
        (JOB_STATUS_PROCESSING, JOB_STATUS_FAILED),
        (JOB_STATUS_FAILED, JOB_STATUS_QUEUED),
    }
)

SOURCE_CDN = "cdn-direct"
SOURCE_EXTRACTOR = "extractor"
KNOWN_SOURCES = (SOURCE_CDN, SOURCE_EXTRACTOR)

DEDUP_ALREADY_QUEUED = "already_queued"
DEDUP_IN_LIBRARY = "already_in_library"
DEDUP_DOWNLOADED = "already_downloaded"

MISSING_OUTPUT_ERROR = "File missing from library; retry to download again"


def assert_transition(current, target, job_id=None):
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(job_id, current, target)


@dataclass(frozen=True)
class JobSpec:
    source: str
    title: str = "Unknown"
    artist: str = "Unknown"
    external_ref: str | None = None
    url: str | None = None
    thumbnail: str | None = None
    convert_to_flac: bool = True

    @classmethod
    def from_payload(cls, payload):
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        source = str(payload.get("source") or "").strip().lower()
        if source not in KNOWN_SOURCES:
            raise ValueError(f"source must be one of: {', '.join(KNOWN_SOURCES)}")
        external_ref = str(payload.get("external_ref") or "").strip() or None
        url = str(payload.get("url") or "").strip() or None
        if not external_ref and not url:
            raise ValueError("external_ref or url is required")
        convert = payload.get("convert_to_flac", True)
        if isinstance(convert, str):
            convert = convert.strip().lower() in {"1", "true", "yes", "on"}
        return cls(
            source=source,
            title=str(payload.get("title") or "").strip() or "Unknown",
            artist=str(payload.get("artist") or "").strip() or "Unknown",
            external_ref=external_ref,
            url=url,
            thumbnail=str(payload.get("thumbnail") or "").strip() or None,
            convert_to_flac=bool(convert),
        )


@dataclass(frozen=True)
class Job:
    id: str
    source: str
    external_ref: str | None
    title: str
    artist: str
    url: str | None
    thumbnail: str | None
    convert_to_flac: bool
    status: str
    error: str | None
    file_path: str | None
    codec: str | None
    bitrate: int | None
    duration: int | None
    metadata_source: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return asdict(self)


def _row_to_job(row):
    if row is None:
        return None
    return Job(
        id=row["id"],
        source=row["source"],
        external_ref=row["external_ref"],
        title=row["title"],
        artist=row["artist"],
        url=row["url"],
        thumbnail=row["thumbnail"],
        convert_to_flac=bool(row["convert_to_flac"]),
        status=row["status"],
        error=row["error"],
        file_path=row["file_path"],
        codec=row["codec"],
        bitrate=row["bitrate"],
        duration=row["duration"],
        metadata_source=row["metadata_source"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


class JobStore:
    def __init__(self, db_path, library=None):
        self.db_path = db_path
        self.library = library or LibraryIndex(db_path)
        conn = self._connect()
        try:
            ensure_schema(conn)
        finally:
            conn.close()

    def _connect(self):
        return connect(self.db_path)

    # -- creation -----------------------------------------------------------

    def enqueue(self, spec):
        """Insert a job in ``queued`` and return its id. No duplicate checks."""
        if spec.source not in KNOWN_SOURCES:
            raise ValueError(f"unknown source: {spec.source}")
        job_id = uuid.uuid4().hex[:16]
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, source, external_ref, title, artist, url, thumbnail,
                    convert_to_flac, status, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    spec.source,
                    spec.external_ref,
                    spec.title or "Unknown",
                    spec.artist or "Unknown",
                    spec.url,
                    spec.thumbnail,
                    1 if spec.convert_to_flac else 0,
                    JOB_STATUS_QUEUED,
                    utc_now(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("[QUEUE] enqueued job_id=%s source=%s ref=%s", job_id, spec.source, spec.external_ref)
        return job_id

    def enqueue_unique(self, spec):
        """Enqueue unless the reference is already active or archived.

        Returns ``(job_id, created, reason)``. When rejected, ``job_id`` is the
        blocking job's id where one exists and ``reason`` names the dedup rule.
        """
        if not spec.external_ref:
            return self.enqueue(spec), True, None

        reason, blocking_id = self._dedup_check(spec.external_ref)
        if reason:
            logger.info("[QUEUE] skip ref=%s reason=%s", spec.external_ref, reason)
            return blocking_id, False, reason

        job_id = uuid.uuid4().hex[:16]
        conn = self._connect()
        try:
            cur = conn.cursor()
            # Single guarded insert: two concurrent callers cannot both create an active job.
            cur.execute(
                """
                INSERT INTO jobs (
                    id, source, external_ref, title, artist, url, thumbnail,
                    convert_to_flac, status, created_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM jobs WHERE external_ref=? AND status IN (?, ?)
                )
                """,
                (
                    job_id,
                    spec.source,
                    spec.external_ref,
                    spec.title or "Unknown",
                    spec.artist or "Unknown",
                    spec.url,
                    spec.thumbnail,
                    1 if spec.convert_to_flac else 0,
                    JOB_STATUS_QUEUED,
                    utc_now(),
                    spec.external_ref,
                    JOB_STATUS_QUEUED,
                    JOB_STATUS_PROCESSING,
                ),
            )
            conn.commit()
            inserted = cur.rowcount == 1
        finally:
            conn.close()
        if not inserted:
            active = self._find_active(spec.external_ref)
            return (active.id if active else None), False, DEDUP_ALREADY_QUEUED
        logger.info("[QUEUE] enqueued job_id=%s source=%s ref=%s", job_id, spec.source, spec.external_ref)
        return job_id, True, None

    # -- dedup --------------------------------------------------------------

    def _find_active(self, external_ref):
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT * FROM jobs
                WHERE external_ref=? AND status IN (?, ?)
                ORDER BY created_at ASC, rowid ASC LIMIT 1
                """,
                (external_ref, JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING),
            ).fetchone()
            return _row_to_job(row)
        finally:
            conn.close()

    def _dedup_check(self, external_ref):
        active = self._find_active(external_ref)
        if active:
            return DEDUP_ALREADY_QUEUED, active.id

        for entry in self.library.find_by_external_ref(external_ref):
            if entry.file_exists():
                return DEDUP_IN_LIBRARY, entry.job_id
            logger.warning(
                "[QUEUE] library entry %s points at missing file %s; removing",
                entry.id,
                entry.file_path,
            )
            self.library.remove_entry(entry.id)

        for job in self._completed_for_ref(external_ref):
            if job.file_path and os.path.isfile(job.file_path):
                return DEDUP_DOWNLOADED, job.id
            logger.warning("[QUEUE] completed job %s has no file on disk; marking failed", job.id)
            self.demote_missing_output(job.id)
        return None, None

    def is_already_active_or_done(self, external_ref):
        if not external_ref:
            return False
        reason, _ = self._dedup_check(external_ref)
        return reason is not None

    def _completed_for_ref(self, external_ref):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE external_ref=? AND status=? ORDER BY created_at DESC",
                (external_ref, JOB_STATUS_COMPLETED),
            ).fetchall()
            return [_row_to_job(row) for row in rows]
        finally:
            conn.close()

    # -- claiming and completion ---------------------------------------------

    def claim_next(self, *, now=None):
        """Atomically move the oldest queued job to ``processing``.

        Returns the claimed job, or ``None`` when the queue is empty or another
        caller won the race.
        """
        now = now or utc_now()
        token = uuid.uuid4().hex
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                UPDATE jobs
                SET status=?, started_at=?, completed_at=NULL, claim_token=?
                WHERE id = (
                    SELECT id FROM jobs WHERE status=?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                )
                AND status=?
                """,
                (JOB_STATUS_PROCESSING, now, token, JOB_STATUS_QUEUED, JOB_STATUS_QUEUED),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            row = cur.execute("SELECT * FROM jobs WHERE claim_token=?", (token,)).fetchone()
            if row is None:
                raise ConcurrencyViolation(f"claim token {token} no longer matches a row")
            conn.commit()
        except (sqlite3.OperationalError, ConcurrencyViolation) as exc:
            # Lock timeouts under heavy contention count as a lost race.
            conn.rollback()
            logger.info("[QUEUE] claim skipped: %s", exc)
            return None
        finally:
            conn.close()
        job = _row_to_job(row)
        if job:
            logger.info("[QUEUE] claimed job_id=%s source=%s", job.id, job.source)
        return job

    def mark_completed(
        self,
        job_id,
        *,
        file_path,
        codec=None,
        bitrate=None,
        duration=None,
        metadata_source=None,
    ):
        """``processing`` -> ``completed``. Returns False (no-op) for any other current state."""
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status=?, file_path=?, codec=?, bitrate=?, duration=?,
                    metadata_source=?, error=NULL, completed_at=?
                WHERE id=? AND status=?
                """,
                (
                    JOB_STATUS_COMPLETED,
                    file_path,
                    codec,
                    bitrate,
                    duration,
                    metadata_source,
                    utc_now(),
                    job_id,
                    JOB_STATUS_PROCESSING,
                ),
            )
            conn.commit()
            updated = cur.rowcount == 1
        finally:
            conn.close()
        if not updated:
            logger.info("[QUEUE] ignored completion for job_id=%s (not processing)", job_id)
        return updated

    def mark_failed(self, job_id, error):
        """``processing`` -> ``failed``. Returns False (no-op) for any other current state."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE jobs SET status=?, error=?, completed_at=? WHERE id=? AND status=?",
                (JOB_STATUS_FAILED, str(error or "Unknown error"), utc_now(), job_id, JOB_STATUS_PROCESSING),
            )
            conn.commit()
            updated = cur.rowcount == 1
        finally:
            conn.close()
        if not updated:
            logger.info("[QUEUE] ignored failure for job_id=%s (not processing)", job_id)
        return updated

    def demote_missing_output(self, job_id, error=MISSING_OUTPUT_ERROR):
        """Reconciliation edge: a ``completed`` job whose file vanished becomes ``failed``."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE jobs SET status=?, error=? WHERE id=? AND status=?",
                (JOB_STATUS_FAILED, error, job_id, JOB_STATUS_COMPLETED),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # -- user actions -------------------------------------------------------

    def retry(self, job_id):
        """``failed`` -> ``queued``, clearing the error, timestamps and result fields.

        Returns False and leaves the job ``failed`` while another job for the
        same reference is queued or processing.
        """
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                UPDATE jobs
                SET status=?, error=NULL, started_at=NULL, completed_at=NULL,
                    file_path=NULL, codec=NULL, bitrate=NULL, duration=NULL,
                    metadata_source=NULL, claim_token=NULL
                WHERE id=? AND status=?
                AND (
                    external_ref IS NULL
                    OR NOT EXISTS (
                        SELECT 1 FROM jobs AS other
                        WHERE other.external_ref = jobs.external_ref
                          AND other.status IN (?, ?)
                          AND other.id != jobs.id
                    )
                )
                """,
                (JOB_STATUS_QUEUED, job_id, JOB_STATUS_FAILED, JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING),
            )
            conn.commit()
            updated = cur.rowcount == 1
        finally:
            conn.close()
        if updated:
            logger.info("[QUEUE] retry job_id=%s", job_id)
            return True
        job = self.require(job_id)
        assert_transition(job.status, JOB_STATUS_QUEUED, job_id)
        logger.info("[QUEUE] retry skipped job_id=%s ref=%s reason=%s", job_id, job.external_ref, DEDUP_ALREADY_QUEUED)
        return False

    def active_job_for(self, external_ref):
        """Return the queued or processing job for ``external_ref``, if any."""
        if not external_ref:
            return None
        return self._find_active(external_ref)

    def delete(self, job_id):
        """Delete a job in any state except ``processing``."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM jobs WHERE id=? AND status != ?",
                (job_id, JOB_STATUS_PROCESSING),
            )
            conn.commit()
            deleted = cur.rowcount == 1
        finally:
            conn.close()
        if deleted:
            return True
        job = self.get(job_id)
        if job is None:
            raise NotFoundError(f"job not found: {job_id}")
        raise InvalidTransition(job_id, job.status, "deleted")

    def clear(self, status=None):
        """Delete terminal jobs (``completed``, ``failed`` or both) not referenced by the library."""
        if status in TERMINAL_STATUSES:
            statuses = (status,)
        elif status is None:
            statuses = TERMINAL_STATUSES
        else:
            raise ValueError(f"can only clear terminal statuses, got {status}")
        placeholders = ",".join("?" for _ in statuses)
        conn = self._connect()
        try:
            cur = conn.execute(
                f"""
                DELETE FROM jobs
                WHERE status IN ({placeholders})
                  AND id NOT IN (SELECT job_id FROM library WHERE job_id IS NOT NULL)
                """,
                statuses,
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def cleanup_terminal(self, older_than_days):
        cutoff = utc_days_ago(older_than_days)
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                DELETE FROM jobs
                WHERE status IN (?, ?)
                  AND COALESCE(completed_at, created_at) < ?
                  AND id NOT IN (SELECT job_id FROM library WHERE job_id IS NOT NULL)
                """,
                (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED, cutoff),
            )
            conn.commit()
            removed = cur.rowcount
        finally:
            conn.close()
        if removed:
            logger.info("[QUEUE] cleaned up %d terminal jobs older than %s days", removed, older_than_days)
        return removed

    # -- queries ------------------------------------------------------------

    def get(self, job_id):
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
            return _row_to_job(row)
        finally:
            conn.close()

    def require(self, job_id):
        job = self.get(job_id)
        if job is None:
            raise NotFoundError(f"job not found: {job_id}")
        return job

    def find_by_external_ref(self, external_ref):
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM jobs WHERE external_ref=? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (external_ref,),
            ).fetchone()
            return _row_to_job(row)
        finally:
            conn.close()

    def list_jobs(self, status=None, limit=50, offset=0):
        conn = self._connect()
        try:
            if status:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status=? ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    (status, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
            return [_row_to_job(row) for row in rows]
        finally:
            conn.close()

    def iter_completed(self):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status=? ORDER BY created_at ASC",
                (JOB_STATUS_COMPLETED,),
            ).fetchall()
        finally:
            conn.close()
        for row in rows:
            yield _row_to_job(row)

    def stats(self):
        counts = {status: 0 for status in JOB_STATUSES}
        counts["total"] = 0
        conn = self._connect()
        try:
            rows = conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
        finally:
            conn.close()
        for row in rows:
            counts[row["status"]] = int(row["count"])
            counts["total"] += int(row["count"])
        return counts

    def pending_count(self):
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE status IN (?, ?)",
                (JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING),
            ).fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()
