"""Integrity sweep across the job ledger, the library index and the filesystem.

``scan`` only reports. ``heal`` repairs records so they agree with what is on
disk: it removes index rows, fails jobs and resets watched tracks, and never
touches a file.
"""

import logging
import os
from dataclasses import dataclass, field

from engine.errors import IntegrityDrift

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    missing_files: list = field(default_factory=list)
    orphaned_jobs: list = field(default_factory=list)
    orphaned_tracks: list = field(default_factory=list)

    @property
    def is_clean(self):
        return not (self.missing_files or self.orphaned_jobs or self.orphaned_tracks)

    def to_dict(self):
        return {
            "missing_files": self.missing_files,
            "orphaned_jobs": self.orphaned_jobs,
            "orphaned_tracks": self.orphaned_tracks,
            "is_clean": self.is_clean,
        }


@dataclass
class HealReport:
    removed_entries: int = 0
    failed_jobs: int = 0
    reset_tracks: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self):
        return {
            "removed_entries": self.removed_entries,
            "failed_jobs": self.failed_jobs,
            "reset_tracks": self.reset_tracks,
            "errors": self.errors,
        }


def check_file(kind, record_id, file_path):
    """Raise ``IntegrityDrift`` unless ``file_path`` is an existing file."""
    if not file_path or not os.path.isfile(file_path):
        raise IntegrityDrift(kind, record_id, file_path)


def check_track(track, refs, library):
    """Raise ``IntegrityDrift`` for a ``downloaded`` watched track with nothing in the library."""
    ref = track.get("external_ref")
    if ref:
        archived = ref in refs
    else:
        archived = library.has_artist_title(track.get("artist") or "", track.get("title") or "")
    if not archived:
        raise IntegrityDrift("track", track["id"])


class ReconciliationEngine:
    def __init__(self, job_store, library, watched=None):
        self.job_store = job_store
        self.library = library
        self.watched = watched

    def _drifted_entries(self):
        for entry in list(self.library.iter_entries()):
            try:
                check_file("library", entry.id, entry.file_path)
            except IntegrityDrift as drift:
                yield entry, drift

    def _drifted_jobs(self):
        for job in list(self.job_store.iter_completed()):
            try:
                check_file("job", job.id, job.file_path)
            except IntegrityDrift as drift:
                yield job, drift

    def _drifted_tracks(self):
        if self.watched is None:
            return
        refs = self.library.external_refs()
        for track in self.watched.downloaded_tracks():
            try:
                check_track(track, refs, self.library)
            except IntegrityDrift as drift:
                yield track, drift

    def scan(self):
        report = IntegrityReport()
        for entry, _ in self._drifted_entries():
            report.missing_files.append(
                {"id": entry.id, "file_path": entry.file_path, "title": entry.title, "artist": entry.artist}
            )
        for job, _ in self._drifted_jobs():
            report.orphaned_jobs.append({"id": job.id, "file_path": job.file_path, "title": job.title})
        for track, _ in self._drifted_tracks():
            report.orphaned_tracks.append(
                {
                    "id": track["id"],
                    "playlist_id": track["playlist_id"],
                    "artist": track["artist"],
                    "title": track["title"],
                }
            )
        return report

    def _repair(self, report, drift, action, counter):
        logger.warning("[RECONCILE] %s", drift)
        try:
            if action(drift.record_id):
                setattr(report, counter, getattr(report, counter) + 1)
        except Exception as exc:
            logger.exception("[RECONCILE] failed to repair %s %s", drift.kind, drift.record_id)
            report.errors.append(f"{drift.kind}:{drift.record_id}: {exc}")

    def heal(self):
        report = HealReport()
        for _, drift in self._drifted_entries():
            self._repair(report, drift, self.library.remove_entry, "removed_entries")
        for _, drift in self._drifted_jobs():
            self._repair(report, drift, self.job_store.demote_missing_output, "failed_jobs")
        if self.watched is not None:
            for _, drift in self._drifted_tracks():
                self._repair(report, drift, self.watched.reset_track, "reset_tracks")

        logger.info(
            "[RECONCILE] healed removed_entries=%d failed_jobs=%d reset_tracks=%d errors=%d",
            report.removed_entries,
            report.failed_jobs,
            report.reset_tracks,
            len(report.errors),
        )
        return report
