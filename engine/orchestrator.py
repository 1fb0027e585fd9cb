"""Runs one claimed job end to end.

fetch (rate limited) -> enrich -> ``mark_completed`` -> library entry ->
watched-playlist hook. Any exception on the way ends in ``mark_failed``; the
caller only ever sees an outcome value.
"""

import logging
import os
from dataclasses import dataclass

from engine.errors import ConfigurationError, TransientFetchError
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completed:
    job_id: str
    file_path: str
    library_entry_id: str
    codec: str | None = None
    bitrate: int | None = None
    duration: int | None = None
    metadata_source: str | None = None

    status = "completed"

    def to_dict(self):
        return {
            "job_id": self.job_id,
            "status": self.status,
            "file_path": self.file_path,
            "library_entry_id": self.library_entry_id,
        }


@dataclass(frozen=True)
class Failed:
    job_id: str
    error: str

    status = "failed"

    def to_dict(self):
        return {"job_id": self.job_id, "status": self.status, "error": self.error}


JobOutcome = Completed | Failed


class DownloadOrchestrator:
    def __init__(
        self,
        job_store,
        library,
        downloaders,
        rate_limiter,
        *,
        enricher=None,
        watched=None,
    ):
        self.job_store = job_store
        self.library = library
        self.downloaders = dict(downloaders or {})
        self.rate_limiter = rate_limiter
        self.enricher = enricher
        self.watched = watched

    def process(self, job):
        """Execute ``job`` (already claimed) and return ``Completed`` or ``Failed``."""
        try:
            return self._run(job)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            log_event(
                logging.WARNING,
                "job_failed",
                job_id=job.id,
                source=job.source,
                error=message,
                error_type=exc.__class__.__name__,
            )
            if not isinstance(exc, (TransientFetchError, ConfigurationError)):
                logger.exception("[WORKER] unexpected error processing job %s", job.id)
            self.job_store.mark_failed(job.id, message)
            self._notify_watched(job.id, succeeded=False)
            return Failed(job_id=job.id, error=message)

    def _run(self, job):
        downloader = self.downloaders.get(job.source)
        if downloader is None:
            raise ConfigurationError(f"No downloader configured for source {job.source}")

        log_event(logging.INFO, "job_started", job_id=job.id, source=job.source, ref=job.external_ref)
        self.rate_limiter.wait(job.source)
        raw = downloader.fetch(job)
        if not raw.file_path or not os.path.isfile(raw.file_path):
            raise TransientFetchError("Downloaded file not found")

        file_path = raw.file_path
        artist = raw.artist or job.artist
        title = raw.title or job.title
        album = raw.album
        metadata_source = None
        if self.enricher is not None:
            enrichment = self.enricher.enrich(job.source, raw)
            file_path = enrichment.file_path
            artist = enrichment.artist or artist
            title = enrichment.title or title
            album = enrichment.album or album
            metadata_source = enrichment.metadata_source

        completed = self.job_store.mark_completed(
            job.id,
            file_path=file_path,
            codec=raw.codec,
            bitrate=raw.bitrate,
            duration=raw.duration,
            metadata_source=metadata_source,
        )
        if not completed:
            return Failed(job_id=job.id, error="Job was no longer processing")

        entry = self.library.add(
            job_id=job.id,
            title=title,
            artist=artist,
            album=album,
            file_path=file_path,
            duration=raw.duration,
            codec=raw.codec,
            bitrate=raw.bitrate,
            thumbnail=raw.thumbnail or job.thumbnail,
            source=job.source,
            external_ref=job.external_ref,
        )
        self._notify_watched(job.id, succeeded=True)
        log_event(
            logging.INFO,
            "job_completed",
            job_id=job.id,
            file_path=file_path,
            library_entry_id=entry.id,
            metadata_source=metadata_source,
        )
        return Completed(
            job_id=job.id,
            file_path=file_path,
            library_entry_id=entry.id,
            codec=raw.codec,
            bitrate=raw.bitrate,
            duration=raw.duration,
            metadata_source=metadata_source,
        )

    def _notify_watched(self, job_id, *, succeeded):
        if self.watched is None:
            return
        try:
            self.watched.mark_job_outcome(job_id, succeeded)
        except Exception:
            logger.exception("[WORKER] watched-playlist hook failed for job %s", job_id)
