"""Optional in-process ticker that drains the queue and polls watched playlists."""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "queue_drain"
WATCH_JOB_ID = "watched_playlist_poll"
CLEANUP_JOB_ID = "terminal_job_cleanup"


class QueueTicker:
    def __init__(
        self,
        processor,
        *,
        drain_interval_seconds=30,
        batch_size=5,
        watch_callback=None,
        watch_interval_minutes=60,
        cleanup_callback=None,
        scheduler=None,
    ):
        self.processor = processor
        self.drain_interval_seconds = drain_interval_seconds
        self.batch_size = batch_size
        self.watch_callback = watch_callback
        self.watch_interval_minutes = watch_interval_minutes
        self.cleanup_callback = cleanup_callback
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def drain(self):
        try:
            outcomes = self.processor.run_batch(self.batch_size)
        except Exception:
            logger.exception("[TRIGGER] scheduled drain failed")
            return 0
        if outcomes:
            logger.info("[TRIGGER] scheduled drain processed %d job(s)", len(outcomes))
        return len(outcomes)

    def poll_watched(self):
        if self.watch_callback is None:
            return None
        try:
            return self.watch_callback()
        except Exception:
            logger.exception("[TRIGGER] watched playlist poll failed")
            return None

    def cleanup(self):
        if self.cleanup_callback is None:
            return None
        try:
            return self.cleanup_callback()
        except Exception:
            logger.exception("[TRIGGER] terminal job cleanup failed")
            return None

    def start(self):
        self.scheduler.add_job(
            self.drain,
            trigger=IntervalTrigger(seconds=self.drain_interval_seconds),
            id=DRAIN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        if self.watch_callback is not None:
            self.scheduler.add_job(
                self.poll_watched,
                trigger=IntervalTrigger(minutes=self.watch_interval_minutes),
                id=WATCH_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
            )
        if self.cleanup_callback is not None:
            self.scheduler.add_job(
                self.cleanup,
                trigger=IntervalTrigger(hours=24),
                id=CLEANUP_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
            )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("[TRIGGER] ticker started drain_interval=%ss", self.drain_interval_seconds)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
