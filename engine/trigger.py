"""Request-driven job execution.

There is no dedicated worker. Jobs run when:

- an ordinary HTTP request finishes (piggyback path, ``run_piggyback``),
- an external caller hits the secret-protected trigger (``external_trigger``),
- the optional in-process ticker fires (``engine.scheduler``).

All three go through ``claim_next`` and ``DownloadOrchestrator.process``.
"""

import hmac
import logging

from engine.config import DEFAULT_SKIP_PATHS

logger = logging.getLogger(__name__)

DEFAULT_MAX_COUNT = 20


def clamp_count(count, max_count=DEFAULT_MAX_COUNT):
    try:
        value = int(count)
    except (TypeError, ValueError):
        value = 1
    return max(1, min(value, max_count))


class BackgroundProcessor:
    def __init__(
        self,
        job_store,
        orchestrator,
        *,
        jobs_per_request=1,
        skip_paths=DEFAULT_SKIP_PATHS,
        trigger_secret=None,
        max_count=DEFAULT_MAX_COUNT,
    ):
        self.job_store = job_store
        self.orchestrator = orchestrator
        self.jobs_per_request = max(0, int(jobs_per_request))
        self.skip_paths = tuple(skip_paths or ())
        self.trigger_secret = trigger_secret or None
        self.max_count = max(1, int(max_count))

    def should_trigger(self, path):
        if self.jobs_per_request <= 0:
            return False
        return not any((path or "").startswith(prefix) for prefix in self.skip_paths)

    def process_next(self):
        job = self.job_store.claim_next()
        if job is None:
            return None
        return self.orchestrator.process(job)

    def run_batch(self, count):
        outcomes = []
        for _ in range(count):
            outcome = self.process_next()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def run_piggyback(self):
        """Background callback attached to a finished response. Never raises."""
        try:
            outcomes = self.run_batch(self.jobs_per_request)
        except Exception:
            logger.exception("[TRIGGER] piggyback processing failed")
            return []
        if outcomes:
            logger.info("[TRIGGER] piggyback processed %d job(s)", len(outcomes))
        return outcomes

    @property
    def enabled(self):
        return bool(self.trigger_secret)

    def authorize(self, provided):
        if not self.trigger_secret or not provided:
            return False
        return hmac.compare_digest(str(provided).encode("utf-8"), str(self.trigger_secret).encode("utf-8"))

    def external_trigger(self, count=1):
        """Process up to ``count`` jobs for an already-authorized caller."""
        if not self.enabled:
            return {"status": "disabled"}
        count = clamp_count(count, self.max_count)
        results = []
        for outcome in self.run_batch(count):
            results.append(outcome.to_dict())
        logger.info("[TRIGGER] external trigger processed %d of %d requested", len(results), count)
        return {
            "status": "ok",
            "processed": len(results),
            "results": results,
            "stats": self.job_store.stats(),
        }
