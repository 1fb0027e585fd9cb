"""Exception taxonomy shared by the queue, downloaders and reconciliation."""

from __future__ import annotations


class TrackvaultError(Exception):
    """Base class for all domain errors."""


class TransientFetchError(TrackvaultError):
    """Raised when an upstream source fails to deliver bytes for a job.

    Jobs that hit this error end up ``failed`` and are only retried by an
    explicit user action.
    """


class NotFoundError(TrackvaultError):
    """Raised when a job, library track or watched playlist id is unknown."""


class IntegrityDrift(TrackvaultError):
    """Raised by the integrity checks when a record no longer matches the disk."""

    def __init__(self, kind, record_id, file_path=None):
        self.kind = kind
        self.record_id = record_id
        self.file_path = file_path
        super().__init__(f"{kind} record {record_id} has no archived file ({file_path or 'no path'})")


class ConfigurationError(TrackvaultError):
    """Raised when a required external tool or secret is absent."""


class ConcurrencyViolation(TrackvaultError):
    """A claim race was lost. Never surfaced to callers of ``claim_next``."""


class InvalidTransition(TrackvaultError):
    """Raised when a job state change is not permitted by the state machine."""

    def __init__(self, job_id, current, target):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"job {job_id}: cannot move from {current} to {target}")
