from .config import load_config, validate_config
from .job_store import Job, JobSpec, JobStore
from .orchestrator import Completed, DownloadOrchestrator, Failed
from .paths import EnginePaths
from .rate_limiter import RateLimiter

__all__ = [
    "Completed",
    "DownloadOrchestrator",
    "EnginePaths",
    "Failed",
    "Job",
    "JobSpec",
    "JobStore",
    "RateLimiter",
    "load_config",
    "validate_config",
]
