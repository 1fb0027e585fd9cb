"""JSON configuration loading, defaults and validation."""

import copy
import json
import os

DEFAULT_SKIP_PATHS = ("/api/queue/process", "/stream/", "/static/", "/partials/")

DEFAULT_CONFIG = {
    "library_dir": None,
    "db_path": None,
    "log_dir": None,
    "jobs_per_request": 1,
    "trigger_secret": None,
    "trigger_max_count": 20,
    "skip_paths": list(DEFAULT_SKIP_PATHS),
    "rate_limits": {
        "cdn-direct": {"max_requests": 10, "window_seconds": 60, "min_interval": 0.5},
        "extractor": {"max_requests": 10, "window_seconds": 60, "min_interval": 0.5},
        "soundcloud": {"max_requests": 10, "window_seconds": 60, "min_interval": 1.0},
        "musicbrainz": {"max_requests": 50, "window_seconds": 60, "min_interval": 1.1},
        "acoustid": {"max_requests": 30, "window_seconds": 60, "min_interval": 0.34},
    },
    "client_limits": {
        "max_per_action": 30,
        "max_per_client": 100,
        "window_seconds": 60,
    },
    "cdn": {
        "api_url": "https://triton.squid.wtf",
        "timeout_seconds": 15,
        "quality": "LOSSLESS",
    },
    "extractor": {
        "enabled": True,
        "cookies_file": None,
    },
    "metadata": {
        "enabled": True,
        "acoustid_api_key": None,
        "user_agent": "Trackvault/1.0 (+https://github.com/trackvault/trackvault)",
    },
    "scheduler": {
        "enabled": False,
        "drain_interval_seconds": 30,
        "watch_interval_minutes": 60,
    },
    "cleanup": {
        "terminal_job_days": 30,
    },
}

_ENV_OVERRIDES = {
    "TRACKVAULT_TRIGGER_SECRET": ("trigger_secret",),
    "TRACKVAULT_LIBRARY_DIR": ("library_dir",),
    "TRACKVAULT_DB_PATH": ("db_path",),
    "TRACKVAULT_CDN_API_URL": ("cdn", "api_url"),
    "TRACKVAULT_ACOUSTID_API_KEY": ("metadata", "acoustid_api_key"),
}


def _deep_merge(base, override):
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config():
    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(overrides):
    """Return the defaults with ``overrides`` merged on top, key by key."""
    return _deep_merge(DEFAULT_CONFIG, overrides)


def load_config(path):
    """Load a JSON config file; a missing file yields the defaults."""
    if not path or not os.path.exists(path):
        return default_config()
    with open(path, "r") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config must be a JSON object")
    return merge_config(raw)


def config_from_env(config, environ=None):
    env = os.environ if environ is None else environ
    cfg = copy.deepcopy(config)
    for env_key, path in _ENV_OVERRIDES.items():
        value = (env.get(env_key) or "").strip()
        if not value:
            continue
        target = cfg
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return cfg


def _is_positive_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    jobs_per_request = config.get("jobs_per_request")
    if not isinstance(jobs_per_request, int) or isinstance(jobs_per_request, bool) or jobs_per_request < 0:
        errors.append("jobs_per_request must be a non-negative integer")

    trigger_max = config.get("trigger_max_count")
    if not isinstance(trigger_max, int) or isinstance(trigger_max, bool) or trigger_max < 1:
        errors.append("trigger_max_count must be a positive integer")

    secret = config.get("trigger_secret")
    if secret is not None and not isinstance(secret, str):
        errors.append("trigger_secret must be a string")

    skip_paths = config.get("skip_paths")
    if not isinstance(skip_paths, list) or not all(isinstance(p, str) for p in skip_paths):
        errors.append("skip_paths must be a list of strings")

    rate_limits = config.get("rate_limits")
    if not isinstance(rate_limits, dict):
        errors.append("rate_limits must be an object")
    else:
        for key, limits in rate_limits.items():
            if not isinstance(limits, dict):
                errors.append(f"rate_limits.{key} must be an object")
                continue
            if not isinstance(limits.get("max_requests"), int) or limits.get("max_requests", 0) < 1:
                errors.append(f"rate_limits.{key}.max_requests must be a positive integer")
            if not _is_positive_number(limits.get("window_seconds")):
                errors.append(f"rate_limits.{key}.window_seconds must be positive")
            min_interval = limits.get("min_interval", 0)
            if not isinstance(min_interval, (int, float)) or min_interval < 0:
                errors.append(f"rate_limits.{key}.min_interval must be >= 0")

    client_limits = config.get("client_limits")
    if not isinstance(client_limits, dict):
        errors.append("client_limits must be an object")
    else:
        for key in ("max_per_action", "max_per_client", "window_seconds"):
            if not _is_positive_number(client_limits.get(key)):
                errors.append(f"client_limits.{key} must be positive")

    scheduler = config.get("scheduler")
    if not isinstance(scheduler, dict):
        errors.append("scheduler must be an object")
    else:
        if not _is_positive_number(scheduler.get("drain_interval_seconds")):
            errors.append("scheduler.drain_interval_seconds must be positive")
        if not _is_positive_number(scheduler.get("watch_interval_minutes")):
            errors.append("scheduler.watch_interval_minutes must be positive")

    return errors
