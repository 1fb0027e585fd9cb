"""Per-key sliding-window rate limiting.

Two modes share one window store:

- ``wait`` blocks the calling thread until the key has capacity and then
  enforces a minimum spacing between calls. Used around every outbound call.
- ``check_limit`` combines an action-class key and a client key and answers
  allow/deny without sleeping. Used to protect user-facing endpoints.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVALS = {
    "cdn-direct": 0.5,
    "extractor": 0.5,
    "soundcloud": 1.0,
}
FALLBACK_MIN_INTERVAL = 0.3


class RateLimiter:
    def __init__(
        self,
        limits: dict | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._limits = dict(limits or {})
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._requests: dict[str, deque[float]] = {}
        self._last_request: dict[str, float] = {}
        self._key_locks: dict[str, threading.Lock] = {}

    def limits_for(self, key: str) -> tuple[int, float, float]:
        """Return ``(max_requests, window_seconds, min_interval)`` configured for ``key``."""
        configured = self._limits.get(key) or {}
        max_requests = int(configured.get("max_requests") or 10)
        window_seconds = float(configured.get("window_seconds") or 60)
        min_interval = configured.get("min_interval")
        if min_interval is None:
            min_interval = DEFAULT_MIN_INTERVALS.get(key, FALLBACK_MIN_INTERVAL)
        return max_requests, window_seconds, float(min_interval)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def _prune(self, key: str, now: float, window_seconds: float) -> deque[float]:
        window = self._requests.setdefault(key, deque())
        cutoff = now - window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def wait(
        self,
        key: str,
        max_requests: int | None = None,
        window_seconds: float | None = None,
        min_interval: float | None = None,
    ) -> float:
        """Block until a call for ``key`` is allowed, record it, and return the time slept."""
        default_max, default_window, default_interval = self.limits_for(key)
        max_requests = default_max if max_requests is None else max_requests
        window_seconds = default_window if window_seconds is None else window_seconds
        min_interval = default_interval if min_interval is None else min_interval

        # Waiters on one key queue on its key lock. The shared lock is never held while sleeping.
        with self._key_lock(key):
            slept = 0.0
            while True:
                with self._lock:
                    now = self._clock()
                    window = self._prune(key, now, window_seconds)
                    window_full = len(window) >= max_requests
                    if window_full:
                        pause = (window[0] + window_seconds) - now
                    else:
                        last = self._last_request.get(key)
                        pause = 0.0 if last is None else min_interval - (now - last)
                    if pause <= 0:
                        window.append(now)
                        self._last_request[key] = now
                        return slept
                if window_full:
                    logger.info("[RATE] window full key=%s sleeping=%.2fs", key, pause)
                self._sleep(pause)
                slept += pause

    def can_request(self, key: str, max_requests: int, window_seconds: float) -> bool:
        with self._lock:
            window = self._prune(key, self._clock(), window_seconds)
            return len(window) < max_requests

    def check_limit(
        self,
        action: str,
        client_id: str,
        max_per_action: int = 30,
        max_per_client: int = 100,
        window_seconds: float = 60,
    ) -> bool:
        """Allow/deny a user-facing action. Both keys are recorded only when allowed."""
        action_key = f"action:{action}"
        client_key = f"ip:{client_id}"
        with self._lock:
            now = self._clock()
            if len(self._prune(action_key, now, window_seconds)) >= max_per_action:
                return False
            if len(self._prune(client_key, now, window_seconds)) >= max_per_client:
                return False
            for key in (action_key, client_key):
                self._requests[key].append(now)
                self._last_request[key] = now
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._requests.clear()
                self._last_request.clear()
            else:
                self._requests.pop(key, None)
                self._last_request.pop(key, None)
