from __future__ import annotations

import threading
import time
from typing import Callable, Dict


class RateLimiter:
    """Per-session minimum spacing between requests, shared process-wide."""

    def __init__(self, min_interval_ms: int = 600, clock: Callable[[], int] = time.monotonic_ns) -> None:
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be >= 0")
        # Integer nanoseconds keep the boundary comparison exact.
        self._interval_ns = min_interval_ms * 1_000_000
        self._clock = clock
        self._last_seen: Dict[str, int] = {}
        self._lock = threading.Lock()

    def allow(self, session_id: str) -> bool:
        """Purpose: Decide whether a request for session_id may proceed.
        Inputs/Outputs: Input is the session id; returns False when the last allowed
            request for the same session was less than the interval ago.
        Side Effects / State: Records the time of allowed requests only, so a
            throttled client can retry once the interval has passed.
        Dependencies: Injected nanosecond clock (time.monotonic_ns by default).
        Failure Modes: None; state is in-process and not shared across workers.
        If Removed: A runaway client can flood the oracle and the store.
        Testing Notes: Use a fake clock; 0 ms then 599 ms is rejected, 600 ms passes.
        """
        now = self._clock()
        with self._lock:
            last = self._last_seen.get(session_id)
            if last is not None and (now - last) < self._interval_ns:
                return False
            self._last_seen[session_id] = now
        return True
