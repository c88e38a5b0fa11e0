# ============================================================================
# MODULE CONTEXT - RATE LIMITER
# ============================================================================
# STATUS: Core - per-client admission control
# PURPOSE: Sliding-window request limiting with a background sweep of idle clients
# EXPORTS: SlidingWindowRateLimiter
# DEPENDENCIES: threading, time, math, util_logger
# PATTERNS: Sliding window log, daemon sweeper thread, injectable clock
# ENTRY_POINTS: FeatureServerService.get_data (enforce)
# ============================================================================

"""
Sliding Window Rate Limiter

Each client identity keeps the timestamps of its admitted requests inside
the trailing window. A check prunes expired timestamps, rejects when the
remaining count is at the maximum, otherwise records the request.

A daemon thread sweeps clients whose windows have fully expired so one-off
callers do not accumulate in memory.
"""

import math
import threading
import time
from typing import Callable, Dict, List, Optional

from util_logger import LoggerFactory, ComponentType
from .exceptions import RateLimitExceededError

logger = LoggerFactory.create_logger(ComponentType.LIMITER, "SlidingWindowRateLimiter")


class SlidingWindowRateLimiter:
    """
    Per-client sliding window limiter.

    Args:
        max_requests: Requests admitted per window
        window_seconds: Window length
        sweep_interval_seconds: Interval between background sweeps
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, max_requests: int, window_seconds: float,
                 sweep_interval_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._windows: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    # ========================================================================
    # ADMISSION
    # ========================================================================

    def check(self, client_id: str) -> bool:
        """Admit and record a request, or return False when over the limit."""
        return self._admit(client_id) is None

    def enforce(self, client_id: str) -> None:
        """
        Admit a request or raise.

        Raises:
            RateLimitExceededError: With the whole seconds until a slot frees up
        """
        retry_after = self._admit(client_id)
        if retry_after is not None:
            logger.warning(f"Rate limit exceeded for client {client_id}",
                           extra={'custom_dimensions': {'client_id': client_id,
                                                        'retry_after': retry_after}})
            raise RateLimitExceededError(client_id, retry_after)

    def _admit(self, client_id: str) -> Optional[int]:
        """None when admitted, else the retry-after in seconds."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            window = [t for t in self._windows.get(client_id, []) if t > cutoff]
            if len(window) >= self.max_requests:
                self._windows[client_id] = window
                return max(1, math.ceil(window[0] + self.window_seconds - now))
            window.append(now)
            self._windows[client_id] = window
            return None

    # ========================================================================
    # SWEEPING
    # ========================================================================

    def sweep(self) -> int:
        """Remove clients whose timestamps have all expired; returns how many."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            expired = [cid for cid, window in self._windows.items()
                       if not window or window[-1] <= cutoff]
            for cid in expired:
                del self._windows[cid]
        if expired:
            logger.debug(f"Swept {len(expired)} idle rate-limit windows")
        return len(expired)

    def start_sweeper(self) -> None:
        """Start the background sweep thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper,
            name="rate-limit-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Rate-limit sweep failed")
