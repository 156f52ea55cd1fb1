from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .concurrency import KeyedLocks
from .config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Window:
    start: float
    count: int = 0
    owners: Dict[str, None] = field(default_factory=dict)
    notified: Dict[str, None] = field(default_factory=dict)


class RateGovernor:
    """Fixed-window request ceiling per network origin.

    Windows are aligned to wall-clock multiples of the window length, so every
    worker agrees on where a window starts. Fingerprints seen from an origin
    during the current window are kept so a breach can be attributed to all
    of them, not just the request that tripped it.

    Only the current window's origins are held. A new window replaces the
    whole map, and within a window the oldest origin is evicted once
    ``max_tracked_origins`` is reached.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        stripes: int = 256,
    ):
        self.config = config or RateLimitConfig()
        self.window_seconds = self.config.window.total_seconds()
        if self.window_seconds <= 0:
            raise ValueError("rate window must be positive")
        if self.config.max_tracked_origins < 1:
            raise ValueError("max_tracked_origins must be positive")
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._current_start = float("-inf")
        self._windows: Dict[str, _Window] = {}
        self._locks = KeyedLocks(stripes)
        self._rotate_lock = threading.Lock()

    def _window_start(self, now: datetime) -> float:
        return math.floor(now.timestamp() / self.window_seconds) * self.window_seconds

    def _current(self, start: float) -> Dict[str, _Window]:
        if start > self._current_start:
            with self._rotate_lock:
                if start > self._current_start:
                    self._current_start = start
                    self._windows = {}
        return self._windows

    def _evict(self, windows: Dict[str, _Window]) -> None:
        while len(windows) > self.config.max_tracked_origins:
            try:
                oldest = next(iter(windows))
                windows.pop(oldest, None)
            except (StopIteration, RuntimeError):
                # concurrent insert or removal; the next admission retries
                return

    def admit(self, origin: str, fingerprint: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        start = self._window_start(now or self.clock())
        windows = self._current(start)
        with self._locks.for_key(origin):
            window = windows.get(origin)
            if window is None:
                window = _Window(start=max(start, self._current_start))
                windows[origin] = window
                self._evict(windows)
            window.count += 1
            if fingerprint and fingerprint not in window.owners:
                if len(window.owners) < self.config.max_owners_per_origin:
                    window.owners[fingerprint] = None
            admitted = window.count <= self.config.ceiling
            first_breach = window.count == self.config.ceiling + 1

        if first_breach:
            logger.warning("Rate ceiling of %s exceeded for origin %s", self.config.ceiling, origin)
        return admitted

    def breach_targets(self, origin: str) -> List[str]:
        """Fingerprints behind a breached origin that have not been notified this window.

        Returned fingerprints are marked notified; hand back any that could
        not be notified with ``requeue``.
        """
        with self._locks.for_key(origin):
            window = self._windows.get(origin)
            if window is None or window.count <= self.config.ceiling:
                return []
            targets = [fingerprint for fingerprint in window.owners if fingerprint not in window.notified]
            for fingerprint in targets:
                window.notified[fingerprint] = None
            return targets

    def requeue(self, origin: str, fingerprint: str) -> None:
        with self._locks.for_key(origin):
            window = self._windows.get(origin)
            if window is not None:
                window.notified.pop(fingerprint, None)

    def request_count(self, origin: str, now: Optional[datetime] = None) -> int:
        start = self._window_start(now or self.clock())
        window = self._windows.get(origin)
        if window is None or window.start != start:
            return 0
        return window.count

    def __len__(self) -> int:
        return len(self._windows)
