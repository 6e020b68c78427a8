"""Per-session sliding window rate limiter.

Keeps the timestamps of a session's scans for the trailing window and
prunes them lazily on every check. Sessions never share a window.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

LOGGER = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitStatus:
    """Rate limit state of one session.

    Attributes:
        session_id: Session identifier.
        count: Scans recorded in the current window.
        remaining: Scans still allowed in the window.
        reset_at: Time at which the oldest recorded scan leaves the window.
        is_allowed: Whether the last check let the scan through.
    """

    session_id: int
    count: int
    remaining: int
    reset_at: Optional[float]
    is_allowed: bool

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "count": self.count,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "is_allowed": self.is_allowed,
        }


class SlidingWindowRateLimiter:
    """In-memory sliding window limiter keyed by session id."""

    def __init__(
        self,
        max_per_window: int = 30,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[int, Deque[float]] = {}

    def _prune(self, session_id: int, now: float) -> Deque[float]:
        window = self._windows.setdefault(session_id, deque())
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        return window

    def _status(self, session_id: int, window: Deque[float], allowed: bool) -> RateLimitStatus:
        return RateLimitStatus(
            session_id=session_id,
            count=len(window),
            remaining=max(0, self.max_per_window - len(window)),
            reset_at=window[0] + self.window_seconds if window else None,
            is_allowed=allowed,
        )

    def check_and_consume(self, session_id: int) -> RateLimitStatus:
        """Record one scan for the session unless its window is full."""
        now = self._clock()
        window = self._prune(session_id, now)
        if len(window) >= self.max_per_window:
            LOGGER.info(
                "Rate limit exceeded for session %s (%s scans in %ss)",
                session_id,
                len(window),
                int(self.window_seconds),
            )
            return self._status(session_id, window, allowed=False)
        window.append(now)
        return self._status(session_id, window, allowed=True)

    def get_status(self, session_id: int) -> RateLimitStatus:
        if session_id not in self._windows:
            return self._status(session_id, deque(), allowed=True)
        now = self._clock()
        window = self._prune(session_id, now)
        return self._status(session_id, window, allowed=len(window) < self.max_per_window)

    def stats(self) -> Dict[int, dict]:
        """Scans in the trailing window and last scan time per tracked session."""
        now = self._clock()
        result: Dict[int, dict] = {}
        for session_id in list(self._windows):
            window = self._prune(session_id, now)
            result[session_id] = {
                "scans_in_window": len(window),
                "last_scan": window[-1] if window else None,
            }
        return result

    def reset(self, session_id: int) -> None:
        """Forget a session's window (on session end)."""
        self._windows.pop(session_id, None)
