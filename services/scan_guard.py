"""Short-horizon duplicate suppression for decoded codes.

Cameras and handheld scanners report the same physical code several times
per second. ScanGuard drops those repeats before they reach the state
machine. All checks are keyed by the code alone.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Set

LOGGER = logging.getLogger(__name__)

IMMEDIATE_REPEAT = "immediate_repeat"
COOLDOWN = "cooldown"
IN_FLIGHT = "in_flight"


class ScanGuard:
    """Reject repeats of recently processed codes.

    Three checks run in order and the first rejection wins:

    1. the code equals the last processed code and arrived within
       `immediate_repeat_ms` of it;
    2. the code itself was accepted within `cooldown_ms`;
    3. the code is still being processed.

    Args:
        cooldown_ms: Per-code cooldown after acceptance.
        immediate_repeat_ms: Window for repeats of the last processed code.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        cooldown_ms: int = 3000,
        immediate_repeat_ms: int = 2000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown = cooldown_ms / 1000.0
        self.immediate_repeat = immediate_repeat_ms / 1000.0
        self._clock = clock
        self._last_code: Optional[str] = None
        self._last_time: Optional[float] = None
        self._accepted: Dict[str, float] = {}
        self._in_flight: Set[str] = set()

    def check(self, code: str) -> Optional[str]:
        """Return the rejection reason for `code`, or None if it may proceed."""
        now = self._clock()
        if (
            code == self._last_code
            and self._last_time is not None
            and now - self._last_time < self.immediate_repeat
        ):
            return IMMEDIATE_REPEAT
        accepted_at = self._accepted.get(code)
        if accepted_at is not None and now - accepted_at < self.cooldown:
            return COOLDOWN
        if code in self._in_flight:
            return IN_FLIGHT
        return None

    def admit(self, code: str) -> Optional[str]:
        """Check `code` and, if it passes, mark it accepted and in flight.

        Returns:
            None when admitted, otherwise the rejection reason. An admitted
            code must be handed back with `release()`.
        """
        reason = self.check(code)
        if reason is not None:
            LOGGER.debug("Suppressed scan of %s (%s)", code, reason)
            return reason
        now = self._clock()
        self._prune(now)
        self._last_code = code
        self._last_time = now
        self._accepted[code] = now
        self._in_flight.add(code)
        return None

    def release(self, code: str) -> None:
        self._in_flight.discard(code)

    @contextmanager
    def claim(self, code: str) -> Iterator[Optional[str]]:
        """Context manager form of admit/release.

        Yields the rejection reason (None when admitted) and releases the
        in-flight mark on exit.
        """
        reason = self.admit(code)
        try:
            yield reason
        finally:
            if reason is None:
                self.release(code)

    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def reset(self) -> None:
        self._last_code = None
        self._last_time = None
        self._accepted.clear()
        self._in_flight.clear()

    def _prune(self, now: float) -> None:
        expired = [code for code, at in self._accepted.items() if now - at >= self.cooldown]
        for code in expired:
            del self._accepted[code]
