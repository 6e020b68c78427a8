"""Periodic per-session timer publishing elapsed time and overdue items."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

from models.inspection_item import InspectionItem
from models.scan_outcome import format_duration
from models.session_models import SessionTick, WorkerSession

LOGGER = logging.getLogger(__name__)

TickListener = Callable[[SessionTick], Any]
OverdueProbe = Callable[[], Awaitable[List[InspectionItem]]]


class SessionTimer:
    """Tick for one session until cancelled.

    Each tick publishes a SessionTick to every listener and logs active
    items past the step timeout, once per item.
    """

    def __init__(
        self,
        session: WorkerSession,
        listeners: Iterable[TickListener],
        overdue_probe: Optional[OverdueProbe] = None,
        interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            session: Session whose elapsed time is published. Its start time
                is read on every tick.
            listeners: Live collection of tick callbacks; sync or async.
            overdue_probe: Coroutine function returning overdue active items.
            interval_seconds: Seconds to sleep between ticks.
            clock: Unix time source.
        """
        self.session = session
        self._listeners = listeners
        self._overdue_probe = overdue_probe
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._reported: Set[int] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name=f"session-timer-{self.session.id}")

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        """Tick at the configured interval until cancelled."""
        while True:
            try:
                await self.tick()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception:
                # Keep ticking; a failed tick is retried on the next interval.
                LOGGER.exception("Timer tick for session %s failed", self.session.id)
                await asyncio.sleep(self.interval_seconds)

    async def tick(self) -> SessionTick:
        now = self._clock()
        event = SessionTick(
            session_id=self.session.id,
            worker_id=self.session.worker_id,
            start_time=self.session.start_time,
            elapsed_seconds=self.session.elapsed_seconds(now),
            timestamp=now,
        )
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Session tick listener failed for session %s", self.session.id)

        if self._overdue_probe is not None:
            for item in await self._overdue_probe():
                if item.id in self._reported:
                    continue
                self._reported.add(item.id)
                LOGGER.warning(
                    "Session %s: item %s (%s) open for %s, past the step timeout",
                    self.session.id,
                    item.id,
                    item.code,
                    format_duration(item.duration_seconds(now)),
                )
        return event
