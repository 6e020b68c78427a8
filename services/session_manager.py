"""Lifecycle of worker sessions and their link to the inspection state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiosqlite

from dal.inspection_dal import InspectionItemDAL
from dal.session_dal import WorkerSessionDAL
from models.inspection_item import InspectionItem, QualityData
from models.scan_outcome import OutcomeType, ScanOutcome
from models.session_models import EXIT, ScanExpectation, WorkerSession
from services.inspection_state_machine import InspectionStateMachine
from services.rate_limiter import SlidingWindowRateLimiter
from services.session_timer import SessionTimer, TickListener
from utils.config import QCConfig
from utils.database_init import AsyncDatabaseInitializer
from utils.exceptions import (
	BulkAbortError,
	ItemNotFoundError,
	SessionError,
	SessionInactiveError,
	SessionNotFoundError,
)

LOGGER = logging.getLogger(__name__)

RESTART_REASON = "Session restarted"
END_REASON = "Session ended"


@dataclass
class SessionHandle:
	"""Process-local resources owned by one active session.

	Released as a whole when the session ends or the manager shuts down.
	"""

	session: WorkerSession
	expectation: ScanExpectation = field(default_factory=ScanExpectation)
	lock: asyncio.Lock = field(default_factory=asyncio.Lock)
	timer: Optional[SessionTimer] = None
	closed: bool = False


def expectation_from_items(items: List[InspectionItem]) -> ScanExpectation:
	"""Rebuild a scan expectation from a session's active items."""
	expectation = ScanExpectation()
	for item in sorted(items, key=lambda i: i.start_time):
		expectation.opened(item.code, item.start_time)
	return expectation


class SessionManager:
	"""Create, restart and end sessions and route their scans.

	Scans, restarts and ends of one session are serialised by that
	session's lock; the store transaction decides when two processes race.
	"""

	def __init__(
		self,
		db_initializer: AsyncDatabaseInitializer,
		sessions: WorkerSessionDAL,
		items: InspectionItemDAL,
		machine: InspectionStateMachine,
		config: QCConfig,
		limiter: Optional[SlidingWindowRateLimiter] = None,
		clock: Callable[[], float] = time.time,
		start_timers: bool = True,
	) -> None:
		self._db = db_initializer
		self._sessions = sessions
		self._items = items
		self._machine = machine
		self.config = config
		self.limiter = limiter or SlidingWindowRateLimiter(max_per_window=config.max_scans_per_minute)
		self._clock = clock
		self._start_timers = start_timers
		self._handles: Dict[int, SessionHandle] = {}
		self._listeners: List[TickListener] = []

	# Listeners and handles

	def add_listener(self, listener: TickListener) -> None:
		"""Register a callback receiving every SessionTick."""
		self._listeners.append(listener)

	def remove_listener(self, listener: TickListener) -> None:
		if listener in self._listeners:
			self._listeners.remove(listener)

	def handle(self, session_id: int) -> Optional[SessionHandle]:
		return self._handles.get(session_id)

	def active_sessions(self) -> List[WorkerSession]:
		return [h.session for h in self._handles.values()]

	def _attach(self, session: WorkerSession, expectation: Optional[ScanExpectation] = None) -> SessionHandle:
		handle = SessionHandle(session=session, expectation=expectation or ScanExpectation())
		self._handles[session.id] = handle
		self._start_timer(handle)
		return handle

	def _start_timer(self, handle: SessionHandle) -> None:
		if not self._start_timers:
			return
		session_id = handle.session.id
		handle.timer = SessionTimer(
			handle.session,
			self._listeners,
			overdue_probe=lambda: self._machine.overdue_items(session_id),
			interval_seconds=self.config.session_timer_seconds,
			clock=self._clock,
		)
		handle.timer.start()

	async def _release(self, session_id: int) -> None:
		handle = self._handles.pop(session_id, None)
		self.limiter.reset(session_id)
		if handle is None:
			return
		handle.closed = True
		if handle.timer is not None:
			await handle.timer.cancel()
			handle.timer = None

	async def _drop_stale(self, session_id: int) -> None:
		if session_id in self._handles:
			LOGGER.info("Session %s was ended elsewhere; releasing its local state", session_id)
			await self._release(session_id)

	async def _load_handle(self, session_id: int) -> SessionHandle:
		"""Return the handle of an active session, attaching one if needed.

		The store is read on every call; another process may have ended the
		session since the handle was attached.

		Raises:
			SessionNotFoundError: If the session does not exist.
			SessionInactiveError: If it has ended.
		"""
		session = await self._sessions.get(session_id)
		if session is None:
			raise SessionNotFoundError(session_id)
		if not session.active:
			await self._drop_stale(session_id)
			raise SessionInactiveError(session_id)
		# Active in the store but unknown here, e.g. created by another process.
		handle = self._handles.get(session_id)
		if handle is None or handle.closed:
			active = await self._items.list_active_for_session(session_id)
			handle = self._attach(session, expectation_from_items(active))
		return handle

	# Lifecycle

	async def create_session(self, worker_id: str) -> WorkerSession:
		"""Open a new session for `worker_id`.

		Raises:
			DuplicateSessionError: If the worker already has an active session.
		"""
		worker_id = (worker_id or "").strip()
		if not worker_id:
			raise SessionError("Worker id is required")
		session = await self._sessions.create(worker_id, self._clock())
		self._attach(session)
		LOGGER.info("Session %s started for worker %s", session.id, worker_id)
		return session

	async def open_or_restart(self, worker_id: str) -> Tuple[WorkerSession, bool]:
		"""Handle a recognised badge: restart the worker's active session or create one.

		Returns:
			The session and True when an existing session was restarted.
		"""
		worker_id = (worker_id or "").strip()
		existing = await self._sessions.get_active_for_worker(worker_id)
		if existing is not None:
			await self.restart_session(existing.id, worker_id)
			return self._handles[existing.id].session, True
		return await self.create_session(worker_id), False

	async def restart_session(self, session_id: int, worker_id: str) -> int:
		"""Abort all active items and reset the start time in one transaction.

		Returns:
			Number of aborted items.

		Raises:
			SessionNotFoundError, SessionInactiveError, SessionError: If the
				session is unknown, ended, or owned by another worker.
			BulkAbortError: If the transaction rolled back; nothing changed.
		"""
		handle = await self._load_handle(session_id)
		if handle.session.worker_id != worker_id:
			raise SessionError(f"Session {session_id} does not belong to worker {worker_id}")

		async with handle.lock:
			if handle.closed:
				raise SessionInactiveError(session_id)
			now = self._clock()
			try:
				async with self._db.transaction() as conn:
					aborted = await self._machine.abort_active_for_session(session_id, RESTART_REASON, conn=conn)
					if not await self._sessions.reset_start_time(session_id, worker_id, now, conn=conn):
						raise SessionInactiveError(session_id)
			except aiosqlite.Error as exc:
				raise BulkAbortError(session_id, exc) from exc

			handle.session.start_time = now
			handle.expectation = ScanExpectation()
			if handle.timer is not None:
				await handle.timer.cancel()
			self._start_timer(handle)

		LOGGER.info("Session %s restarted for worker %s, %s item(s) aborted", session_id, worker_id, len(aborted))
		return len(aborted)

	async def end_session(self, session_id: int, worker_id: Optional[str] = None) -> int:
		"""End a session. Ending an already-ended session is a no-op.

		Returns:
			Number of aborted items.
		"""
		session = await self._sessions.get(session_id)
		if session is None:
			raise SessionNotFoundError(session_id)
		if worker_id is not None and session.worker_id != worker_id:
			raise SessionError(f"Session {session_id} does not belong to worker {worker_id}")
		if not session.active:
			await self._release(session_id)
			return 0

		handle = self._handles.get(session_id)
		lock = handle.lock if handle is not None else asyncio.Lock()
		async with lock:
			now = self._clock()
			aborted: List[InspectionItem] = []
			try:
				async with self._db.transaction() as conn:
					if self.config.auto_abort_on_session_end:
						aborted = await self._machine.abort_active_for_session(session_id, END_REASON, conn=conn)
					await self._sessions.deactivate(session_id, now, conn=conn)
			except aiosqlite.Error as exc:
				raise BulkAbortError(session_id, exc) from exc
			await self._release(session_id)

		LOGGER.info("Session %s ended, %s item(s) aborted", session_id, len(aborted))
		return len(aborted)

	async def shutdown(self) -> None:
		"""Cancel every session timer and drop process-local state."""
		for session_id in list(self._handles):
			await self._release(session_id)

	async def recover(self) -> int:
		"""Reload active sessions from the store and rebuild their expectations.

		Returns:
			Number of sessions recovered.
		"""
		recovered = 0
		for session in await self._sessions.list_active():
			if session.id in self._handles:
				continue
			active = await self._items.list_active_for_session(session.id)
			self._attach(session, expectation_from_items(active))
			recovered += 1
			LOGGER.info("Recovered session %s (%s) with %s active item(s)", session.id, session.worker_id, len(active))
		return recovered

	# Queries

	async def is_session_active(self, session_id: int) -> bool:
		session = await self._sessions.get(session_id)
		return session is not None and session.active

	async def get_active_steps_count(self, session_id: int) -> int:
		"""Active items of the session as currently stored."""
		return await self._items.count_active(session_id)

	async def get_item(self, item_id: int) -> InspectionItem:
		item = await self._items.get_item(item_id)
		if item is None:
			raise ItemNotFoundError(item_id)
		return item

	async def get_overview(self, session_id: int) -> Dict[str, Any]:
		"""Session, active items, per-code expectations and limits."""
		session = await self._sessions.get(session_id)
		if session is None:
			raise SessionNotFoundError(session_id)
		now = self._clock()
		active = await self._items.list_active_for_session(session_id)
		completed = await self._machine.completed_in_window(session_id)
		expectation = expectation_from_items(active)
		handle = self._handles.get(session_id)
		if handle is not None:
			expectation.last_scan_time = handle.expectation.last_scan_time
		return {
			"session": session.to_dict(),
			"elapsed_seconds": session.elapsed_seconds(now) if session.active else None,
			"active_items": [
				dict(item.to_dict(), overdue=self._machine.is_overdue(item, now)) for item in active
			],
			"active_count": len(active),
			"completed_in_window": len(completed),
			"expectation": expectation.to_dict(),
			"limits": self.config.limits(),
			"rate_limit": self.limiter.get_status(session_id).to_dict(),
			"generated_at": now,
		}

	def rate_limit_stats(self) -> Dict[int, dict]:
		return self.limiter.stats()

	# Scans and items

	async def submit_scan(
		self,
		session_id: int,
		code: str,
		scan_ref: str,
		quality: Optional[QualityData] = None,
		priority: Optional[int] = None,
	) -> ScanOutcome:
		"""Rate-limit and process one validated, de-duplicated scan.

		Raises:
			SessionNotFoundError, SessionInactiveError: For invalid sessions.
			ValidationError: For malformed quality data or priority.
		"""
		handle = await self._load_handle(session_id)
		status = self.limiter.check_and_consume(session_id)
		if not status.is_allowed:
			return ScanOutcome(
				type=OutcomeType.RATE_LIMIT,
				message="Too many scans in the last minute; please slow down.",
				actual_code=code,
			)

		try:
			async with handle.lock:
				if handle.closed:
					raise SessionInactiveError(session_id)
				outcome = await self._machine.handle_scan(session_id, code, scan_ref, quality=quality, priority=priority)
				self._track(handle, code, outcome)
		except SessionInactiveError:
			await self._drop_stale(session_id)
			raise
		return outcome

	def _track(self, handle: SessionHandle, code: str, outcome: ScanOutcome) -> None:
		now = self._clock()
		if outcome.type == OutcomeType.ENTRANCE_STARTED and outcome.item is not None:
			handle.expectation.opened(code, outcome.item.start_time)
		elif outcome.type == OutcomeType.EXIT_COMPLETED:
			handle.expectation.closed(code, now)
		elif outcome.type == OutcomeType.EXIT_ERROR and outcome.scan_type == EXIT:
			# The item is gone from under us; the store no longer has it active.
			handle.expectation.closed(code, now)
		else:
			handle.expectation.last_scan_time = now

	async def abort_item(self, item_id: int, reason: str) -> Optional[InspectionItem]:
		"""Abort one item. Returns None when it was not active."""
		item = await self.get_item(item_id)
		handle = self._handles.get(item.session_id)
		if handle is None:
			return await self._machine.abort_item(item_id, reason)
		async with handle.lock:
			aborted = await self._machine.abort_item(item_id, reason)
			if aborted is not None:
				handle.expectation.closed(aborted.code, self._clock())
		return aborted
