"""Async Data Access Layer for the sessions table."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiosqlite

from models.session_models import WorkerSession
from utils.database_init import AsyncDatabaseInitializer
from utils.exceptions import DuplicateSessionError

LOGGER = logging.getLogger(__name__)


class WorkerSessionDAL:
    """Data access layer for worker sessions.

    At most one session per worker is active; the partial unique index
    `ux_sessions_worker_active` rejects a second one.
    """

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    @asynccontextmanager
    async def _use(self, conn: Optional[aiosqlite.Connection]) -> AsyncIterator[aiosqlite.Connection]:
        if conn is not None:
            yield conn
            return
        async with self._db.connection() as own:
            yield own

    async def create(self, worker_id: str, start_time: float) -> WorkerSession:
        """Insert a new active session for `worker_id`.

        Raises:
            DuplicateSessionError: If the worker already has an active session.
        """
        async with self._db.connection() as conn:
            try:
                cur = await conn.execute(
                    "INSERT INTO sessions (worker_id, start_time, active) VALUES (?, ?, 1)",
                    (worker_id, start_time),
                )
            except aiosqlite.IntegrityError as exc:
                existing = await self.get_active_for_worker(worker_id, conn=conn)
                raise DuplicateSessionError(worker_id, existing.id if existing else None) from exc
            return WorkerSession(id=cur.lastrowid, worker_id=worker_id, start_time=start_time)

    async def get(self, session_id: int, conn: Optional[aiosqlite.Connection] = None) -> Optional[WorkerSession]:
        async with self._use(conn) as c:
            cur = await c.execute(
                "SELECT id, worker_id, start_time, active, end_time FROM sessions WHERE id = ?",
                (session_id,),
            )
            row = await cur.fetchone()
            return self._row_to_session(row) if row else None

    async def get_active_for_worker(
        self, worker_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[WorkerSession]:
        async with self._use(conn) as c:
            cur = await c.execute(
                "SELECT id, worker_id, start_time, active, end_time FROM sessions WHERE worker_id = ? AND active = 1",
                (worker_id,),
            )
            row = await cur.fetchone()
            return self._row_to_session(row) if row else None

    async def list_active(self) -> List[WorkerSession]:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT id, worker_id, start_time, active, end_time FROM sessions WHERE active = 1 ORDER BY id"
            )
            return [self._row_to_session(r) for r in await cur.fetchall()]

    async def reset_start_time(
        self,
        session_id: int,
        worker_id: str,
        start_time: float,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> bool:
        """Move an active session's start time. Returns False if no active row matched."""
        async with self._use(conn) as c:
            cur = await c.execute(
                "UPDATE sessions SET start_time = ? WHERE id = ? AND worker_id = ? AND active = 1",
                (start_time, session_id, worker_id),
            )
            return cur.rowcount > 0

    async def deactivate(
        self, session_id: int, end_time: float, conn: Optional[aiosqlite.Connection] = None
    ) -> bool:
        """Mark a session inactive. Returns False if it was already inactive."""
        async with self._use(conn) as c:
            cur = await c.execute(
                "UPDATE sessions SET active = 0, end_time = ? WHERE id = ? AND active = 1",
                (end_time, session_id),
            )
            changed = cur.rowcount > 0
            if not changed:
                LOGGER.debug("Session %s was already inactive", session_id)
            return changed

    @staticmethod
    def _row_to_session(row: Sequence[Any]) -> WorkerSession:
        return WorkerSession(
            id=row[0],
            worker_id=row[1],
            start_time=row[2],
            active=bool(row[3]),
            end_time=row[4],
        )
