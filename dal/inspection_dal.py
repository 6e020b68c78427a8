"""Async Data Access Layer for the inspection_items and audit_events tables.

Provides InspectionItemDAL with the conditional writes the scan state
machine relies on. Every method accepts an optional `conn`; when given,
the statement runs on that connection (typically inside
`AsyncDatabaseInitializer.transaction()`), otherwise a short-lived
autocommit connection is opened.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from models.inspection_item import AuditAction, AuditEvent, InspectionItem, ItemStatus, QualityData
from utils.database_init import AsyncDatabaseInitializer


class InspectionItemDAL:
    """Data access layer for inspection items and their audit trail.

    The partial unique index `ux_items_session_code_active` makes
    `insert_active` a conditional write: a second active item for the same
    (session, code) raises `aiosqlite.IntegrityError`. `complete` and
    `abort_item` only touch rows that are still active.
    """

    _COLUMNS = (
        "id",
        "session_id",
        "code",
        "start_scan_ref",
        "end_scan_ref",
        "start_time",
        "end_time",
        "completed",
        "status",
        "priority",
        "quality_rating",
        "defects_found",
        "defect_description",
        "rework_required",
        "notes",
        "updated_at",
    )
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    @asynccontextmanager
    async def _use(self, conn: Optional[aiosqlite.Connection]) -> AsyncIterator[aiosqlite.Connection]:
        if conn is not None:
            yield conn
            return
        async with self._db.connection() as own:
            yield own

    # Reads

    async def get_item(self, item_id: int, conn: Optional[aiosqlite.Connection] = None) -> Optional[InspectionItem]:
        """Return the item with `item_id`, or None if not found."""
        async with self._use(conn) as c:
            cur = await c.execute(f"SELECT {self._COLUMN_LIST} FROM inspection_items WHERE id = ?", (item_id,))
            row = await cur.fetchone()
            return self._row_to_item(row) if row else None

    async def get_latest_for_code(
        self, session_id: int, code: str, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[InspectionItem]:
        """Return the most recent item for (session, code) regardless of status."""
        async with self._use(conn) as c:
            cur = await c.execute(
                f"""
                SELECT {self._COLUMN_LIST} FROM inspection_items
                WHERE session_id = ? AND code = ?
                ORDER BY start_time DESC, id DESC
                LIMIT 1
                """,
                (session_id, code),
            )
            row = await cur.fetchone()
            return self._row_to_item(row) if row else None

    async def list_active_for_session(
        self, session_id: int, conn: Optional[aiosqlite.Connection] = None
    ) -> List[InspectionItem]:
        async with self._use(conn) as c:
            cur = await c.execute(
                f"""
                SELECT {self._COLUMN_LIST} FROM inspection_items
                WHERE session_id = ? AND status = 'active'
                ORDER BY start_time DESC, id DESC
                """,
                (session_id,),
            )
            return [self._row_to_item(r) for r in await cur.fetchall()]

    async def count_active(self, session_id: int, conn: Optional[aiosqlite.Connection] = None) -> int:
        async with self._use(conn) as c:
            cur = await c.execute(
                "SELECT COUNT(*) FROM inspection_items WHERE session_id = ? AND status = 'active'",
                (session_id,),
            )
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def session_is_active(self, session_id: int, conn: Optional[aiosqlite.Connection] = None) -> bool:
        """Whether the owning session row is still active.

        Another process may end the session at any time, so writers check
        this on the connection of their own transaction.
        """
        async with self._use(conn) as c:
            cur = await c.execute("SELECT active FROM sessions WHERE id = ?", (session_id,))
            row = await cur.fetchone()
            return bool(row and row[0])

    async def list_completed_since(
        self,
        session_id: int,
        since: float,
        code: Optional[str] = None,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> List[InspectionItem]:
        """List completed items of a session that started at or after `since`.

        Args:
            session_id: Session to search.
            since: Unix timestamp lower bound on `start_time`.
            code: Optional code filter.
        """
        sql = f"""
            SELECT {self._COLUMN_LIST} FROM inspection_items
            WHERE session_id = ? AND status = 'completed' AND start_time >= ?
        """
        params: List[Any] = [session_id, since]
        if code is not None:
            sql += " AND code = ?"
            params.append(code)
        sql += " ORDER BY end_time DESC, id DESC"
        async with self._use(conn) as c:
            cur = await c.execute(sql, tuple(params))
            return [self._row_to_item(r) for r in await cur.fetchall()]

    async def list_overdue(
        self, session_id: int, started_before: float, conn: Optional[aiosqlite.Connection] = None
    ) -> List[InspectionItem]:
        """List active items of a session that started before `started_before`."""
        async with self._use(conn) as c:
            cur = await c.execute(
                f"""
                SELECT {self._COLUMN_LIST} FROM inspection_items
                WHERE session_id = ? AND status = 'active' AND start_time < ?
                ORDER BY start_time
                """,
                (session_id, started_before),
            )
            return [self._row_to_item(r) for r in await cur.fetchall()]

    # Conditional writes

    async def insert_active(
        self,
        session_id: int,
        code: str,
        start_scan_ref: Optional[str],
        start_time: float,
        priority: int = 1,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> InspectionItem:
        """Insert a new active item and return it.

        Raises:
            aiosqlite.IntegrityError: If an active item already exists for
                (session_id, code), or a column constraint fails.
        """
        async with self._use(conn) as c:
            cur = await c.execute(
                """
                INSERT INTO inspection_items
                    (session_id, code, start_scan_ref, start_time, completed, status, priority, updated_at)
                VALUES (?, ?, ?, ?, 0, 'active', ?, ?)
                """,
                (session_id, code, start_scan_ref, start_time, priority, start_time),
            )
            item_id = cur.lastrowid
            item = await self.get_item(item_id, conn=c)
            if item is None:
                raise aiosqlite.OperationalError(f"Inserted item {item_id} could not be read back")
            return item

    async def complete(
        self,
        item_id: int,
        end_scan_ref: str,
        end_time: float,
        quality: Optional[QualityData] = None,
        rework_required: bool = False,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Optional[InspectionItem]:
        """Mark an active item completed.

        Returns:
            The completed item, or None when the item was no longer active
            (lost update: completed or aborted by someone else).
        """
        quality = quality or QualityData()
        async with self._use(conn) as c:
            cur = await c.execute(
                """
                UPDATE inspection_items
                SET end_scan_ref = ?,
                    end_time = ?,
                    completed = 1,
                    status = 'completed',
                    quality_rating = ?,
                    defects_found = ?,
                    defect_description = ?,
                    rework_required = ?,
                    notes = CASE WHEN ? IS NULL THEN notes
                                 WHEN notes IS NULL OR notes = '' THEN ?
                                 ELSE notes || ' | ' || ? END,
                    updated_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (
                    end_scan_ref,
                    end_time,
                    quality.rating,
                    int(quality.defects_found),
                    quality.defect_description,
                    int(rework_required),
                    quality.notes,
                    quality.notes,
                    quality.notes,
                    end_time,
                    item_id,
                ),
            )
            if cur.rowcount == 0:
                return None
            return await self.get_item(item_id, conn=c)

    async def abort_item(
        self, item_id: int, reason: str, now: float, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[InspectionItem]:
        """Abort one item if it is still active. Returns the aborted item or None."""
        async with self._use(conn) as c:
            cur = await c.execute(
                """
                UPDATE inspection_items
                SET status = 'aborted',
                    end_time = ?,
                    notes = CASE WHEN notes IS NULL OR notes = '' THEN ? ELSE notes || ' | ' || ? END,
                    updated_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (now, reason, reason, now, item_id),
            )
            if cur.rowcount == 0:
                return None
            return await self.get_item(item_id, conn=c)

    async def abort_active_for_session(
        self, session_id: int, reason: str, now: float, conn: aiosqlite.Connection
    ) -> List[InspectionItem]:
        """Abort every active item of a session and return the aborted rows.

        Must run on a connection inside a transaction so the id snapshot and
        the update see the same rows.
        """
        cur = await conn.execute(
            "SELECT id FROM inspection_items WHERE session_id = ? AND status = 'active'",
            (session_id,),
        )
        ids = [row[0] for row in await cur.fetchall()]
        if not ids:
            return []
        await conn.execute(
            """
            UPDATE inspection_items
            SET status = 'aborted',
                end_time = ?,
                notes = CASE WHEN notes IS NULL OR notes = '' THEN ? ELSE notes || ' | ' || ? END,
                updated_at = ?
            WHERE session_id = ? AND status = 'active'
            """,
            (now, reason, reason, now, session_id),
        )
        placeholders = ", ".join("?" for _ in ids)
        cur = await conn.execute(
            f"SELECT {self._COLUMN_LIST} FROM inspection_items WHERE id IN ({placeholders}) ORDER BY id",
            tuple(ids),
        )
        return [self._row_to_item(r) for r in await cur.fetchall()]

    # Audit trail

    async def insert_audit(
        self,
        item_id: int,
        action: AuditAction,
        payload: Dict[str, Any],
        created_at: float,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        async with self._use(conn) as c:
            cur = await c.execute(
                "INSERT INTO audit_events (item_id, action, payload, created_at) VALUES (?, ?, ?, ?)",
                (item_id, action.value, json.dumps(payload), created_at),
            )
            return cur.lastrowid

    async def list_audit(self, item_id: int, conn: Optional[aiosqlite.Connection] = None) -> List[AuditEvent]:
        async with self._use(conn) as c:
            cur = await c.execute(
                "SELECT id, item_id, action, payload, created_at FROM audit_events WHERE item_id = ? ORDER BY id",
                (item_id,),
            )
            events: List[AuditEvent] = []
            for row in await cur.fetchall():
                try:
                    payload = json.loads(row[3]) if row[3] else {}
                except ValueError:
                    payload = {}
                events.append(
                    AuditEvent(
                        id=row[0],
                        item_id=row[1],
                        action=AuditAction(row[2]),
                        payload=payload,
                        created_at=row[4],
                    )
                )
            return events

    @staticmethod
    def _row_to_item(row: Sequence[Any]) -> InspectionItem:
        """Convert a DB row into an InspectionItem."""
        return InspectionItem(
            id=row[0],
            session_id=row[1],
            code=row[2],
            start_scan_ref=row[3],
            end_scan_ref=row[4],
            start_time=row[5],
            end_time=row[6],
            completed=bool(row[7]),
            status=ItemStatus(row[8]),
            priority=row[9],
            quality_rating=row[10],
            defects_found=bool(row[11]),
            defect_description=row[12],
            rework_required=bool(row[13]),
            notes=row[14],
            updated_at=row[15],
        )
