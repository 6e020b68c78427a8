"""Entry/exit state machine for inspection items.

Each scan of a code inside a session either opens a new inspection item
(entry) or closes the item that is currently active for that code (exit).
The decision is taken from the latest stored item for (session, code); the
store's partial unique index and conditional updates keep at most one
active item per pair even when scans race.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from dal.inspection_dal import InspectionItemDAL
from models.inspection_item import AuditAction, InspectionItem, QualityData
from models.scan_outcome import OutcomeType, ScanOutcome, format_duration
from models.session_models import ENTRY, EXIT
from utils.config import QCConfig
from utils.database_init import AsyncDatabaseInitializer
from utils.exceptions import BulkAbortError, SessionInactiveError, StoreError, ValidationError

LOGGER = logging.getLogger(__name__)


class InspectionStateMachine:
    """Classify scans as entry or exit and advance the matching item.

    Args:
        db_initializer: Shared connection provider, used for transactions.
        items: Data access layer for items and audit events.
        config: Limits and policies.
        clock: Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        db_initializer: AsyncDatabaseInitializer,
        items: InspectionItemDAL,
        config: QCConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db_initializer
        self._items = items
        self.config = config
        self._clock = clock

    async def handle_scan(
        self,
        session_id: int,
        code: str,
        scan_ref: str,
        quality: Optional[QualityData] = None,
        priority: Optional[int] = None,
    ) -> ScanOutcome:
        """Route a scan to the entry or exit path.

        Raises:
            ValidationError: If the quality data or priority is malformed.
            SessionInactiveError: If the session was ended in the store.
        """
        if quality is not None:
            quality.validate()
        try:
            latest = await self._items.get_latest_for_code(session_id, code)
        except aiosqlite.Error:
            LOGGER.exception("Lookup of code %s in session %s failed", code, session_id)
            return ScanOutcome(
                type=OutcomeType.ERROR,
                message="The inspection store is unavailable; please scan again.",
                actual_code=code,
            )

        if latest is not None and latest.is_active:
            return await self.complete_item(latest, code, scan_ref, quality)
        if quality is not None:
            LOGGER.info("Session %s: quality data on entry scan of %s ignored", session_id, code)
        return await self.start_item(session_id, code, scan_ref, priority)

    async def start_item(
        self,
        session_id: int,
        code: str,
        scan_ref: str,
        priority: Optional[int] = None,
    ) -> ScanOutcome:
        """Open a new active item for (session, code).

        The session check, the parallel-item count, the re-entry check and
        the insert run in a single IMMEDIATE transaction so two concurrent
        entries cannot both pass the limit and no item opens in a session
        ended by another process.

        Raises:
            SessionInactiveError: If the session is no longer active.
        """
        priority = self.config.default_priority if priority is None else priority
        if not 1 <= priority <= 3:
            raise ValidationError("Priority must be 1 (normal), 2 (high) or 3 (critical).")

        now = self._clock()
        try:
            async with self._db.transaction() as conn:
                if not await self._items.session_is_active(session_id, conn=conn):
                    raise SessionInactiveError(session_id)
                active = await self._items.count_active(session_id, conn=conn)
                if active >= self.config.max_parallel_items:
                    LOGGER.info(
                        "Session %s: parallel item limit reached (%s/%s), code %s rejected",
                        session_id,
                        active,
                        self.config.max_parallel_items,
                        code,
                    )
                    return ScanOutcome(
                        type=OutcomeType.LIMIT_EXCEEDED,
                        message=(
                            f"Maximum of {self.config.max_parallel_items} parallel inspections reached. "
                            "Finish an open inspection first."
                        ),
                        scan_type=ENTRY,
                        active_count=active,
                        actual_code=code,
                    )

                if await self._reentry_blocked(session_id, code, now, conn):
                    LOGGER.info("Session %s: code %s already completed in the re-entry window", session_id, code)
                    return ScanOutcome(
                        type=OutcomeType.ALREADY_COMPLETED,
                        message=f"Code {code} has already been inspected.",
                        scan_type=ENTRY,
                        active_count=active,
                        actual_code=code,
                    )

                item = await self._items.insert_active(
                    session_id, code, scan_ref, now, priority=priority, conn=conn
                )
                await self._audit(
                    conn,
                    item.id,
                    AuditAction.CREATED,
                    {"code": code, "scan_ref": scan_ref, "priority": priority},
                    now,
                )

                if not self.config.require_both_scans:
                    completed = await self._items.complete(item.id, scan_ref, now, conn=conn)
                    if completed is None:
                        raise aiosqlite.OperationalError(f"Item {item.id} vanished before single-scan completion")
                    await self._audit(
                        conn,
                        item.id,
                        AuditAction.COMPLETED,
                        {"code": code, "scan_ref": scan_ref, "duration_seconds": 0, "single_scan": True},
                        now,
                    )
                    return ScanOutcome(
                        type=OutcomeType.EXIT_COMPLETED,
                        message=f"Inspection of {code} recorded.",
                        item=completed,
                        scan_type=ENTRY,
                        duration_seconds=0,
                        next_expected=ENTRY,
                        active_count=active,
                    )
        except aiosqlite.IntegrityError as exc:
            LOGGER.info("Session %s: concurrent entry for code %s rejected by the store (%s)", session_id, code, exc)
            return ScanOutcome(
                type=OutcomeType.ENTRANCE_ERROR,
                message=f"Code {code} is already being inspected.",
                scan_type=ENTRY,
                actual_code=code,
            )
        except aiosqlite.Error:
            LOGGER.exception("Session %s: starting inspection for code %s failed", session_id, code)
            return ScanOutcome(
                type=OutcomeType.ENTRANCE_ERROR,
                message="Inspection could not be started; please scan again.",
                scan_type=ENTRY,
                actual_code=code,
            )

        LOGGER.info("Session %s: inspection %s started for code %s", session_id, item.id, code)
        return ScanOutcome(
            type=OutcomeType.ENTRANCE_STARTED,
            message=f"Inspection started for {code}. Scan it again when done.",
            item=item,
            scan_type=ENTRY,
            next_expected=EXIT,
            active_count=active + 1,
        )

    async def complete_item(
        self,
        item: InspectionItem,
        code: str,
        scan_ref: str,
        quality: Optional[QualityData] = None,
    ) -> ScanOutcome:
        """Close `item` with an exit scan of `code`.

        Overdue items are completed as usual and only flagged. If the item
        is no longer active when the update runs (aborted or completed
        concurrently), an `exit_error` is reported and nothing is retried.

        Raises:
            SessionInactiveError: If the item's session is no longer active.
        """
        if item.code != code:
            LOGGER.info("Session %s: exit scan %s does not match item %s (%s)", item.session_id, code, item.id, item.code)
            return ScanOutcome(
                type=OutcomeType.QR_MISMATCH,
                message=f"Wrong code scanned: expected {item.code}, got {code}.",
                item=item,
                scan_type=EXIT,
                expected_code=item.code,
                actual_code=code,
                next_expected=EXIT,
            )

        quality = (quality or QualityData()).validate()
        now = self._clock()
        overdue = self.is_overdue(item, now)
        if overdue:
            LOGGER.warning(
                "Item %s (%s) completed after %s, over the %s minute step timeout",
                item.id,
                code,
                format_duration(item.duration_seconds(now)),
                self.config.step_timeout_minutes,
            )

        rework = quality.defects_found and self.config.allow_rework
        try:
            async with self._db.transaction() as conn:
                if not await self._items.session_is_active(item.session_id, conn=conn):
                    raise SessionInactiveError(item.session_id)
                completed = await self._items.complete(
                    item.id, scan_ref, now, quality=quality, rework_required=rework, conn=conn
                )
                if completed is not None:
                    await self._audit(
                        conn,
                        item.id,
                        AuditAction.COMPLETED,
                        {
                            "code": code,
                            "scan_ref": scan_ref,
                            "duration_seconds": completed.duration_seconds(),
                            "quality_rating": quality.rating,
                            "defects_found": quality.defects_found,
                            "rework_required": rework,
                            "overdue": overdue,
                        },
                        now,
                    )
        except aiosqlite.Error:
            LOGGER.exception("Completing item %s for code %s failed", item.id, code)
            return ScanOutcome(
                type=OutcomeType.EXIT_ERROR,
                message="Inspection could not be completed; please scan again.",
                item=item,
                scan_type=EXIT,
                actual_code=code,
            )

        if completed is None:
            LOGGER.warning("Item %s was no longer active when its exit scan arrived", item.id)
            return ScanOutcome(
                type=OutcomeType.EXIT_ERROR,
                message=f"Inspection of {code} is no longer open.",
                item=item,
                scan_type=EXIT,
                actual_code=code,
            )

        duration = completed.duration_seconds()
        LOGGER.info("Item %s (%s) completed in %s", completed.id, code, format_duration(duration))
        return ScanOutcome(
            type=OutcomeType.EXIT_COMPLETED,
            message=f"Inspection of {code} completed in {format_duration(duration)}.",
            item=completed,
            scan_type=EXIT,
            duration_seconds=duration,
            next_expected=ENTRY,
            overdue=overdue,
        )

    async def abort_active_for_session(
        self,
        session_id: int,
        reason: str,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> List[InspectionItem]:
        """Abort every active item of a session in one transaction.

        When `conn` is given the abort joins the caller's transaction.

        Returns:
            The aborted items; their count is the number of affected items.

        Raises:
            BulkAbortError: If the transaction failed. No item was aborted
                and the session may still have active items.
        """
        try:
            if conn is not None:
                return await self._abort_all(session_id, reason, conn)
            async with self._db.transaction() as own:
                return await self._abort_all(session_id, reason, own)
        except aiosqlite.Error as exc:
            LOGGER.error("Bulk abort for session %s rolled back: %s", session_id, exc)
            raise BulkAbortError(session_id, exc) from exc

    async def _abort_all(self, session_id: int, reason: str, conn: aiosqlite.Connection) -> List[InspectionItem]:
        now = self._clock()
        aborted = await self._items.abort_active_for_session(session_id, reason, now, conn)
        for item in aborted:
            await self._audit(conn, item.id, AuditAction.ABORTED, {"code": item.code, "reason": reason}, now)
        if aborted:
            LOGGER.info("Session %s: aborted %s active item(s) (%s)", session_id, len(aborted), reason)
        return aborted

    async def abort_item(self, item_id: int, reason: str) -> Optional[InspectionItem]:
        """Abort one item. Returns None when it was not active."""
        now = self._clock()
        try:
            async with self._db.transaction() as conn:
                aborted = await self._items.abort_item(item_id, reason, now, conn=conn)
                if aborted is not None:
                    await self._audit(conn, item_id, AuditAction.ABORTED, {"code": aborted.code, "reason": reason}, now)
        except aiosqlite.Error as exc:
            raise StoreError(f"Aborting item {item_id} failed: {exc}") from exc
        if aborted is None:
            LOGGER.info("Item %s is not active; nothing to abort", item_id)
        return aborted

    def is_overdue(self, item: InspectionItem, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return item.is_active and now - item.start_time > self.config.step_timeout_minutes * 60

    async def overdue_items(self, session_id: int) -> List[InspectionItem]:
        """Active items of a session older than the step timeout."""
        cutoff = self._clock() - self.config.step_timeout_minutes * 60
        return await self._items.list_overdue(session_id, cutoff)

    def reentry_cutoff(self, now: Optional[float] = None) -> Optional[float]:
        """Earliest start time that still blocks re-entry, or None when re-entry is unrestricted."""
        now = self._clock() if now is None else now
        policy = self.config.reentry_policy
        if policy == "off":
            return None
        if policy == "rolling":
            return now - self.config.reentry_window_hours * 3600
        midnight = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.timestamp()

    async def completed_in_window(self, session_id: int, code: Optional[str] = None) -> List[InspectionItem]:
        cutoff = self.reentry_cutoff()
        if cutoff is None:
            return []
        return await self._items.list_completed_since(session_id, cutoff, code=code)

    async def _reentry_blocked(self, session_id: int, code: str, now: float, conn: aiosqlite.Connection) -> bool:
        cutoff = self.reentry_cutoff(now)
        if cutoff is None:
            return False
        done = await self._items.list_completed_since(session_id, cutoff, code=code, conn=conn)
        if not done:
            return False
        # Most recent completion decides: a rework flag reopens the code.
        return not (self.config.allow_rework and done[0].rework_required)

    async def _audit(
        self,
        conn: aiosqlite.Connection,
        item_id: int,
        action: AuditAction,
        payload: Dict[str, Any],
        now: float,
    ) -> None:
        if not self.config.enable_audit_log:
            return
        try:
            await self._items.insert_audit(item_id, action, payload, now, conn=conn)
        except aiosqlite.Error as exc:
            LOGGER.warning("Audit event %s for item %s was not written: %s", action.value, item_id, exc)
