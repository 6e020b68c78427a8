"""Tests for InspectionStateMachine entry/exit handling."""

from __future__ import annotations

import asyncio
import random

import aiosqlite
import pytest

from dal.inspection_dal import InspectionItemDAL
from models.inspection_item import ItemStatus, QualityData
from models.scan_outcome import OutcomeType
from models.session_models import ENTRY, EXIT
from utils.exceptions import BulkAbortError, SessionInactiveError, ValidationError


async def _session(core, worker_id: str = "W-1"):
    return await core.manager.create_session(worker_id)


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_entry_then_exit(self, core):
        session = await _session(core)

        entry = await core.machine.handle_scan(session.id, "ABC123", "scan-1")
        core.clock.advance(4.7)
        exit_ = await core.machine.handle_scan(session.id, "ABC123", "scan-2")

        assert entry.type == OutcomeType.ENTRANCE_STARTED
        assert entry.scan_type == ENTRY
        assert entry.next_expected == EXIT
        assert entry.active_count == 1
        assert exit_.type == OutcomeType.EXIT_COMPLETED
        assert exit_.scan_type == EXIT
        item = exit_.item
        assert item.status == ItemStatus.COMPLETED
        assert item.completed is True
        assert item.end_time >= item.start_time
        assert exit_.duration_seconds == int(item.end_time - item.start_time) == 4
        assert "00:00:04" in exit_.message
        assert await core.items.count_active(session.id) == 0

    @pytest.mark.asyncio
    async def test_parallel_codes(self, core):
        session = await _session(core)

        await core.machine.handle_scan(session.id, "ITEM-X1", "s1")
        second = await core.machine.handle_scan(session.id, "ITEM-X2", "s2")

        assert second.type == OutcomeType.ENTRANCE_STARTED
        assert second.active_count == 2


class TestEntryPolicies:
    @pytest.mark.asyncio
    async def test_limit_boundary(self, make_core):
        core = await make_core(max_parallel_items=3)
        session = await _session(core)
        for n in range(2):
            await core.machine.handle_scan(session.id, f"CODE-{n}", f"s{n}")

        at_limit_minus_one = await core.machine.handle_scan(session.id, "CODE-2", "s2")
        at_limit = await core.machine.handle_scan(session.id, "CODE-3", "s3")

        assert at_limit_minus_one.type == OutcomeType.ENTRANCE_STARTED
        assert at_limit.type == OutcomeType.LIMIT_EXCEEDED
        assert at_limit.active_count == 3
        assert await core.items.get_latest_for_code(session.id, "CODE-3") is None
        assert await core.items.count_active(session.id) == 3

    @pytest.mark.asyncio
    async def test_calendar_day_blocks_same_day_reentry(self, core):
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        core.clock.advance(5)
        await core.machine.handle_scan(session.id, "ABC123", "s2")
        core.clock.advance(3600)

        again = await core.machine.handle_scan(session.id, "ABC123", "s3")

        assert again.type == OutcomeType.ALREADY_COMPLETED
        assert again.item is None

    @pytest.mark.asyncio
    async def test_calendar_day_allows_next_day(self, core):
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.machine.handle_scan(session.id, "ABC123", "s2")
        core.clock.advance(24 * 3600)

        again = await core.machine.handle_scan(session.id, "ABC123", "s3")

        assert again.type == OutcomeType.ENTRANCE_STARTED

    @pytest.mark.asyncio
    async def test_rolling_window(self, make_core):
        core = await make_core(reentry_policy="rolling", reentry_window_hours=2)
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.machine.handle_scan(session.id, "ABC123", "s2")

        core.clock.advance(3600)
        blocked = await core.machine.handle_scan(session.id, "ABC123", "s3")
        core.clock.advance(2 * 3600)
        allowed = await core.machine.handle_scan(session.id, "ABC123", "s4")

        assert blocked.type == OutcomeType.ALREADY_COMPLETED
        assert allowed.type == OutcomeType.ENTRANCE_STARTED

    @pytest.mark.asyncio
    async def test_reentry_off(self, make_core):
        core = await make_core(reentry_policy="off")
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.machine.handle_scan(session.id, "ABC123", "s2")

        again = await core.machine.handle_scan(session.id, "ABC123", "s3")

        assert again.type == OutcomeType.ENTRANCE_STARTED

    @pytest.mark.asyncio
    async def test_rework_reopens_code(self, core):
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        quality = QualityData(rating=2, defects_found=True, defect_description="scratch")
        done = await core.machine.handle_scan(session.id, "ABC123", "s2", quality=quality)

        again = await core.machine.handle_scan(session.id, "ABC123", "s3")

        assert done.item.rework_required is True
        assert done.item.defect_description == "scratch"
        assert again.type == OutcomeType.ENTRANCE_STARTED

    @pytest.mark.asyncio
    async def test_rework_disabled(self, make_core):
        core = await make_core(allow_rework=False)
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        quality = QualityData(defects_found=True, defect_description="dent")
        done = await core.machine.handle_scan(session.id, "ABC123", "s2", quality=quality)

        again = await core.machine.handle_scan(session.id, "ABC123", "s3")

        assert done.item.rework_required is False
        assert again.type == OutcomeType.ALREADY_COMPLETED

    @pytest.mark.asyncio
    async def test_priority_defaults_and_validation(self, make_core):
        core = await make_core(default_priority=2)
        session = await _session(core)

        default = await core.machine.handle_scan(session.id, "CODE-A", "s1")
        explicit = await core.machine.handle_scan(session.id, "CODE-B", "s2", priority=3)

        assert default.item.priority == 2
        assert explicit.item.priority == 3
        with pytest.raises(ValidationError):
            await core.machine.handle_scan(session.id, "CODE-C", "s3", priority=7)

    @pytest.mark.asyncio
    async def test_single_scan_mode(self, make_core):
        core = await make_core(require_both_scans=False)
        session = await _session(core)

        outcome = await core.machine.handle_scan(session.id, "ABC123", "s1")
        again = await core.machine.handle_scan(session.id, "ABC123", "s2")

        assert outcome.type == OutcomeType.EXIT_COMPLETED
        assert outcome.duration_seconds == 0
        assert outcome.item.status == ItemStatus.COMPLETED
        assert outcome.item.end_scan_ref == outcome.item.start_scan_ref == "s1"
        assert again.type == OutcomeType.ALREADY_COMPLETED


class TestExitPath:
    @pytest.mark.asyncio
    async def test_mismatch_reports_both_codes(self, core):
        session = await _session(core)
        entry = await core.machine.handle_scan(session.id, "ABC123", "s1")

        outcome = await core.machine.complete_item(entry.item, "ZZZ999", "s2")

        assert outcome.type == OutcomeType.QR_MISMATCH
        assert outcome.expected_code == "ABC123"
        assert outcome.actual_code == "ZZZ999"
        assert (await core.items.get_item(entry.item.id)).is_active

    @pytest.mark.asyncio
    async def test_overdue_exit_completes_and_flags(self, core, caplog):
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")
        core.clock.advance(121 * 60)

        with caplog.at_level("WARNING"):
            outcome = await core.machine.handle_scan(session.id, "ABC123", "s2")

        assert outcome.type == OutcomeType.EXIT_COMPLETED
        assert outcome.overdue is True
        assert outcome.to_dict()["overdue"] is True
        assert "step timeout" in caplog.text

    @pytest.mark.asyncio
    async def test_lost_update_is_exit_error(self, core):
        session = await _session(core)
        entry = await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.machine.abort_item(entry.item.id, "gone")

        outcome = await core.machine.complete_item(entry.item, "ABC123", "s2")

        assert outcome.type == OutcomeType.EXIT_ERROR
        assert (await core.items.get_item(entry.item.id)).status == ItemStatus.ABORTED

    @pytest.mark.asyncio
    async def test_invalid_quality_is_rejected(self, core):
        session = await _session(core)
        await core.machine.handle_scan(session.id, "ABC123", "s1")

        with pytest.raises(ValidationError):
            await core.machine.handle_scan(session.id, "ABC123", "s2", quality=QualityData(defects_found=True))
        with pytest.raises(ValidationError):
            await core.machine.handle_scan(session.id, "ABC123", "s2", quality=QualityData(rating=6))

        assert await core.items.count_active(session.id) == 1


class TestEndedSession:
    @pytest.mark.asyncio
    async def test_entry_into_ended_session_is_rejected(self, core):
        session = await _session(core)
        await core.sessions.deactivate(session.id, core.clock.now)

        with pytest.raises(SessionInactiveError):
            await core.machine.handle_scan(session.id, "ABC123", "s1")

        assert await core.items.count_active(session.id) == 0

    @pytest.mark.asyncio
    async def test_exit_in_ended_session_leaves_item_open(self, core):
        session = await _session(core)
        entry = await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.sessions.deactivate(session.id, core.clock.now)

        with pytest.raises(SessionInactiveError):
            await core.machine.handle_scan(session.id, "ABC123", "s2")

        item = await core.items.get_item(entry.item.id)
        assert item.is_active
        assert [e.action.value for e in await core.items.list_audit(item.id)] == ["created"]

    @pytest.mark.asyncio
    async def test_quality_on_entry_is_logged_and_ignored(self, core, caplog):
        session = await _session(core)

        with caplog.at_level("INFO", logger="services.inspection_state_machine"):
            outcome = await core.machine.handle_scan(session.id, "ABC123", "s1", quality=QualityData(rating=4))

        assert outcome.type == OutcomeType.ENTRANCE_STARTED
        assert outcome.item.quality_rating is None
        assert "quality data on entry scan of ABC123 ignored" in caplog.text


class TestAbort:
    @pytest.mark.asyncio
    async def test_bulk_abort(self, core):
        session = await _session(core)
        for code in ("CODE-A", "CODE-B"):
            await core.machine.handle_scan(session.id, code, code)
        await core.machine.handle_scan(session.id, "CODE-A", "exit-a")

        aborted = await core.machine.abort_active_for_session(session.id, "Shift over")

        assert [i.code for i in aborted] == ["CODE-B"]
        assert aborted[0].notes == "Shift over"
        assert aborted[0].end_time is not None
        assert await core.items.count_active(session.id) == 0
        assert await core.machine.abort_active_for_session(session.id, "again") == []

    @pytest.mark.asyncio
    async def test_failed_bulk_abort_aborts_nothing(self, core, monkeypatch):
        session = await _session(core)
        for code in ("CODE-A", "CODE-B"):
            await core.machine.handle_scan(session.id, code, code)
        original = core.items.abort_active_for_session

        async def fail_after_update(*args, **kwargs):
            await original(*args, **kwargs)
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(core.items, "abort_active_for_session", fail_after_update)

        with pytest.raises(BulkAbortError) as excinfo:
            await core.machine.abort_active_for_session(session.id, "Shift over")

        assert excinfo.value.session_id == session.id
        assert await core.items.count_active(session.id) == 2

    @pytest.mark.asyncio
    async def test_abort_single_item_is_noop_when_inactive(self, core):
        session = await _session(core)
        entry = await core.machine.handle_scan(session.id, "ABC123", "s1")
        await core.machine.handle_scan(session.id, "ABC123", "s2")

        assert await core.machine.abort_item(entry.item.id, "late") is None
        assert (await core.items.get_item(entry.item.id)).status == ItemStatus.COMPLETED


class FailingAuditDAL(InspectionItemDAL):
    async def insert_audit(self, *args, **kwargs):
        raise aiosqlite.OperationalError("audit table unavailable")


class TestAudit:
    @pytest.mark.asyncio
    async def test_every_transition_is_audited(self, core):
        session = await _session(core)
        first = await core.machine.handle_scan(session.id, "CODE-A", "s1")
        await core.machine.handle_scan(session.id, "CODE-A", "s2")
        second = await core.machine.handle_scan(session.id, "CODE-B", "s3")
        await core.machine.abort_active_for_session(session.id, "stop")

        first_actions = [e.action.value for e in await core.items.list_audit(first.item.id)]
        second_actions = [e.action.value for e in await core.items.list_audit(second.item.id)]

        assert first_actions == ["created", "completed"]
        assert second_actions == ["created", "aborted"]

    @pytest.mark.asyncio
    async def test_audit_disabled(self, make_core):
        core = await make_core(enable_audit_log=False)
        session = await _session(core)
        entry = await core.machine.handle_scan(session.id, "CODE-A", "s1")

        assert await core.items.list_audit(entry.item.id) == []

    @pytest.mark.asyncio
    async def test_audit_failure_is_not_fatal(self, make_core, db, caplog):
        core = await make_core(items_dal=FailingAuditDAL(db))
        session = await _session(core)

        with caplog.at_level("WARNING"):
            entry = await core.machine.handle_scan(session.id, "CODE-A", "s1")
            exit_ = await core.machine.handle_scan(session.id, "CODE-A", "s2")

        assert entry.type == OutcomeType.ENTRANCE_STARTED
        assert exit_.type == OutcomeType.EXIT_COMPLETED
        assert "was not written" in caplog.text


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_entries_create_one_active_item(self, core):
        session = await _session(core)

        outcomes = await asyncio.gather(
            *(core.machine.start_item(session.id, "ABC123", f"s{n}") for n in range(6))
        )

        started = [o for o in outcomes if o.type == OutcomeType.ENTRANCE_STARTED]
        assert len(started) == 1
        assert {o.type for o in outcomes} <= {OutcomeType.ENTRANCE_STARTED, OutcomeType.ENTRANCE_ERROR}
        assert await core.items.count_active(session.id) == 1

    @pytest.mark.asyncio
    async def test_randomized_entries_never_duplicate_active_pairs(self, make_core):
        core = await make_core(max_parallel_items=50)
        session = await _session(core)
        rng = random.Random(7)
        codes = [f"CODE-{rng.randint(0, 4)}" for _ in range(25)]

        await asyncio.gather(*(core.machine.start_item(session.id, code, f"s{n}") for n, code in enumerate(codes)))

        async with core.db.connection() as conn:
            cur = await conn.execute(
                """
                SELECT session_id, code, COUNT(*) FROM inspection_items
                WHERE status = 'active' GROUP BY session_id, code HAVING COUNT(*) > 1
                """
            )
            duplicates = await cur.fetchall()
        assert duplicates == []
        assert await core.items.count_active(session.id) == len(set(codes))
