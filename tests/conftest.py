"""Pytest fixtures for the inspection service tests."""

from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace

import pytest
import pytest_asyncio

from dal.inspection_dal import InspectionItemDAL
from dal.session_dal import WorkerSessionDAL
from services.inspection_state_machine import InspectionStateMachine
from services.rate_limiter import SlidingWindowRateLimiter
from services.scan_guard import ScanGuard
from services.scan_pipeline import ScanPipeline
from services.session_manager import SessionManager
from utils.config import QCConfig
from utils.database_init import AsyncDatabaseInitializer

# Local noon keeps calendar-day tests clear of midnight in any timezone.
NOON = datetime(2024, 3, 5, 12, 0, 0).timestamp()


class FakeClock:
    """Manually advanced clock usable wherever a time source is injected."""

    def __init__(self, start: float = NOON) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_dir(tmp_path, monkeypatch):
    """Temporary DATABASE_DIR for one test."""
    monkeypatch.setenv("DATABASE_DIR", str(tmp_path))
    monkeypatch.delenv("QC_RESET_DATABASE", raising=False)
    return tmp_path


@pytest_asyncio.fixture
async def db(db_dir) -> AsyncDatabaseInitializer:
    initializer = AsyncDatabaseInitializer()
    await initializer.ensure_database()
    return initializer


@pytest_asyncio.fixture
async def make_core(db, clock):
    """Factory wiring DALs, state machine, manager and pipeline for a config."""
    managers = []

    async def _make(start_timers: bool = False, items_dal=None, **overrides):
        config = QCConfig(**overrides)
        items = items_dal or InspectionItemDAL(db)
        sessions = WorkerSessionDAL(db)
        machine = InspectionStateMachine(db, items, config, clock=clock)
        manager = SessionManager(
            db,
            sessions,
            items,
            machine,
            config,
            limiter=SlidingWindowRateLimiter(max_per_window=config.max_scans_per_minute, clock=clock),
            clock=clock,
            start_timers=start_timers,
        )
        guard = ScanGuard(
            cooldown_ms=config.scan_cooldown_ms,
            immediate_repeat_ms=config.immediate_repeat_ms,
            clock=clock,
        )
        managers.append(manager)
        return SimpleNamespace(
            db=db,
            items=items,
            sessions=sessions,
            machine=machine,
            manager=manager,
            guard=guard,
            pipeline=ScanPipeline(manager, guard),
            config=config,
            clock=clock,
        )

    yield _make
    for manager in managers:
        await manager.shutdown()


@pytest_asyncio.fixture
async def core(make_core):
    """Default configuration core."""
    return await make_core()
