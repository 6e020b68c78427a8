import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from dal.inspection_dal import InspectionItemDAL
from dal.session_dal import WorkerSessionDAL
from models.session_models import SessionTick
from routes.item_route import router as item_router
from routes.session_route import router as session_router
from services.inspection_state_machine import InspectionStateMachine
from services.rate_limiter import SlidingWindowRateLimiter
from services.scan_guard import ScanGuard
from services.scan_pipeline import ScanPipeline
from services.session_manager import SessionManager
from utils.config import QCConfig
from utils.database_init import AsyncDatabaseInitializer

from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file if present

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)


def _log_tick(tick: SessionTick) -> None:
    LOGGER.debug("Session %s (%s) running for %ss", tick.session_id, tick.worker_id, tick.elapsed_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the SQLite database (kept across restarts, at DATABASE_DIR/qc.db)
      - the inspection state machine, session manager and scan pipeline
    and attach them to `app.state`. Active sessions found in the store are
    recovered before the first request is served.
    """
    config = QCConfig.from_env()

    # Initialize DB using DATABASE_DIR only.
    db_initializer = AsyncDatabaseInitializer()
    await db_initializer.ensure_database()
    app.state.db_initializer = db_initializer
    app.state.config = config

    inspection_dal = InspectionItemDAL(db_initializer)
    session_dal = WorkerSessionDAL(db_initializer)
    machine = InspectionStateMachine(db_initializer, inspection_dal, config)
    manager = SessionManager(
        db_initializer,
        session_dal,
        inspection_dal,
        machine,
        config,
        limiter=SlidingWindowRateLimiter(max_per_window=config.max_scans_per_minute),
    )
    manager.add_listener(_log_tick)
    guard = ScanGuard(cooldown_ms=config.scan_cooldown_ms, immediate_repeat_ms=config.immediate_repeat_ms)

    app.state.inspection_dal = inspection_dal
    app.state.session_manager = manager
    app.state.scan_pipeline = ScanPipeline(manager, guard)

    recovered = await manager.recover()
    if recovered:
        LOGGER.info("Recovered %s active session(s) from %s", recovered, db_initializer.db_path)

    try:
        yield
    finally:
        await manager.shutdown()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check reporting database state and active sessions.
        """
        db_initializer = getattr(request.app.state, "db_initializer", None)
        manager = getattr(request.app.state, "session_manager", None)
        return {
            "ok": True,
            "db_initialized": bool(db_initializer and db_initializer.initialized),
            "active_sessions": len(manager.active_sessions()) if manager else 0,
        }

    # Register application routers
    app.include_router(session_router)
    app.include_router(item_router)

    return app


app = create_app()
