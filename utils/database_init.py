import os
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

DB_FILENAME = "qc.db"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        worker_id TEXT NOT NULL,
        start_time REAL NOT NULL,
        end_time REAL,
        active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0, 1))
    )
    """,
    # One active session per worker.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_sessions_worker_active
    ON sessions (worker_id) WHERE active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS inspection_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        code TEXT NOT NULL CHECK (length(code) BETWEEN 5 AND 500),
        start_scan_ref TEXT,
        end_scan_ref TEXT,
        start_time REAL NOT NULL,
        end_time REAL,
        completed INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'completed', 'aborted')),
        priority INTEGER NOT NULL DEFAULT 1 CHECK (priority BETWEEN 1 AND 3),
        quality_rating INTEGER CHECK (quality_rating IS NULL OR quality_rating BETWEEN 1 AND 5),
        defects_found INTEGER NOT NULL DEFAULT 0,
        defect_description TEXT,
        rework_required INTEGER NOT NULL DEFAULT 0,
        notes TEXT,
        updated_at REAL NOT NULL,
        CHECK (end_time IS NULL OR end_time >= start_time),
        CHECK ((completed = 0 AND end_scan_ref IS NULL)
            OR (completed = 1 AND end_time IS NOT NULL AND end_scan_ref IS NOT NULL)),
        CHECK (status != 'active' OR (end_time IS NULL AND end_scan_ref IS NULL)),
        CHECK ((defects_found = 0 AND defect_description IS NULL)
            OR (defects_found = 1 AND defect_description IS NOT NULL))
    )
    """,
    # Conditional-write guard: at most one active item per (session, code).
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_items_session_code_active
    ON inspection_items (session_id, code) WHERE status = 'active'
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_items_session_code_start
    ON inspection_items (session_id, code, start_time DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        item_id INTEGER NOT NULL REFERENCES inspection_items(id) ON DELETE CASCADE,
        action TEXT NOT NULL CHECK (action IN ('created', 'completed', 'aborted')),
        payload TEXT,
        created_at REAL NOT NULL
    )
    """,
)


class AsyncDatabaseInitializer:
    """
    Manage the inspection SQLite database using the DATABASE_DIR environment variable.

    - The database file is located at: <DATABASE_DIR>/qc.db
    - DATABASE_DIR is required. A RuntimeError is raised if it is missing
      or invalid (not a directory and cannot be created).
    - The first call to `ensure_database()` creates the tables and indexes.
      Existing rows are kept so that active sessions and items survive a
      process restart, unless `reset=True` (or QC_RESET_DATABASE=true) asks
      for a fresh file.
    - Subsequent calls to `ensure_database()` on the same instance are no-ops,
      so it is safe for `connection()` to call it.
    """

    def __init__(self, reset: Optional[bool] = None, busy_timeout: float = 10.0) -> None:
        env_dir = os.getenv("DATABASE_DIR")

        if env_dir is None or not env_dir.strip():
            raise RuntimeError(
                "DATABASE_DIR environment variable must be set to a writable "
                "directory path where the SQLite database file will be stored."
            )

        db_dir = Path(env_dir).expanduser()

        # If the path exists but is not a directory, that's a configuration error.
        if db_dir.exists() and not db_dir.is_dir():
            raise RuntimeError(
                f"DATABASE_DIR={env_dir!r} points to a file, not a directory "
                f"({db_dir}). Please set DATABASE_DIR to a directory path."
            )

        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            raise RuntimeError(
                f"Failed to create or access database directory at {db_dir}"
            ) from exc

        if reset is None:
            reset = (os.getenv("QC_RESET_DATABASE") or "").strip().lower() == "true"

        self.db_dir = db_dir
        self.db_path = self.db_dir / DB_FILENAME
        self.reset = reset
        self.busy_timeout = busy_timeout

        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_database(self) -> None:
        """
        Ensure the SQLite database at `self.db_path` has the inspection schema.

        On first call this will:
            - Delete any existing database file when `reset` is set.
            - Create the sessions, inspection_items and audit_events tables.
            - Create the partial unique indexes enforcing one active session
              per worker and one active item per (session, code).

        Subsequent calls on the same instance are no-ops.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            if self.reset:
                # WAL sidecar files must go with the main file.
                for path in (self.db_path, Path(f"{self.db_path}-wal"), Path(f"{self.db_path}-shm")):
                    if not path.exists():
                        continue
                    try:
                        path.unlink()
                    except Exception as exc:
                        raise RuntimeError(
                            f"Failed to delete existing database at {path}"
                        ) from exc

            max_attempts = 3
            for attempt in range(1, max_attempts + 1):
                try:
                    async with aiosqlite.connect(self.db_path) as db:
                        await db.execute("PRAGMA journal_mode=WAL;")
                        for statement in SCHEMA:
                            await db.execute(statement)
                        await db.commit()
                    break
                except FileNotFoundError:
                    # On some platforms a transient missing file error may occur; retry a few times.
                    if attempt >= max_attempts:
                        raise
                    await asyncio.sleep(0.1 * attempt)

            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Async context manager yielding an autocommit `aiosqlite.Connection`.

        Each statement commits on its own; use `transaction()` to group
        several statements atomically.
        """
        await self.ensure_database()
        conn = await aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        )
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Yield a connection inside `BEGIN IMMEDIATE ... COMMIT`.

        The write lock is taken up front so that check-then-write sequences
        (count active items, then insert) cannot interleave with another
        writer. Any exception rolls the whole transaction back.
        """
        async with self.connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
