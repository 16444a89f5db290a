"""SQLite database setup for Quench."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite
import structlog

log = structlog.get_logger()

# Current schema version for migration tracking
# Version 2: Added fine_tune_test_entries for evaluation results
SCHEMA_VERSION = 2


class Database:
    """Manages SQLite database connection and schema."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database manager.

        Args:
            db_path: Path to the database file. Defaults to ~/.quench/quench.db
        """
        if db_path is None:
            db_path = Path.home() / ".quench" / "quench.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _get_schema_version(self, db: aiosqlite.Connection) -> int:
        """Get current schema version from database."""
        async with db.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def _set_schema_version(self, db: aiosqlite.Connection, version: int):
        """Set schema version in database."""
        await db.execute(f"PRAGMA user_version = {version}")

    async def initialize(self):
        """Create database schema if it doesn't exist."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            current_version = await self._get_schema_version(db)

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS fine_tunes (
                    id TEXT PRIMARY KEY,
                    slug TEXT UNIQUE NOT NULL,
                    base_model TEXT NOT NULL,
                    inference_urls_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS pruning_rules (
                    id TEXT PRIMARY KEY,
                    fine_tune_id TEXT NOT NULL,
                    text_to_match TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (fine_tune_id) REFERENCES fine_tunes(id)
                )
            """
            )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pruning_rules_fine_tune
                ON pruning_rules(fine_tune_id, created_at, id)
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS datasets (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    training_ratio REAL,
                    created_at TEXT NOT NULL
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS dataset_entries (
                    id TEXT PRIMARY KEY,
                    dataset_id TEXT NOT NULL,
                    messages_json TEXT NOT NULL,
                    function_call_json TEXT,
                    functions_json TEXT,
                    output_json TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    type TEXT NOT NULL CHECK (type IN ('TRAIN', 'TEST')),
                    sort_key TEXT NOT NULL,
                    persistent_id TEXT NOT NULL,
                    FOREIGN KEY (dataset_id) REFERENCES datasets(id)
                )
            """
            )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_dataset_entries_type
                ON dataset_entries(dataset_id, type)
            """
            )

            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_dataset_entries_sort
                ON dataset_entries(dataset_id, sort_key)
            """
            )

            # Version 2: evaluation results per fine-tune and test entry
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS fine_tune_test_entries (
                    fine_tune_id TEXT NOT NULL,
                    dataset_entry_id TEXT NOT NULL,
                    output_json TEXT,
                    error_message TEXT,
                    score REAL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (fine_tune_id, dataset_entry_id),
                    FOREIGN KEY (fine_tune_id) REFERENCES fine_tunes(id),
                    FOREIGN KEY (dataset_entry_id) REFERENCES dataset_entries(id)
                )
            """
            )

            if current_version < SCHEMA_VERSION:
                await self._set_schema_version(db, SCHEMA_VERSION)
                log.info(
                    "database_migrated",
                    from_version=current_version,
                    to_version=SCHEMA_VERSION,
                )

            await db.commit()

        self._initialized = True
        log.info("database_initialized", path=str(self.db_path))

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get an initialized connection with name-addressable rows."""
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements in one immediate (write-locked) transaction.

        The write lock is taken before the first read, so a read-then-write
        sequence sees no concurrent writer between its reads and its writes.
        Commits on success and rolls back on any exception.
        """
        await self.initialize()
        async with aiosqlite.connect(self.db_path, isolation_level=None) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
