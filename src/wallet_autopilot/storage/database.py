"""SQLite persistence for delegations and execution records.

One ``aiosqlite`` connection per process, WAL journal so the CLI can read
(and revoke) while the service is running. Schema changes are applied as
numbered migrations tracked in ``PRAGMA user_version``.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger("wallet_autopilot.database")

MIGRATIONS: list[str] = [
    # 1: delegations and their execution audit trail
    """\
    CREATE TABLE IF NOT EXISTS delegations (
        id TEXT PRIMARY KEY,
        delegator TEXT NOT NULL,
        delegate TEXT NOT NULL,
        scope_json TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        proof_of_grant TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        UNIQUE (delegator, delegate)
    );

    CREATE INDEX IF NOT EXISTS ix_delegations_delegate
        ON delegations (delegate, status);

    CREATE TABLE IF NOT EXISTS execution_records (
        id TEXT PRIMARY KEY,
        idempotency_key TEXT NOT NULL,
        delegation_id TEXT NOT NULL REFERENCES delegations(id),
        kind TEXT NOT NULL,
        token TEXT NOT NULL,
        spender TEXT NOT NULL,
        reason TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempt_count INTEGER NOT NULL DEFAULT 0,
        tx_ref TEXT,
        last_error TEXT,
        next_attempt_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- At most one non-terminal record per idempotency key.
    CREATE UNIQUE INDEX IF NOT EXISTS ux_execution_open_key
        ON execution_records (idempotency_key)
        WHERE status = 'pending';

    CREATE INDEX IF NOT EXISTS ix_execution_delegation
        ON execution_records (delegation_id, status);

    CREATE INDEX IF NOT EXISTS ix_execution_key
        ON execution_records (idempotency_key, status);
    """,
]


class Database:
    """Async access to the agent's SQLite file.

    Parameters
    ----------
    db_path:
        Location of the database file; parent directories are created on
        :meth:`connect`.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, configure it, and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
            await conn.execute(f"PRAGMA {pragma};")
        self._conn = conn
        await self._migrate()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Run one write statement and commit it.

        The cursor is returned so callers can check ``rowcount`` for
        compare-and-set updates.
        """
        conn = self._require()
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        async with self._require().execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._require().execute(sql, params) as cursor:
            return [dict(r) for r in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def schema_version(self) -> int:
        async with self._require().execute("PRAGMA user_version;") as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def _migrate(self) -> None:
        conn = self._require()
        current = await self.schema_version()
        for version, script in enumerate(MIGRATIONS[current:], start=current + 1):
            await conn.executescript(script)
            await conn.execute(f"PRAGMA user_version = {version};")
            await conn.commit()
            logger.debug(f"Applied schema migration {version} to {self.db_path}")


def get_database(root_dir: Path) -> Database:
    """Database at ``root_dir/autopilot.db``; call :meth:`Database.connect` before use."""
    return Database(Path(root_dir) / "autopilot.db")
