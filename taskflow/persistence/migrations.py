"""Versioned schema migrations for the SQL execution stores."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Set, Tuple

from ..utils.timing import now_ms

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Tuple[str, ...]


SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    description TEXT,
    applied_at BIGINT NOT NULL
)
"""

SQLITE_MIGRATIONS: List[Migration] = [
    Migration(
        1,
        "workflows and executions",
        (
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT,
                description TEXT,
                definition_json TEXT NOT NULL,
                created_at INTEGER,
                updated_at INTEGER
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step TEXT,
                variables_json TEXT,
                outputs_json TEXT,
                step_statuses_json TEXT,
                error TEXT,
                started_at INTEGER,
                finished_at INTEGER,
                paused_at TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id)",
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)",
        ),
    ),
    Migration(
        2,
        "pause checkpoints",
        ("ALTER TABLE executions ADD COLUMN checkpoint_json TEXT",),
    ),
]

POSTGRES_MIGRATIONS: List[Migration] = [
    Migration(
        1,
        "workflows and executions",
        (
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT,
                description TEXT,
                definition_json JSONB NOT NULL,
                created_at BIGINT,
                updated_at BIGINT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step TEXT,
                variables_json JSONB,
                outputs_json JSONB,
                step_statuses_json JSONB,
                error TEXT,
                started_at BIGINT,
                finished_at BIGINT,
                paused_at TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id)",
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)",
        ),
    ),
    Migration(
        2,
        "pause checkpoints",
        ("ALTER TABLE executions ADD COLUMN IF NOT EXISTS checkpoint_json JSONB",),
    ),
]

LATEST_VERSION = max(m.version for m in SQLITE_MIGRATIONS)


def pending_migrations(
    migrations: Iterable[Migration], applied: Set[int]
) -> List[Migration]:
    return sorted(
        (m for m in migrations if m.version not in applied), key=lambda m: m.version
    )


def apply_sqlite_migrations(
    conn: sqlite3.Connection, migrations: Iterable[Migration] = SQLITE_MIGRATIONS
) -> List[int]:
    """Apply outstanding migrations; returns the versions applied."""
    conn.execute(SCHEMA_VERSION_TABLE)
    applied = {row[0] for row in conn.execute("SELECT version FROM schema_version")}
    done: List[int] = []
    for migration in pending_migrations(migrations, applied):
        with conn:
            for statement in migration.statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_version (version, description, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.description, now_ms()),
            )
        logger.info(f"Applied schema migration {migration.version}: {migration.description}")
        done.append(migration.version)
    return done


async def apply_postgres_migrations(
    conn: "asyncpg.Connection", migrations: Iterable[Migration] = POSTGRES_MIGRATIONS
) -> List[int]:
    await conn.execute(SCHEMA_VERSION_TABLE)
    rows = await conn.fetch("SELECT version FROM schema_version")
    applied = {row["version"] for row in rows}
    done: List[int] = []
    for migration in pending_migrations(migrations, applied):
        async with conn.transaction():
            for statement in migration.statements:
                await conn.execute(statement)
            await conn.execute(
                "INSERT INTO schema_version (version, description, applied_at) VALUES ($1, $2, $3)",
                migration.version,
                migration.description,
                now_ms(),
            )
        logger.info(f"Applied schema migration {migration.version}: {migration.description}")
        done.append(migration.version)
    return done


def current_sqlite_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0
