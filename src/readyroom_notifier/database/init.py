"""
Database pool and migration runner.

Applies pending SQL migrations from the ``migrations`` directory next to this
module and tracks them in the ``schema_migrations`` table. Safe to run on
every worker start: already-applied versions are skipped.

Usage:
    from readyroom_notifier.database.init import run_migrations, get_pool

    await run_migrations(database_url)
    pool = await get_pool()
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import asyncpg
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# =============================================================================
# CONNECTION POOL
# =============================================================================

_pool: Optional[asyncpg.Pool] = None

async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns into Python objects on every pooled connection."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )

async def get_pool(
    database_url: Optional[str] = None,
    min_size: int = 1,
    max_size: int = 5,
) -> asyncpg.Pool:
    """
    Get or create the database connection pool.

    Args:
        database_url: Connection string; falls back to DATABASE_URL.
        min_size: Minimum pool size when the pool is first created.
        max_size: Maximum pool size when the pool is first created.

    Returns:
        asyncpg.Pool: Database connection pool.

    Raises:
        RuntimeError: If no database URL is available.
    """
    global _pool
    if _pool is None:
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL environment variable is not set")
        _pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            init=_init_connection,
        )
    return _pool

async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None

# =============================================================================
# MIGRATIONS
# =============================================================================

async def create_schema_migrations_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it does not exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return {row["version"] for row in rows}

def get_pending_migrations(
    applied: set[str],
    migrations_dir: Path = MIGRATIONS_DIR,
) -> list[tuple[str, Path]]:
    """
    List migration files not yet applied, sorted by version.

    Filenames must start with a numeric version followed by an underscore
    (``001_core_schema.sql``); anything else is skipped with a warning.

    Args:
        applied: Versions already recorded in schema_migrations.
        migrations_dir: Directory to scan.

    Returns:
        List of (version, path) tuples.
    """
    if not migrations_dir.exists():
        logger.warning("Migrations directory not found: %s", migrations_dir)
        return []

    pending: list[tuple[str, Path]] = []
    for file_path in sorted(migrations_dir.glob("*.sql")):
        version = file_path.stem.split("_")[0]
        if not version.isdigit():
            logger.warning("Skipping non-numeric migration: %s", file_path.name)
            continue
        if version not in applied:
            pending.append((version, file_path))

    return sorted(pending, key=lambda x: x[0])

async def apply_migration(conn: asyncpg.Connection, version: str, file_path: Path) -> None:
    """Apply one migration file inside a transaction and record it."""
    logger.info("Applying migration %s: %s", version, file_path.name)

    sql = file_path.read_text(encoding="utf-8")
    if not sql.strip():
        raise RuntimeError(f"Migration file is empty: {file_path}")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES ($1, NOW())",
            version,
        )

async def run_migrations(database_url: Optional[str] = None) -> int:
    """
    Run all pending migrations.

    Args:
        database_url: Connection string; falls back to DATABASE_URL.

    Returns:
        Number of migrations applied.

    Raises:
        RuntimeError: If no database URL is set or the connection fails.
    """
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL environment variable is not set. "
            "Please set it in your .env file."
        )

    try:
        conn = await asyncpg.connect(database_url, timeout=10)
    except (asyncpg.PostgresError, OSError) as e:
        raise RuntimeError(f"Failed to connect to database: {e}")

    try:
        await create_schema_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        pending = get_pending_migrations(applied)

        if not pending:
            logger.debug("No pending migrations")
            return 0

        for version, file_path in pending:
            await apply_migration(conn, version, file_path)
        return len(pending)
    finally:
        await conn.close()
