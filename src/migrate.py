"""
Schema migrations for the record store.

Migrations are forward-only SQL files named ``NNN_description.sql`` in the
migrations/ directory. Several controller processes may start against the
same database, so the whole run holds a PostgreSQL advisory lock and uses a
single connection; each migration is applied in its own transaction.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Optional, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary key shared by every process running migrations on this schema
MIGRATION_LOCK_KEY = 0x67727077


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations bookkeeping table if missing."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    Find migration files, ordered by version.

    Args:
        directory: Where to look; defaults to MIGRATIONS_DIR

    Raises:
        FileNotFoundError: If the directory doesn't exist
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found = []
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        match = MIGRATION_PATTERN.match(entry.name)
        if match:
            found.append(Migration(match.group(1), entry.name, entry))

    return sorted(found, key=lambda m: m.version)


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Run one migration and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            migration.version,
            migration.filename,
        )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Apply all pending migrations in version order.

    Args:
        pool: A connected asyncpg pool
        directory: Override for the migrations directory

    Returns:
        Number of migrations applied

    Raises:
        FileNotFoundError: If the migrations directory is missing
        asyncpg.PostgresError: If a migration fails; it is rolled back and
            earlier migrations stay applied
    """
    migrations = discover_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in migrations if m.version not in applied]

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    return len(pending)
