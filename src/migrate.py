"""
Schema migrations for the PostgreSQL state backend.

Migrations are forward-only ``NNN_description.sql`` files in the
``migrations/`` package. Each one runs in its own transaction together with
the row that records it, so a failed migration leaves no trace. The SHA-256
of every applied file is stored and compared on later runs to catch edits
to migrations that were already applied.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, NamedTuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

MIGRATIONS_TABLE = "converge_migrations"


class Migration(NamedTuple):
    """A migration file found on disk."""

    version: str
    filename: str
    path: Path

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the migrations tracking table if it doesn't exist."""
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Migration]:
    """
    List migration files in version order.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
        ValueError: If two files share a version number.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found: Dict[str, Migration] = {}
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in found:
            raise ValueError(
                f"Duplicate migration version {version}: "
                f"{found[version].filename} and {entry.name}"
            )
        found[version] = Migration(version, entry.name, entry)

    return [found[v] for v in sorted(found)]


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map applied migration versions to their recorded checksums."""
    rows = await conn.fetch(f"SELECT version, checksum FROM {MIGRATIONS_TABLE}")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Run one migration and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                f"INSERT INTO {MIGRATIONS_TABLE} (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                migration.version,
                migration.filename,
                migration.checksum,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply every pending migration in order.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails; it is rolled back and
            earlier migrations stay applied.
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    migrations = discover_migrations()
    pending = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            logger.warning(
                f"Migration {migration.filename} changed after it was applied"
            )

    if not pending:
        logger.info("State schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    return len(pending)
