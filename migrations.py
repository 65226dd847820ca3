"""
Schema migrations for the trial lifecycle tables.

migrations/NNN_name.sql files are applied in numeric order, each in its own
transaction, and recorded in schema_migrations with a checksum. Several
instances may start at once (scheduler + API replicas): the whole pass runs
under a Postgres advisory lock so only one of them migrates.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Arbitrary constant shared by every instance of this service
MIGRATION_LOCK_ID = 72_410_001

_FILE_NAME = re.compile(r"^(\d+)_([a-z0-9_]+)\.sql$")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


class MigrationChecksumError(RuntimeError):
    """An applied migration file was edited afterwards"""

    def __init__(self, version: int, name: str):
        super().__init__(f"Migration {version:03d}_{name} changed after it was applied")
        self.version = version


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    """
    Read migration files, ordered by version.

    Files not named NNN_name.sql are ignored with a warning; a duplicated
    version number is a packaging mistake and raises ValueError.
    """
    if not directory.is_dir():
        logger.warning("MIGRATIONS_DIR_MISSING path=%s", directory)
        return []

    found: Dict[int, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        match = _FILE_NAME.match(path.name)
        if not match:
            logger.warning("MIGRATION_FILE_IGNORED name=%s", path.name)
            continue
        version = int(match.group(1))
        if version in found:
            raise ValueError(f"Duplicate migration version {version}: {path.name}")
        found[version] = Migration(version, match.group(2), path.read_text(encoding="utf-8"))

    return [found[v] for v in sorted(found)]


async def _applied_checksums(conn: asyncpg.Connection) -> Dict[int, str]:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
        )
    """)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_pending(conn: asyncpg.Connection, available: List[Migration]) -> List[int]:
    """
    Apply every migration not yet recorded.

    Returns:
        Versions applied by this call

    Raises:
        MigrationChecksumError: an applied file no longer matches its record
        asyncpg.PostgresError: a migration failed (its transaction is rolled back)
    """
    applied = await _applied_checksums(conn)
    done: List[int] = []

    for migration in available:
        recorded = applied.get(migration.version)
        if recorded is not None:
            if recorded != migration.checksum:
                raise MigrationChecksumError(migration.version, migration.name)
            continue

        logger.info("MIGRATION_APPLYING version=%03d name=%s", migration.version, migration.name)
        async with conn.transaction():
            await conn.execute(migration.sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, name, checksum) VALUES ($1, $2, $3)",
                migration.version, migration.name, migration.checksum,
            )
        done.append(migration.version)

    return done


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """
    Migrate under the advisory lock.

    Returns:
        True if the schema is current, False if any migration failed. Never raises.
    """
    try:
        available = load_migrations()
        async with pool.acquire() as conn:
            await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
            try:
                done = await apply_pending(conn, available)
            finally:
                await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)
    except Exception as e:
        logger.error(f"CRITICAL: schema migration failed: {type(e).__name__}: {e}")
        return False

    logger.info(f"Schema up to date ({len(available)} migrations, {len(done)} applied now)")
    return True
