"""Migration runner — brings the station database up to the latest schema.

Migrations are modules in this package named `m_NNN_description.py`,
where NNN is the zero-padded schema version. Each defines
`async def upgrade(db: aiosqlite.Connection)`; the runner records the
version in the same transaction, so a failed upgrade leaves no trace.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

import aiosqlite

_logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"


def discover_migrations() -> list[tuple[int, str]]:
    """(version, module name) for every migration module, lowest first."""
    found: list[tuple[int, str]] = []
    for mf in MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py"):
        parts = mf.stem.split("_")
        if len(parts) < 2 or not parts[1].isdigit():
            continue
        found.append((int(parts[1]), mf.stem))
    return sorted(found)


async def _ensure_version_table(db: aiosqlite.Connection) -> None:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_version "
        "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
    )
    await db.commit()


async def get_schema_version(db_path: str) -> int:
    """Highest applied schema version; 0 for a fresh database."""
    async with aiosqlite.connect(db_path) as db:
        await _ensure_version_table(db)
        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        return row[0] if row[0] is not None else 0


async def apply_migrations(db_path: str) -> list[int]:
    """Apply all pending migrations. Returns the versions applied."""
    current = await get_schema_version(db_path)
    applied: list[int] = []

    for version, stem in discover_migrations():
        if version <= current:
            continue
        module = importlib.import_module(f"puppystation.migrations.{stem}")
        async with aiosqlite.connect(db_path) as db:
            try:
                await module.upgrade(db)
                await db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (version,),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        _logger.info("Applied migration %03d (%s)", version, stem)
        applied.append(version)

    return applied
