"""
Versioned schema/data migrations. Fresh databases get the current schema from
`Base.metadata.create_all`; these only upgrade databases written by older releases.
"""

import importlib
import logging
import os

from sqlalchemy import text, inspect
from sqlalchemy.ext.asyncio import AsyncConnection

logger = logging.getLogger(__name__)


async def get_current_version(conn: AsyncConnection) -> int:
    """Returns the recorded schema version, creating the schema_version table (at 0) on first run."""
    has_table = await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table("schema_version"))
    if not has_table:
        await conn.execute(text("CREATE TABLE schema_version (version_num INTEGER NOT NULL PRIMARY KEY)"))
        await conn.execute(text("INSERT INTO schema_version (version_num) VALUES (0)"))
        return 0
    result = await conn.execute(text("SELECT version_num FROM schema_version"))
    version_row = result.scalar_one_or_none()
    return version_row if version_row is not None else 0


async def set_version(conn: AsyncConnection, version: int):
    await conn.execute(text("UPDATE schema_version SET version_num = :version"), {"version": version})


def _migration_files():
    versions_dir = os.path.join(os.path.dirname(__file__), 'versions')
    return sorted(
        filename for filename in os.listdir(versions_dir)
        if filename.endswith('.py') and not filename.startswith('__')
    )


async def run_migrations(engine) -> int:
    """
    Applies every pending migration script in one transaction and returns the
    resulting schema version.
    """
    async with engine.begin() as conn:
        current_version = await get_current_version(conn)

        for filename in _migration_files():
            version_num = int(filename.split('_')[0])
            if version_num <= current_version:
                continue

            logger.info(f"Applying migration: {filename}")
            migration_module = importlib.import_module(f"passkeyrp.migrations.versions.{filename[:-3]}")
            await migration_module.upgrade(conn)
            await set_version(conn, version_num)
            current_version = version_num
            logger.info(f"Successfully applied version {version_num}")

    return current_version
