"""Schema migrations for the calsync tables.

The ``core`` Alembic chain lives in ``alembic/versions/core`` next to ``src/``
and is upgraded in-process; nothing shells out to the ``alembic`` command.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"
CORE_CHAIN = "core"

TARGET_SCHEMA_OPTION = "calsync.target_schema"
VERSION_TABLE_SCHEMA_OPTION = "version_table_schema"

_SCHEMA_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def normalize_schema(schema: str | None) -> str | None:
    """Strip *schema*; blank means the default schema. Anything but a bare identifier fails."""
    name = (schema or "").strip()
    if not name:
        return None
    if not _SCHEMA_NAME.fullmatch(name):
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    return name


def chain_location(chain: str) -> Path:
    return ALEMBIC_DIR / "versions" / chain


def build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    """Alembic config for upgrading the core chain of *db_url*.

    With *target_schema* the tables and the ``alembic_version`` row are kept
    in that schema instead of ``public``.
    """
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("version_locations", str(chain_location(CORE_CHAIN)))
    # Values pass through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    schema = normalize_schema(target_schema)
    if schema is not None:
        for option in (TARGET_SCHEMA_OPTION, VERSION_TABLE_SCHEMA_OPTION):
            config.set_main_option(option, schema)
    return config


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    """Bring *db_url* to ``core@head``; already-applied revisions are skipped."""
    config = build_alembic_config(db_url, target_schema=schema)
    logger.info(
        "Upgrading %s chain (schema=%s)",
        CORE_CHAIN,
        config.get_main_option(TARGET_SCHEMA_OPTION) or "public",
    )
    # Alembic and psycopg2 block; keep the event loop free.
    await asyncio.to_thread(command.upgrade, config, f"{CORE_CHAIN}@head")
