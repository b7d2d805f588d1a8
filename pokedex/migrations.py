"""
Initial schema migration.

Both functions take a synchronous SQLAlchemy Connection; async callers go
through AsyncConnection.run_sync(upgrade).
"""

import logging

from sqlalchemy import Connection

from pokedex.models import Pokemon, PokemonStat, PokemonType, StatInfo, TypeInfo

logger = logging.getLogger(__name__)

REVISION = "0001_initial_create"

# Parents first, then the join tables referencing them
CREATE_ORDER = (
    Pokemon.__table__,
    StatInfo.__table__,
    TypeInfo.__table__,
    PokemonStat.__table__,
    PokemonType.__table__,
)

# Children before the parents their foreign keys point to
DROP_ORDER = (
    PokemonStat.__table__,
    PokemonType.__table__,
    StatInfo.__table__,
    Pokemon.__table__,
    TypeInfo.__table__,
)


def upgrade(connection: Connection) -> None:
    """
    Create all tables and their foreign-key indexes.

    Idempotent: tables (and the indexes created with them) that already
    exist are skipped.
    """
    for table in CREATE_ORDER:
        table.create(connection, checkfirst=True)
    logger.info("migration applied revision=%s", REVISION)


def downgrade(connection: Connection) -> None:
    """Drop every table created by upgrade(), children first."""
    for table in DROP_ORDER:
        table.drop(connection, checkfirst=True)
    logger.info("migration reverted revision=%s", REVISION)
