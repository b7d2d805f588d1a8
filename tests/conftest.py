"""
Shared fixtures.

Every test gets its own SQLite file under tmp_path with the schema
migrated, so tests never share state.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from pokedex.cache import MemoryCache
from pokedex.db import SqliteProvider
from pokedex.repository import PokemonRepository


def sqlite_url(tmp_path, name: str = "pokedex.sqlite") -> str:
    return f"sqlite+aiosqlite:///{tmp_path / name}"


async def count_rows(provider, model, *criteria) -> int:
    async with provider.session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()


@pytest.fixture
async def provider(tmp_path):
    provider = SqliteProvider(sqlite_url(tmp_path))
    await provider.migrate()
    yield provider
    await provider.dispose()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache(max_entries=64)


@pytest.fixture
def repository(provider, cache) -> PokemonRepository:
    return PokemonRepository(provider, cache)


@pytest.fixture
async def references(repository) -> dict[str, int]:
    """Seed the reference tables and return name -> id."""
    ids: dict[str, int] = {}
    for name in ("speed", "attack"):
        ids[name] = (await repository.create_stat_info(name)).id
    for name in ("electric", "fire"):
        ids[name] = (await repository.create_type_info(name)).id
    return ids


@pytest.fixture
def pikachu_payload(references) -> dict:
    return {
        "name": "Pikachu",
        "height": 4,
        "weight": 60,
        "base_experience": 112,
        "image_url": "pikachu.png",
        "stats": [{"base_stat": 90, "effort": 2, "stat_id": references["speed"]}],
        "types": [{"slot": 1, "type_id": references["electric"]}],
    }
