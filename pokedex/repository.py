"""
Pokemon aggregate repository.

The only component that issues storage operations. Each public method runs
as one provider operation, i.e. one transaction (retried as a whole by the
networked provider). Reads go through the memory cache; every successful
write invalidates the affected entries before returning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pokedex.cache import ALL_POKEMON, MemoryCache
from pokedex.db import StorageProvider
from pokedex.errors import NotFoundError, ValidationError
from pokedex.models import Pokemon, PokemonStat, PokemonType, StatInfo, TypeInfo
from pokedex.schemas import (
    MAX_DB_INT,
    PokemonCreate,
    PokemonRead,
    PokemonStatIn,
    PokemonStatRead,
    PokemonTypeIn,
    PokemonUpdate,
    StatInfoRead,
    TypeInfoRead,
    parse_payload,
)

logger = logging.getLogger(__name__)


def _with_children(stmt):
    return stmt.options(
        selectinload(Pokemon.stats).selectinload(PokemonStat.stat),
        selectinload(Pokemon.types).selectinload(PokemonType.type),
    )


async def _load_pokemon(session: AsyncSession, pokemon_id: int) -> Pokemon | None:
    stmt = _with_children(select(Pokemon).where(Pokemon.id == pokemon_id))
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def _check_id(entity: str, identifier: int) -> None:
    # Ids outside the column range cannot exist; answer without asking storage
    if not 1 <= identifier <= MAX_DB_INT:
        raise NotFoundError(entity, identifier)


class PokemonRepository:
    def __init__(self, provider: StorageProvider, cache: MemoryCache) -> None:
        self.provider = provider
        self.cache = cache
        self._reference_locks: dict[tuple[str, str], asyncio.Lock] = {}

    # ---- Aggregate reads ----

    async def get_by_id(self, pokemon_id: int) -> PokemonRead:
        _check_id("Pokemon", pokemon_id)
        cached = self.cache.get(pokemon_id)
        if cached is not None:
            return cached

        generation = self.cache.generation

        async def operation(session: AsyncSession) -> PokemonRead | None:
            pokemon = await _load_pokemon(session, pokemon_id)
            if pokemon is None:
                return None
            return PokemonRead.model_validate(pokemon)

        result = await self.provider.run(operation)
        if result is None:
            raise NotFoundError("Pokemon", pokemon_id)

        self.cache.set(pokemon_id, result, generation=generation)
        return result

    async def get_all(self) -> list[PokemonRead]:
        """Every Pokemon with children attached, ordered by id."""
        cached = self.cache.get(ALL_POKEMON)
        if cached is not None:
            return list(cached)

        generation = self.cache.generation

        async def operation(session: AsyncSession) -> tuple[PokemonRead, ...]:
            result = await session.execute(_with_children(select(Pokemon).order_by(Pokemon.id)))
            return tuple(PokemonRead.model_validate(p) for p in result.scalars().all())

        pokemons = await self.provider.run(operation)
        self.cache.set(ALL_POKEMON, pokemons, generation=generation)
        return list(pokemons)

    # ---- Aggregate writes ----

    async def create(self, payload: PokemonCreate | Mapping[str, Any]) -> PokemonRead:
        data = parse_payload(PokemonCreate, payload)

        async def operation(session: AsyncSession) -> PokemonRead:
            pokemon = Pokemon(
                name=data.name,
                height=data.height,
                weight=data.weight,
                base_experience=data.base_experience,
                image_url=data.image_url,
                stats=[_new_stat(entry) for entry in data.stats],
                types=[_new_type(entry) for entry in data.types],
            )
            session.add(pokemon)
            await session.flush()
            created = await _load_pokemon(session, pokemon.id)
            return PokemonRead.model_validate(created)

        created = await self.provider.run(operation)
        self._invalidate(created.id)
        logger.info("pokemon created id=%s name=%s", created.id, created.name)
        return created

    async def update(
        self,
        pokemon_id: int,
        patch: PokemonUpdate | Mapping[str, Any],
    ) -> PokemonRead:
        data = parse_payload(PokemonUpdate, patch)
        _check_id("Pokemon", pokemon_id)

        async def operation(session: AsyncSession) -> PokemonRead:
            pokemon = await _load_pokemon(session, pokemon_id)
            if pokemon is None:
                raise NotFoundError("Pokemon", pokemon_id)

            for field, value in data.scalar_changes().items():
                setattr(pokemon, field, value)
            if data.stats is not None:
                _reconcile_stats(pokemon, data.stats)
            if data.types is not None:
                _reconcile_types(pokemon, data.types)

            await session.flush()
            updated = await _load_pokemon(session, pokemon_id)
            return PokemonRead.model_validate(updated)

        updated = await self.provider.run(operation)
        self._invalidate(pokemon_id)
        logger.info("pokemon updated id=%s", pokemon_id)
        return updated

    async def delete(self, pokemon_id: int) -> None:
        """
        Remove a Pokemon.

        Types go with it (database cascade). Stats are detached in the same
        transaction: their pokemon_id is cleared and the rows are kept.
        """
        _check_id("Pokemon", pokemon_id)

        async def operation(session: AsyncSession) -> int:
            detached = await session.execute(
                update(PokemonStat)
                .where(PokemonStat.pokemon_id == pokemon_id)
                .values(pokemon_id=None)
            )
            result = await session.execute(delete(Pokemon).where(Pokemon.id == pokemon_id))
            if result.rowcount == 0:
                raise NotFoundError("Pokemon", pokemon_id)
            return detached.rowcount

        detached_count = await self.provider.run(operation)
        self._invalidate(pokemon_id)
        logger.info("pokemon deleted id=%s detached_stats=%s", pokemon_id, detached_count)

    async def list_detached_stats(self) -> list[PokemonStatRead]:
        """Stat rows whose Pokemon was deleted or which were removed from one."""

        async def operation(session: AsyncSession) -> list[PokemonStatRead]:
            result = await session.execute(
                select(PokemonStat)
                .where(PokemonStat.pokemon_id.is_(None))
                .options(selectinload(PokemonStat.stat))
                .order_by(PokemonStat.id)
            )
            return [PokemonStatRead.model_validate(s) for s in result.scalars().all()]

        return await self.provider.run(operation)

    # ---- Reference entities ----

    async def list_stat_infos(self) -> list[StatInfoRead]:
        return await self._list_reference(StatInfo, StatInfoRead)

    async def create_stat_info(self, name: str) -> StatInfoRead:
        return await self._create_reference(StatInfo, StatInfoRead, name)

    async def get_or_create_stat_info(self, name: str) -> StatInfoRead:
        return await self._get_or_create_reference(StatInfo, StatInfoRead, name)

    async def delete_stat_info(self, stat_info_id: int) -> None:
        """Delete a stat kind; every PokemonStat using it is removed by cascade."""
        await self._delete_reference(StatInfo, stat_info_id)

    async def list_type_infos(self) -> list[TypeInfoRead]:
        return await self._list_reference(TypeInfo, TypeInfoRead)

    async def create_type_info(self, name: str) -> TypeInfoRead:
        return await self._create_reference(TypeInfo, TypeInfoRead, name)

    async def get_or_create_type_info(self, name: str) -> TypeInfoRead:
        return await self._get_or_create_reference(TypeInfo, TypeInfoRead, name)

    async def delete_type_info(self, type_info_id: int) -> None:
        """Delete a type tag; every PokemonType using it is removed by cascade."""
        await self._delete_reference(TypeInfo, type_info_id)

    async def _list_reference(self, model, read_cls) -> list:
        async def operation(session: AsyncSession) -> list:
            result = await session.execute(select(model).order_by(model.id))
            return [read_cls.model_validate(row) for row in result.scalars().all()]

        return await self.provider.run(operation)

    async def _create_reference(self, model, read_cls, name: str):
        name = _reference_name(name)

        async def operation(session: AsyncSession):
            row = model(name=name)
            session.add(row)
            await session.flush()
            return read_cls.model_validate(row)

        created = await self.provider.run(operation)
        logger.info("%s created id=%s name=%s", model.__tablename__, created.id, created.name)
        return created

    async def _get_or_create_reference(self, model, read_cls, name: str):
        """
        Return the row named `name`, inserting it when missing.

        Concurrent calls for the same name are serialised within this
        repository. Separate processes sharing a database can still both
        insert, since names carry no unique constraint.
        """
        name = _reference_name(name)
        lock = self._reference_locks.setdefault((model.__tablename__, name), asyncio.Lock())

        async def operation(session: AsyncSession):
            result = await session.execute(
                select(model).where(model.name == name).order_by(model.id).limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = model(name=name)
                session.add(row)
                await session.flush()
            return read_cls.model_validate(row)

        async with lock:
            return await self.provider.run(operation)

    async def _delete_reference(self, model, identifier: int) -> None:
        _check_id(model.__name__, identifier)

        async def operation(session: AsyncSession) -> None:
            result = await session.execute(delete(model).where(model.id == identifier))
            if result.rowcount == 0:
                raise NotFoundError(model.__name__, identifier)

        await self.provider.run(operation)
        # Cascaded child rows may be embedded in any cached Pokemon
        self.cache.clear()
        logger.info("%s deleted id=%s", model.__tablename__, identifier)

    def _invalidate(self, pokemon_id: int) -> None:
        self.cache.invalidate(pokemon_id, ALL_POKEMON)


def _reference_name(name: str) -> str:
    normalized = (name or "").strip().lower()
    if not normalized:
        raise ValidationError({"name": ["must not be blank"]})
    return normalized


def _new_stat(entry: PokemonStatIn) -> PokemonStat:
    return PokemonStat(base_stat=entry.base_stat, effort=entry.effort, stat_id=entry.stat_id)


def _new_type(entry: PokemonTypeIn) -> PokemonType:
    return PokemonType(slot=entry.slot, type_id=entry.type_id)


def _reconcile_stats(pokemon: Pokemon, entries: list[PokemonStatIn]) -> None:
    # Stats left out of the new list are detached (pokemon_id -> NULL), not deleted
    existing = {stat.id: stat for stat in pokemon.stats}
    kept: list[PokemonStat] = []
    for index, entry in enumerate(entries):
        if entry.id is None:
            kept.append(_new_stat(entry))
            continue
        stat = existing.get(entry.id)
        if stat is None:
            raise ValidationError(
                {f"stats.{index}.id": [f"stat {entry.id} does not belong to pokemon {pokemon.id}"]}
            )
        stat.base_stat = entry.base_stat
        stat.effort = entry.effort
        stat.stat_id = entry.stat_id
        kept.append(stat)
    pokemon.stats = kept


def _reconcile_types(pokemon: Pokemon, entries: list[PokemonTypeIn]) -> None:
    # Types left out of the new list are deleted (delete-orphan)
    existing = {entry.id: entry for entry in pokemon.types}
    kept: list[PokemonType] = []
    for index, entry in enumerate(entries):
        if entry.id is None:
            kept.append(_new_type(entry))
            continue
        pokemon_type = existing.get(entry.id)
        if pokemon_type is None:
            raise ValidationError(
                {f"types.{index}.id": [f"type {entry.id} does not belong to pokemon {pokemon.id}"]}
            )
        pokemon_type.slot = entry.slot
        pokemon_type.type_id = entry.type_id
        kept.append(pokemon_type)
    pokemon.types = kept
