from __future__ import annotations

import asyncio

import pytest

from conftest import count_rows
from pokedex.cache import ALL_POKEMON
from pokedex.errors import ConstraintViolation, NotFoundError, ValidationError
from pokedex.models import PokemonStat, PokemonType, TypeInfo
from pokedex.repository import PokemonRepository


class RefusingProvider:
    """Stands in for storage when a test must prove it is never reached."""

    name = "refusing"

    async def run(self, operation):
        raise AssertionError("storage must not be touched")


class PausingProvider:
    """
    Wraps a provider so the next armed run holds its result until resumed.

    The storage read has finished by the time read_done is set, which lets
    a test commit a write before the reader continues.
    """

    def __init__(self, inner) -> None:
        self.inner = inner
        self.name = inner.name
        self.armed = False
        self.read_done = asyncio.Event()
        self.resume = asyncio.Event()

    def arm(self) -> None:
        self.armed = True
        self.read_done = asyncio.Event()
        self.resume = asyncio.Event()

    async def run(self, operation):
        result = await self.inner.run(operation)
        if self.armed:
            self.armed = False
            self.read_done.set()
            await self.resume.wait()
        return result


async def test_pikachu_lifecycle(repository, provider, references, pikachu_payload) -> None:
    created = await repository.create(pikachu_payload)
    assert created.id > 0

    fetched = await repository.get_by_id(created.id)
    assert fetched == created
    assert (fetched.name, fetched.height, fetched.weight) == ("Pikachu", 4, 60)
    assert (fetched.base_experience, fetched.image_url) == (112, "pikachu.png")
    assert [(s.base_stat, s.effort, s.stat.name) for s in fetched.stats] == [(90, 2, "speed")]
    assert [(t.slot, t.type.name) for t in fetched.types] == [(1, "electric")]

    updated = await repository.update(created.id, {"weight": 65})
    assert updated.weight == 65
    refetched = await repository.get_by_id(created.id)
    assert refetched.weight == 65
    assert refetched.stats == fetched.stats
    assert refetched.types == fetched.types

    stat_row_id = fetched.stats[0].id
    await repository.delete(created.id)

    with pytest.raises(NotFoundError):
        await repository.get_by_id(created.id)
    assert await count_rows(provider, PokemonType) == 0

    detached = await repository.list_detached_stats()
    assert [(s.id, s.pokemon_id, s.base_stat) for s in detached] == [(stat_row_id, None, 90)]


async def test_unknown_ids_are_not_found(repository) -> None:
    with pytest.raises(NotFoundError):
        await repository.get_by_id(4242)
    with pytest.raises(NotFoundError):
        await repository.delete(4242)
    with pytest.raises(NotFoundError):
        await repository.update(4242, {"weight": 1})


async def test_ids_beyond_column_range_are_not_found_without_storage(cache) -> None:
    repository = PokemonRepository(RefusingProvider(), cache)

    for identifier in (2**63, 2**31, 0, -1):
        with pytest.raises(NotFoundError):
            await repository.get_by_id(identifier)
        with pytest.raises(NotFoundError):
            await repository.delete(identifier)
        with pytest.raises(NotFoundError):
            await repository.update(identifier, {"weight": 1})
        with pytest.raises(NotFoundError):
            await repository.delete_stat_info(identifier)
        with pytest.raises(NotFoundError):
            await repository.delete_type_info(identifier)


async def test_values_beyond_column_range_are_rejected(repository, pikachu_payload) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await repository.create({**pikachu_payload, "height": 2**70})
    assert "height" in excinfo.value.field_errors

    stats = [{**pikachu_payload["stats"][0], "base_stat": 2**31}]
    with pytest.raises(ValidationError) as excinfo:
        await repository.create({**pikachu_payload, "stats": stats})
    assert "stats.0.base_stat" in excinfo.value.field_errors

    assert await repository.get_all() == []


async def test_get_all_returns_every_pokemon_in_insertion_order(
    repository, references, pikachu_payload
) -> None:
    assert await repository.get_all() == []

    first = await repository.create(pikachu_payload)
    second = await repository.create({**pikachu_payload, "name": "Raichu", "stats": [], "types": []})

    everything = await repository.get_all()
    assert [p.id for p in everything] == [first.id, second.id]
    assert everything[0].stats[0].stat.name == "speed"

    # each call hands out its own list
    everything.clear()
    assert len(await repository.get_all()) == 2


async def test_create_rejects_invalid_payload_before_storage(cache) -> None:
    repository = PokemonRepository(RefusingProvider(), cache)

    with pytest.raises(ValidationError) as excinfo:
        await repository.create({"name": "  ", "height": 0, "weight": 10, "base_experience": 1})

    assert {"name", "height", "image_url"} <= set(excinfo.value.field_errors)


async def test_update_rejects_explicit_null_before_storage(cache) -> None:
    repository = PokemonRepository(RefusingProvider(), cache)

    with pytest.raises(ValidationError):
        await repository.update(1, {"name": None})
    with pytest.raises(ValidationError):
        await repository.update(1, {"weight": -3})


async def test_unknown_reference_is_constraint_violation(repository, pikachu_payload) -> None:
    payload = {**pikachu_payload, "stats": [{"base_stat": 1, "effort": 0, "stat_id": 999}]}

    with pytest.raises(ConstraintViolation):
        await repository.create(payload)

    # nothing from the failed aggregate was kept
    assert await repository.get_all() == []


async def test_duplicate_slots_are_allowed(repository, references, pikachu_payload) -> None:
    payload = {
        **pikachu_payload,
        "types": [
            {"slot": 1, "type_id": references["electric"]},
            {"slot": 1, "type_id": references["fire"]},
        ],
    }

    created = await repository.create(payload)

    assert [t.slot for t in created.types] == [1, 1]


async def test_update_reconciles_child_collections(
    repository, provider, references, pikachu_payload
) -> None:
    payload = {
        **pikachu_payload,
        "stats": [
            {"base_stat": 90, "effort": 2, "stat_id": references["speed"]},
            {"base_stat": 55, "effort": 0, "stat_id": references["attack"]},
        ],
        "types": [
            {"slot": 1, "type_id": references["electric"]},
            {"slot": 2, "type_id": references["fire"]},
        ],
    }
    created = await repository.create(payload)
    speed, attack = created.stats
    electric, fire = created.types

    updated = await repository.update(
        created.id,
        {
            "stats": [
                {"id": speed.id, "base_stat": 110, "effort": 3, "stat_id": references["speed"]},
                {"base_stat": 40, "effort": 1, "stat_id": references["attack"]},
            ],
            "types": [{"id": fire.id, "slot": 1, "type_id": references["fire"]}],
        },
    )

    assert [(s.base_stat, s.stat.name) for s in updated.stats] == [(110, "speed"), (40, "attack")]
    assert updated.stats[0].id == speed.id
    assert [(t.id, t.slot, t.type.name) for t in updated.types] == [(fire.id, 1, "fire")]

    # dropped stat is detached and kept, dropped type is gone
    detached = await repository.list_detached_stats()
    assert [s.id for s in detached] == [attack.id]
    assert await count_rows(provider, PokemonType, PokemonType.id == electric.id) == 0


async def test_update_with_foreign_child_id_changes_nothing(
    repository, references, pikachu_payload
) -> None:
    first = await repository.create(pikachu_payload)
    second = await repository.create({**pikachu_payload, "name": "Raichu"})

    with pytest.raises(ValidationError):
        await repository.update(
            second.id,
            {
                "name": "Renamed",
                "stats": [
                    {
                        "id": first.stats[0].id,
                        "base_stat": 1,
                        "effort": 0,
                        "stat_id": references["speed"],
                    }
                ],
            },
        )

    assert (await repository.get_by_id(second.id)).name == "Raichu"
    assert (await repository.get_by_id(first.id)).stats == first.stats


async def test_cached_read_reflects_later_writes(repository, cache, pikachu_payload) -> None:
    created = await repository.create(pikachu_payload)

    await repository.get_by_id(created.id)
    await repository.get_all()
    assert created.id in cache

    await repository.update(created.id, {"name": "Pika"})
    assert created.id not in cache
    assert (await repository.get_by_id(created.id)).name == "Pika"
    assert [p.name for p in await repository.get_all()] == ["Pika"]

    await repository.delete(created.id)
    with pytest.raises(NotFoundError):
        await repository.get_by_id(created.id)
    assert await repository.get_all() == []


async def test_read_overlapping_update_is_not_cached(provider, cache, pikachu_payload) -> None:
    paused = PausingProvider(provider)
    repository = PokemonRepository(paused, cache)
    created = await repository.create(pikachu_payload)

    paused.arm()
    read = asyncio.create_task(repository.get_by_id(created.id))
    await paused.read_done.wait()
    await repository.update(created.id, {"weight": 99})
    paused.resume.set()

    assert (await read).weight == 60
    assert created.id not in cache
    assert (await repository.get_by_id(created.id)).weight == 99

    paused.arm()
    read_all = asyncio.create_task(repository.get_all())
    await paused.read_done.wait()
    await repository.update(created.id, {"weight": 120})
    paused.resume.set()

    assert [p.weight for p in await read_all] == [99]
    assert ALL_POKEMON not in cache
    assert [p.weight for p in await repository.get_all()] == [120]


async def test_deleting_stat_info_cascades_to_stats(
    repository, provider, references, pikachu_payload
) -> None:
    first = await repository.create(pikachu_payload)
    second = await repository.create({**pikachu_payload, "name": "Raichu"})
    await repository.get_by_id(first.id)

    await repository.delete_stat_info(references["speed"])

    assert await count_rows(provider, PokemonStat) == 0
    assert (await repository.get_by_id(first.id)).stats == ()
    assert (await repository.get_by_id(second.id)).stats == ()
    assert [s.name for s in await repository.list_stat_infos()] == ["attack"]

    with pytest.raises(NotFoundError):
        await repository.delete_stat_info(references["speed"])


async def test_deleting_type_info_cascades_to_types(
    repository, provider, references, pikachu_payload
) -> None:
    created = await repository.create(pikachu_payload)
    await repository.get_all()

    await repository.delete_type_info(references["electric"])

    assert await count_rows(provider, PokemonType) == 0
    assert (await repository.get_all())[0].types == ()
    assert (await repository.get_by_id(created.id)).stats[0].stat.name == "speed"


async def test_get_or_create_reference_reuses_rows(repository) -> None:
    first = await repository.get_or_create_type_info("Water")
    again = await repository.get_or_create_type_info(" water ")

    assert first == again
    assert first.name == "water"
    assert len(await repository.list_type_infos()) == 1

    with pytest.raises(ValidationError):
        await repository.create_stat_info("   ")


async def test_concurrent_get_or_create_inserts_one_row(repository, provider) -> None:
    results = await asyncio.gather(
        *(repository.get_or_create_type_info("water") for _ in range(5))
    )

    assert len({r.id for r in results}) == 1
    assert await count_rows(provider, TypeInfo, TypeInfo.name == "water") == 1
