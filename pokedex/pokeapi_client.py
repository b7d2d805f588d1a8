import logging

import httpx

from pokedex.errors import NotFoundError, UpstreamDataError
from pokedex.repository import PokemonRepository
from pokedex.schemas import MAX_DB_INT, PokemonRead

logger = logging.getLogger(__name__)

POKEAPI_BASE_URL = "https://pokeapi.co/api/v2"
SPRITE_URL_TEMPLATE = (
    "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/pokemon/{id}.png"
)


async def fetch_pokemon_details(
    client: httpx.AsyncClient,
    name_or_id: str,
    base_url: str = POKEAPI_BASE_URL,
) -> dict:
    """
    Fetch detailed Pokemon info from PokeAPI.

    Calls:
        GET {base_url}/pokemon/{name_or_id}

    Raises NotFoundError if PokeAPI does not know the Pokemon, and
    httpx.HTTPError for any other failure.
    """
    key = name_or_id.strip().lower()
    resp = await client.get(f"{base_url}/pokemon/{key}", timeout=10.0)
    if resp.status_code == 404:
        raise NotFoundError("PokeAPI pokemon", key)
    resp.raise_for_status()
    return resp.json()


def check_pokemon_details(details: dict) -> None:
    """
    Reject a PokeAPI document the catalog cannot store.

    name, height and weight are required (positive, within the column
    range). A missing front sprite falls back to the sprite repository URL
    when the document carries an id.
    """
    invalid = []
    if not isinstance(details.get("name"), str) or not details["name"].strip():
        invalid.append("name")
    for field in ("height", "weight"):
        value = details.get(field)
        if not isinstance(value, int) or isinstance(value, bool) or not 0 < value <= MAX_DB_INT:
            invalid.append(field)
    if not _front_sprite(details) and not isinstance(details.get("id"), int):
        invalid.append("sprites.front_default")
    if invalid:
        raise UpstreamDataError("PokeAPI", invalid)


def _front_sprite(details: dict) -> str | None:
    sprites = details.get("sprites") or {}
    return sprites.get("front_default")


def build_pokemon_payload(
    details: dict,
    stat_ids: dict[str, int],
    type_ids: dict[str, int],
) -> dict:
    """
    Map a PokeAPI /pokemon document to a create payload.

    stat_ids / type_ids map reference names (e.g. "speed", "electric") to
    the ids of the matching StatInfo / TypeInfo rows.
    """
    check_pokemon_details(details)
    image_url = _front_sprite(details) or SPRITE_URL_TEMPLATE.format(id=details["id"])
    return {
        "name": details["name"],
        "height": details["height"],
        "weight": details["weight"],
        "base_experience": details.get("base_experience") or 0,
        "image_url": image_url,
        "stats": [
            {
                "base_stat": entry["base_stat"],
                "effort": entry.get("effort", 0),
                "stat_id": stat_ids[entry["stat"]["name"]],
            }
            for entry in details.get("stats", [])
        ],
        "types": [
            {
                "slot": entry["slot"],
                "type_id": type_ids[entry["type"]["name"]],
            }
            for entry in details.get("types", [])
        ],
    }


async def import_pokemon(
    repository: PokemonRepository,
    client: httpx.AsyncClient,
    name_or_id: str,
    base_url: str = POKEAPI_BASE_URL,
) -> PokemonRead:
    """
    Copy one Pokemon from PokeAPI into the catalog.

    Missing StatInfo / TypeInfo rows are created on the way, but only once
    the document is known to be storable.
    """
    details = await fetch_pokemon_details(client, name_or_id, base_url)
    check_pokemon_details(details)

    stat_ids: dict[str, int] = {}
    for entry in details.get("stats", []):
        stat_name = entry["stat"]["name"]
        if stat_name not in stat_ids:
            stat_ids[stat_name] = (await repository.get_or_create_stat_info(stat_name)).id

    type_ids: dict[str, int] = {}
    for entry in details.get("types", []):
        type_name = entry["type"]["name"]
        if type_name not in type_ids:
            type_ids[type_name] = (await repository.get_or_create_type_info(type_name)).id

    created = await repository.create(build_pokemon_payload(details, stat_ids, type_ids))
    logger.info("pokeapi import name=%s id=%s", details.get("name"), created.id)
    return created
