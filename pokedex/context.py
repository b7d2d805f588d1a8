from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from pokedex.cache import MemoryCache
from pokedex.config import Settings
from pokedex.db import StorageProvider, select_provider
from pokedex.repository import PokemonRepository

logger = logging.getLogger(__name__)


@dataclass
class CatalogContext:
    """
    Process-wide shared state, built once at startup and handed to request
    handlers: the storage provider (and its connection pool), the cache,
    the repository over both, and the outbound PokeAPI client.
    """

    settings: Settings
    provider: StorageProvider
    cache: MemoryCache
    repository: PokemonRepository
    http_client: httpx.AsyncClient

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.provider.dispose()
        logger.info("catalog context closed provider=%s", self.provider.name)


def build_context(
    settings: Settings,
    *,
    provider: StorageProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> CatalogContext:
    provider = provider or select_provider(settings)
    cache = MemoryCache(max_entries=settings.cache_max_entries)
    return CatalogContext(
        settings=settings,
        provider=provider,
        cache=cache,
        repository=PokemonRepository(provider, cache),
        http_client=http_client or httpx.AsyncClient(timeout=10.0),
    )
