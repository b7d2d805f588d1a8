import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from pokedex.config import Settings
from pokedex.context import CatalogContext, build_context
from pokedex.errors import (
    ConstraintViolation,
    NotFoundError,
    PersistenceError,
    UpstreamDataError,
    ValidationError,
)
from pokedex.pokeapi_client import import_pokemon
from pokedex.repository import PokemonRepository
from pokedex.schemas import (
    ErrorResponse,
    PokemonRead,
    PokemonStatRead,
    ReferenceCreate,
    StatInfoRead,
    TypeInfoRead,
    parse_payload,
)

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def get_context(request: Request) -> CatalogContext:
    return request.app.state.context


def get_repository(context: CatalogContext = Depends(get_context)) -> PokemonRepository:
    return context.repository


def create_app(settings: Settings | None = None, context: CatalogContext | None = None) -> FastAPI:
    """
    Build the HTTP layer.

    The catalog context is created (or taken as given) on startup and the
    schema migration is applied. Everything is released on shutdown.
    """
    settings = settings or (context.settings if context else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application startup and shutdown.

        Selects the storage provider once and applies the schema migration
        before the app starts serving requests.
        """
        configure_logging(settings.log_level)
        app.state.context = context or build_context(settings)
        await app.state.context.provider.migrate()
        logger.info("pokedex started environment=%s", settings.environment)
        try:
            yield
        finally:
            await app.state.context.close()

    app = FastAPI(title="Pokedex Catalog Service", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def _error_response(status_code: int, message: str, fields: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=message, fields=fields)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, str(exc))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(400, "Invalid payload", exc.field_errors)

    @app.exception_handler(ConstraintViolation)
    async def constraint_handler(request: Request, exc: ConstraintViolation):
        logger.info("constraint violation path=%s", request.url.path)
        return _error_response(409, "Request conflicts with existing data")

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        # Storage error text stays in the log only
        logger.error("persistence error path=%s", request.url.path, exc_info=exc)
        return _error_response(500, "Storage operation failed")


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check(context: CatalogContext = Depends(get_context)):
        """
        Health endpoint.

        Checks:
        - App is running
        - Database is reachable (simple SELECT 1)
        """
        try:
            async with context.provider.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "connected"
        except Exception as e:
            logger.warning("health check failed error=%s", e.__class__.__name__)
            db_status = "error"

        return {
            "status": "ok",
            "db": db_status,
            "provider": context.provider.name,
        }

    @app.get("/pokemon", response_model=list[PokemonRead])
    async def list_pokemon(repository: PokemonRepository = Depends(get_repository)):
        return await repository.get_all()

    @app.get("/pokemon/detached-stats", response_model=list[PokemonStatRead])
    async def list_detached_stats(repository: PokemonRepository = Depends(get_repository)):
        return await repository.list_detached_stats()

    @app.get("/pokemon/{pokemon_id}", response_model=PokemonRead)
    async def get_pokemon(
        pokemon_id: int,
        repository: PokemonRepository = Depends(get_repository),
    ):
        return await repository.get_by_id(pokemon_id)

    @app.post("/pokemon", response_model=PokemonRead, status_code=201)
    async def create_pokemon(
        payload: Any = Body(...),
        repository: PokemonRepository = Depends(get_repository),
    ):
        return await repository.create(payload)

    @app.put("/pokemon/{pokemon_id}", response_model=PokemonRead)
    async def update_pokemon(
        pokemon_id: int,
        payload: Any = Body(...),
        repository: PokemonRepository = Depends(get_repository),
    ):
        return await repository.update(pokemon_id, payload)

    @app.delete("/pokemon/{pokemon_id}", status_code=204)
    async def delete_pokemon(
        pokemon_id: int,
        repository: PokemonRepository = Depends(get_repository),
    ):
        await repository.delete(pokemon_id)
        return Response(status_code=204)

    @app.post("/pokemon/import/{name}", response_model=PokemonRead, status_code=201)
    async def import_from_pokeapi(
        name: str,
        context: CatalogContext = Depends(get_context),
    ):
        """Fetch one Pokemon from PokeAPI and store it with its stats and types."""
        try:
            return await import_pokemon(
                context.repository,
                context.http_client,
                name,
                context.settings.pokeapi_base_url,
            )
        except httpx.HTTPError as e:
            # PokeAPI failed or network issue
            raise HTTPException(
                status_code=502,
                detail=f"Failed to fetch from PokeAPI: {e.__class__.__name__}",
            )
        except UpstreamDataError as e:
            logger.warning("pokeapi import rejected name=%s fields=%s", name, ",".join(e.fields))
            return _error_response(502, str(e))

    @app.get("/stats", response_model=list[StatInfoRead])
    async def list_stats(repository: PokemonRepository = Depends(get_repository)):
        return await repository.list_stat_infos()

    @app.post("/stats", response_model=StatInfoRead, status_code=201)
    async def create_stat(
        payload: Any = Body(...),
        repository: PokemonRepository = Depends(get_repository),
    ):
        data = parse_payload(ReferenceCreate, payload)
        return await repository.create_stat_info(data.name)

    @app.delete("/stats/{stat_info_id}", status_code=204)
    async def delete_stat(
        stat_info_id: int,
        repository: PokemonRepository = Depends(get_repository),
    ):
        await repository.delete_stat_info(stat_info_id)
        return Response(status_code=204)

    @app.get("/types", response_model=list[TypeInfoRead])
    async def list_types(repository: PokemonRepository = Depends(get_repository)):
        return await repository.list_type_infos()

    @app.post("/types", response_model=TypeInfoRead, status_code=201)
    async def create_type(
        payload: Any = Body(...),
        repository: PokemonRepository = Depends(get_repository),
    ):
        data = parse_payload(ReferenceCreate, payload)
        return await repository.create_type_info(data.name)

    @app.delete("/types/{type_info_id}", status_code=204)
    async def delete_type(
        type_info_id: int,
        repository: PokemonRepository = Depends(get_repository),
    ):
        await repository.delete_type_info(type_info_id)
        return Response(status_code=204)


def main() -> None:
    """Serve the API with uvicorn using settings from the environment."""
    import uvicorn

    uvicorn.run("pokedex.main:create_app", factory=True, host="0.0.0.0", port=8000)
