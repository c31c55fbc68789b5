"""
Pokédex - FastAPI application over the tiered Pokémon cache
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from pokedex.cache import NotFound
from pokedex.schemas import ErrorResponse, Pokemon
from pokedex.service import PokedexService, build_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pokedex.main")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "Pokédex"


def get_service(request: Request) -> PokedexService:
    return request.app.state.service


def create_app(
    service: Optional[PokedexService] = None,
    hydrate_on_startup: Optional[bool] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        service: Pre-built service; built from settings when omitted
        hydrate_on_startup: Override settings.hydrate_on_startup
    """
    hydrate = settings.hydrate_on_startup if hydrate_on_startup is None else hydrate_on_startup

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or build_service()
        app.state.service = svc
        svc.init(hydrate=hydrate)
        yield
        svc.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="Pokémon lookups served from a tiered cache in front of PokeAPI",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "source": "pokeapi"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {"name": APP_NAME, "version": APP_VERSION}

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache, sweeper and hydration statistics."""
        return get_service(request).get_stats()

    @app.get(
        "/api/pokemon",
        response_model=Pokemon,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    def get_pokemon(
        request: Request,
        id: Optional[str] = Query(None),
        name: Optional[str] = Query(None),
    ):
        """Get one Pokémon by id or name (id wins if both are given)."""
        id = id.strip() if id else None
        name = name.strip() if name else None
        if not id and not name:
            raise HTTPException(status_code=400, detail="missing id or name")

        if id:
            # Ids are positive integers; anything else names no Pokémon
            if not id.isdigit() or int(id) < 1:
                raise HTTPException(status_code=404, detail="not found")
            key = int(id)
        else:
            key = name

        try:
            record = get_service(request).get(key)
        except NotFound:
            raise HTTPException(status_code=404, detail="not found")
        except Exception as e:
            logger.error(f"Lookup failed for {key!r}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="internal error")

        return Pokemon(**record.to_public_dict())

    @app.get("/api/pokedex.json")
    def pokedex_json(request: Request):
        """All cached Pokémon as a JSON array of public fields."""
        return JSONResponse(get_service(request).serialize_all())

    return app


app = create_app()
