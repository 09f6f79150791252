"""Entry point for the FastAPI-powered Stremio addon."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Literal

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .database import Database
from .manifest import build_manifest
from .models import placeholder_meta
from .services.cache_store import CacheStore
from .services.catalog import CatalogService
from .services.generation import BackendClients, GenerationCoordinator
from .services.prefetch import PrefetchScheduler
from .services.trakt import TraktClient
from .user_config import UserConfig
from .utils import parse_skip

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

INVALID_CONFIG_MESSAGE = (
    "Invalid addon configuration. Reinstall the addon from the configuration page."
)

MANIFEST_CACHE_CONTROL = "public, max-age=0, must-revalidate"
CATALOG_CACHE_CONTROL = "public, max-age=86400, stale-while-revalidate=3600"
META_CACHE_CONTROL = "public, max-age=604800, stale-while-revalidate=86400"

ContentTypeParam = Literal["movie", "series"]


def build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        exit_stack = AsyncExitStack()
        trakt_http = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.trakt_api_url),
                timeout=httpx.Timeout(20.0, connect=10.0),
            )
        )
        clients = BackendClients(
            openrouter=await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(settings.openrouter_api_url),
                    timeout=httpx.Timeout(60.0, connect=10.0),
                )
            ),
            openai=await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(settings.openai_api_url),
                    timeout=httpx.Timeout(60.0, connect=10.0),
                )
            ),
            gemini=await exit_stack.enter_async_context(
                httpx.AsyncClient(
                    base_url=str(settings.gemini_api_url),
                    timeout=httpx.Timeout(60.0, connect=10.0),
                )
            ),
        )
        database = Database(settings.database_url)
        await database.create_all()

        store = CacheStore(database.session_factory)
        scheduler = PrefetchScheduler(settings)
        coordinator = GenerationCoordinator(store, settings, scheduler)
        catalog_service = CatalogService(
            settings,
            store,
            TraktClient(settings, trakt_http),
            coordinator,
            clients,
        )

        fastapi_app.state.catalog_service = catalog_service
        fastapi_app.state.database = database
        await catalog_service.start()

        try:
            yield
        finally:  # pragma: no cover - teardown path exercised at runtime
            await catalog_service.stop()
            await database.dispose()
            await exit_stack.aclose()

    return lifespan


def create_app(settings: Settings | None = None, *, use_lifespan: bool = True) -> FastAPI:
    resolved = settings or default_settings
    fastapi_app = FastAPI(
        title=resolved.app_name,
        description="AI-personalized catalogs for Stremio built from Trakt history",
        version="2.0.0",
        lifespan=build_lifespan(resolved) if use_lifespan else None,
    )
    fastapi_app.state.settings = resolved

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @fastapi_app.middleware("http")
    async def cache_control(request: Request, call_next):
        response = await call_next(request)
        if response.status_code >= 400:
            return response
        path = request.url.path
        if path.endswith("manifest.json"):
            response.headers["Cache-Control"] = MANIFEST_CACHE_CONTROL
        elif "/catalog/" in path:
            response.headers["Cache-Control"] = CATALOG_CACHE_CONTROL
        elif "/meta/" in path:
            response.headers["Cache-Control"] = META_CACHE_CONTROL
        return response

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if service is None:
        raise RuntimeError("Catalog service not initialised")
    return service


def _decode_config(config: str) -> UserConfig | None:
    try:
        return UserConfig.decode(config)
    except (ValueError, ValidationError) as exc:
        logger.info("Rejected addon config: %s", exc)
        return None


def register_routes(fastapi_app: FastAPI, settings: Settings | None = None) -> None:
    settings = settings or getattr(fastapi_app.state, "settings", None) or default_settings

    async def _catalog_endpoint(
        config: str,
        content_type: ContentTypeParam,
        catalog_id: str,
        extra: str | None = None,
    ) -> JSONResponse:
        user_config = _decode_config(config)
        if user_config is None:
            return JSONResponse(
                {"metas": [placeholder_meta(INVALID_CONFIG_MESSAGE, content_type).to_payload()]}
            )
        service = get_catalog_service(fastapi_app)
        metas = await service.get_page(
            user_config, content_type, catalog_id, skip=parse_skip(extra)
        )
        return JSONResponse({"metas": [meta.to_payload() for meta in metas]})

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/manifest.json")
    async def manifest() -> dict[str, Any]:
        return build_manifest(settings)

    @fastapi_app.get("/{config}/manifest.json")
    async def configured_manifest(config: str) -> dict[str, Any]:
        if _decode_config(config) is None:
            raise HTTPException(status_code=400, detail="Invalid configuration")
        return build_manifest(settings, configured=True)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}.json")
    async def catalog(
        config: str, content_type: ContentTypeParam, catalog_id: str
    ) -> JSONResponse:
        return await _catalog_endpoint(config, content_type, catalog_id)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}/{extra}.json")
    async def catalog_with_extra(
        config: str, content_type: ContentTypeParam, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(config, content_type, catalog_id, extra)

    @fastapi_app.get("/{config}/meta/{content_type}/{content_id}.json")
    async def meta(
        config: str, content_type: ContentTypeParam, content_id: str
    ) -> JSONResponse:
        user_config = _decode_config(config)
        if user_config is None:
            raise HTTPException(status_code=400, detail="Invalid configuration")
        service = get_catalog_service(fastapi_app)
        payload = await service.get_meta(user_config, content_type, content_id)
        if payload is None:
            raise HTTPException(status_code=404, detail="Not found")
        return JSONResponse({"meta": payload})


app = create_app()
