#!/usr/bin/env python
"""
Tile gateway serving PMTiles archives, glyphs and styles from an S3-compatible bucket

Every response passes through a shared edge cache keyed by URL. CORS headers are
applied per request so one cached copy serves every allowed origin.
"""
from contextlib import asynccontextmanager
import logging
import os

# Normalize S3 environment variables BEFORE the boto3 client is created
from services.storage import configure_s3_environment, has_s3_credentials
configure_s3_environment()

from fastapi import FastAPI, Request
import uvicorn

from cache_settings import CacheSettings, cache_setting
from errors import DEFAULT_STATUS_CODES, add_exception_handlers
from gateway import EdgeCacheMiddleware, GatewayDeps, build_deps
from settings import GatewaySettings, gateway_settings

# Import routes
from routes.fonts import router as fonts_router
from routes.listing import router as listing_router
from routes.styles import router as styles_router
from routes.tiles import router as tiles_router

logging.basicConfig(
    level=gateway_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tile-gateway")

SPACES_VARS = [
    "SPACES_ACCESS_KEY_ID", "SPACES_SECRET_ACCESS_KEY", "SPACES_ENDPOINT", "SPACES_REGION",
]
AWS_VARS = [
    "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN", "AWS_REGION", "AWS_S3_ENDPOINT",
]


def _masked(var: str) -> str:
    value = os.getenv(var, "Not set")
    # Mask secrets for security
    if value != "Not set" and ("SECRET" in var or "TOKEN" in var or "KEY" in var):
        return "***"
    return value


def log_configuration(settings: GatewaySettings, cache_settings: CacheSettings):
    """Log the effective configuration with credentials masked."""
    logger.info("[S3] bucket=%s pmtiles_path=%s", settings.bucket, settings.pmtiles_path or "{name}.pmtiles")
    has_spaces = any(os.getenv(var) for var in SPACES_VARS)
    for var in SPACES_VARS if has_spaces else AWS_VARS:
        logger.info("[S3]   %s=%s", var, _masked(var))

    if os.getenv("AWS_S3_ENDPOINT") and not has_s3_credentials():
        logger.warning("[S3] Endpoint is configured but credentials are missing")

    logger.info("[CACHE] Cache-Control=%r", cache_settings.control)
    logger.info("[TILES] allowed origins=%s legacy .pbf=%s", settings.origins, settings.allow_legacy_pbf)


def create_app(deps: GatewayDeps = None) -> FastAPI:
    """Build the gateway app. ``deps`` replaces the bucket, stores and caches when given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize and cleanup resources on app startup and shutdown."""
        if getattr(app.state, "deps", None) is None:
            log_configuration(gateway_settings, cache_setting)
            app.state.deps = build_deps(gateway_settings, cache_setting)

        yield  # Application runs here

        await app.state.deps.close()

    app = FastAPI(
        title="Tile Gateway",
        description="Edge gateway for PMTiles archives, glyph ranges and map styles",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.deps = deps

    app.add_middleware(EdgeCacheMiddleware)

    app.include_router(listing_router)
    app.include_router(fonts_router)
    app.include_router(styles_router)

    # Health check endpoint for Docker
    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint for load balancer and Docker."""
        return {
            "status": "healthy",
            "service": "tile-gateway",
            "archive_cache": request.app.state.deps.archive_cache.stats(),
        }

    # Catch-all archive route, registered last
    app.include_router(tiles_router)

    add_exception_handlers(app, DEFAULT_STATUS_CODES)
    return app


app = create_app()

if __name__ == "__main__":
    host = os.getenv("TILER_HOST", "0.0.0.0")
    port = int(os.getenv("TILER_PORT", "8001"))
    workers = int(os.getenv("WORKERS", "1"))

    uvicorn.run(
        "app:app",
        host=host,
        port=port,
        workers=workers,
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )
