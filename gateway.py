"""
Edge cache orchestration.

Every request passes through EdgeCacheMiddleware. The shared cache is checked by
full URL before routing. On a miss the request is routed to the listing, font,
style or archive routers, and any response a router flagged with
``mark_cacheable`` is stored with the configured Cache-Control. The stored copy
never carries CORS headers; those are applied fresh on every serve so one entry
is valid for every origin.
"""
import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from cache_plugin import CachedResponse, EdgeCache, setup_cache
from cache_settings import CacheSettings
from services.archive import ArchiveReader, ResolvedValueCache
from services.listing import MetadataStore
from services.storage import ObjectStore, RangeSource
from settings import GatewaySettings

logger = logging.getLogger(__name__)

SAFE_METHODS = ["GET", "HEAD", "OPTIONS"]
LISTING_PATH = re.compile(r"^/list/?$")

# Not part of the canonical stored copy
PER_SERVE_HEADERS = {"access-control-allow-origin", "vary", "content-length", "cache-control"}


class CorsPolicy:
    """Origin allow-list. An entry of "*" allows any origin."""

    def __init__(self, allowed_origins: List[str]):
        self.allowed_origins = allowed_origins

    def allow_origin(self, origin: Optional[str]) -> str:
        allowed = ""
        for candidate in self.allowed_origins:
            if candidate == origin or candidate == "*":
                allowed = candidate
        return allowed

    @staticmethod
    def apply(headers: MutableHeaders, allowed: str):
        if allowed:
            headers["Access-Control-Allow-Origin"] = allowed
        headers["Vary"] = "Origin"


@dataclass
class GatewayDeps:
    """Process-wide service handles, built once and shared by all requests."""

    settings: GatewaySettings
    cache_settings: CacheSettings
    object_store: ObjectStore
    metadata_store: MetadataStore
    edge_cache: EdgeCache
    archive_cache: ResolvedValueCache
    # Overrides how archive readers are built, (name, signal) -> reader
    open_archive: Optional[Callable] = None
    cors: CorsPolicy = field(init=False)

    def __post_init__(self):
        self.cors = CorsPolicy(self.settings.origins)

    def archive_reader(self, name: str, signal: Optional[asyncio.Event] = None):
        if self.open_archive is not None:
            return self.open_archive(name, signal)
        source = RangeSource(self.object_store, name, self.settings.pmtiles_path)
        return ArchiveReader(source, self.archive_cache, signal)

    async def close(self):
        self.object_store.close()
        await self.edge_cache.close()


def build_deps(settings: GatewaySettings, cache_settings: CacheSettings) -> GatewayDeps:
    return GatewayDeps(
        settings=settings,
        cache_settings=cache_settings,
        object_store=ObjectStore(settings.bucket),
        metadata_store=MetadataStore(settings.metadata_db),
        edge_cache=setup_cache(cache_settings),
        archive_cache=ResolvedValueCache(settings.archive_cache_size),
    )


def get_deps(request: Request) -> GatewayDeps:
    return request.app.state.deps


def mark_cacheable(request: Request, response: Response) -> Response:
    """Flag a fully materialized, well-defined response for the edge cache."""
    request.state.edge_cacheable = True
    return response


@asynccontextmanager
async def disconnect_signal(request: Request, interval: float = 0.1):
    """Yield an event that is set once the client disconnects."""
    signal = asyncio.Event()

    async def watch():
        while not signal.is_set():
            if await request.is_disconnected():
                logger.debug("client went away during %s", request.url.path)
                signal.set()
                return
            await asyncio.sleep(interval)

    watcher = asyncio.ensure_future(watch())
    try:
        yield signal
    finally:
        watcher.cancel()


class EdgeCacheMiddleware(BaseHTTPMiddleware):
    """Cache lookup, method gate, cache write and CORS for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        deps = get_deps(request)
        is_listing = LISTING_PATH.match(request.url.path) is not None
        if is_listing:
            allowed = "*"
        else:
            allowed = deps.cors.allow_origin(request.headers.get("Origin"))

        method = request.method.upper()
        url = str(request.url)

        if method in SAFE_METHODS:
            cached = await deps.edge_cache.match(url)
            if cached is not None:
                response = Response(cached.body, status_code=cached.status, headers=cached.headers)
                deps.cors.apply(response.headers, allowed)
                return response
        elif not is_listing:
            response = Response(status_code=405)
            deps.cors.apply(response.headers, allowed)
            return response

        request.state.edge_cacheable = False
        response = await call_next(request)
        if not request.state.edge_cacheable:
            deps.cors.apply(response.headers, allowed)
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in PER_SERVE_HEADERS
        }
        headers["cache-control"] = deps.cache_settings.control
        entry = CachedResponse(body=body, status=response.status_code, headers=headers)

        background = None
        if method == "GET" and deps.cache_settings.storable:
            # Written after the response is sent
            background = BackgroundTask(deps.edge_cache.put, url, entry)

        fresh = Response(body, status_code=entry.status, headers=entry.headers, background=background)
        deps.cors.apply(fresh.headers, allowed)
        return fresh
