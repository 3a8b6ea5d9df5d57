"""Edge cache plugin.

Shared response cache keyed by the full request URL, backed by aiocache.
Stores materialized responses rather than endpoint return values.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiocache

from cache_settings import CacheSettings, cache_setting

logger = logging.getLogger(__name__)


@dataclass
class CachedResponse:
    """Canonical stored copy of a response. Never carries CORS headers."""

    body: bytes
    status: int
    headers: Dict[str, str] = field(default_factory=dict)


class EdgeCache:
    """URL keyed response store with a fixed lifetime per entry."""

    def __init__(self, cache: Any, ttl: Optional[int] = None):
        self.cache = cache
        self.ttl = ttl

    async def match(self, url: str) -> Optional[CachedResponse]:
        try:
            return await self.cache.get(url)
        except Exception:
            logger.exception("[CACHE] Couldn't retrieve %s, unexpected error", url)
            return None

    async def put(self, url: str, entry: CachedResponse):
        try:
            await self.cache.set(url, entry, ttl=self.ttl)
        except Exception:
            logger.exception("[CACHE] Couldn't store %s, unexpected error", url)

    async def close(self):
        await self.cache.close()


def setup_cache(settings: CacheSettings = cache_setting) -> EdgeCache:
    """Setup aiocache with in-memory backend."""
    config: Dict[str, Any] = {
        'cache': "aiocache.SimpleMemoryCache",
        'serializer': {
            'class': "aiocache.serializers.PickleSerializer"
        },
        'ttl': settings.ttl,
        'namespace': settings.namespace
    }

    aiocache.caches.set_config({"default": config})
    logger.info(
        "[CACHE] Initialized edge cache with TTL=%ss, namespace='%s'",
        settings.ttl,
        settings.namespace,
    )
    return EdgeCache(aiocache.caches.create("default"), ttl=settings.ttl)
