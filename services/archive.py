"""
Archive reader over a byte-range source.

Header and directory decoding come from the pmtiles package. This module adds
the async fetch path, payload decompression, the per-archive resolved value
cache, and the policy of retrying once when the archive's ETag goes stale.
"""
import asyncio
import gzip
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pmtiles.tile import deserialize_directory, deserialize_header, find_tile, zxy_to_tileid

from errors import ConditionFailed
from schemas.archive import ArchiveHeader, Compression
from services.compression import decompress
from services.storage import RangeSource, abortable
from services.validation import CANONICAL_EXTENSIONS

logger = logging.getLogger(__name__)

HEADER_LENGTH = 127
MAX_DIRECTORY_DEPTH = 4


@dataclass
class ResolvedArchive:
    """Decoded header of one archive plus the directories read so far."""

    header: ArchiveHeader
    raw_header: Dict[str, Any]
    etag: Optional[str] = None
    directories: Dict[Tuple[int, int], List[Any]] = field(default_factory=dict)


class ResolvedValueCache:
    """LRU of resolved archives keyed by archive name.

    Concurrent resolutions of the same archive share one fetch. Independent of
    the edge cache, which stores whole HTTP responses keyed by URL.
    """

    def __init__(self, max_size: int = 25):
        self.max_size = max_size
        self.entries: "OrderedDict[str, ResolvedArchive]" = OrderedDict()
        self.inflight: Dict[str, asyncio.Future] = {}
        self.hit_count = 0
        self.miss_count = 0

    async def get(self, key: str, resolve: Callable[[], Awaitable[ResolvedArchive]]) -> ResolvedArchive:
        if key in self.entries:
            self.entries.move_to_end(key)
            self.hit_count += 1
            return self.entries[key]

        future = self.inflight.get(key)
        if future is None:
            self.miss_count += 1
            future = asyncio.ensure_future(self._fill(key, resolve))
            self.inflight[key] = future
        # A cancelled waiter leaves the shared fetch running for the others
        return await asyncio.shield(future)

    async def _fill(self, key: str, resolve: Callable[[], Awaitable[ResolvedArchive]]) -> ResolvedArchive:
        try:
            value = await resolve()
            self.put(key, value)
            return value
        finally:
            self.inflight.pop(key, None)

    def put(self, key: str, value: ResolvedArchive):
        self.entries[key] = value
        self.entries.move_to_end(key)
        while len(self.entries) > self.max_size:
            self.entries.popitem(last=False)

    def invalidate(self, key: str):
        self.entries.pop(key, None)

    def stats(self) -> dict:
        total_requests = self.hit_count + self.miss_count
        return {
            "size": len(self.entries),
            "max_size": self.max_size,
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "hit_rate": self.hit_count / max(total_requests, 1),
        }


class ArchiveReader:
    """Reads header, metadata and tiles of one archive."""

    def __init__(
        self,
        source: RangeSource,
        cache: ResolvedValueCache,
        signal: Optional[asyncio.Event] = None,
    ):
        self.source = source
        self.cache = cache
        self.signal = signal

    async def get_header(self) -> ArchiveHeader:
        archive = await self._resolve()
        return archive.header

    async def get_metadata(self) -> Dict[str, Any]:
        return await self._with_retry(self._get_metadata)

    async def get_zxy(self, z: int, x: int, y: int) -> Optional[bytes]:
        """Decompressed tile bytes, or None when the archive has no such tile."""
        return await self._with_retry(lambda: self._get_zxy(z, x, y))

    async def get_tile_json(self, base_url: str) -> Dict[str, Any]:
        header = await self.get_header()
        metadata = await self.get_metadata()
        ext = CANONICAL_EXTENSIONS.get(header.tile_type)
        suffix = f".{ext}" if ext else ""
        return {
            "tilejson": "3.0.0",
            "scheme": "xyz",
            "tiles": [f"{base_url}/{{z}}/{{x}}/{{y}}{suffix}"],
            "vector_layers": metadata.get("vector_layers"),
            "attribution": metadata.get("attribution"),
            "description": metadata.get("description"),
            "name": metadata.get("name"),
            "version": metadata.get("version"),
            "bounds": header.bounds,
            "center": header.center,
            "minzoom": header.min_zoom,
            "maxzoom": header.max_zoom,
        }

    async def _with_retry(self, op: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await op()
        except ConditionFailed:
            key = self.source.get_key()
            logger.info("[TILES] %s changed in the bucket, re-resolving", key)
            self.cache.invalidate(key)
            return await op()

    async def _resolve(self) -> ResolvedArchive:
        # Shared with other requests, so only this caller is abandoned on disconnect
        return await abortable(self.cache.get(self.source.get_key(), self._load_header), self.signal)

    async def _load_header(self) -> ResolvedArchive:
        resp = await self.source.get_bytes(0, HEADER_LENGTH)
        raw = deserialize_header(resp.data)
        return ResolvedArchive(
            header=ArchiveHeader.from_pmtiles(raw),
            raw_header=raw,
            etag=resp.etag,
        )

    async def _read(self, archive: ResolvedArchive, offset: int, length: int) -> bytes:
        resp = await self.source.get_bytes(offset, length, self.signal, archive.etag)
        return resp.data

    async def _directory(self, archive: ResolvedArchive, offset: int, length: int) -> List[Any]:
        entries = archive.directories.get((offset, length))
        if entries is None:
            buf = await self._read(archive, offset, length)
            compression = archive.header.internal_compression
            if compression != Compression.GZIP:
                # pmtiles only decodes gzip framed directories
                buf = gzip.compress(decompress(buf, compression))
            entries = deserialize_directory(buf)
            archive.directories[(offset, length)] = entries
        return entries

    async def _get_metadata(self) -> Dict[str, Any]:
        archive = await self._resolve()
        raw = archive.raw_header
        if not raw["metadata_length"]:
            return {}
        data = await self._read(archive, raw["metadata_offset"], raw["metadata_length"])
        return json.loads(decompress(data, archive.header.internal_compression))

    async def _get_zxy(self, z: int, x: int, y: int) -> Optional[bytes]:
        archive = await self._resolve()
        raw = archive.raw_header
        tile_id = zxy_to_tileid(z, x, y)

        dir_offset, dir_length = raw["root_offset"], raw["root_length"]
        for _ in range(MAX_DIRECTORY_DEPTH):
            entries = await self._directory(archive, dir_offset, dir_length)
            entry = find_tile(entries, tile_id)
            if entry is None:
                return None
            if entry.run_length == 0:
                dir_offset = raw["leaf_directory_offset"] + entry.offset
                dir_length = entry.length
            else:
                data = await self._read(archive, raw["tile_data_offset"] + entry.offset, entry.length)
                return decompress(data, archive.header.tile_compression)
        return None
