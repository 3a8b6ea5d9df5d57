"""
Unit tests for the archive reader and the resolved value cache.
"""

import asyncio

import pytest

from conftest import FakeObjectStore, build_pmtiles
from errors import ArchiveNotFound, RequestAborted
from schemas.archive import Compression, TileType
from services.archive import HEADER_LENGTH, ArchiveReader, ResolvedArchive, ResolvedValueCache
from services.storage import RangeSource

TILES = {
    (0, 0, 0): b"world",
    (1, 0, 1): b"south-west",
    (4, 3, 5): b"detail",
}


@pytest.fixture
def cache():
    return ResolvedValueCache()


class SlowObjectStore(FakeObjectStore):
    """Bucket whose reads take a while to answer."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def get(self, key, offset=None, length=None, etag=None):
        await asyncio.sleep(self.delay)
        return await super().get(key, offset, length, etag)


def reader_for(object_store, cache, name="altis"):
    return ArchiveReader(RangeSource(object_store, name), cache)


def header_reads(object_store):
    return [c for c in object_store.calls if c["offset"] == 0 and c["length"] == HEADER_LENGTH]


class TestArchiveReader:

    def test_header_decoded(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES))
        header = asyncio.run(reader_for(object_store, cache).get_header())
        assert header.tile_type == TileType.MVT
        assert header.tile_compression == Compression.GZIP
        assert header.min_zoom == 0
        assert header.max_zoom == 4
        assert header.bounds == [-10.0, -10.0, 10.0, 10.0]

    def test_tiles_decompressed(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES))
        reader = reader_for(object_store, cache)
        for (z, x, y), data in TILES.items():
            assert asyncio.run(reader.get_zxy(z, x, y)) == data

    def test_absent_tile_is_none(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES))
        assert asyncio.run(reader_for(object_store, cache).get_zxy(4, 0, 0)) is None

    def test_metadata(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES, metadata={"name": "Altis"}))
        metadata = asyncio.run(reader_for(object_store, cache).get_metadata())
        assert metadata == {"name": "Altis"}

    def test_tile_json(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES, metadata={"name": "Altis"}))
        tile_json = asyncio.run(reader_for(object_store, cache).get_tile_json("https://tiles.example/altis"))
        assert tile_json["tiles"] == ["https://tiles.example/altis/{z}/{x}/{y}.mvt"]
        assert tile_json["name"] == "Altis"
        assert tile_json["minzoom"] == 0
        assert tile_json["maxzoom"] == 4

    def test_missing_archive(self, object_store, cache):
        with pytest.raises(ArchiveNotFound):
            asyncio.run(reader_for(object_store, cache).get_header())

    def test_reads_carry_header_etag(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES), etag='"v1"')
        asyncio.run(reader_for(object_store, cache).get_zxy(0, 0, 0))
        assert object_store.calls[0]["etag"] is None
        assert all(call["etag"] == '"v1"' for call in object_store.calls[1:])

    def test_header_resolved_once(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES))
        reader = reader_for(object_store, cache)
        asyncio.run(reader.get_zxy(0, 0, 0))
        asyncio.run(reader.get_zxy(1, 0, 1))
        assert len(header_reads(object_store)) == 1

    def test_changed_archive_retried_once(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES), etag='"v1"')
        reader = reader_for(object_store, cache)
        assert asyncio.run(reader.get_zxy(0, 0, 0)) == b"world"

        object_store.put("altis.pmtiles", build_pmtiles({(0, 0, 0): b"new world"}), etag='"v2"')
        assert asyncio.run(reader.get_zxy(0, 0, 0)) == b"new world"
        assert len(header_reads(object_store)) == 2

    def test_concurrent_resolution_shares_fetch(self, object_store, cache):
        object_store.put("altis.pmtiles", build_pmtiles(TILES))

        async def run():
            return await asyncio.gather(
                reader_for(object_store, cache).get_header(),
                reader_for(object_store, cache).get_header(),
            )

        first, second = asyncio.run(run())
        assert first == second
        assert len(header_reads(object_store)) == 1


    def test_disconnect_leaves_shared_fetch_to_others(self, cache):
        store = SlowObjectStore(delay=0.05)
        store.put("altis.pmtiles", build_pmtiles(TILES))

        async def run():
            gone = asyncio.Event()
            first = ArchiveReader(RangeSource(store, "altis"), cache, gone)
            second = ArchiveReader(RangeSource(store, "altis"), cache, asyncio.Event())
            asyncio.get_running_loop().call_later(0.01, gone.set)
            return await asyncio.gather(first.get_header(), second.get_header(), return_exceptions=True)

        first, second = asyncio.run(run())
        assert isinstance(first, RequestAborted)
        assert second.tile_type == TileType.MVT
        assert len(header_reads(store)) == 1
        assert "altis" in cache.entries


class TestResolvedValueCache:

    def entry(self, max_zoom):
        from schemas.archive import ArchiveHeader
        return ResolvedArchive(header=ArchiveHeader(min_zoom=0, max_zoom=max_zoom), raw_header={})

    def test_lru_eviction(self):
        cache = ResolvedValueCache(max_size=2)
        cache.put("a", self.entry(1))
        cache.put("b", self.entry(2))

        async def touch_a():
            return await cache.get("a", None)

        asyncio.run(touch_a())
        cache.put("c", self.entry(3))
        assert list(cache.entries) == ["a", "c"]

    def test_invalidate(self):
        cache = ResolvedValueCache()
        cache.put("a", self.entry(1))
        cache.invalidate("a")
        cache.invalidate("missing")
        assert cache.stats()["size"] == 0

    def test_stats(self):
        cache = ResolvedValueCache(max_size=5)
        entry = self.entry(1)

        async def resolve():
            return entry

        async def run():
            await cache.get("a", resolve)
            await cache.get("a", resolve)

        asyncio.run(run())
        stats = cache.stats()
        assert stats["hit_count"] == 1
        assert stats["miss_count"] == 1
        assert stats["max_size"] == 5
        assert stats["hit_rate"] == 0.5
