"""
Global pytest configuration and fixtures for gateway tests.
"""

import gzip
import io
import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient
from pmtiles.tile import Compression as PMCompression
from pmtiles.tile import TileType as PMTileType
from pmtiles.tile import zxy_to_tileid
from pmtiles.writer import Writer

from app import create_app
from cache_plugin import setup_cache
from cache_settings import CacheSettings
from errors import ArchiveNotFound
from gateway import GatewayDeps
from schemas.archive import ArchiveHeader, TileType
from services.archive import ResolvedValueCache
from services.listing import MetadataStore
from services.storage import StoredObject
from settings import GatewaySettings

METADATA_SCHEMA = """
CREATE TABLE pmtiles_data (
    worldName TEXT PRIMARY KEY,
    displayName TEXT,
    mapJson TEXT,
    layerKeys TEXT,
    lastUpdated TEXT
)
"""


class FakeObjectStore:
    """In-memory bucket with the same contract as ObjectStore."""

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls = []

    def put(self, key: str, body: bytes, etag: Optional[str] = None):
        self.objects[key] = {"body": body, "etag": etag or f'"{uuid.uuid4().hex}"'}

    async def get(self, key, offset=None, length=None, etag=None):
        self.calls.append({"key": key, "offset": offset, "length": length, "etag": etag})
        obj = self.objects.get(key)
        if obj is None:
            return None
        if etag and etag != obj["etag"]:
            return StoredObject(body=None)
        body = obj["body"]
        if offset is not None and length is not None:
            body = body[offset:offset + length]
        return StoredObject(body=body, etag=obj["etag"])

    def keys_requested(self):
        return [call["key"] for call in self.calls]

    def close(self):
        pass


class FakeArchive:
    """Archive reader double with a fixed header and tile set."""

    def __init__(self, tile_type=TileType.MVT, min_zoom=0, max_zoom=14, tiles=None, metadata=None):
        self.header = ArchiveHeader(min_zoom=min_zoom, max_zoom=max_zoom, tile_type=tile_type)
        self.tiles = tiles or {}
        self.metadata = metadata or {}
        self.zxy_calls = 0

    async def get_header(self):
        return self.header

    async def get_metadata(self):
        return self.metadata

    async def get_zxy(self, z, x, y):
        self.zxy_calls += 1
        return self.tiles.get((z, x, y))

    async def get_tile_json(self, base_url):
        return {
            "tilejson": "3.0.0",
            "tiles": [f"{base_url}/{{z}}/{{x}}/{{y}}.mvt"],
            "name": self.metadata.get("name"),
            "minzoom": self.header.min_zoom,
            "maxzoom": self.header.max_zoom,
        }


class MissingArchive:
    async def get_header(self):
        raise ArchiveNotFound("Archive not found")


def build_pmtiles(tiles: Dict[tuple, bytes], tile_type=PMTileType.MVT, min_zoom=0, max_zoom=4, metadata=None) -> bytes:
    """Write a small PMTiles v3 archive to memory. MVT tiles are gzipped."""
    buf = io.BytesIO()
    writer = Writer(buf)
    gzipped = tile_type == PMTileType.MVT
    for (z, x, y), data in sorted(tiles.items(), key=lambda item: zxy_to_tileid(*item[0])):
        writer.write_tile(zxy_to_tileid(z, x, y), gzip.compress(data) if gzipped else data)

    header = {
        "tile_type": tile_type,
        "tile_compression": PMCompression.GZIP if gzipped else PMCompression.NONE,
        "min_zoom": min_zoom,
        "max_zoom": max_zoom,
        "min_lon_e7": int(-10 * 1e7),
        "min_lat_e7": int(-10 * 1e7),
        "max_lon_e7": int(10 * 1e7),
        "max_lat_e7": int(10 * 1e7),
        "center_lon_e7": 0,
        "center_lat_e7": 0,
        "center_zoom": min_zoom,
    }
    writer.finalize(header, metadata or {"name": "test"})
    return buf.getvalue()


def make_metadata_db(path: Path, rows=()) -> MetadataStore:
    conn = sqlite3.connect(str(path))
    try:
        conn.execute(METADATA_SCHEMA)
        conn.executemany("INSERT INTO pmtiles_data VALUES (?, ?, ?, ?, ?)", rows)
        conn.commit()
    finally:
        conn.close()
    return MetadataStore(str(path))


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def archives():
    """Archive doubles keyed by name, served through GatewayDeps.open_archive."""
    return {
        "altis": FakeArchive(
            tile_type=TileType.MVT,
            min_zoom=0,
            max_zoom=14,
            tiles={(5, 3, 2): b"mvt-bytes"},
            metadata={"name": "Altis"},
        ),
        "stratis": FakeArchive(tile_type=TileType.PNG, tiles={(1, 0, 0): b"png-bytes"}),
    }


@pytest.fixture
def metadata_store(tmp_path):
    return make_metadata_db(tmp_path / "metadata.db")


@pytest.fixture
def make_deps(object_store, metadata_store):
    """Factory for GatewayDeps with an isolated edge cache namespace."""

    def factory(archives=None, **overrides):
        cache_settings = CacheSettings(
            control=overrides.pop("cache_control", "public, max-age=86400"),
            namespace=f"test-{uuid.uuid4().hex}",
        )
        settings = GatewaySettings(**{"allowed_origins": "https://a.example,https://b.example", **overrides})

        open_archive = None
        if archives is not None:
            def open_archive(name, signal):
                return archives.get(name) or MissingArchive()

        return GatewayDeps(
            settings=settings,
            cache_settings=cache_settings,
            object_store=object_store,
            metadata_store=metadata_store,
            edge_cache=setup_cache(cache_settings),
            archive_cache=ResolvedValueCache(),
            open_archive=open_archive,
        )

    return factory


@pytest.fixture
def deps(make_deps, archives):
    return make_deps(archives)


@pytest.fixture
def client(deps):
    return TestClient(create_app(deps))


def listing_row(world_name, display_name=None, map_json=None, layer_keys=None, last_updated=None):
    return (
        world_name,
        display_name or world_name.title(),
        json.dumps(map_json if map_json is not None else {"size": 1024}),
        json.dumps(layer_keys if layer_keys is not None else ["roads"]),
        last_updated,
    )
