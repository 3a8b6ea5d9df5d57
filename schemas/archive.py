from enum import IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class TileType(IntEnum):
    """Tile payload type as encoded in the PMTiles v3 header."""
    UNKNOWN = 0
    MVT = 1
    PNG = 2
    JPEG = 3
    WEBP = 4
    AVIF = 5


class Compression(IntEnum):
    """Compression tag as encoded in the PMTiles v3 header."""
    UNKNOWN = 0
    NONE = 1
    GZIP = 2
    BROTLI = 3
    ZSTD = 4


class TileCoordinate(BaseModel):
    """
    A single tile address inside an archive.
    """
    z: int = Field(..., ge=0, description="Zoom level")
    x: int = Field(..., ge=0, description="Tile column")
    y: int = Field(..., ge=0, description="Tile row")


class ArchiveHeader(BaseModel):
    """
    Header fields the gateway reads from an archive. Read-only to the gateway.
    """
    min_zoom: int
    max_zoom: int
    tile_type: TileType = TileType.UNKNOWN
    tile_compression: Compression = Compression.UNKNOWN
    internal_compression: Compression = Compression.GZIP
    bounds: List[float] = Field(default_factory=lambda: [-180.0, -85.0, 180.0, 85.0])
    center: List[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])

    @classmethod
    def from_pmtiles(cls, raw: dict) -> "ArchiveHeader":
        """Build from the dict returned by ``pmtiles.tile.deserialize_header``."""
        return cls(
            min_zoom=raw["min_zoom"],
            max_zoom=raw["max_zoom"],
            tile_type=TileType(_enum_value(raw["tile_type"])),
            tile_compression=Compression(_enum_value(raw["tile_compression"])),
            internal_compression=Compression(_enum_value(raw["internal_compression"])),
            bounds=[
                raw["min_lon_e7"] / 1e7,
                raw["min_lat_e7"] / 1e7,
                raw["max_lon_e7"] / 1e7,
                raw["max_lat_e7"] / 1e7,
            ],
            center=[
                raw["center_lon_e7"] / 1e7,
                raw["center_lat_e7"] / 1e7,
                raw["center_zoom"],
            ],
        )


class TilePath(BaseModel):
    """
    Result of parsing a request path against the archive URL shapes.
    """
    ok: bool
    name: str = ""
    tile: Optional[TileCoordinate] = None
    ext: str = ""


def _enum_value(value) -> int:
    return value.value if hasattr(value, "value") else int(value)
