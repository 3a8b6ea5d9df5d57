"""
Request path parsing and tile validation against archive metadata.

Validation runs before any tile bytes are read so a read that would be thrown
away is never issued.
"""
import re
from dataclasses import dataclass
from enum import Enum

from schemas.archive import ArchiveHeader, TileCoordinate, TilePath, TileType

NAME_CHARS = r"[0-9a-zA-Z/!\-_.*'()]+"
TILE_RE = re.compile(rf"^/(?P<name>{NAME_CHARS})/(?P<z>\d+)/(?P<x>\d+)/(?P<y>\d+)\.(?P<ext>[a-z]+)$")
TILESET_RE = re.compile(rf"^/(?P<name>{NAME_CHARS})\.json$")

CANONICAL_EXTENSIONS = {
    TileType.MVT: "mvt",
    TileType.PNG: "png",
    TileType.JPEG: "jpg",
    TileType.WEBP: "webp",
    TileType.AVIF: "avif",
}

LEGACY_MVT_EXTENSION = "pbf"


def parse_tile_path(path: str) -> TilePath:
    """
    Parse ``/<name>/<z>/<x>/<y>.<ext>`` or ``/<name>.json``.

    Example:
        >>> parse_tile_path("/altis/5/3/2.mvt").tile
        TileCoordinate(z=5, x=3, y=2)
    """
    match = TILE_RE.match(path)
    if match:
        tile = TileCoordinate(z=int(match["z"]), x=int(match["x"]), y=int(match["y"]))
        return TilePath(ok=True, name=match["name"], tile=tile, ext=match["ext"])

    match = TILESET_RE.match(path)
    if match:
        return TilePath(ok=True, name=match["name"], ext="json")

    return TilePath(ok=False)


class TileDecision(Enum):
    ACCEPT = "accept"
    LEGACY_ACCEPT = "legacy_accept"
    OUT_OF_RANGE = "out_of_range"
    EXTENSION_MISMATCH = "extension_mismatch"


@dataclass(frozen=True)
class Verdict:
    decision: TileDecision
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.decision in (TileDecision.ACCEPT, TileDecision.LEGACY_ACCEPT)


def validate_tile(
    header: ArchiveHeader,
    coord: TileCoordinate,
    ext: str,
    allow_legacy_pbf: bool = True,
) -> Verdict:
    """Decide whether a tile request can be served from this archive."""
    if coord.z < header.min_zoom or coord.z > header.max_zoom:
        return Verdict(TileDecision.OUT_OF_RANGE)

    canonical = CANONICAL_EXTENSIONS.get(header.tile_type)
    if canonical is None or ext == canonical:
        return Verdict(TileDecision.ACCEPT)

    if allow_legacy_pbf and header.tile_type == TileType.MVT and ext == LEGACY_MVT_EXTENSION:
        return Verdict(TileDecision.LEGACY_ACCEPT)

    return Verdict(
        TileDecision.EXTENSION_MISMATCH,
        f"Bad request: requested .{ext} but archive has type .{canonical}",
    )
