import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from errors import ArchiveNotFound
from gateway import SAFE_METHODS, GatewayDeps, disconnect_signal, get_deps, mark_cacheable
from schemas.archive import TileType
from services.validation import TileDecision, parse_tile_path, validate_tile

router = APIRouter()
logger = logging.getLogger(__name__)

TILE_CONTENT_TYPES = {
    TileType.MVT: "application/x-protobuf",
    TileType.PNG: "image/png",
    TileType.JPEG: "image/jpeg",
    TileType.WEBP: "image/webp",
    TileType.AVIF: "image/avif",
}


@router.api_route("/{archive_path:path}", methods=SAFE_METHODS)
async def archive_tile(archive_path: str, request: Request, deps: GatewayDeps = Depends(get_deps)):
    """
    Serve a tile, or the archive's TileJSON when no tile coordinate is given.

    Example: /altis/5/3/2.mvt
    Example: /altis.json
    """
    parsed = parse_tile_path(request.url.path)
    if not parsed.ok:
        return PlainTextResponse("Invalid URL", status_code=404)

    async with disconnect_signal(request) as signal:
        reader = deps.archive_reader(parsed.name, signal)
        try:
            header = await reader.get_header()

            if parsed.tile is None:
                host = deps.settings.public_hostname or request.url.hostname
                tile_json = await reader.get_tile_json(f"https://{host}/{parsed.name}")
                return mark_cacheable(request, JSONResponse(tile_json))

            verdict = validate_tile(header, parsed.tile, parsed.ext, deps.settings.allow_legacy_pbf)
            if verdict.decision == TileDecision.OUT_OF_RANGE:
                return mark_cacheable(request, Response(status_code=404))
            if not verdict.accepted:
                return mark_cacheable(request, PlainTextResponse(verdict.message, status_code=400))
            if verdict.decision == TileDecision.LEGACY_ACCEPT:
                logger.debug("[TILES] legacy .pbf request for %s", request.url.path)

            tile = parsed.tile
            data = await reader.get_zxy(tile.z, tile.x, tile.y)
        except ArchiveNotFound:
            return mark_cacheable(request, PlainTextResponse("Archive not found", status_code=404))

    media_type = TILE_CONTENT_TYPES.get(header.tile_type)
    if data is None:
        return mark_cacheable(request, Response(status_code=204, media_type=media_type))
    return mark_cacheable(request, Response(data, media_type=media_type))
