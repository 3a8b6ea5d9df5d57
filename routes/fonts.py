import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from gateway import SAFE_METHODS, GatewayDeps, get_deps, mark_cacheable
from services.fonts import GLYPH_CONTENT_TYPE, resolve_font

router = APIRouter()
logger = logging.getLogger(__name__)


def raw_object_key(request: Request) -> str:
    """Object key from the undecoded path, so an encoded comma stays inside its family name."""
    raw_path = request.scope.get("raw_path")
    if raw_path is None:
        return request.url.path[1:]
    return raw_path.decode("latin-1").split("?", 1)[0][1:]


@router.api_route("/fonts/{font_path:path}", methods=SAFE_METHODS)
async def font_glyphs(font_path: str, request: Request, deps: GatewayDeps = Depends(get_deps)):
    """
    Glyph range for a composite font stack.

    Example: /fonts/Noto%20Sans%20Bold,Noto%20Sans%20Regular/0-255.pbf
    """
    object_key = raw_object_key(request)
    logger.debug("[FONTS] objectKey %s", object_key)

    glyphs = await resolve_font(deps.object_store, object_key)
    if glyphs is None:
        return PlainTextResponse("Font not found", status_code=404)
    return mark_cacheable(request, Response(glyphs, media_type=GLYPH_CONTENT_TYPE))
