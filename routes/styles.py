from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from gateway import SAFE_METHODS, GatewayDeps, get_deps, mark_cacheable

router = APIRouter()

STYLE_CONTENT_TYPES = {
    "png": "image/png",
    "json": "application/json",
}


@router.api_route("/styles/{style_path:path}", methods=SAFE_METHODS)
async def style_asset(style_path: str, request: Request, deps: GatewayDeps = Depends(get_deps)):
    """
    Pass-through for style documents and sprites stored under styles/.
    """
    object_key = request.url.path[1:]
    obj = await deps.object_store.get(object_key)
    if obj is None or obj.body is None:
        return mark_cacheable(request, PlainTextResponse("File not found", status_code=404))

    extension = object_key.rsplit(".", 1)[-1]
    media_type = STYLE_CONTENT_TYPES.get(extension, "application/octet-stream")
    return mark_cacheable(request, Response(obj.body, media_type=media_type))
