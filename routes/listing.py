from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from gateway import GatewayDeps, get_deps, mark_cacheable
from services.listing import list_archives

router = APIRouter()

ANY_METHOD = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


@router.api_route("/list", methods=ANY_METHOD)
@router.api_route("/list/", methods=ANY_METHOD, include_in_schema=False)
async def archive_listing(request: Request, deps: GatewayDeps = Depends(get_deps)):
    """
    Every archive known to the metadata store, keyed by world name.
    """
    archives = await list_archives(deps.metadata_store)
    return mark_cacheable(request, JSONResponse(archives))
