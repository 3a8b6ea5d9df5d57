"""Gateway error types and their HTTP mapping."""

from typing import Callable, Dict, Type

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class TileGatewayError(Exception):
    """Base exception for gateway failures."""


class ArchiveNotFound(TileGatewayError):
    """The archive object does not exist in the bucket."""


class ConditionFailed(TileGatewayError):
    """The object exists but no longer matches the ETag that was sent."""


class UnsupportedCompression(TileGatewayError):
    """Data is compressed with a codec the gateway cannot inflate."""


class MalformedListingRecord(TileGatewayError):
    """A metadata row holds JSON that does not parse."""


class RequestAborted(TileGatewayError):
    """The client went away while an object read was in flight."""


DEFAULT_STATUS_CODES: Dict[Type[Exception], int] = {
    ArchiveNotFound: 404,
    UnsupportedCompression: 500,
    MalformedListingRecord: 500,
    RequestAborted: 499,
}


def exception_handler_factory(status_code: int) -> Callable:
    """Create an error handler that answers with the given status."""

    def handler(request: Request, exc: Exception):
        if status_code in (204, 304):
            return Response(status_code=status_code)
        return JSONResponse(content={"detail": str(exc)}, status_code=status_code)

    return handler


def add_exception_handlers(
    app: FastAPI, status_codes: Dict[Type[Exception], int]
) -> None:
    """Register one handler per mapped exception type.

    Responses built here never go through ``mark_cacheable`` so the edge cache
    does not keep them.
    """
    for exc, code in status_codes.items():
        app.add_exception_handler(exc, exception_handler_factory(code))
