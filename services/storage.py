"""
Storage access for S3-compatible object stores (AWS S3, DigitalOcean Spaces, R2, etc.).

Provides the boto3 backed object store used for fonts, styles and archives, and
the byte-range source the archive reader pulls header, directories and tiles from.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError
from starlette.concurrency import run_in_threadpool

from errors import ArchiveNotFound, ConditionFailed, RequestAborted

logger = logging.getLogger(__name__)

MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
PRECONDITION_CODES = {"412", "PreconditionFailed"}


def configure_s3_environment():
    """
    Normalize S3 environment variables before the client is created.

    Supports both AWS_* and SPACES_* environment variables. Maps SPACES_* to AWS_*
    since boto3 only reads the AWS_* credentials from the environment.
    """
    spaces_key = os.getenv("SPACES_ACCESS_KEY_ID")
    spaces_secret = os.getenv("SPACES_SECRET_ACCESS_KEY")
    spaces_endpoint = os.getenv("SPACES_ENDPOINT")
    spaces_region = os.getenv("SPACES_REGION")

    if spaces_key and not os.getenv("AWS_ACCESS_KEY_ID"):
        os.environ["AWS_ACCESS_KEY_ID"] = spaces_key

    if spaces_secret and not os.getenv("AWS_SECRET_ACCESS_KEY"):
        os.environ["AWS_SECRET_ACCESS_KEY"] = spaces_secret

    if spaces_region and not os.getenv("AWS_REGION"):
        os.environ["AWS_REGION"] = spaces_region

    # SPACES_ENDPOINT is just the domain (e.g., "nyc3.digitaloceanspaces.com")
    if spaces_endpoint and not os.getenv("AWS_S3_ENDPOINT"):
        os.environ["AWS_S3_ENDPOINT"] = spaces_endpoint

    endpoint = os.getenv("AWS_S3_ENDPOINT")
    if endpoint and not endpoint.startswith("http://"):
        # Remove protocol if present and ensure no trailing slash, then add https://
        endpoint_clean = endpoint.replace("https://", "").rstrip("/")
        os.environ["AWS_S3_ENDPOINT"] = f"https://{endpoint_clean}"


def has_s3_credentials() -> bool:
    """
    Check if S3 credentials are configured.

    Supports both AWS_* and SPACES_* environment variables.
    """
    return bool(os.getenv("AWS_ACCESS_KEY_ID") or os.getenv("SPACES_ACCESS_KEY_ID"))


def s3_client_kwargs() -> Dict[str, Any]:
    """Keyword arguments for ``boto3.client("s3")`` from the environment."""
    kwargs: Dict[str, Any] = {}
    endpoint = os.getenv("AWS_S3_ENDPOINT")
    if endpoint:
        kwargs["endpoint_url"] = endpoint
    region = os.getenv("AWS_REGION")
    if region:
        kwargs["region_name"] = region
    return kwargs


def archive_key(name: str, template: Optional[str] = None) -> str:
    """
    Object key of an archive.

    Example:
        >>> archive_key("altis", "tiles/{name}/map.pmtiles")
        'tiles/altis/map.pmtiles'
    """
    if template:
        return template.replace("{name}", name)
    return f"{name}.pmtiles"


@dataclass
class StoredObject:
    """An object read from the bucket. ``body`` is None when an ETag condition failed."""

    body: Optional[bytes]
    etag: Optional[str] = None
    content_type: Optional[str] = None
    cache_control: Optional[str] = None
    expires: Optional[str] = None


class ObjectStore:
    """Async facade over a boto3 S3 client bound to one bucket."""

    def __init__(self, bucket: str, client: Any = None):
        self.bucket = bucket
        self.client = client if client is not None else boto3.client("s3", **s3_client_kwargs())

    async def get(
        self,
        key: str,
        offset: Optional[int] = None,
        length: Optional[int] = None,
        etag: Optional[str] = None,
    ) -> Optional[StoredObject]:
        """
        Fetch an object, or a byte range of it.

        Returns None when the object does not exist. When ``etag`` is given and the
        stored object no longer matches it, returns a StoredObject without a body.
        """
        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if offset is not None and length is not None:
            params["Range"] = f"bytes={offset}-{offset + length - 1}"
        if etag:
            params["IfMatch"] = etag
        return await run_in_threadpool(self._get_object, params)

    def _get_object(self, params: Dict[str, Any]) -> Optional[StoredObject]:
        try:
            resp = self.client.get_object(**params)
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code")
            if code in MISSING_CODES:
                logger.debug("[S3] miss for s3://%s/%s", self.bucket, params["Key"])
                return None
            if code in PRECONDITION_CODES:
                return StoredObject(body=None)
            raise

        stream = resp["Body"]
        try:
            data = stream.read()
        finally:
            stream.close()

        expires = resp.get("Expires")
        return StoredObject(
            body=data,
            etag=resp.get("ETag"),
            content_type=resp.get("ContentType"),
            cache_control=resp.get("CacheControl"),
            expires=expires.isoformat() if hasattr(expires, "isoformat") else expires,
        )

    def close(self):
        self.client.close()


@dataclass
class RangeResponse:
    data: bytes
    etag: Optional[str] = None
    cache_control: Optional[str] = None
    expires: Optional[str] = None


async def abortable(coro, signal: Optional[asyncio.Event]):
    """Await ``coro`` unless ``signal`` fires first, in which case RequestAborted is raised."""
    if signal is None:
        return await coro
    if signal.is_set():
        coro.close()
        raise RequestAborted("Client disconnected")

    fetch = asyncio.ensure_future(coro)
    aborted = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({fetch, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
        if not fetch.done():
            fetch.cancel()

    if fetch not in done:
        raise RequestAborted("Client disconnected")
    return fetch.result()


class RangeSource:
    """
    Byte-range source for one archive.

    Each call yields exactly one of: a RangeResponse, ArchiveNotFound, or
    ConditionFailed. Retrying after ConditionFailed is left to the caller.
    """

    def __init__(self, store: ObjectStore, archive_name: str, path_template: Optional[str] = None):
        self.store = store
        self.archive_name = archive_name
        self.path_template = path_template

    def get_key(self) -> str:
        return self.archive_name

    async def get_bytes(
        self,
        offset: int,
        length: int,
        signal: Optional[asyncio.Event] = None,
        etag: Optional[str] = None,
    ) -> RangeResponse:
        key = archive_key(self.archive_name, self.path_template)
        obj = await abortable(
            self.store.get(key, offset=offset, length=length, etag=etag), signal
        )
        if obj is None:
            raise ArchiveNotFound("Archive not found")
        if obj.body is None:
            raise ConditionFailed(f"ETag {etag} no longer matches {key}")

        return RangeResponse(
            data=obj.body,
            etag=obj.etag,
            cache_control=obj.cache_control,
            expires=obj.expires,
        )
