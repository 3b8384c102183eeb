from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from xml.etree import ElementTree

from aioaws.s3 import S3Client, S3Config
from httpx import AsyncClient, Response
from s4fs.storage import EPOCH, ByteRange, NoSuchKey, ObjectMetadata, ObjectStream, StoreError
from s4fs.storage import StorageBackend

logger = logging.getLogger(__name__)


def _parse_error(content: bytes) -> tuple[str | None, str]:
    if not content:
        return None, ""
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError:
        return None, content.decode(errors="replace")
    return root.findtext("Code"), root.findtext("Message") or ""


def _store_error(response: Response, key: str) -> StoreError:
    code, message = _parse_error(response.content)
    if code == "NoSuchKey" or (code is None and response.status_code == 404):
        return NoSuchKey(key, response.status_code)
    return StoreError(code or response.reason_phrase, message, response.status_code)


def _last_modified(response: Response) -> datetime:
    value = response.headers.get("Last-Modified")
    if not value:
        return EPOCH
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return EPOCH
    if parsed.tzinfo is None:
        # "-0000" means UTC with no zone information
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _total(response: Response, key: str) -> int:
    # "bytes 0-0/1234" on a 206, "bytes */0" on a 416 for an empty object,
    # no Content-Range at all when the server ignored the range
    content_range = response.headers.get("Content-Range")
    if not content_range:
        return int(response.headers["Content-Length"])
    total = content_range.rpartition("/")[2].strip()
    if not total.isdigit():
        raise StoreError("UnknownSize", f"no object size in Content-Range {content_range!r} for {key}", response.status_code)
    return int(total)


@dataclass
class S3Storage(StorageBackend):
    client: AsyncClient
    access_key_id: str
    access_key_secret: str
    region: str
    endpoint: str | None = None

    @classmethod
    @asynccontextmanager
    async def connect(cls, access_key_id: str, access_key_secret: str, region: str, endpoint: str | None = None) -> AsyncIterator[S3Storage]:
        async with AsyncClient() as client:
            try:
                yield cls(client, access_key_id, access_key_secret, region, endpoint)
            finally:
                await client.aclose()

    def _get_client(self, bucket: str) -> S3Client:
        return S3Client(
            self.client,
            S3Config(
                aws_access_key=self.access_key_id,
                aws_secret_key=self.access_key_secret,
                aws_region=self.region,
                aws_s3_bucket=bucket,
                aws_host=self.endpoint,
            ),
        )

    async def get(self, namespace: str, key: str, range: ByteRange | None = None) -> ObjectStream:
        client = self._get_client(namespace)
        url = client.signed_download_url(key)
        headers: dict[str, str] = {}
        if range is not None:
            headers["Range"] = range.header()
        logger.debug("GET %s/%s range=%s", namespace, key, headers.get("Range"))
        request = self.client.build_request("GET", url, headers=headers)
        response = await self.client.send(request, stream=True)
        if response.is_error:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise _store_error(response, key)
        content_length = int(response.headers.get("Content-Length", 0))
        return ObjectStream(body=response, content_length=content_length, last_modified=_last_modified(response))

    async def head(self, namespace: str, key: str) -> ObjectMetadata:
        # presigned URLs are method bound, so ask for the first byte and read
        # the object size back from Content-Range
        client = self._get_client(namespace)
        url = client.signed_download_url(key)
        response = await self.client.get(url, headers={"Range": "bytes=0-0"})
        if response.status_code == 416 and "Content-Range" in response.headers:
            return ObjectMetadata(etag=response.headers.get("ETag", ""), total=_total(response, key))
        if response.is_error:
            raise _store_error(response, key)
        return ObjectMetadata(etag=response.headers.get("ETag", ""), total=_total(response, key))
