import logging
import mimetypes
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import timezone
from email.utils import format_datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Header, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from s4fs.depends import Injected
from s4fs.fs import File, FileStat, FileSystem, Opener, RangedFileSystem
from s4fs.storage import ByteRange, StorageBackend, StoreError

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class Config:
    bucket: str


@router.get("/health")
async def health() -> Response:
    return Response(status_code=200)


def range_from_header(range: Annotated[str | None, Header()] = None) -> ByteRange | None:
    """Parse a single closed ``bytes=start-end`` range.

    Suffix, open ended and multi part ranges are ignored and the whole
    object is served instead, which HTTP allows.
    """
    if range is None:
        return None
    if not range.startswith("bytes="):
        raise HTTPException(status_code=400, detail="Invalid range header")
    spec = range[6:].strip()
    if "," in spec:
        return None
    start, sep, end = spec.partition("-")
    start, end = start.strip(), end.strip()
    if not sep or not all(part.isdigit() for part in (start, end) if part):
        raise HTTPException(status_code=400, detail="Invalid range header")
    if not start or not end or int(end) < int(start):
        return None
    return ByteRange(start=int(start), end=int(end))


async def open_file(fs: Opener, name: str) -> File:
    try:
        return await fs.open(name)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Not Found") from None
    except StoreError as exc:
        if exc.status_code == 416:
            raise HTTPException(status_code=416, detail=exc.message or exc.code) from exc
        logger.error("store error opening %s: %s", name, exc)
        raise HTTPException(status_code=502, detail=exc.code) from exc


def file_headers(stat: FileStat) -> dict[str, str]:
    return {
        "Last-Modified": format_datetime(stat.mtime.astimezone(timezone.utc), usegmt=True),
        "Accept-Ranges": "bytes",
    }


def media_type(stat: FileStat) -> str:
    return mimetypes.guess_type(stat.name)[0] or "application/octet-stream"


async def stream(file: File) -> AsyncIterator[bytes]:
    # also closed by the response background task if streaming never starts
    try:
        async for chunk in file:
            yield chunk
    finally:
        await file.close()


@router.get("/files/{name:path}")
async def download_file(
    name: str,
    store: Injected[StorageBackend],
    config: Injected[Config],
    range: Annotated[ByteRange | None, Depends(range_from_header)],
) -> Response:
    if range is None:
        file = await open_file(FileSystem(store, config.bucket), name)
        stat = file.stat()
        headers = file_headers(stat)
        headers["Content-Length"] = str(stat.size)
        return StreamingResponse(
            stream(file), headers=headers, media_type=media_type(stat), background=BackgroundTask(file.close)
        )

    # one file system per range
    file = await open_file(RangedFileSystem(store, config.bucket, range), name)
    stat = file.stat()
    headers = file_headers(stat)
    if stat.size:
        end = min(range.end, stat.size - 1)
        headers["Content-Range"] = f"bytes {range.start}-{end}/{stat.size}"
        headers["Content-Length"] = str(end - range.start + 1)
    else:
        # total size unknown
        headers["Content-Range"] = f"bytes {range.start}-{range.end}/*"
    return StreamingResponse(
        stream(file),
        status_code=206,
        headers=headers,
        media_type=media_type(stat),
        background=BackgroundTask(file.close),
    )


@router.head("/files/{name:path}")
async def head_file(
    name: str,
    store: Injected[StorageBackend],
    config: Injected[Config],
) -> Response:
    file = await open_file(FileSystem(store, config.bucket), name)
    await file.close()
    stat = file.stat()
    headers = file_headers(stat)
    headers["Content-Length"] = str(stat.size)
    return Response(headers=headers, media_type=media_type(stat))
