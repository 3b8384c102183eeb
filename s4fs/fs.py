"""Remote objects exposed through a small file contract.

``FileSystem`` and ``RangedFileSystem`` turn a GET against an object store
into a ``File``: something an HTTP file server can ``stat``, ``read`` and
``close`` as if it were on local disk.

Only the final path component of a name is used as the object key, so
``"a/report.csv"`` and ``"b/report.csv"`` both address the key
``"report.csv"``. The bucket is a flat namespace.
"""
from __future__ import annotations

import errno
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Protocol

import anyio

from s4fs.storage import Body, ByteRange, NoSuchKey, ObjectStream, StorageBackend

logger = logging.getLogger(__name__)

# owner read/write, everyone else read only
FILE_MODE = 0o644


class EndOfStream(EOFError):
    """The remote stream ended before a read could start."""


class ShortRead(EndOfStream):
    """The remote stream ended part way through filling a buffer."""

    def __init__(self, nbytes: int, expected: int) -> None:
        super().__init__(f"stream ended after {nbytes} of {expected} bytes")
        self.nbytes = nbytes
        self.expected = expected


def base_name(name: str) -> str:
    """Return the last path element of ``name``, ignoring trailing slashes."""
    if not name:
        return "."
    stripped = name.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class FileStat:
    name: str
    size: int
    mtime: datetime
    mode: int = FILE_MODE

    @property
    def is_dir(self) -> bool:
        return False

    @property
    def sys(self) -> None:
        return None


class File:
    """A read only, forward only view of one remote object.

    Not safe for concurrent use. Closing more than once is harmless.
    """

    def __init__(self, stat: FileStat, body: Body) -> None:
        self._stat = stat
        self._body = body
        self._chunks: AsyncIterator[bytes] | None = None
        self._pending = b""
        self._closed = False

    async def _next_chunk(self) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending, b""
            return chunk
        if self._chunks is None:
            self._chunks = self._body.aiter_raw()
        while True:
            chunk = await self._chunks.__anext__()
            if chunk:
                return chunk

    async def readinto(self, buffer: bytearray | memoryview) -> int:
        """Fill all of ``buffer`` from the stream.

        Raises ``EndOfStream`` if nothing was left to read and ``ShortRead``
        if the stream ran out before the buffer was full.
        """
        view = memoryview(buffer).cast("B")
        filled = 0
        while filled < len(view):
            try:
                chunk = await self._next_chunk()
            except StopAsyncIteration:
                if filled == 0:
                    raise EndOfStream("end of stream") from None
                raise ShortRead(filled, len(view)) from None
            take = min(len(chunk), len(view) - filled)
            view[filled : filled + take] = chunk[:take]
            self._pending = chunk[take:]
            filled += take
        return filled

    async def read(self, size: int) -> bytes:
        buffer = bytearray(size)
        await self.readinto(buffer)
        return bytes(buffer)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        return await self._next_chunk()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        # Seeking would mean buffering the whole object. Open the object again
        # through a RangedFileSystem to read from somewhere else.
        return 0

    def readdir(self, count: int = -1) -> list[FileStat]:
        return []

    def stat(self) -> FileStat:
        return self._stat

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._body.aclose()

    async def __aenter__(self) -> File:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class Opener(Protocol):
    async def open(self, name: str) -> File: ...


async def _get(store: StorageBackend, bucket: str, key: str, range: ByteRange | None = None) -> ObjectStream:
    try:
        return await store.get(bucket, key, range=range)
    except NoSuchKey as exc:
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), key) from exc


@dataclass
class FileSystem(Opener):
    """Opens whole objects from ``bucket``."""

    store: StorageBackend
    bucket: str

    async def open(self, name: str) -> File:
        key = base_name(name)
        logger.debug("opening %s/%s", self.bucket, key)
        obj = await _get(self.store, self.bucket, key)
        stat = FileStat(name=key, size=obj.content_length, mtime=obj.last_modified)
        return File(stat, obj.body)


@dataclass
class RangedFileSystem(Opener):
    """Opens the fixed byte range ``range`` of objects from ``bucket``.

    ``File.stat().size`` is the size of the whole object, not of the range,
    so callers can build ``Content-Range`` headers. If the size cannot be
    looked up it is reported as 0 and the open still succeeds.

    The range is part of the file system, so serving different ranges
    (one per HTTP request, for example) needs one instance per range.
    """

    store: StorageBackend
    bucket: str
    range: ByteRange

    async def _size(self, key: str) -> int:
        try:
            metadata = await self.store.head(self.bucket, key)
        except Exception:
            logger.warning("could not look up size of %s/%s, reporting 0", self.bucket, key, exc_info=True)
            return 0
        return metadata.total

    async def open(self, name: str) -> File:
        key = base_name(name)
        logger.debug("opening %s/%s (%s)", self.bucket, key, self.range.header())
        obj = await _get(self.store, self.bucket, key, self.range)
        try:
            size = await self._size(key)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await obj.body.aclose()
            raise
        stat = FileStat(name=key, size=size, mtime=obj.last_modified)
        return File(stat, obj.body)
