from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class ByteRange:
    """An inclusive byte range, rendered as ``bytes=start-end``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError(f"range start must be >= 0, got {self.start}")
        if self.end < self.start:
            raise ValueError(f"range end {self.end} is before start {self.start}")

    def __len__(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        return f"bytes={self.start}-{self.end}"


class Body(Protocol):
    """A single pass stream of object content as stored (``httpx.Response`` satisfies this).

    ``aiter_raw`` yields the bytes without undoing any ``Content-Encoding``, so
    they add up to the declared content length.
    """

    def aiter_raw(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


@dataclass
class ObjectStream:
    body: Body
    content_length: int
    last_modified: datetime = EPOCH


@dataclass
class ObjectMetadata:
    etag: str
    total: int


class StoreError(Exception):
    """An error reported by the object store itself."""

    def __init__(self, code: str, message: str = "", status_code: int | None = None) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message
        self.status_code = status_code


class NoSuchKey(StoreError):
    def __init__(self, key: str, status_code: int | None = 404) -> None:
        super().__init__("NoSuchKey", f"The specified key does not exist: {key}", status_code)
        self.key = key


class StorageBackend(Protocol):
    async def get(self, namespace: str, key: str, range: ByteRange | None = None) -> ObjectStream: ...

    async def head(self, namespace: str, key: str) -> ObjectMetadata: ...
