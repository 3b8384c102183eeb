from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import md5

from s4fs.storage import ByteRange, NoSuchKey, ObjectMetadata, ObjectStream, StorageBackend, StoreError


@dataclass
class Object:
    body: bytes
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class MemoryBody:
    data: bytes
    chunk_size: int = 4
    closed: bool = False

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        for offset in range(0, len(self.data), self.chunk_size):
            if self.closed:
                raise RuntimeError("body is closed")
            yield self.data[offset : offset + self.chunk_size]

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class InMemoryBackend(StorageBackend):
    storage: dict[str, dict[str, Object]] = field(
        default_factory=lambda: defaultdict(dict)
    )
    # small chunks so reads cross chunk boundaries
    chunk_size: int = 4
    # handed out bodies for tests to check, closed ones are dropped on the next get
    bodies: list[MemoryBody] = field(default_factory=list)

    def _lookup(self, namespace: str, key: str) -> Object:
        try:
            return self.storage[namespace][key]
        except KeyError:
            raise NoSuchKey(key) from None

    async def put(self, namespace: str, key: str, body: bytes) -> None:
        self.storage[namespace][key] = Object(body=body)

    async def get(self, namespace: str, key: str, range: ByteRange | None = None) -> ObjectStream:
        obj = self._lookup(namespace, key)
        data = obj.body
        if range is not None:
            if range.start >= len(data):
                raise StoreError("InvalidRange", "The requested range is not satisfiable", 416)
            data = data[range.start : range.end + 1]
        body = MemoryBody(data, chunk_size=self.chunk_size)
        self.bodies = [open_body for open_body in self.bodies if not open_body.closed]
        self.bodies.append(body)
        return ObjectStream(body=body, content_length=len(data), last_modified=obj.last_modified)

    async def head(self, namespace: str, key: str) -> ObjectMetadata:
        obj = self._lookup(namespace, key)
        return ObjectMetadata(total=len(obj.body), etag=md5(obj.body).hexdigest())
