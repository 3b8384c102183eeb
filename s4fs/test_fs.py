import errno
import os

import anyio
import httpx
import pytest

from s4fs.fs import EndOfStream, FileSystem, RangedFileSystem, ShortRead, base_name
from s4fs.storage import ByteRange, NoSuchKey, ObjectMetadata, StoreError
from s4fs.storage.memory import InMemoryBackend

CONTENT = b"Hello, World! This object is served from a bucket."


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def store() -> InMemoryBackend:
    store = InMemoryBackend()
    await store.put("bucket", "hello.txt", CONTENT)
    await store.put("bucket", "empty.txt", b"")
    return store


class FailingHeadBackend(InMemoryBackend):
    async def head(self, namespace: str, key: str) -> ObjectMetadata:
        raise httpx.ConnectError("connection refused")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("hello.txt", "hello.txt"),
        ("/some/dir/hello.txt", "hello.txt"),
        ("dir/hello.txt/", "hello.txt"),
        ("", "."),
        ("///", "/"),
    ],
)
def test_base_name(name: str, expected: str) -> None:
    assert base_name(name) == expected


def test_byte_range_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError):
        ByteRange(start=-1, end=3)
    with pytest.raises(ValueError):
        ByteRange(start=5, end=4)
    assert ByteRange(start=3, end=3).header() == "bytes=3-3"
    assert len(ByteRange(start=2, end=9)) == 8


@pytest.mark.anyio
async def test_stat_uses_base_name_and_content_length(store: InMemoryBackend) -> None:
    fs = FileSystem(store, "bucket")
    async with await fs.open("/nested/path/hello.txt") as f:
        stat = f.stat()
        assert stat.name == "hello.txt"
        assert stat.size == len(CONTENT)
        assert stat.mode == 0o644
        assert stat.is_dir is False
        assert stat.sys is None
        assert stat.mtime == store.storage["bucket"]["hello.txt"].last_modified


@pytest.mark.anyio
async def test_directory_prefixes_share_one_key(store: InMemoryBackend) -> None:
    fs = FileSystem(store, "bucket")
    a = await fs.open("a/hello.txt")
    b = await fs.open("b/hello.txt")
    assert await a.read(len(CONTENT)) == await b.read(len(CONTENT))
    await a.close()
    await b.close()


@pytest.mark.anyio
async def test_read_fills_buffer(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    buffer = bytearray(len(CONTENT))
    assert await f.readinto(buffer) == len(CONTENT)
    assert bytes(buffer) == CONTENT
    with pytest.raises(EndOfStream) as exc_info:
        await f.readinto(bytearray(1))
    assert not isinstance(exc_info.value, ShortRead)
    await f.close()


@pytest.mark.anyio
async def test_read_across_chunks(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    # 4 byte chunks, reads of 3 bytes split them
    assert await f.read(3) == CONTENT[:3]
    assert await f.read(3) == CONTENT[3:6]
    assert await f.read(10) == CONTENT[6:16]
    await f.close()


@pytest.mark.anyio
async def test_read_past_end_is_a_short_read(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    buffer = bytearray(len(CONTENT) + 10)
    with pytest.raises(ShortRead) as exc_info:
        await f.readinto(buffer)
    assert exc_info.value.nbytes == len(CONTENT)
    assert exc_info.value.expected == len(CONTENT) + 10
    assert isinstance(exc_info.value, EOFError)
    assert bytes(buffer[: len(CONTENT)]) == CONTENT
    await f.close()


@pytest.mark.anyio
async def test_empty_buffer_reads_nothing(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("empty.txt")
    assert await f.readinto(bytearray()) == 0
    with pytest.raises(EndOfStream):
        await f.read(1)
    await f.close()


@pytest.mark.anyio
@pytest.mark.parametrize("offset,whence", [(0, os.SEEK_SET), (10, os.SEEK_SET), (-5, os.SEEK_END), (3, os.SEEK_CUR)])
async def test_seek_is_a_no_op(store: InMemoryBackend, offset: int, whence: int) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    assert await f.read(5) == CONTENT[:5]
    assert f.seek(offset, whence) == 0
    assert await f.read(5) == CONTENT[5:10]
    await f.close()


@pytest.mark.anyio
@pytest.mark.parametrize("count", [-1, 0, 1, 100])
async def test_readdir_is_empty(store: InMemoryBackend, count: int) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    assert f.readdir(count) == []
    await f.close()


@pytest.mark.anyio
async def test_iterate_chunks(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    assert await f.read(2) == CONTENT[:2]
    chunks = [chunk async for chunk in f]
    assert b"".join(chunks) == CONTENT[2:]
    await f.close()


@pytest.mark.anyio
async def test_close_releases_body(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    body = store.bodies[-1]
    assert not body.closed
    await f.close()
    assert body.closed


@pytest.mark.anyio
async def test_missing_key_is_file_not_found(store: InMemoryBackend) -> None:
    for fs in (FileSystem(store, "bucket"), RangedFileSystem(store, "bucket", ByteRange(0, 3))):
        with pytest.raises(FileNotFoundError) as exc_info:
            await fs.open("dir/missing.txt")
        assert exc_info.value.errno == errno.ENOENT
        assert exc_info.value.filename == "missing.txt"
        assert isinstance(exc_info.value.__cause__, NoSuchKey)


@pytest.mark.anyio
async def test_other_store_errors_pass_through() -> None:
    error = StoreError("AccessDenied", "Access Denied", 403)

    class DenyingBackend(InMemoryBackend):
        async def get(self, namespace, key, range=None):  # type: ignore[no-untyped-def]
            raise error

    with pytest.raises(StoreError) as exc_info:
        await FileSystem(DenyingBackend(), "bucket").open("hello.txt")
    assert exc_info.value is error
    assert not isinstance(exc_info.value, FileNotFoundError)


@pytest.mark.anyio
async def test_transport_errors_pass_through() -> None:
    class OfflineBackend(InMemoryBackend):
        async def get(self, namespace, key, range=None):  # type: ignore[no-untyped-def]
            raise httpx.ConnectError("connection refused")

    with pytest.raises(httpx.ConnectError):
        await FileSystem(OfflineBackend(), "bucket").open("hello.txt")


@pytest.mark.anyio
async def test_ranged_stat_reports_full_size(store: InMemoryBackend) -> None:
    fs = RangedFileSystem(store, "bucket", ByteRange(start=7, end=11))
    f = await fs.open("files/hello.txt")
    stat = f.stat()
    assert stat.name == "hello.txt"
    assert stat.size == len(CONTENT)
    assert stat.size != 11 - 7 + 1
    assert await f.read(5) == b"World"
    with pytest.raises(EndOfStream):
        await f.read(1)
    await f.close()


@pytest.mark.anyio
async def test_ranged_size_lookup_failure_reports_zero() -> None:
    store = FailingHeadBackend()
    await store.put("bucket", "hello.txt", CONTENT)
    f = await RangedFileSystem(store, "bucket", ByteRange(start=0, end=4)).open("hello.txt")
    assert f.stat().size == 0
    assert await f.read(5) == b"Hello"
    await f.close()


@pytest.mark.anyio
async def test_ranged_range_past_end_is_clamped(store: InMemoryBackend) -> None:
    f = await RangedFileSystem(store, "bucket", ByteRange(start=40, end=1000)).open("hello.txt")
    chunks = [chunk async for chunk in f]
    assert b"".join(chunks) == CONTENT[40:]
    await f.close()


@pytest.mark.anyio
async def test_independent_handles(store: InMemoryBackend) -> None:
    plain = FileSystem(store, "bucket")
    ranged = RangedFileSystem(store, "bucket", ByteRange(start=0, end=4))
    a = await plain.open("hello.txt")
    b = await plain.open("hello.txt")
    c = await ranged.open("hello.txt")

    assert await a.read(3) == CONTENT[:3]
    await b.close()
    assert await a.read(3) == CONTENT[3:6]
    assert await c.read(5) == CONTENT[:5]
    await a.close()
    await c.close()


@pytest.mark.anyio
async def test_concurrent_opens(store: InMemoryBackend) -> None:
    fs = FileSystem(store, "bucket")
    results: list[bytes] = []

    async def fetch() -> None:
        async with await fs.open("hello.txt") as f:
            results.append(await f.read(len(CONTENT)))

    async with anyio.create_task_group() as tg:
        for _ in range(8):
            tg.start_soon(fetch)
    assert results == [CONTENT] * 8



@pytest.mark.anyio
async def test_close_twice(store: InMemoryBackend) -> None:
    f = await FileSystem(store, "bucket").open("hello.txt")
    await f.close()
    await f.close()
    assert store.bodies[-1].closed


class Interrupted(BaseException):
    pass


@pytest.mark.anyio
async def test_ranged_open_interrupted_during_size_lookup_closes_body() -> None:
    class InterruptedHeadBackend(InMemoryBackend):
        async def head(self, namespace: str, key: str) -> ObjectMetadata:
            raise Interrupted()

    store = InterruptedHeadBackend()
    await store.put("bucket", "hello.txt", CONTENT)
    with pytest.raises(Interrupted):
        await RangedFileSystem(store, "bucket", ByteRange(start=0, end=4)).open("hello.txt")
    assert len(store.bodies) == 1
    assert store.bodies[0].closed


@pytest.mark.anyio
async def test_closed_bodies_are_not_kept(store: InMemoryBackend) -> None:
    fs = FileSystem(store, "bucket")
    for _ in range(5):
        f = await fs.open("hello.txt")
        await f.close()
    still_open = await fs.open("hello.txt")
    assert len(store.bodies) == 1
    assert not store.bodies[0].closed
    await still_open.close()
