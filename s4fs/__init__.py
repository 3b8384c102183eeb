from s4fs.fs import EndOfStream, File, FileStat, FileSystem, Opener, RangedFileSystem, ShortRead, base_name
from s4fs.storage import ByteRange, NoSuchKey, StorageBackend, StoreError

__all__ = [
    "ByteRange",
    "EndOfStream",
    "File",
    "FileStat",
    "FileSystem",
    "NoSuchKey",
    "Opener",
    "RangedFileSystem",
    "ShortRead",
    "StorageBackend",
    "StoreError",
    "base_name",
]
