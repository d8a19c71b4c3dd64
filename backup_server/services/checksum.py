"""
Streaming SHA-256 checksums.

Both the inline path (tapping bytes while they are written to disk) and the
post-hoc path (re-reading a finished file) feed the same ``ChecksumStream``,
so identical content always yields identical digests. Memory use is bounded
by the size of a single block.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, Iterable, Union
import aiofiles

DEFAULT_READ_SIZE = 1024 * 1024  # 1MB


@dataclass(frozen=True)
class ChecksumResult:
    checksum: str
    size: int


class ChecksumStream:
    """
    Incremental SHA-256 accumulator that also counts bytes.
    """

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._size = 0
        self._finalized = False

    @property
    def size(self) -> int:
        return self._size

    def update(self, data: bytes) -> None:
        if self._finalized:
            raise ValueError("Cannot update a finalized checksum")
        self._hasher.update(data)
        self._size += len(data)

    def finalize(self) -> ChecksumResult:
        self._finalized = True
        return ChecksumResult(checksum=self._hasher.hexdigest(), size=self._size)


def checksum_bytes(data: Union[bytes, Iterable[bytes]]) -> ChecksumResult:
    """
    Checksum an in-memory byte string or an iterable of byte blocks.
    """
    stream = ChecksumStream()
    if isinstance(data, (bytes, bytearray, memoryview)):
        stream.update(bytes(data))
    else:
        for block in data:
            stream.update(block)
    return stream.finalize()


async def checksum_file(path: Path, read_size: int = DEFAULT_READ_SIZE) -> ChecksumResult:
    """
    Compute the checksum and size of a file on disk without loading it into memory.

    Any read error propagates; no digest is produced for a partial read.
    """
    stream = ChecksumStream()
    async with aiofiles.open(path, "rb") as f:
        while True:
            block = await f.read(read_size)
            if not block:
                break
            stream.update(block)
    return stream.finalize()


async def stream_to_file(source: AsyncIterable[bytes], dest: Path) -> ChecksumResult:
    """
    Write an async byte stream to ``dest`` while hashing and counting it.
    """
    stream = ChecksumStream()
    async with aiofiles.open(dest, "wb") as out_file:
        async for block in source:
            if not block:
                continue
            await out_file.write(block)
            stream.update(block)
    return stream.finalize()


async def iter_file(path: Path, read_size: int = DEFAULT_READ_SIZE):
    """
    Yield a file's content in blocks of at most ``read_size`` bytes.
    """
    async with aiofiles.open(path, "rb") as f:
        while True:
            block = await f.read(read_size)
            if not block:
                break
            yield block
