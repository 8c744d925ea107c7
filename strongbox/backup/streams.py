"""
Adapters between iterators of byte blocks and file-like objects.

Pipeline stages are generators that consume and produce byte blocks; the
parsers and the chunker read from file-like objects.
"""

import io
from typing import BinaryIO, Iterable, Iterator, Union

DEFAULT_BLOCK_SIZE = 64 * 1024


class IterStream(io.RawIOBase):
    """Read-only raw stream over an iterator of bytes."""

    def __init__(self, blocks: Iterable[bytes]):
        self._blocks = iter(blocks)
        self._pending = b''

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._blocks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def as_reader(source: Union[BinaryIO, Iterable[bytes], bytes]) -> BinaryIO:
    """Return a buffered binary reader for a file object, bytes or block iterator."""
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source)
    if hasattr(source, 'read'):
        return source
    return io.BufferedReader(IterStream(source), buffer_size=DEFAULT_BLOCK_SIZE)


def iter_blocks(source: Union[BinaryIO, Iterable[bytes], bytes],
                block_size: int = DEFAULT_BLOCK_SIZE) -> Iterator[bytes]:
    """Yield blocks from a file object, bytes or another block iterator."""
    if isinstance(source, (bytes, bytearray)):
        for offset in range(0, len(source), block_size):
            yield bytes(source[offset:offset + block_size])
        return
    if hasattr(source, 'read'):
        while True:
            block = source.read(block_size)
            if not block:
                return
            yield block
    else:
        yield from source


def read_exact(reader: BinaryIO, size: int) -> bytes:
    """Read exactly size bytes, returning fewer only at end of stream."""
    parts = []
    remaining = size
    while remaining > 0:
        block = reader.read(remaining)
        if not block:
            break
        parts.append(block)
        remaining -= len(block)
    return b''.join(parts)
