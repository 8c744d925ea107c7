"""
Splits the final encrypted stream into fixed-size sequential chunks.
"""

from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, Union

from .errors import ChunkSequenceError
from .streams import as_reader, read_exact


@dataclass
class Chunk:
    sequence_number: int
    payload: bytes
    is_final: bool = False


def split(stream: Union[BinaryIO, Iterable[bytes], bytes], chunk_size: int) -> Iterator[Chunk]:
    """
    Split a stream into chunks of chunk_size bytes.

    Reads one chunk ahead so the last chunk can be flagged final. An empty
    stream produces a single zero-byte final chunk.

    Args:
        stream: File object, bytes or block iterator (consumed once)
        chunk_size: Chunk size in bytes

    Returns:
        Iterator of Chunk with sequence numbers 0, 1, 2, ...
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    reader = as_reader(stream)
    sequence_number = 0
    current = read_exact(reader, chunk_size)

    while True:
        following = read_exact(reader, chunk_size) if len(current) == chunk_size else b''
        if not following:
            yield Chunk(sequence_number, current, is_final=True)
            return
        yield Chunk(sequence_number, current, is_final=False)
        sequence_number += 1
        current = following


def count_chunks(total_bytes: int, chunk_size: int) -> int:
    """Number of chunks split() produces for a stream of total_bytes."""
    if total_bytes <= 0:
        return 1
    return -(-total_bytes // chunk_size)


def ensure_contiguous(chunks: Iterable[Chunk]) -> Iterator[Chunk]:
    """
    Pass chunks through, checking sequence numbers run 0, 1, 2, ... and
    that nothing follows the final chunk.

    Raises:
        ChunkSequenceError: On a gap, repeat, reorder or missing final chunk
    """
    expected = 0
    finished = False
    for chunk in chunks:
        if finished:
            raise ChunkSequenceError(f"Chunk {chunk.sequence_number} follows the final chunk")
        if chunk.sequence_number != expected:
            raise ChunkSequenceError(
                f"Expected chunk {expected}, got {chunk.sequence_number}"
            )
        finished = chunk.is_final
        expected += 1
        yield chunk

    if not finished:
        raise ChunkSequenceError(f"Stream ended after chunk {expected - 1} without a final chunk")
