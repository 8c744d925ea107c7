"""
Streaming compression for backup archives.

Supports multiple formats:
- gzip: DEFLATE with a gzip wrapper (default)
- bzip2: Bzip2
- xz: LZMA/xz
- none: Pass-through

Compressors work block by block so memory use is bounded by the block size,
not by the archive size.
"""

import bz2
import lzma
import zlib
from datetime import datetime
from typing import Iterable, Iterator, Optional

from .errors import CompressionError

# gzip container, as opposed to a raw zlib stream
GZIP_WBITS = 16 + zlib.MAX_WBITS

EXTENSION_MAP = {
    'gzip': 'gz',
    'bzip2': 'bz2',
    'xz': 'xz',
    'none': None,
}

_CODEC_ERRORS = (zlib.error, lzma.LZMAError, OSError, ValueError, EOFError)


def _make_compressor(compression_format: str, level: int):
    if compression_format == 'gzip':
        return zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)
    if compression_format == 'bzip2':
        return bz2.BZ2Compressor(level)
    if compression_format == 'xz':
        return lzma.LZMACompressor(format=lzma.FORMAT_XZ, preset=level)
    raise ValueError(
        f"Invalid compression format: {compression_format}. "
        f"Valid options: {list(EXTENSION_MAP.keys())}"
    )


def _make_decompressor(compression_format: str):
    if compression_format == 'gzip':
        return zlib.decompressobj(GZIP_WBITS)
    if compression_format == 'bzip2':
        return bz2.BZ2Decompressor()
    if compression_format == 'xz':
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
    raise ValueError(
        f"Invalid compression format: {compression_format}. "
        f"Valid options: {list(EXTENSION_MAP.keys())}"
    )


def compress_stream(
    blocks: Iterable[bytes],
    compression_format: str = 'gzip',
    level: int = 6
) -> Iterator[bytes]:
    """
    Compress a stream of byte blocks.

    Args:
        blocks: Input byte blocks
        compression_format: Format to use ('gzip', 'bzip2', 'xz', 'none')
        level: Effort level, 1 (fastest) to 9 (smallest)

    Returns:
        Iterator of compressed blocks

    Raises:
        CompressionError: If the codec fails mid-stream
        ValueError: If compression_format is invalid
    """
    if compression_format == 'none':
        return (block for block in blocks if block)

    if not 1 <= level <= 9:
        raise ValueError(f"Compression level must be 1-9, got {level}")

    compressor = _make_compressor(compression_format, level)
    return _run_codec(blocks, compressor.compress, compressor.flush)


def _run_codec(blocks, process, flush) -> Iterator[bytes]:
    try:
        for block in blocks:
            output = process(block)
            if output:
                yield output
        tail = flush()
        if tail:
            yield tail
    except _CODEC_ERRORS as e:
        raise CompressionError(f"Compression failed: {e}") from e


def decompress_stream(blocks: Iterable[bytes], compression_format: str = 'gzip') -> Iterator[bytes]:
    """
    Decompress a stream produced by compress_stream().

    Raises:
        CompressionError: If the stream is corrupt or truncated
    """
    if compression_format == 'none':
        yield from blocks
        return

    decompressor = _make_decompressor(compression_format)
    try:
        for block in blocks:
            if not block:
                continue
            if decompressor.eof:
                raise CompressionError("Trailing data after end of compressed stream")
            output = decompressor.decompress(block)
            if output:
                yield output
        if compression_format == 'gzip':
            tail = decompressor.flush()
            if tail:
                yield tail
    except _CODEC_ERRORS as e:
        raise CompressionError(f"Decompression failed: {e}") from e

    if not decompressor.eof:
        raise CompressionError("Compressed stream is truncated")
    if decompressor.unused_data:
        raise CompressionError("Trailing data after end of compressed stream")


def generate_archive_filename(model_name: str, compression_format: str, encrypted: bool = False) -> str:
    """
    Generate a standardized archive object name.

    Format: {model_name}.sbxa[.{ext}][.enc]

    Args:
        model_name: Name of the backup model
        compression_format: Compression format
        encrypted: Whether the payload is encrypted

    Returns:
        Filename (without path)
    """
    # Sanitize model name (replace spaces and special chars with underscores)
    safe_name = sanitize_name(model_name)

    filename = f"{safe_name}.sbxa"
    extension = EXTENSION_MAP.get(compression_format)
    if extension:
        filename += f".{extension}"
    if encrypted:
        filename += ".enc"
    return filename


def sanitize_name(name: str) -> str:
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )


def generate_run_id(now: Optional[datetime] = None) -> str:
    """Run identifier, sortable and filesystem-safe: YYYY.MM.DD.HH.MM.SS"""
    return (now or datetime.utcnow()).strftime('%Y.%m.%d.%H.%M.%S')
