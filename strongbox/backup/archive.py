"""
Archive container format.

A Strongbox archive is a single self-delimiting stream:

    preamble   b'SBXA' + version byte
    entry*     fixed-size header record + UTF-8 path + body
    trailer    header record with the b'EZ' marker

Header record (big-endian): marker (2s), kind (B), flags (B), mode (I),
size (q), mtime (d), path length (H).

Bodies of entries with a known size are exactly `size` raw bytes. Entries
whose size is unknown up front (command output) set FLAG_FRAMED and are
written as 4-byte length-prefixed frames ending with a zero-length frame.
"""

import os
import struct
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import ArchiveError, MandatorySourceMissing, SourceError, SourceUnavailable
from .sources import ArchiveEntry, EntryKind
from .streams import as_reader, read_exact

logger = logging.getLogger(__name__)

MAGIC = b'SBXA'
VERSION = 1
PREAMBLE = MAGIC + bytes([VERSION])

ENTRY_MARKER = b'EH'
TRAILER_MARKER = b'EZ'

HEADER = struct.Struct('>2sBBIqdH')
FRAME = struct.Struct('>I')

FLAG_FRAMED = 0x01

MAX_PATH_BYTES = 0xFFFF


@dataclass
class ArchiveMember:
    """An entry as read back from an archive."""
    logical_path: str
    kind: EntryKind
    size: Optional[int]
    mode: int
    mtime: float
    data: bytes = b''


def _header(entry: ArchiveEntry, size: Optional[int]) -> bytes:
    path_bytes = entry.logical_path.encode('utf-8')
    if len(path_bytes) > MAX_PATH_BYTES:
        raise ArchiveError(f"Path too long for archive header: {entry.logical_path[:80]}...")
    flags = FLAG_FRAMED if size is None else 0
    return HEADER.pack(
        ENTRY_MARKER,
        entry.kind.value,
        flags,
        entry.mode & 0xFFFFFFFF,
        -1 if size is None else size,
        float(entry.mtime),
        len(path_bytes),
    ) + path_bytes


def _trailer() -> bytes:
    return HEADER.pack(TRAILER_MARKER, 0, 0, 0, 0, 0.0, 0)


class ArchiveBuilder:
    """
    Concatenates archive entries into a single container stream.

    Missing optional sources are skipped and recorded in `warnings`.
    """

    def __init__(self):
        self.warnings: List[str] = []
        self.entries_written = 0
        self.entries_skipped = 0

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def build(self, entries: Iterable[ArchiveEntry]) -> Iterator[bytes]:
        """
        Generate the archive stream for the given entries, in order.

        Raises:
            MandatorySourceMissing: If a mandatory entry cannot be opened
            ArchiveError: If an entry cannot be read
        """
        yield PREAMBLE

        for entry in entries:
            if entry.kind == EntryKind.DIRECTORY or entry.byte_source is None:
                yield _header(entry, 0)
                self.entries_written += 1
                continue

            try:
                blocks = iter(entry.byte_source())
                first = next(blocks, None)
            except (OSError, SourceUnavailable) as e:
                if entry.mandatory:
                    raise MandatorySourceMissing(f"Cannot read {entry.logical_path}: {e}")
                self._warn(f"Source unavailable: {entry.logical_path} ({e}), skipping")
                self.entries_skipped += 1
                continue
            except SourceError as e:
                raise ArchiveError(str(e)) from e

            try:
                if entry.kind == EntryKind.COMMAND_OUTPUT or entry.size_hint is None:
                    yield _header(entry, None)
                    yield from self._framed_body(first, blocks)
                else:
                    yield _header(entry, entry.size_hint)
                    yield from self._sized_body(entry, first, blocks)
            except SourceError as e:
                raise ArchiveError(str(e)) from e
            except OSError as e:
                raise ArchiveError(f"Failed to read {entry.logical_path}: {e}") from e

            self.entries_written += 1

        yield _trailer()

    def _framed_body(self, first: Optional[bytes], blocks: Iterator[bytes]) -> Iterator[bytes]:
        if first is not None:
            for block in _chain(first, blocks):
                if block:
                    yield FRAME.pack(len(block)) + block
        yield FRAME.pack(0)

    def _sized_body(self, entry: ArchiveEntry, first: Optional[bytes],
                    blocks: Iterator[bytes]) -> Iterator[bytes]:
        """
        Emit exactly size_hint bytes.

        A file that grew while being read is truncated to the size in its
        header; one that shrank is padded with zero bytes.
        """
        remaining = entry.size_hint
        if first is not None:
            for block in _chain(first, blocks):
                if remaining <= 0:
                    self._warn(f"File grew while reading, truncated: {entry.logical_path}")
                    break
                if len(block) > remaining:
                    self._warn(f"File grew while reading, truncated: {entry.logical_path}")
                    block = block[:remaining]
                remaining -= len(block)
                yield block

        if remaining > 0:
            self._warn(f"File shrank while reading, padded {remaining} bytes: {entry.logical_path}")
            while remaining > 0:
                pad = min(remaining, 64 * 1024)
                yield b'\0' * pad
                remaining -= pad


def _chain(first: bytes, rest: Iterator[bytes]) -> Iterator[bytes]:
    yield first
    yield from rest


def build_archive(entries: Iterable[ArchiveEntry], builder: Optional[ArchiveBuilder] = None) -> Iterator[bytes]:
    """Build an archive stream; pass a builder to collect its warnings."""
    return (builder or ArchiveBuilder()).build(entries)


def _iter_members(reader: BinaryIO) -> Iterator[Tuple[ArchiveMember, Iterator[bytes]]]:
    """
    Parse members; each body iterator must be exhausted before advancing.
    """
    preamble = read_exact(reader, len(PREAMBLE))
    if preamble[:len(MAGIC)] != MAGIC:
        raise ArchiveError("Not a Strongbox archive (bad magic)")
    if len(preamble) < len(PREAMBLE) or preamble[len(MAGIC)] != VERSION:
        raise ArchiveError("Unsupported archive version")

    while True:
        raw = read_exact(reader, HEADER.size)
        if len(raw) < HEADER.size:
            raise ArchiveError("Archive truncated: missing trailer")

        marker, kind, flags, mode, size, mtime, path_len = HEADER.unpack(raw)
        if marker == TRAILER_MARKER:
            return
        if marker != ENTRY_MARKER:
            raise ArchiveError(f"Corrupt archive: unexpected record marker {marker!r}")

        path_bytes = read_exact(reader, path_len)
        if len(path_bytes) < path_len:
            raise ArchiveError("Archive truncated inside an entry header")

        try:
            entry_kind = EntryKind(kind)
        except ValueError:
            raise ArchiveError(f"Corrupt archive: unknown entry kind {kind}")

        member = ArchiveMember(
            logical_path=path_bytes.decode('utf-8'),
            kind=entry_kind,
            size=None if flags & FLAG_FRAMED else size,
            mode=mode,
            mtime=mtime,
        )

        if flags & FLAG_FRAMED:
            body = _read_framed(reader, member.logical_path)
        else:
            body = _read_sized(reader, size, member.logical_path)

        yield member, body

        # Drain whatever the caller left unread
        for _ in body:
            pass


def _read_sized(reader: BinaryIO, size: int, path: str) -> Iterator[bytes]:
    remaining = size
    while remaining > 0:
        block = reader.read(min(remaining, 64 * 1024))
        if not block:
            raise ArchiveError(f"Archive truncated inside {path}")
        remaining -= len(block)
        yield block


def _read_framed(reader: BinaryIO, path: str) -> Iterator[bytes]:
    while True:
        raw = read_exact(reader, FRAME.size)
        if len(raw) < FRAME.size:
            raise ArchiveError(f"Archive truncated inside {path}")
        (length,) = FRAME.unpack(raw)
        if length == 0:
            return
        block = read_exact(reader, length)
        if len(block) < length:
            raise ArchiveError(f"Archive truncated inside {path}")
        yield block


def iter_archive(stream: Union[BinaryIO, Iterable[bytes], bytes]) -> Iterator[ArchiveMember]:
    """
    Parse an archive stream back into members with their content.

    Raises:
        ArchiveError: If the stream is not a valid archive
    """
    reader = as_reader(stream)
    for member, body in _iter_members(reader):
        member.data = b''.join(body)
        if member.size is None:
            member.size = len(member.data)
        yield member


def _safe_target(dest: Path, logical_path: str) -> Path:
    relative = PurePosixPath(logical_path)
    if relative.is_absolute() or '..' in relative.parts:
        raise ArchiveError(f"Refusing to extract unsafe path: {logical_path}")
    return dest.joinpath(*relative.parts)


def extract_archive(stream: Union[BinaryIO, Iterable[bytes], bytes], dest: str) -> List[str]:
    """
    Extract an archive stream into a directory.

    Args:
        stream: Archive stream
        dest: Destination directory (created if missing)

    Returns:
        List of extracted logical paths
    """
    dest_path = Path(dest)
    dest_path.mkdir(parents=True, exist_ok=True)
    reader = as_reader(stream)
    extracted = []
    directories = []

    for member, body in _iter_members(reader):
        target = _safe_target(dest_path, member.logical_path)

        if member.kind == EntryKind.DIRECTORY:
            target.mkdir(parents=True, exist_ok=True)
            directories.append((target, member))
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'wb') as f:
                for block in body:
                    f.write(block)
            os.chmod(target, member.mode & 0o7777)
            os.utime(target, (member.mtime, member.mtime))

        extracted.append(member.logical_path)

    # Directory metadata last, after their contents have been written
    for target, member in reversed(directories):
        os.chmod(target, (member.mode & 0o7777) | 0o700)
        os.utime(target, (member.mtime, member.mtime))

    return extracted
