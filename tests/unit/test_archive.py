"""
Unit tests for the archive container (strongbox/backup/archive.py).
"""

import os
import stat

import pytest

from strongbox.backup.archive import (
    ArchiveBuilder,
    build_archive,
    extract_archive,
    iter_archive,
)
from strongbox.backup.errors import ArchiveError, MandatorySourceMissing, SourceError, SourceUnavailable
from strongbox.backup.sources import ArchiveEntry, EntryKind, PathSource, read_file_blocks


def _entry(path, data, kind=EntryKind.FILE, sized=True, **kwargs):
    def source():
        yield from (data[i:i + 3] for i in range(0, len(data), 3))
    return ArchiveEntry(
        logical_path=path,
        kind=kind,
        byte_source=source,
        size_hint=len(data) if sized else None,
        **kwargs
    )


def _archive(entries, builder=None):
    return b''.join(build_archive(entries, builder))


class TestArchiveRoundTrip:
    """Parsing a built archive gives back the same entries."""

    def test_mixed_entries(self):
        entries = [
            ArchiveEntry('home', EntryKind.DIRECTORY, mode=0o755, mtime=1700000000.0),
            _entry('home/a.txt', b'alpha', mode=0o600, mtime=1700000001.5),
            _entry('cmd/packages.txt', b'pkg-1\npkg-2\n', kind=EntryKind.COMMAND_OUTPUT, sized=False),
            _entry('home/empty', b''),
        ]

        members = list(iter_archive(_archive(entries)))

        assert [m.logical_path for m in members] == ['home', 'home/a.txt', 'cmd/packages.txt', 'home/empty']
        assert [m.kind for m in members] == [
            EntryKind.DIRECTORY, EntryKind.FILE, EntryKind.COMMAND_OUTPUT, EntryKind.FILE
        ]
        assert members[1].data == b'alpha'
        assert members[1].mode == 0o600
        assert members[1].mtime == 1700000001.5
        assert members[2].data == b'pkg-1\npkg-2\n'
        assert members[2].size == len(b'pkg-1\npkg-2\n')
        assert members[3].data == b''

    def test_empty_archive(self):
        assert list(iter_archive(_archive([]))) == []

    def test_unicode_paths(self):
        members = list(iter_archive(_archive([_entry('docs/résumé.txt', b'x')])))

        assert members[0].logical_path == 'docs/résumé.txt'

    def test_accepts_block_iterator(self):
        entries = [_entry('a', b'1' * 1000)]

        members = list(iter_archive(build_archive(entries)))

        assert members[0].data == b'1' * 1000


class TestArchiveBuilder:
    """Test builder behavior on unreadable or changing sources."""

    def test_optional_unreadable_entry_is_skipped(self, tmp_path):
        builder = ArchiveBuilder()
        missing = ArchiveEntry(
            'gone.txt', EntryKind.FILE,
            byte_source=lambda: read_file_blocks(str(tmp_path / 'gone.txt')),
            size_hint=10,
        )

        members = list(iter_archive(_archive([_entry('kept.txt', b'ok'), missing], builder)))

        assert [m.logical_path for m in members] == ['kept.txt']
        assert builder.entries_skipped == 1
        assert 'gone.txt' in builder.warnings[0]

    def test_source_unavailable_is_skipped(self):
        def source():
            raise SourceUnavailable('mount point gone')
            yield b''

        builder = ArchiveBuilder()
        entry = ArchiveEntry('mnt/data', EntryKind.FILE, byte_source=source, size_hint=4)

        assert list(iter_archive(_archive([entry], builder))) == []
        assert builder.entries_skipped == 1
        assert 'mount point gone' in builder.warnings[0]

    def test_mandatory_unreadable_entry_aborts(self, tmp_path):
        def source():
            raise FileNotFoundError('gone')
            yield b''

        entry = ArchiveEntry('gone', EntryKind.FILE, byte_source=source, size_hint=4, mandatory=True)

        with pytest.raises(MandatorySourceMissing):
            _archive([entry])

    def test_source_error_becomes_archive_error(self):
        def source():
            yield b'partial'
            raise SourceError('command failed')

        entry = ArchiveEntry('cmd', EntryKind.COMMAND_OUTPUT, byte_source=source)

        with pytest.raises(ArchiveError, match='command failed'):
            _archive([entry])

    def test_file_that_grew_is_truncated(self):
        builder = ArchiveBuilder()
        entry = _entry('grown', b'0123456789')
        entry.size_hint = 4

        members = list(iter_archive(_archive([entry], builder)))

        assert members[0].data == b'0123'
        assert 'grew' in builder.warnings[0]

    def test_file_that_shrank_is_padded(self):
        builder = ArchiveBuilder()
        entry = _entry('shrunk', b'abc')
        entry.size_hint = 6

        members = list(iter_archive(_archive([entry], builder)))

        assert members[0].data == b'abc\0\0\0'
        assert 'shrank' in builder.warnings[0]


class TestArchiveParsing:
    """Test detection of corrupt and truncated archives."""

    def test_bad_magic(self):
        with pytest.raises(ArchiveError, match='bad magic'):
            list(iter_archive(b'NOPE' + b'\0' * 64))

    def test_truncated_archive(self):
        data = _archive([_entry('a.txt', b'x' * 100)])

        with pytest.raises(ArchiveError, match='truncated'):
            list(iter_archive(data[:60]))

    def test_missing_trailer(self):
        data = _archive([_entry('a.txt', b'hello')])

        with pytest.raises(ArchiveError, match='trailer'):
            list(iter_archive(data[:-10]))


class TestExtractArchive:
    """Test extraction to disk."""

    def test_extract_tree(self, temp_files, tmp_path):
        os.chmod(temp_files / 'test_file1.txt', 0o640)
        entries = PathSource(str(temp_files)).enumerate()
        dest = tmp_path / 'restored'

        extracted = extract_archive(_archive(entries), str(dest))

        assert 'source/nested/test_file3.txt' in extracted
        assert (dest / 'source' / 'nested' / 'test_file3.txt').read_text() == 'Nested test content'
        assert stat.S_IMODE((dest / 'source' / 'test_file1.txt').stat().st_mode) == 0o640
        original_mtime = (temp_files / 'test_file2.log').stat().st_mtime
        assert (dest / 'source' / 'test_file2.log').stat().st_mtime == pytest.approx(original_mtime)

    def test_refuses_path_traversal(self, tmp_path):
        data = _archive([_entry('../escape.txt', b'evil')])

        with pytest.raises(ArchiveError, match='unsafe path'):
            extract_archive(data, str(tmp_path / 'dest'))

        assert not (tmp_path / 'escape.txt').exists()
