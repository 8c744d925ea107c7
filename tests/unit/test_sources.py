"""
Unit tests for source handlers (strongbox/backup/sources.py).

Tests PathSource, GlobSource, CommandSource and the create_source factory.
"""

import sys
import time
from pathlib import Path

import pytest

from strongbox.backup.errors import ConfigError, MandatorySourceMissing, SourceError
from strongbox.backup.sources import (
    CommandSource,
    EntryKind,
    GlobSource,
    PathSource,
    create_source,
    logical_path_for,
)


def _paths(entries):
    return [e.logical_path for e in entries]


class TestLogicalPath:
    """Test archive path computation."""

    def test_relative_to_root(self):
        assert logical_path_for(Path('/home/me/.bashrc'), Path('/home/me')) == '.bashrc'

    def test_outside_root_strips_anchor(self):
        assert logical_path_for(Path('/etc/hosts'), Path('/home/me')) == 'etc/hosts'

    def test_archive_prefix(self):
        assert logical_path_for(Path('/home/me/.vimrc'), Path('/home/me'), 'dotfiles') == 'dotfiles/.vimrc'

    def test_root_itself(self):
        assert logical_path_for(Path('/home/me'), Path('/home/me')) == '.'
        assert logical_path_for(Path('/home/me'), Path('/home/me'), 'dotfiles') == 'dotfiles'


class TestPathSource:
    """Test PathSource for files and directories."""

    def test_directory_is_walked_in_sorted_order(self, temp_files):
        entries = PathSource(str(temp_files)).enumerate()

        assert _paths(entries) == [
            'source',
            'source/nested',
            'source/nested/test_file3.txt',
            'source/test_file.pyc',
            'source/test_file1.txt',
            'source/test_file2.log',
        ]
        assert entries[0].kind == EntryKind.DIRECTORY
        assert entries[2].kind == EntryKind.FILE
        assert entries[2].size_hint == len('Nested test content')

    def test_exclude_patterns(self, temp_files):
        source = PathSource(str(temp_files), exclude_patterns=['*.pyc', 'nested'])

        assert _paths(source.enumerate()) == [
            'source',
            'source/test_file1.txt',
            'source/test_file2.log',
        ]

    def test_root_and_archive(self, temp_files):
        source = PathSource('test_file1.txt', root=str(temp_files), archive='dotfiles')
        entries = source.enumerate()

        assert _paths(entries) == ['dotfiles/test_file1.txt']
        assert b''.join(entries[0].byte_source()) == b'Test content 1'

    def test_missing_optional_path_is_skipped(self, tmp_path):
        source = PathSource(str(tmp_path / 'missing'))

        assert source.enumerate() == []
        assert len(source.warnings) == 1
        assert 'does not exist' in source.warnings[0]

    def test_missing_mandatory_path_raises(self, tmp_path):
        source = PathSource(str(tmp_path / 'missing'), mandatory=True)

        with pytest.raises(MandatorySourceMissing):
            source.enumerate()

    def test_home_is_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv('HOME', str(tmp_path))
        (tmp_path / '.gitconfig').write_text('[user]')

        entries = PathSource('~/.gitconfig', root='~').enumerate()

        assert _paths(entries) == ['.gitconfig']

    def test_entries_are_lazy(self, temp_files):
        entries = PathSource(str(temp_files / 'test_file1.txt')).enumerate()
        (temp_files / 'test_file1.txt').write_text('changed after enumerate')

        assert b''.join(entries[0].byte_source()) == b'changed after enumerate'


class TestGlobSource:
    """Test GlobSource pattern matching."""

    def test_matches_under_root(self, temp_files):
        source = GlobSource('*.txt', root=str(temp_files))

        assert _paths(source.enumerate()) == ['test_file1.txt']

    def test_hidden_file_pattern(self, tmp_path):
        (tmp_path / '.bash_history').write_text('ls')
        (tmp_path / '.psql_history').write_text('select 1')
        (tmp_path / 'history').write_text('no')

        source = GlobSource('.*history', root=str(tmp_path), archive='history')

        assert _paths(source.enumerate()) == ['history/.bash_history', 'history/.psql_history']

    def test_files_only(self, temp_files):
        source = GlobSource('*', root=str(temp_files), files_only=True, exclude_patterns=['*.pyc'])

        assert _paths(source.enumerate()) == ['test_file1.txt', 'test_file2.log']

    def test_directory_match_is_walked(self, temp_files):
        source = GlobSource('nes*', root=str(temp_files))

        assert _paths(source.enumerate()) == ['nested', 'nested/test_file3.txt']

    def test_no_matches(self, tmp_path):
        assert GlobSource('*.conf', root=str(tmp_path)).enumerate() == []

        with pytest.raises(MandatorySourceMissing):
            GlobSource('*.conf', root=str(tmp_path), mandatory=True).enumerate()


class TestCommandSource:
    """Test CommandSource output capture."""

    def test_streams_stdout(self):
        source = CommandSource([sys.executable, '-c', 'print("hello")'], name='hello.txt', archive='cmd')
        entries = source.enumerate()

        assert len(entries) == 1
        assert entries[0].logical_path == 'cmd/hello.txt'
        assert entries[0].kind == EntryKind.COMMAND_OUTPUT
        assert entries[0].size_hint is None
        assert b''.join(entries[0].byte_source()) == b'hello\n'

    def test_shell_command(self):
        source = CommandSource('echo one && echo two', name='out.txt')
        entries = source.enumerate()

        assert b''.join(entries[0].byte_source()) == b'one\ntwo\n'

    def test_missing_tool_optional(self):
        source = CommandSource(['strongbox-no-such-tool', '--list'], name='x')

        assert source.enumerate() == []
        assert 'not available' in source.warnings[0]

    def test_missing_tool_mandatory(self):
        source = CommandSource(['strongbox-no-such-tool'], name='x', mandatory=True)

        with pytest.raises(MandatorySourceMissing):
            source.enumerate()

    def test_nonzero_exit_optional_warns(self):
        source = CommandSource([sys.executable, '-c', 'import sys; print("partial"); sys.exit(3)'], name='x')
        entries = source.enumerate()

        assert b''.join(entries[0].byte_source()) == b'partial\n'
        assert 'status 3' in source.warnings[0]

    def test_nonzero_exit_mandatory_raises(self):
        source = CommandSource(
            [sys.executable, '-c', 'import sys; sys.stderr.write("boom"); sys.exit(1)'],
            name='x', mandatory=True
        )
        entries = source.enumerate()

        with pytest.raises(SourceError, match='boom'):
            b''.join(entries[0].byte_source())

    def test_timeout_kills_hung_command(self):
        script = 'import sys, time; print("started", flush=True); time.sleep(30)'
        source = CommandSource([sys.executable, '-c', script], name='slow', timeout=0.5)
        entries = source.enumerate()

        started = time.monotonic()
        output = b''.join(entries[0].byte_source())

        assert time.monotonic() - started < 10
        assert output == b'started\n'
        assert 'timed out after 0.5s' in source.warnings[0]

    def test_timeout_mandatory_raises(self):
        source = CommandSource([sys.executable, '-c', 'import time; time.sleep(30)'],
                               name='slow', timeout=0.5, mandatory=True)
        entries = source.enumerate()

        with pytest.raises(SourceError, match='timed out'):
            b''.join(entries[0].byte_source())


class TestCreateSource:
    """Test source factory function."""

    def test_create_path_source(self):
        source = create_source('path', {'path': '/tmp', 'exclude_patterns': ['*.log'], 'mandatory': True})

        assert isinstance(source, PathSource)
        assert source.mandatory is True
        assert source.exclude_patterns == ['*.log']

    def test_create_glob_source(self):
        assert isinstance(create_source('glob', {'pattern': '*.conf'}), GlobSource)

    def test_create_command_source(self):
        source = create_source('command', {'command': 'ls /', 'name': 'root.txt'})

        assert isinstance(source, CommandSource)
        assert source.shell is True

    def test_create_source_invalid_type(self):
        with pytest.raises(ConfigError):
            create_source('ssh', {})
