"""
Unit tests for streaming compression (strongbox/backup/compression.py).
"""

import os
from datetime import datetime

import pytest

from strongbox.backup.compression import (
    compress_stream,
    decompress_stream,
    generate_archive_filename,
    generate_run_id,
)
from strongbox.backup.errors import CompressionError

FORMATS = ['gzip', 'bzip2', 'xz', 'none']


def _blocks(data, size=1000):
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestCompressStream:
    """Test compression and decompression of block streams."""

    @pytest.mark.parametrize('compression_format', FORMATS)
    def test_round_trip(self, compression_format):
        data = b'backup payload ' * 5000 + os.urandom(2048)

        compressed = list(compress_stream(_blocks(data), compression_format, 6))
        restored = b''.join(decompress_stream(compressed, compression_format))

        assert restored == data

    @pytest.mark.parametrize('compression_format', FORMATS)
    def test_empty_stream(self, compression_format):
        compressed = list(compress_stream([], compression_format))

        assert b''.join(decompress_stream(compressed, compression_format)) == b''

    def test_compression_shrinks_repetitive_data(self):
        data = b'a' * 100000

        compressed = b''.join(compress_stream(_blocks(data), 'gzip', 9))

        assert len(compressed) < len(data) // 10

    def test_gzip_output_has_gzip_magic(self):
        compressed = b''.join(compress_stream([b'hello'], 'gzip'))

        assert compressed[:2] == b'\x1f\x8b'

    @pytest.mark.parametrize('level', [0, 10])
    def test_invalid_level(self, level):
        with pytest.raises(ValueError, match='level'):
            compress_stream([b'data'], 'gzip', level)

    def test_invalid_format(self):
        with pytest.raises(ValueError, match='Invalid compression format'):
            list(compress_stream([b'data'], 'zip'))

    @pytest.mark.parametrize('compression_format', ['gzip', 'bzip2', 'xz'])
    def test_truncated_stream(self, compression_format):
        compressed = b''.join(compress_stream([b'x' * 10000], compression_format))

        with pytest.raises(CompressionError):
            b''.join(decompress_stream([compressed[:-8]], compression_format))

    def test_trailing_data(self):
        compressed = b''.join(compress_stream([b'hello'], 'gzip'))

        with pytest.raises(CompressionError, match='Trailing data'):
            b''.join(decompress_stream([compressed, b'junk'], 'gzip'))

    def test_corrupt_stream(self):
        with pytest.raises(CompressionError):
            b''.join(decompress_stream([b'not compressed at all'], 'gzip'))

    def test_stream_is_lazy(self):
        consumed = []

        def source():
            for i in range(3):
                consumed.append(i)
                yield b'block %d' % i

        stream = compress_stream(source(), 'gzip')
        assert consumed == []

        list(stream)
        assert consumed == [0, 1, 2]


class TestNaming:
    """Test archive and run naming helpers."""

    def test_generate_archive_filename(self):
        assert generate_archive_filename('home', 'gzip') == 'home.sbxa.gz'
        assert generate_archive_filename('home', 'xz', encrypted=True) == 'home.sbxa.xz.enc'
        assert generate_archive_filename('home', 'none') == 'home.sbxa'

    def test_filename_sanitizes_model_name(self):
        assert generate_archive_filename('my model/v2', 'bzip2') == 'my_model_v2.sbxa.bz2'

    def test_generate_run_id(self):
        assert generate_run_id(datetime(2024, 3, 7, 14, 5, 9)) == '2024.03.07.14.05.09'

    def test_run_ids_sort_chronologically(self):
        earlier = generate_run_id(datetime(2024, 9, 30, 23, 59, 59))
        later = generate_run_id(datetime(2024, 10, 1, 0, 0, 0))

        assert sorted([later, earlier]) == [earlier, later]
