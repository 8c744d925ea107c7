"""
Unit tests for stream chunking (strongbox/backup/chunker.py).
"""

import io

import pytest

from strongbox.backup.chunker import Chunk, count_chunks, ensure_contiguous, split
from strongbox.backup.errors import ChunkSequenceError


class TestSplit:
    """Test fixed-size chunking."""

    def test_sequence_and_final_flag(self):
        chunks = list(split(b'abcdefghij', 4))

        assert [c.sequence_number for c in chunks] == [0, 1, 2]
        assert [c.payload for c in chunks] == [b'abcd', b'efgh', b'ij']
        assert [c.is_final for c in chunks] == [False, False, True]

    def test_exact_multiple(self):
        chunks = list(split(b'abcdefgh', 4))

        assert [c.payload for c in chunks] == [b'abcd', b'efgh']
        assert chunks[-1].is_final

    def test_empty_stream_yields_single_final_chunk(self):
        assert list(split(b'', 4)) == [Chunk(0, b'', is_final=True)]

    def test_block_iterator_and_file_inputs(self):
        from_blocks = list(split(iter([b'ab', b'cde', b'', b'fghij']), 3))
        from_file = list(split(io.BytesIO(b'abcdefghij'), 3))

        assert [c.payload for c in from_blocks] == [b'abc', b'def', b'ghi', b'j']
        assert from_blocks == from_file

    def test_concatenation_restores_stream(self):
        data = bytes(range(256)) * 10

        assert b''.join(c.payload for c in split(data, 100)) == data

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            list(split(b'data', 0))

    @pytest.mark.parametrize('total,size,expected', [
        (0, 4, 1), (1, 4, 1), (4, 4, 1), (5, 4, 2), (10, 4, 3),
    ])
    def test_count_chunks_matches_split(self, total, size, expected):
        assert count_chunks(total, size) == expected
        assert len(list(split(b'x' * total, size))) == expected


class TestEnsureContiguous:
    """Test chunk sequence validation."""

    def test_valid_sequence_passes(self):
        chunks = list(split(b'abcdefghij', 4))

        assert list(ensure_contiguous(chunks)) == chunks

    def test_gap(self):
        chunks = [Chunk(0, b'a'), Chunk(2, b'c', is_final=True)]

        with pytest.raises(ChunkSequenceError, match='Expected chunk 1, got 2'):
            list(ensure_contiguous(chunks))

    def test_missing_final(self):
        with pytest.raises(ChunkSequenceError, match='without a final chunk'):
            list(ensure_contiguous([Chunk(0, b'a'), Chunk(1, b'b')]))

    def test_chunk_after_final(self):
        chunks = [Chunk(0, b'a', is_final=True), Chunk(1, b'b', is_final=True)]

        with pytest.raises(ChunkSequenceError, match='follows the final chunk'):
            list(ensure_contiguous(chunks))
