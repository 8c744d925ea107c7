"""
Backup module for Strongbox.

This module handles the core backup functionality including:
- Source enumeration (paths, globs, command output)
- Archive assembly
- Streaming compression and encryption
- Chunked storage (S3 and local)
- Execution orchestration (strongbox.backup.executor)
- Retention policy enforcement
"""

from .errors import BackupError, ConfigError
from .policy import load_policy
from .archive import build_archive, iter_archive, extract_archive
from .compression import compress_stream, decompress_stream
from .chunker import split
from .storage import S3Storage, LocalStorage, Manifest
from .retention import RetentionManager

__all__ = [
    'BackupError',
    'ConfigError',
    'load_policy',
    'build_archive',
    'iter_archive',
    'extract_archive',
    'compress_stream',
    'decompress_stream',
    'split',
    'S3Storage',
    'LocalStorage',
    'Manifest',
    'RetentionManager'
]
