"""
Source handlers for backup operations.

Supports:
- PathSource: A file or directory tree on the local filesystem
- GlobSource: Every match of a glob pattern, relative to a root
- CommandSource: The standard output of a command, streamed without a known size

Each handler turns its declaration into an ordered list of ArchiveEntry
objects. Entries are lazy: no file is opened and no command is started until
the archive builder reads the entry's byte source.
"""

import os
import glob
import shlex
import shutil
import stat
import subprocess
import tempfile
import threading
import time
import logging
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterator, List, Optional, Any, Union

from .errors import ConfigError, MandatorySourceMissing, SourceError, SourceUnavailable

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 64 * 1024


class EntryKind(Enum):
    FILE = 1
    DIRECTORY = 2
    COMMAND_OUTPUT = 3


@dataclass
class ArchiveEntry:
    """One unit of the archive. byte_source is called once, at build time."""
    logical_path: str
    kind: EntryKind
    byte_source: Optional[Callable[[], Iterator[bytes]]] = None
    size_hint: Optional[int] = None
    mode: int = 0o644
    mtime: float = 0.0
    mandatory: bool = False


def read_file_blocks(path: str, block_size: int = READ_BLOCK_SIZE) -> Iterator[bytes]:
    """Yield the contents of a file in fixed-size blocks."""
    with open(path, 'rb') as f:
        while True:
            block = f.read(block_size)
            if not block:
                break
            yield block


def logical_path_for(path: Path, root: Optional[Path] = None, archive: Optional[str] = None) -> str:
    """
    Compute the path an entry is stored under inside the archive.

    Paths under root are stored relative to it; anything else is stored
    with its anchor stripped. The archive name, when given, is the first
    component.
    """
    relative = None
    if root is not None:
        try:
            relative = path.relative_to(root)
        except ValueError:
            relative = None
    if relative is None:
        relative = path.relative_to(path.anchor) if path.is_absolute() else path

    parts = [part for part in PurePosixPath(relative.as_posix()).parts if part not in ('.', '')]
    if archive:
        parts.insert(0, archive)
    if not parts:
        return '.'
    return '/'.join(parts)


class BaseSource:
    """Common bookkeeping for source handlers."""

    def __init__(self, archive: Optional[str] = None, mandatory: bool = False):
        self.archive = archive
        self.mandatory = mandatory
        self.warnings: List[str] = []

    def _unavailable(self, message: str):
        """Handle a missing source according to its mandatory flag."""
        if self.mandatory:
            raise MandatorySourceMissing(message)
        warning = f"{message}, skipping"
        logger.warning(warning)
        self.warnings.append(warning)

    def enumerate(self) -> List[ArchiveEntry]:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


class PathSource(BaseSource):
    """
    Handler for a file or directory on the local filesystem.

    Directories are walked recursively in sorted order so that repeated runs
    over an unchanged tree produce identical archives.
    """

    def __init__(self, path: str, root: Optional[str] = None, archive: Optional[str] = None,
                 mandatory: bool = False, exclude_patterns: List[str] = None):
        """
        Initialize path source handler.

        Args:
            path: File or directory path, relative to root when root is set
            root: Optional base directory; stored paths are relative to it
            archive: Optional archive name prefixed to stored paths
            mandatory: Abort the run if the path does not exist
            exclude_patterns: List of glob patterns to exclude (e.g., *.pyc, __pycache__)
        """
        super().__init__(archive=archive, mandatory=mandatory)
        self.path = path
        self.root = Path(root).expanduser() if root else None
        self.exclude_patterns = exclude_patterns or []

    def describe(self) -> str:
        return f"path {self.path}"

    def _should_exclude(self, path: Path) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        path_str = str(path)
        path_name = path.name

        for pattern in self.exclude_patterns:
            # Match against full path or just the name
            if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
                return True

        return False

    def _resolve(self) -> Path:
        path = Path(self.path).expanduser()
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return Path(os.path.normpath(path))

    def enumerate(self) -> List[ArchiveEntry]:
        """
        Build entries for the path.

        Returns:
            Ordered list of entries; empty if the path is missing and optional

        Raises:
            MandatorySourceMissing: If the path is missing and mandatory
        """
        source_path = self._resolve()

        if not source_path.exists():
            self._unavailable(f"Path does not exist: {source_path}")
            return []

        return self.entries_for(source_path, top_level=True)

    def entries_for(self, source_path: Path, top_level: bool = False) -> List[ArchiveEntry]:
        root = self.root
        if root is None:
            root = source_path.parent if source_path.parent != source_path else None

        if source_path.is_dir():
            return self._directory_entries(source_path, root, top_level)
        if source_path.is_file():
            if self._should_exclude(source_path):
                return []
            return [self._file_entry(source_path, root, mandatory=top_level and self.mandatory)]

        self._unavailable(f"Unsupported path type: {source_path}")
        return []

    def _file_entry(self, file_path: Path, root: Optional[Path], mandatory: bool = False) -> ArchiveEntry:
        st = file_path.stat()
        return ArchiveEntry(
            logical_path=logical_path_for(file_path, root, self.archive),
            kind=EntryKind.FILE,
            byte_source=lambda p=str(file_path): read_file_blocks(p),
            size_hint=st.st_size,
            mode=stat.S_IMODE(st.st_mode),
            mtime=st.st_mtime,
            mandatory=mandatory,
        )

    def _directory_entry(self, dir_path: Path, root: Optional[Path]) -> ArchiveEntry:
        st = dir_path.stat()
        return ArchiveEntry(
            logical_path=logical_path_for(dir_path, root, self.archive),
            kind=EntryKind.DIRECTORY,
            size_hint=0,
            mode=stat.S_IMODE(st.st_mode),
            mtime=st.st_mtime,
        )

    def _directory_entries(self, source_path: Path, root: Optional[Path], top_level: bool) -> List[ArchiveEntry]:
        entries = [self._directory_entry(source_path, root)]
        if top_level:
            entries[0].mandatory = self.mandatory

        for current, dirs, files in os.walk(source_path):
            current_path = Path(current)
            dirs[:] = sorted(d for d in dirs if not self._should_exclude(current_path / d))

            for name in sorted(files):
                file_path = current_path / name
                if self._should_exclude(file_path):
                    continue
                try:
                    st = file_path.stat()
                except FileNotFoundError:
                    # Dangling symlink or removed while walking
                    self.warnings.append(f"File vanished while enumerating: {file_path}")
                    continue
                if not stat.S_ISREG(st.st_mode):
                    logger.debug(f"Skipping special file: {file_path}")
                    continue
                entries.append(self._file_entry(file_path, root))

            for name in dirs:
                entries.append(self._directory_entry(current_path / name, root))

        # Directory headers must precede their contents
        return sorted(entries, key=lambda e: e.logical_path.split('/'))


class GlobSource(BaseSource):
    """Handler for every path matching a glob pattern under a root."""

    def __init__(self, pattern: str, root: Optional[str] = None, archive: Optional[str] = None,
                 mandatory: bool = False, files_only: bool = False,
                 exclude_patterns: List[str] = None):
        super().__init__(archive=archive, mandatory=mandatory)
        self.pattern = pattern
        self.root = root
        self.files_only = files_only
        self.exclude_patterns = exclude_patterns or []

    def describe(self) -> str:
        return f"glob {self.pattern}"

    def enumerate(self) -> List[ArchiveEntry]:
        pattern = os.path.expanduser(self.pattern)
        root = Path(self.root).expanduser() if self.root else None
        if root is not None and not os.path.isabs(pattern):
            pattern = str(root / pattern)

        matches = sorted(glob.glob(pattern))
        if self.files_only:
            matches = [m for m in matches if os.path.isfile(m)]

        if not matches:
            self._unavailable(f"No matches for pattern: {pattern}")
            return []

        path_source = PathSource(
            path='.',
            root=str(root) if root else None,
            archive=self.archive,
            exclude_patterns=self.exclude_patterns,
        )
        entries = []
        for match in matches:
            entries.extend(path_source.entries_for(Path(match)))
        self.warnings.extend(path_source.warnings)
        return entries


class CommandSource(BaseSource):
    """
    Handler that captures a command's standard output as one archive entry.

    The output size is unknown until the command exits, so the entry is
    written with framed encoding by the archive builder.
    """

    def __init__(self, command: Union[str, List[str]], name: str, archive: Optional[str] = None,
                 mandatory: bool = False, shell: bool = False, timeout: Optional[float] = None):
        super().__init__(archive=archive, mandatory=mandatory)
        self.command = command
        self.name = name
        self.shell = shell or isinstance(command, str)
        self.timeout = timeout

    def describe(self) -> str:
        return f"command {self.name}"

    def _argv0(self) -> str:
        if isinstance(self.command, str):
            tokens = shlex.split(self.command)
            return tokens[0] if tokens else ''
        return self.command[0] if self.command else ''

    def enumerate(self) -> List[ArchiveEntry]:
        executable = self._argv0()
        if not executable or shutil.which(executable) is None:
            self._unavailable(f"Command not available: {executable or self.command!r}")
            return []

        logical = str(PurePosixPath(self.archive, self.name)) if self.archive else self.name
        return [ArchiveEntry(
            logical_path=logical,
            kind=EntryKind.COMMAND_OUTPUT,
            byte_source=self.stream_output,
            size_hint=None,
            mode=0o644,
            mtime=time.time(),
            mandatory=self.mandatory,
        )]

    def stream_output(self) -> Iterator[bytes]:
        """
        Run the command and yield its stdout in blocks.

        Output read before a failure or timeout is kept; an optional command
        only records a warning.

        Raises:
            SourceError: If a mandatory command exits non-zero or times out
        """
        # stderr goes to a file so a chatty command cannot block on a full pipe
        with tempfile.TemporaryFile() as stderr_file:
            process = subprocess.Popen(
                self.command,
                shell=self.shell,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
            )
            timed_out = threading.Event()
            timer = None
            if self.timeout is not None:
                def _expire():
                    timed_out.set()
                    process.kill()

                timer = threading.Timer(self.timeout, _expire)
                timer.daemon = True
                timer.start()
            try:
                while True:
                    block = process.stdout.read(READ_BLOCK_SIZE)
                    if not block:
                        break
                    yield block
                returncode = process.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                if process.poll() is None:
                    process.kill()
                    process.wait()
                process.stdout.close()

            if timed_out.is_set():
                message = f"Command '{self.name}' timed out after {self.timeout}s"
            elif returncode != 0:
                stderr_file.seek(0)
                stderr_tail = stderr_file.read()[-500:].decode('utf-8', 'replace').strip()
                message = f"Command '{self.name}' exited with status {returncode}: {stderr_tail}"
            else:
                return

            if self.mandatory:
                raise SourceError(message)
            logger.warning(message)
            self.warnings.append(message)


def create_source(source_type: str, config: Dict[str, Any]) -> BaseSource:
    """
    Factory function to create appropriate source handler.

    Args:
        source_type: 'path', 'glob' or 'command'
        config: Configuration dict for the source

    Returns:
        Source handler instance

    Raises:
        ConfigError: If source_type is invalid
    """
    common = {
        'archive': config.get('archive'),
        'mandatory': bool(config.get('mandatory', False)),
    }
    if source_type == 'path':
        return PathSource(
            path=config['path'],
            root=config.get('root'),
            exclude_patterns=config.get('exclude_patterns', []),
            **common
        )
    elif source_type == 'glob':
        return GlobSource(
            pattern=config['pattern'],
            root=config.get('root'),
            files_only=bool(config.get('files_only', False)),
            exclude_patterns=config.get('exclude_patterns', []),
            **common
        )
    elif source_type == 'command':
        return CommandSource(
            command=config['command'],
            name=config['name'],
            shell=bool(config.get('shell', False)),
            timeout=config.get('timeout'),
            **common
        )
    else:
        raise ConfigError(f"Invalid source type: {source_type}")


__all__ = [
    'ArchiveEntry',
    'EntryKind',
    'PathSource',
    'GlobSource',
    'CommandSource',
    'SourceUnavailable',
    'create_source',
    'read_file_blocks',
]
