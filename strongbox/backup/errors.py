"""
Exception hierarchy for the backup engine.

Fatal errors abort a run before or during the pipeline, soft errors are
logged and skipped, and storage errors are scoped to a single backend branch.
"""


class BackupError(Exception):
    """Base class for all backup engine errors."""
    pass


class ConfigError(BackupError):
    """Raised when the policy is missing a required field or is invalid."""
    pass


class SourceError(BackupError):
    """Raised when a source cannot be read."""
    pass


class SourceUnavailable(SourceError):
    """A conditionally-present source is missing. Skipped with a warning."""
    pass


class MandatorySourceMissing(SourceError):
    """A source marked mandatory is missing. Aborts the run."""
    pass


class HookError(BackupError):
    """Raised when a mandatory pre-run hook fails."""
    pass


class PipelineError(BackupError):
    """Raised when archive assembly, compression or encryption fails."""
    pass


class ArchiveError(PipelineError):
    """Raised when the archive container cannot be built or parsed."""
    pass


class CompressionError(PipelineError):
    """Raised when the compression codec fails."""
    pass


class EncryptionError(PipelineError):
    """Raised when encryption or decryption fails."""
    pass


class StorageError(BackupError):
    """Raised when a storage backend operation fails."""
    pass


class TransferError(StorageError):
    """Raised when a chunk could not be transferred within the retry budget."""
    pass


class ChunkSequenceError(StorageError):
    """Raised when chunk sequence numbers are not contiguous from zero."""
    pass


class PruneError(StorageError):
    """Raised when a retention pass could not delete a backup set."""
    pass


class RunCancelled(BackupError):
    """Raised inside a run when cancellation has been requested."""
    pass
