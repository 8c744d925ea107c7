"""
Restore a stored backup set.

The set's data is first copied to a local file while its checksum is
verified against the manifest; only a verified copy is decrypted,
decompressed and extracted.
"""

import os
import shutil
import hashlib
import logging
import tempfile
from typing import List, Optional

from .archive import extract_archive
from .compression import decompress_stream
from .encryption import decrypt_stream
from .errors import EncryptionError, StorageError
from .storage import BaseStorage, StoredBackupSet
from .streams import iter_blocks

logger = logging.getLogger(__name__)


def find_set(storage: BaseStorage, model_name: str, run_id: Optional[str] = None) -> StoredBackupSet:
    """
    Find a complete set by run id, or the newest one.

    Raises:
        StorageError: If no matching complete set exists
    """
    sets = storage.list(model_name)
    if not sets:
        raise StorageError(f"No complete backups of {model_name} on {storage.name}")
    if run_id is None:
        return sets[0]
    for backup_set in sets:
        if backup_set.run_id == run_id:
            return backup_set
    raise StorageError(f"No complete backup {run_id} of {model_name} on {storage.name}")


def fetch_verified(storage: BaseStorage, backup_set: StoredBackupSet, path: str) -> str:
    """
    Copy a set's data to path, verifying size and checksum.

    Raises:
        StorageError: If the data does not match the manifest
    """
    manifest = backup_set.manifest
    hasher = hashlib.sha256()
    size = 0

    source = storage.open_data(backup_set)
    try:
        with open(path, 'wb') as f:
            for block in iter_blocks(source):
                f.write(block)
                hasher.update(block)
                size += len(block)
    finally:
        source.close()

    if size != manifest.total_bytes:
        raise StorageError(f"Size mismatch: stored {size} bytes, manifest says {manifest.total_bytes}")
    if f"sha256:{hasher.hexdigest()}" != manifest.checksum:
        raise StorageError("Checksum mismatch: stored data does not match the manifest")
    return path


def restore_set(storage: BaseStorage, backup_set: StoredBackupSet, dest: str,
                private_key=None, temp_dir: Optional[str] = None) -> List[str]:
    """
    Verify, decrypt, decompress and extract a set into dest.

    Args:
        storage: Backend holding the set
        backup_set: Complete set to restore
        dest: Directory to extract into
        private_key: Private key of one recipient (required for encrypted sets)
        temp_dir: Directory for the verified local copy

    Returns:
        Logical paths extracted, in archive order

    Raises:
        StorageError: If the set is incomplete or fails verification
        EncryptionError: If the set is encrypted and the key cannot open it
        PipelineError: If the data cannot be decoded
    """
    if not backup_set.is_complete:
        raise StorageError(f"Backup set {backup_set.run_id} is incomplete")
    manifest = backup_set.manifest
    if manifest.recipients and private_key is None:
        raise EncryptionError(
            f"Backup is encrypted for {', '.join(manifest.recipients)}; a private key is required"
        )

    work_dir = tempfile.mkdtemp(prefix='strongbox_restore_', dir=temp_dir)
    try:
        local_copy = fetch_verified(storage, backup_set, os.path.join(work_dir, manifest.archive_name))
        logger.info(f"Verified {manifest.archive_name} ({manifest.total_bytes} bytes)")

        with open(local_copy, 'rb') as f:
            stream = iter_blocks(f)
            if manifest.recipients:
                stream = decrypt_stream(stream, private_key)
            stream = decompress_stream(stream, manifest.compression_format)
            extracted = extract_archive(stream, dest)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    logger.info(f"Restored {len(extracted)} entries of {manifest.model_name} {manifest.run_id} to {dest}")
    return extracted
