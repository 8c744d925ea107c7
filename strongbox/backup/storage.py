"""
Storage handlers for backup sets.

Supports:
- LocalStorage: Reassembles chunks into a single file in a local directory
- S3Storage: Multi-part upload to S3 or an S3-compatible object store

Both store one backup set per run under {model}/{run_id}/ and write the
manifest last. A set without a manifest is incomplete: it is never listed as
a backup and never pruned.
"""

import os
import json
import time
import shutil
import hashlib
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectionError as BotoConnectionError,
    ReadTimeoutError,
)
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .chunker import Chunk, ensure_contiguous
from .compression import sanitize_name
from .errors import PruneError, RunCancelled, StorageError, TransferError

logger = logging.getLogger(__name__)

MANIFEST_NAME = 'manifest.json'
MANIFEST_VERSION = 1

# S3 multipart limits
S3_MAX_PARTS = 10000
S3_DELETE_BATCH = 1000

TRANSIENT_ERROR_CODES = {
    'RequestTimeout',
    'RequestTimeoutException',
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'InternalError',
    'ServiceUnavailable',
    '500',
    '502',
    '503',
    '504',
}


@dataclass
class Manifest:
    """Completion record for a backup set. Its presence marks the set whole."""
    model_name: str
    run_id: str
    created_at: datetime
    total_chunks: int
    total_bytes: int
    checksum: str
    archive_name: str
    compression_format: str = 'gzip'
    recipients: List[str] = field(default_factory=list)
    version: int = MANIFEST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        try:
            created_at = datetime.fromisoformat(data['created_at'])
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            return cls(
                model_name=data['model_name'],
                run_id=data['run_id'],
                created_at=created_at,
                total_chunks=int(data['total_chunks']),
                total_bytes=int(data['total_bytes']),
                checksum=data['checksum'],
                archive_name=data['archive_name'],
                compression_format=data.get('compression_format', 'gzip'),
                recipients=list(data.get('recipients', [])),
                version=int(data.get('version', MANIFEST_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Malformed manifest: {e}")

    @classmethod
    def from_json(cls, text) -> 'Manifest':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise StorageError(f"Malformed manifest: {e}")
        if not isinstance(data, dict):
            raise StorageError("Malformed manifest: not an object")
        return cls.from_dict(data)


@dataclass
class StoredBackupSet:
    """One run's artifacts on one backend."""
    model_name: str
    run_id: str
    manifest: Optional[Manifest]
    locations: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.manifest is not None

    @property
    def created_at(self) -> Optional[datetime]:
        return self.manifest.created_at if self.manifest else None


@dataclass
class PruneResult:
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def select_for_pruning(sets: Iterable[StoredBackupSet], keep_n: int) -> List[StoredBackupSet]:
    """
    Choose the sets a retention pass may delete.

    Only complete sets are candidates. The newest keep_n complete sets are
    always kept.

    Args:
        sets: Stored sets in any order
        keep_n: Number of newest complete sets to keep (at least 1)

    Returns:
        Sets to delete, oldest last
    """
    if keep_n < 1:
        raise ValueError(f"keep_n must be at least 1, got {keep_n}")
    complete = [s for s in sets if s.is_complete]
    complete.sort(key=lambda s: (s.created_at, s.run_id), reverse=True)
    return complete[keep_n:]


def _check_cancelled(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("Run cancelled")


def _verify_totals(manifest: Manifest, chunks: int, size: int, checksum: str):
    if chunks != manifest.total_chunks or size != manifest.total_bytes:
        raise StorageError(
            f"Stored {chunks} chunks / {size} bytes, manifest expects "
            f"{manifest.total_chunks} chunks / {manifest.total_bytes} bytes"
        )
    if checksum != manifest.checksum:
        raise StorageError("Checksum of stored data does not match the manifest")


class BaseStorage:
    """Capability interface shared by all backends: store, list, prune."""

    type = None

    def __init__(self, name: str):
        self.name = name

    def store(self, chunks: Iterable[Chunk], manifest: Manifest,
              cancel_event: Optional[threading.Event] = None) -> StoredBackupSet:
        raise NotImplementedError

    def list(self, model_name: str) -> List[StoredBackupSet]:
        """Complete sets for a model, newest first."""
        return [s for s in self.list_all(model_name) if s.is_complete]

    def list_incomplete(self, model_name: str) -> List[StoredBackupSet]:
        return [s for s in self.list_all(model_name) if not s.is_complete]

    def list_all(self, model_name: str) -> List[StoredBackupSet]:
        raise NotImplementedError

    def delete_set(self, backup_set: StoredBackupSet):
        raise NotImplementedError

    def open_data(self, backup_set: StoredBackupSet) -> BinaryIO:
        raise NotImplementedError

    def prune(self, model_name: str, keep_n: int) -> PruneResult:
        """
        Delete complete sets beyond the newest keep_n.

        A set that cannot be deleted is left in place and reported in the
        result; it is never skipped silently.
        """
        sets = self.list(model_name)
        victims = select_for_pruning(sets, keep_n)
        victim_ids = {s.run_id for s in victims}
        result = PruneResult(kept=[s.run_id for s in sets if s.run_id not in victim_ids])

        for backup_set in victims:
            try:
                self.delete_set(backup_set)
                result.deleted.append(backup_set.run_id)
                logger.info(f"[{self.name}] Pruned {model_name} set {backup_set.run_id}")
            except StorageError as e:
                message = f"Failed to prune {model_name} set {backup_set.run_id}: {e}"
                logger.error(f"[{self.name}] {message}")
                result.errors.append(message)

        return result


class LocalStorage(BaseStorage):
    """
    Handler for storing backups in local filesystem.

    Layout: {base_path}/{model}/{run_id}/{archive_name} + manifest.json
    """

    type = 'local'

    def __init__(self, base_path: str, name: str = 'local'):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
            name: Backend name used in logs and reports
        """
        super().__init__(name)
        self.base_path = Path(base_path).expanduser()

        # Create base directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _model_dir(self, model_name: str) -> Path:
        return self.base_path / sanitize_name(model_name)

    def store(self, chunks: Iterable[Chunk], manifest: Manifest,
              cancel_event: Optional[threading.Event] = None) -> StoredBackupSet:
        """
        Write chunks in order into one file, then the manifest.

        Returns:
            The stored set

        Raises:
            StorageError: If writing fails; nothing of the run is left behind
            RunCancelled: If cancel_event is set while writing
        """
        run_dir = self._model_dir(manifest.model_name) / manifest.run_id
        if run_dir.exists():
            raise StorageError(f"Backup set already exists: {run_dir}")

        data_path = run_dir / manifest.archive_name
        partial_path = run_dir / f"{manifest.archive_name}.partial"

        try:
            run_dir.mkdir(parents=True)
            hasher = hashlib.sha256()
            size = 0
            count = 0

            with open(partial_path, 'wb') as f:
                for chunk in ensure_contiguous(chunks):
                    _check_cancelled(cancel_event)
                    f.write(chunk.payload)
                    hasher.update(chunk.payload)
                    size += len(chunk.payload)
                    count += 1
                f.flush()
                os.fsync(f.fileno())

            _verify_totals(manifest, count, size, f"sha256:{hasher.hexdigest()}")
            os.replace(partial_path, data_path)
            self._write_manifest(run_dir, manifest)

        except BaseException as e:
            shutil.rmtree(run_dir, ignore_errors=True)
            if isinstance(e, OSError):
                raise StorageError(f"Failed to store locally: {e}") from e
            raise

        return StoredBackupSet(
            model_name=manifest.model_name,
            run_id=manifest.run_id,
            manifest=manifest,
            locations=[str(data_path)],
        )

    @staticmethod
    def _write_manifest(run_dir: Path, manifest: Manifest):
        tmp_path = run_dir / f".{MANIFEST_NAME}.tmp"
        with open(tmp_path, 'w') as f:
            f.write(manifest.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, run_dir / MANIFEST_NAME)

    def list_all(self, model_name: str) -> List[StoredBackupSet]:
        """
        List complete and incomplete sets for a model, complete ones newest
        first followed by incomplete ones.

        Raises:
            StorageError: If listing fails
        """
        model_dir = self._model_dir(model_name)
        if not model_dir.exists():
            return []

        complete = []
        incomplete = []
        try:
            for run_dir in model_dir.iterdir():
                if not run_dir.is_dir() or run_dir.name.startswith('.'):
                    continue

                manifest = None
                manifest_path = run_dir / MANIFEST_NAME
                if manifest_path.is_file():
                    try:
                        manifest = Manifest.from_json(manifest_path.read_text())
                    except StorageError as e:
                        logger.warning(f"[{self.name}] Ignoring {run_dir}: {e}")

                locations = sorted(
                    str(p) for p in run_dir.iterdir()
                    if p.is_file() and p.name != MANIFEST_NAME and not p.name.startswith('.')
                )
                backup_set = StoredBackupSet(
                    model_name=model_name,
                    run_id=run_dir.name,
                    manifest=manifest,
                    locations=locations,
                )
                (complete if manifest else incomplete).append(backup_set)
        except OSError as e:
            raise StorageError(f"Failed to list local backups: {e}")

        complete.sort(key=lambda s: (s.created_at, s.run_id), reverse=True)
        incomplete.sort(key=lambda s: s.run_id, reverse=True)
        return complete + incomplete

    def delete_set(self, backup_set: StoredBackupSet):
        """
        Delete a whole set.

        The run directory is first renamed out of the listing in one step, so
        the set disappears as a unit; the renamed directory is then removed.

        Raises:
            PruneError: If the set could not be removed
        """
        model_dir = self._model_dir(backup_set.model_name)
        run_dir = model_dir / backup_set.run_id
        tombstone = model_dir / f".{backup_set.run_id}.deleting"

        try:
            os.rename(run_dir, tombstone)
        except OSError as e:
            raise PruneError(f"Could not remove {run_dir}, left intact: {e}")

        try:
            shutil.rmtree(tombstone)
        except OSError as e:
            raise PruneError(f"Removed {backup_set.run_id} from listing but could not delete {tombstone}: {e}")

    def prune(self, model_name: str, keep_n: int) -> PruneResult:
        result = super().prune(model_name, keep_n)
        self._sweep_tombstones(model_name, result)
        return result

    def _sweep_tombstones(self, model_name: str, result: PruneResult):
        """Retry removal of sets a previous prune renamed but could not delete."""
        model_dir = self._model_dir(model_name)
        if not model_dir.exists():
            return
        for tombstone in model_dir.glob('.*.deleting'):
            try:
                shutil.rmtree(tombstone)
                logger.info(f"[{self.name}] Removed leftover {tombstone.name}")
            except OSError as e:
                result.errors.append(f"Could not delete leftover {tombstone}: {e}")

    def open_data(self, backup_set: StoredBackupSet) -> BinaryIO:
        if not backup_set.is_complete:
            raise StorageError(f"Backup set {backup_set.run_id} is incomplete")
        path = self._model_dir(backup_set.model_name) / backup_set.run_id / backup_set.manifest.archive_name
        try:
            return open(path, 'rb')
        except OSError as e:
            raise StorageError(f"Cannot open {path}: {e}")


def is_transient_error(exc: BaseException) -> bool:
    """Whether a boto3/botocore error is worth retrying."""
    if isinstance(exc, (BotoConnectionError, ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get('Error', {})
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        return error.get('Code') in TRANSIENT_ERROR_CODES or status >= 500
    return False


@dataclass
class MultipartUpload:
    key: str
    upload_id: str
    parts: List[Dict[str, Any]] = field(default_factory=list)


class S3Storage(BaseStorage):
    """
    Handler for uploading backups to S3 with multi-part upload.

    Layout: {prefix}/{model}/{run_id}/{archive_name} + manifest.json, one
    part per chunk.
    """

    type = 's3'

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 prefix: str = 'backup', endpoint_url: Optional[str] = None, name: str = 's3',
                 max_attempts: int = 3, backoff_seconds: float = 1.0, max_backoff_seconds: float = 30.0,
                 client=None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain when None)
            secret_key: AWS secret access key
            prefix: Key prefix for all backups
            endpoint_url: Endpoint of an S3-compatible store
            name: Backend name used in logs and reports
            max_attempts: Attempts per request before giving up
            backoff_seconds: Initial retry delay, doubled per attempt
            max_backoff_seconds: Upper bound on the retry delay
            client: Pre-built boto3 S3 client
            sleep: Sleep function used between retries
        """
        super().__init__(name)
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                # Retries are handled here so the budget is explicit
                config=BotoConfig(retries={'max_attempts': 1, 'mode': 'standard'}),
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _model_prefix(self, model_name: str) -> str:
        model = sanitize_name(model_name)
        return f"{self.prefix}/{model}/" if self.prefix else f"{model}/"

    def _run_prefix(self, model_name: str, run_id: str) -> str:
        return f"{self._model_prefix(model_name)}{run_id}/"

    def _log_retry(self, retry_state):
        logger.warning(
            f"[{self.name}] Transient S3 error (attempt {retry_state.attempt_number}/{self.max_attempts}): "
            f"{retry_state.outcome.exception()}. Retrying in {retry_state.next_action.sleep:.1f}s"
        )

    def _call(self, description: str, operation: Callable, **kwargs):
        """
        Run an S3 request with retry on transient errors.

        Raises:
            TransferError: If the request fails permanently or the retry budget is spent
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(operation, **kwargs)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise TransferError(f"S3 {description} failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"S3 {description} failed: {e}") from e

    def begin(self, manifest: Manifest) -> MultipartUpload:
        """Start a multipart upload for the set's data object."""
        key = self._run_prefix(manifest.model_name, manifest.run_id) + manifest.archive_name
        response = self._call(
            'create multipart upload',
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
        )
        return MultipartUpload(key=key, upload_id=response['UploadId'])

    def upload_part(self, upload: MultipartUpload, chunk: Chunk):
        """Upload one chunk as part sequence_number + 1."""
        part_number = chunk.sequence_number + 1
        if part_number > S3_MAX_PARTS:
            raise TransferError(
                f"Backup needs more than {S3_MAX_PARTS} parts; increase chunk_size_mb"
            )
        response = self._call(
            f'upload of part {part_number}',
            self.s3_client.upload_part,
            Bucket=self.bucket_name,
            Key=upload.key,
            PartNumber=part_number,
            UploadId=upload.upload_id,
            Body=chunk.payload,
        )
        upload.parts.append({'PartNumber': part_number, 'ETag': response['ETag']})

    def complete(self, upload: MultipartUpload, manifest: Manifest):
        """
        Finalize the data object, then write the manifest.

        If the manifest cannot be written the data object is removed again so
        no manifest-less data is left behind.
        """
        self._complete_upload(upload)
        self._put_manifest(upload, manifest)

    def _complete_upload(self, upload: MultipartUpload):
        self._call(
            'complete multipart upload',
            self.s3_client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=upload.key,
            UploadId=upload.upload_id,
            MultipartUpload={'Parts': upload.parts},
        )

    def _put_manifest(self, upload: MultipartUpload, manifest: Manifest):
        manifest_key = self._run_prefix(manifest.model_name, manifest.run_id) + MANIFEST_NAME
        try:
            self._call(
                'manifest upload',
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=manifest_key,
                Body=manifest.to_json().encode('utf-8'),
                ContentType='application/json',
            )
        except TransferError:
            self._delete_quietly(upload.key)
            raise

    def abort(self, upload: MultipartUpload):
        """Abort a multipart upload so no orphaned parts are billed."""
        try:
            self._call(
                'abort multipart upload',
                self.s3_client.abort_multipart_upload,
                Bucket=self.bucket_name,
                Key=upload.key,
                UploadId=upload.upload_id,
            )
            logger.info(f"[{self.name}] Aborted multipart upload {upload.upload_id}")
        except TransferError as e:
            logger.error(f"[{self.name}] Failed to abort multipart upload {upload.upload_id}: {e}")

    def _delete_quietly(self, key: str):
        try:
            self._call('delete', self.s3_client.delete_object, Bucket=self.bucket_name, Key=key)
        except TransferError as e:
            logger.error(f"[{self.name}] Could not remove {key}: {e}")

    def store(self, chunks: Iterable[Chunk], manifest: Manifest,
              cancel_event: Optional[threading.Event] = None) -> StoredBackupSet:
        """
        Upload chunks as parts of one object, then the manifest.

        Raises:
            TransferError: If a part fails permanently (the upload is aborted)
            RunCancelled: If cancel_event is set (the upload is aborted)
        """
        upload = self.begin(manifest)
        try:
            hasher = hashlib.sha256()
            size = 0
            for chunk in ensure_contiguous(chunks):
                _check_cancelled(cancel_event)
                self.upload_part(upload, chunk)
                hasher.update(chunk.payload)
                size += len(chunk.payload)
                logger.debug(f"[{self.name}] Uploaded part {chunk.sequence_number + 1}")

            _verify_totals(manifest, len(upload.parts), size, f"sha256:{hasher.hexdigest()}")
            _check_cancelled(cancel_event)
            self._complete_upload(upload)
        except BaseException:
            self.abort(upload)
            raise

        self._put_manifest(upload, manifest)

        return StoredBackupSet(
            model_name=manifest.model_name,
            run_id=manifest.run_id,
            manifest=manifest,
            locations=[upload.key],
        )

    def _list_keys(self, prefix: str) -> List[Dict[str, Any]]:
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                objects.extend(page.get('Contents', []))
            return objects
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def list_all(self, model_name: str) -> List[StoredBackupSet]:
        """
        List sets for a model by grouping object keys by run.

        Raises:
            StorageError: If listing fails
        """
        model_prefix = self._model_prefix(model_name)
        runs: Dict[str, List[str]] = {}
        for obj in self._list_keys(model_prefix):
            remainder = obj['Key'][len(model_prefix):]
            if '/' not in remainder:
                continue
            run_id = remainder.split('/', 1)[0]
            runs.setdefault(run_id, []).append(obj['Key'])

        complete = []
        incomplete = []
        for run_id, keys in runs.items():
            manifest_key = f"{model_prefix}{run_id}/{MANIFEST_NAME}"
            manifest = None
            if manifest_key in keys:
                manifest = self._read_manifest(manifest_key)
            backup_set = StoredBackupSet(
                model_name=model_name,
                run_id=run_id,
                manifest=manifest,
                locations=sorted(k for k in keys if k != manifest_key),
            )
            (complete if manifest else incomplete).append(backup_set)

        complete.sort(key=lambda s: (s.created_at, s.run_id), reverse=True)
        incomplete.sort(key=lambda s: s.run_id, reverse=True)
        return complete + incomplete

    def _read_manifest(self, key: str) -> Optional[Manifest]:
        try:
            response = self._call('manifest download', self.s3_client.get_object,
                                  Bucket=self.bucket_name, Key=key)
            return Manifest.from_json(response['Body'].read())
        except StorageError as e:
            logger.warning(f"[{self.name}] Ignoring {key}: {e}")
            return None

    def delete_set(self, backup_set: StoredBackupSet):
        """
        Delete a whole set: the manifest first so the set stops counting as a
        backup, then its data objects in batches.

        Raises:
            PruneError: If any object could not be deleted
        """
        manifest_key = self._run_prefix(backup_set.model_name, backup_set.run_id) + MANIFEST_NAME
        try:
            self._call('manifest delete', self.s3_client.delete_object,
                       Bucket=self.bucket_name, Key=manifest_key)
        except TransferError as e:
            raise PruneError(f"Could not delete manifest, set left intact: {e}")

        keys = list(backup_set.locations)
        failed = []
        for start in range(0, len(keys), S3_DELETE_BATCH):
            batch = keys[start:start + S3_DELETE_BATCH]
            try:
                response = self._call(
                    'batch delete',
                    self.s3_client.delete_objects,
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': True},
                )
            except TransferError as e:
                failed.extend(batch)
                logger.error(f"[{self.name}] {e}")
                continue
            failed.extend(err.get('Key') for err in response.get('Errors', []))

        if failed:
            raise PruneError(
                f"Manifest removed but {len(failed)} data object(s) remain for {backup_set.run_id}: "
                f"{failed[:5]}"
            )

    def open_data(self, backup_set: StoredBackupSet) -> BinaryIO:
        if not backup_set.is_complete:
            raise StorageError(f"Backup set {backup_set.run_id} is incomplete")
        key = self._run_prefix(backup_set.model_name, backup_set.run_id) + backup_set.manifest.archive_name
        response = self._call('download', self.s3_client.get_object, Bucket=self.bucket_name, Key=key)
        return response['Body']

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def create_storage(backend_config, retry_settings: Optional[Dict[str, Any]] = None) -> BaseStorage:
    """
    Factory function to create the storage handler for a backend config.

    Args:
        backend_config: LocalBackendConfig or S3BackendConfig
        retry_settings: Optional max_attempts / backoff_seconds / max_backoff_seconds

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        StorageError: If backend type is invalid or the handler cannot be created
    """
    if backend_config.type == 'local':
        return LocalStorage(backend_config.path, name=backend_config.name)
    elif backend_config.type == 's3':
        return S3Storage(
            bucket_name=backend_config.bucket,
            region=backend_config.region,
            access_key=backend_config.access_key_id,
            secret_key=backend_config.secret_access_key,
            prefix=backend_config.prefix,
            endpoint_url=backend_config.endpoint_url,
            name=backend_config.name,
            **(retry_settings or {})
        )
    else:
        raise StorageError(f"Invalid backend type: {backend_config.type}")
