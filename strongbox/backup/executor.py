"""
Backup executor - orchestrates the complete backup workflow.

States:
    idle -> pre_hook -> enumerating -> piping -> uploading -> pruning -> done

with `failed` and `cancelled` reachable from every non-terminal state.

Workflow:
1. Create BackupRun record (status: running)
2. Resolve encryption recipients (fail fast, nothing touched yet)
3. Run pre-hooks in a private working directory
4. Enumerate sources
5. Archive -> compress -> encrypt into a spool file in the working directory
6. Store the spool on every backend in parallel, each with its own reader
7. Prune each backend that stored successfully
8. Remove the working directory on every exit path
9. Update BackupRun and per-backend BackendResult rows
"""

import os
import shutil
import hashlib
import logging
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import current_app

from strongbox import db
from strongbox.config import retry_settings
from strongbox.models import BackupRun, BackendResult
from strongbox.utils.keys import KeyStore
from .archive import ArchiveBuilder
from .chunker import count_chunks, split
from .compression import compress_stream, generate_archive_filename, generate_run_id, sanitize_name
from .encryption import encrypt_stream
from .errors import BackupError, PipelineError, RunCancelled, StorageError
from .hooks import run_hooks
from .policy import ModelPolicy, Policy, load_policy
from .retention import backend_lock, prune_backend
from .sources import create_source
from .storage import Manifest, PruneResult, create_storage

logger = logging.getLogger(__name__)

IDLE = 'idle'
PRE_HOOK = 'pre_hook'
ENUMERATING = 'enumerating'
PIPING = 'piping'
UPLOADING = 'uploading'
PRUNING = 'pruning'
DONE = 'done'
FAILED = 'failed'
CANCELLED = 'cancelled'


@dataclass
class BackendOutcome:
    """Result of one backend branch of a run."""
    backend_name: str
    backend_type: str
    status: str = 'pending'
    location: Optional[str] = None
    chunks: Optional[int] = None
    error: Optional[str] = None
    pruned: List[str] = field(default_factory=list)
    prune_errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'


@dataclass
class Spool:
    path: str
    total_bytes: int
    checksum: str


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a model.
    """

    def __init__(self, model: ModelPolicy, temp_dir: Optional[str] = None,
                 retry_settings: Optional[Dict[str, Any]] = None, storage_factory=create_storage):
        """
        Initialize backup executor.

        Args:
            model: ModelPolicy to execute
            temp_dir: Parent directory for the run's working directory
            retry_settings: S3 retry settings passed to the storage factory
            storage_factory: Callable building a storage handler from a backend config
        """
        self.model = model
        self.temp_dir = temp_dir
        self.retry_settings = retry_settings
        self.storage_factory = storage_factory

        self.state = IDLE
        self.failed_in = None
        self.cancel_event = threading.Event()
        self.run_id = None
        self.run_record = None
        self.outcomes: List[BackendOutcome] = []
        self.warnings: List[str] = []
        self.logs = []
        self._sources = []
        self._storages = {}
        self._log_lock = threading.Lock()
        self._log_flush_counter = 0
        self._main_thread = None

    @property
    def succeeded(self) -> bool:
        """
        Whether the run counts as a success for the process exit status.

        Every backend must succeed unless the model sets
        require_all_backends to false, in which case the primary (first)
        backend is enough.
        """
        if self.state != DONE or not self.outcomes:
            return False
        if all(o.succeeded for o in self.outcomes):
            return True
        if self.model.require_all_backends:
            return False
        primary = self.model.primary_backend
        return any(o.succeeded and o.backend_name == primary.name for o in self.outcomes)

    def cancel(self):
        """
        Request cancellation. In-flight uploads stop at the next chunk.

        Only sets the cancel event so it is safe to call from a signal
        handler; the request is logged by the thread running the model.
        """
        self.cancel_event.set()

    def execute(self) -> BackupRun:
        """
        Execute the backup model.

        Returns:
            BackupRun record with execution results
        """
        self._main_thread = threading.current_thread()
        created_at = datetime.now(timezone.utc)
        self.run_id = generate_run_id(created_at)

        # Create run record
        self.run_record = BackupRun(
            model_name=self.model.name,
            run_id=self.run_id,
            status='running',
            state=IDLE,
            started_at=created_at.replace(tzinfo=None)
        )
        db.session.add(self.run_record)
        db.session.commit()

        self._log(f"Starting backup model: {self.model.name} (run {self.run_id})")

        try:
            with self._work_dir() as work_dir:
                self._execute_workflow(work_dir, created_at)

            self.run_record.status = self._overall_status()
            failed = [o for o in self.outcomes if not o.succeeded]
            if failed:
                self.run_record.error_message = '; '.join(f"{o.backend_name}: {o.error}" for o in failed)
            self._log(f"Backup finished: {self.run_record.status}")

        except RunCancelled:
            self._fail(CANCELLED)
            self.run_record.status = 'cancelled'
            self.run_record.error_message = 'Cancelled'
            self._log("Cancellation requested")
            self._log(f"Backup cancelled during {self.failed_in}")

        except BackupError as e:
            self._fail(FAILED)
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            self._log(f"Backup failed during {self.failed_in}: {e}", logging.ERROR)

        except Exception as e:
            logger.exception(f"Unexpected error in backup {self.model.name}")
            self._fail(FAILED)
            self.run_record.status = 'failed'
            self.run_record.error_message = f"Unexpected error: {e}"
            self._log(f"Backup failed during {self.failed_in}: {e}", logging.ERROR)

        finally:
            self.run_record.completed_at = datetime.utcnow()
            self.run_record.state = self.failed_in or self.state
            for outcome in self.outcomes:
                db.session.add(BackendResult(
                    run=self.run_record,
                    backend_name=outcome.backend_name,
                    backend_type=outcome.backend_type,
                    status=outcome.status,
                    location=outcome.location,
                    chunks=outcome.chunks,
                    pruned=len(outcome.pruned),
                    prune_error='\n'.join(outcome.prune_errors) or None,
                    error_message=outcome.error
                ))
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.run_record

    def _execute_workflow(self, work_dir: str, created_at: datetime):
        """Execute the main backup workflow steps."""
        recipients = self._resolve_recipients()

        self._transition(PRE_HOOK)
        if self.model.hooks:
            self.warnings.extend(run_hooks(self.model.hooks, work_dir))
        self._check_cancelled()

        self._transition(ENUMERATING)
        entries = self._enumerate()
        self._log(f"Enumerated {len(entries)} entries from {len(self.model.sources)} sources")
        self._check_cancelled()

        self._transition(PIPING)
        archive_name = generate_archive_filename(
            self.model.name, self.model.pipeline.compression_format, bool(recipients)
        )
        spool = self._pipe(entries, recipients, os.path.join(work_dir, archive_name))
        self.run_record.total_bytes = spool.total_bytes
        self.run_record.checksum = spool.checksum
        self._flush_logs_to_db()

        manifest = Manifest(
            model_name=self.model.name,
            run_id=self.run_id,
            created_at=created_at,
            total_chunks=0,
            total_bytes=spool.total_bytes,
            checksum=spool.checksum,
            archive_name=archive_name,
            compression_format=self.model.pipeline.compression_format,
            recipients=[r.key_id for r in recipients],
        )

        self._transition(UPLOADING)
        self.outcomes = self._upload_all(spool, manifest)
        self._check_cancelled()

        self._transition(PRUNING)
        self._prune_all()

        self._transition(DONE)

    def _resolve_recipients(self):
        """
        Resolve recipient keys before any work is done.

        Raises:
            EncryptionError: If a recipient key is unknown or unusable
        """
        recipient_ids = self.model.pipeline.encryption_recipients
        if not recipient_ids:
            self._log("Encryption: disabled")
            return []
        key_store = KeyStore(self.model.encryption_keys, self.model.key_dir)
        recipients = key_store.resolve(recipient_ids)
        self._log(f"Encryption: {len(recipients)} recipient(s): {', '.join(r.key_id for r in recipients)}")
        return recipients

    def _enumerate(self):
        """
        Enumerate all sources in policy order.

        Raises:
            MandatorySourceMissing: If a mandatory source is absent
        """
        entries = []
        for spec in self.model.sources:
            source = create_source(spec.type, spec.config)
            self._sources.append(source)
            found = source.enumerate()
            self._log(f"Source {source.describe()}: {len(found)} entries")
            entries.extend(found)
        return entries

    def _pipe(self, entries, recipients, spool_path: str) -> Spool:
        """
        Run archive -> compress -> encrypt into the spool file.

        Raises:
            PipelineError: If any stage fails; nothing reaches a backend
            MandatorySourceMissing: If a mandatory entry cannot be read
        """
        pipeline = self.model.pipeline
        self._log(
            f"Building archive (compression: {pipeline.compression_format}, "
            f"level: {pipeline.compression_level})"
        )

        builder = ArchiveBuilder()
        stream = compress_stream(builder.build(entries), pipeline.compression_format, pipeline.compression_level)
        if recipients:
            stream = encrypt_stream(stream, recipients)

        hasher = hashlib.sha256()
        total_bytes = 0
        try:
            with open(spool_path, 'wb') as f:
                for block in stream:
                    self._check_cancelled()
                    f.write(block)
                    hasher.update(block)
                    total_bytes += len(block)
        except OSError as e:
            raise PipelineError(f"Failed to write spool file: {e}") from e

        self.warnings.extend(builder.warnings)
        for source in self._sources:
            self.warnings.extend(w for w in source.warnings if w not in self.warnings)
        for warning in self.warnings:
            self._log(f"Warning: {warning}", logging.WARNING)

        self._log(
            f"Archive built: {builder.entries_written} entries, {builder.entries_skipped} skipped, "
            f"{total_bytes / 1024 / 1024:.2f} MB"
        )
        return Spool(path=spool_path, total_bytes=total_bytes, checksum=f"sha256:{hasher.hexdigest()}")

    def _upload_all(self, spool: Spool, manifest: Manifest) -> List[BackendOutcome]:
        """Store the spool on every backend concurrently."""
        backends = self.model.backends
        with ThreadPoolExecutor(max_workers=len(backends), thread_name_prefix='strongbox-upload') as pool:
            futures = [pool.submit(self._upload_backend, backend, spool, manifest) for backend in backends]
            return [future.result() for future in futures]

    def _upload_backend(self, backend, spool: Spool, manifest: Manifest) -> BackendOutcome:
        """
        One backend branch. Never raises: every failure becomes the outcome.
        """
        outcome = BackendOutcome(backend_name=backend.name, backend_type=backend.type)
        chunk_size = self.model.chunk_size_for(backend)
        backend_manifest = replace(manifest, total_chunks=count_chunks(spool.total_bytes, chunk_size))

        try:
            storage = self.storage_factory(backend, self.retry_settings)
            self._storages[backend.name] = storage
            self._log(f"[{backend.name}] Storing {backend_manifest.total_chunks} chunk(s)")

            with backend_lock(self.model.name, backend.name):
                with open(spool.path, 'rb') as f:
                    stored = storage.store(split(f, chunk_size), backend_manifest, self.cancel_event)

            outcome.status = 'success'
            outcome.location = stored.locations[0] if stored.locations else None
            outcome.chunks = backend_manifest.total_chunks
            self._log(f"[{backend.name}] Stored: {outcome.location}")

        except RunCancelled:
            outcome.status = 'cancelled'
            outcome.error = 'Cancelled'
            self._log(f"[{backend.name}] Cancelled")
        except (StorageError, OSError) as e:
            outcome.status = 'failed'
            outcome.error = str(e)
            self._log(f"[{backend.name}] Failed: {e}", logging.ERROR)
        except Exception as e:
            logger.exception(f"Unexpected error storing to {backend.name}")
            outcome.status = 'failed'
            outcome.error = f"Unexpected error: {e}"
            self._log(f"[{backend.name}] Failed: {e}", logging.ERROR)

        return outcome

    def _prune_all(self):
        """Prune each backend whose store succeeded. Prune failures never fail the run."""
        for backend, outcome in zip(self.model.backends, self.outcomes):
            if not outcome.succeeded:
                self._log(f"[{backend.name}] Store failed, not pruning")
                continue
            if backend.keep is None:
                continue

            storage = self._storages[backend.name]
            try:
                result = prune_backend(storage, self.model.name, backend.keep)
            except StorageError as e:
                result = PruneResult(errors=[str(e)])

            outcome.pruned = result.deleted
            outcome.prune_errors = result.errors
            self._log(f"[{backend.name}] Retention keep={backend.keep}: pruned {len(result.deleted)}")
            for error in result.errors:
                self._log(f"[{backend.name}] Prune error: {error}", logging.ERROR)

    def _overall_status(self) -> str:
        succeeded = [o for o in self.outcomes if o.succeeded]
        if len(succeeded) == len(self.outcomes):
            return 'success'
        if not succeeded:
            return 'failed'
        return 'partial'

    @contextmanager
    def _work_dir(self):
        """Private working directory for one run, removed on every exit path."""
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        path = tempfile.mkdtemp(prefix=f'strongbox_{sanitize_name(self.model.name)}_', dir=self.temp_dir)
        self._log(f"Working directory: {path}")
        try:
            yield path
        finally:
            try:
                shutil.rmtree(path)
                self._log("Cleaned up working directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup working directory: {e}", logging.WARNING)

    def _transition(self, state: str):
        self.state = state
        self._log(f"State: {state}")
        if self.run_record is not None:
            self.run_record.state = state
        self._flush_logs_to_db()

    def _fail(self, terminal: str):
        self.failed_in = self.state
        self.state = terminal

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise RunCancelled("Run cancelled")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        with self._log_lock:
            self.logs.append(log_entry)
            self._log_flush_counter += 1
            flush = self._log_flush_counter >= 5
        logger.log(level, f"[{self.model.name}] {message}")

        # Flush logs every 5 entries; upload threads leave the session alone
        if flush and threading.current_thread() is self._main_thread:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record is not None and threading.current_thread() is self._main_thread:
            with self._log_lock:
                self.run_record.logs = '\n'.join(self.logs)
                self._log_flush_counter = 0
            db.session.commit()


def build_executor(model: ModelPolicy) -> BackupExecutor:
    """Create an executor using the current app's temp dir and retry settings."""
    return BackupExecutor(
        model,
        temp_dir=current_app.config.get('TEMP_DIR'),
        retry_settings=retry_settings(current_app.config)
    )


def load_app_policy() -> Policy:
    """Load the policy file configured for the current app."""
    return load_policy(current_app.config['STRONGBOX_POLICY'])


def execute_model(model_name: str, policy: Optional[Policy] = None) -> BackupRun:
    """
    Execute a backup model by name.

    Args:
        model_name: Name of the model in the policy
        policy: Loaded policy (default: the app's configured policy file)

    Returns:
        BackupRun record with execution results

    Raises:
        ConfigError: If the policy is invalid or the model is unknown
    """
    if policy is None:
        policy = load_app_policy()
    executor = build_executor(policy.get(model_name))
    return executor.execute()
