"""
Retention policy enforcement for backups.

Prunes old backup sets from every configured backend, keeping the newest
`keep` complete sets per model. Pruning and uploading for the same
model/backend pair are serialized through backend_lock().
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import StorageError
from .policy import ModelPolicy, Policy
from .storage import PruneResult, create_storage

logger = logging.getLogger(__name__)

_locks: Dict[tuple, threading.Lock] = {}
_locks_guard = threading.Lock()


def backend_lock(model_name: str, backend_name: str) -> threading.Lock:
    """
    Lock shared by every upload and prune of one model on one backend.

    Locks are process-local; two processes pointed at the same backend are
    not coordinated.
    """
    key = (model_name, backend_name)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


def prune_backend(storage, model_name: str, keep: int) -> PruneResult:
    """Prune one backend for one model while holding its lock."""
    with backend_lock(model_name, storage.name):
        return storage.prune(model_name, keep)


class RetentionManager:
    """
    Manages retention policy enforcement for backup models.

    Runs independently of backups (CLI `prune`, daily scheduler sweep); the
    executor prunes inline after each successful upload.
    """

    def __init__(self, retry_settings: Optional[Dict[str, Any]] = None):
        """
        Initialize retention manager.

        Args:
            retry_settings: S3 retry settings passed to create_storage()
        """
        self.retry_settings = retry_settings
        self.logs = []

    def enforce_all_policies(self, policy: Policy) -> Dict[str, Any]:
        """
        Enforce retention policies for all models.

        Returns:
            Dict with summary of cleanup operations:
            {
                'models_processed': int,
                'deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all models")

        summary = {
            'models_processed': 0,
            'deleted': 0,
            'errors': []
        }

        for model in policy:
            result = self.enforce_model_policy(model)
            summary['models_processed'] += 1
            for backend_result in result.values():
                summary['deleted'] += len(backend_result.deleted)
                summary['errors'].extend(backend_result.errors)

        self._log(
            f"Retention enforcement complete. "
            f"Models: {summary['models_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def enforce_model_policy(self, model: ModelPolicy) -> Dict[str, PruneResult]:
        """
        Enforce retention policy for a specific model.

        Args:
            model: ModelPolicy instance

        Returns:
            Dict of backend name to PruneResult; backends without `keep` are skipped
        """
        self._log(f"Enforcing retention policy for model: {model.name}")

        results = {}
        for backend in model.backends:
            if backend.keep is None:
                self._log(f"[{backend.name}] retention not configured, skipping")
                continue

            try:
                storage = create_storage(backend, self.retry_settings)
                result = prune_backend(storage, model.name, backend.keep)
            except StorageError as e:
                result = PruneResult(errors=[f"[{backend.name}] {e}"])

            self._log(
                f"[{backend.name}] keep={backend.keep}: deleted {len(result.deleted)}, "
                f"kept {len(result.kept)}, errors {len(result.errors)}"
            )
            for error in result.errors:
                self._log(f"[{backend.name}] {error}", level=logging.ERROR)
            results[backend.name] = result

        return results

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies(policy: Policy, retry_settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Enforce retention policies for all models.

    This function is called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager(retry_settings)
    return manager.enforce_all_policies(policy)
