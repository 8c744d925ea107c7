"""
Unit tests for retention enforcement (strongbox/backup/retention.py).
"""

import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from freezegun import freeze_time

from strongbox.backup.chunker import split
from strongbox.backup.policy import parse_policy
from strongbox.backup.retention import (
    RetentionManager,
    backend_lock,
    enforce_retention_policies,
    prune_backend,
)
from strongbox.backup.storage import LocalStorage, Manifest, PruneResult

BASE_TIME = datetime(2024, 1, 1, 3, 0, 0, tzinfo=timezone.utc)


def _populate(path, model_name, count):
    storage = LocalStorage(str(path))
    for i in range(count):
        data = b'run %d' % i
        created_at = BASE_TIME + timedelta(days=i)
        manifest = Manifest(
            model_name=model_name,
            run_id=created_at.strftime('%Y.%m.%d.%H.%M.%S'),
            created_at=created_at,
            total_chunks=1,
            total_bytes=len(data),
            checksum=f"sha256:{hashlib.sha256(data).hexdigest()}",
            archive_name=f'{model_name}.sbxa.gz',
        )
        storage.store(split(data, 1024), manifest)
    return storage


def _policy(models):
    return parse_policy({'models': models}, {})


def _model(backends):
    return {'sources': [{'path': '/etc/hosts'}], 'backends': backends}


class TestBackendLock:
    """Test the per model/backend lock registry."""

    def test_same_pair_same_lock(self):
        assert backend_lock('home', 'disk') is backend_lock('home', 'disk')
        assert backend_lock('home', 'disk') is not backend_lock('home', 'offsite')
        assert backend_lock('home', 'disk') is not backend_lock('work', 'disk')

    def test_prune_holds_lock(self):
        storage = MagicMock()
        storage.name = 'locked-disk'
        observed = []

        def prune(model_name, keep):
            observed.append(backend_lock(model_name, 'locked-disk').locked())
            return PruneResult()

        storage.prune.side_effect = prune

        prune_backend(storage, 'home', 2)

        assert observed == [True]
        assert not backend_lock('home', 'locked-disk').locked()


class TestRetentionManager:
    """Test retention across models and backends."""

    def test_enforce_model_policy(self, tmp_path):
        disk = _populate(tmp_path / 'disk', 'home', 4)
        model = _policy({'home': _model([
            {'type': 'local', 'name': 'disk', 'path': str(tmp_path / 'disk'), 'keep': 2},
            {'type': 'local', 'name': 'archive', 'path': str(tmp_path / 'archive')},
        ])}).get('home')

        results = RetentionManager().enforce_model_policy(model)

        assert list(results) == ['disk']
        assert len(results['disk'].deleted) == 2
        assert [s.run_id for s in disk.list('home')] == [
            '2024.01.04.03.00.00', '2024.01.03.03.00.00',
        ]

    def test_enforce_all_policies_summary(self, tmp_path):
        _populate(tmp_path / 'disk', 'home', 3)
        _populate(tmp_path / 'disk', 'work', 2)
        policy = _policy({
            'home': _model([{'type': 'local', 'path': str(tmp_path / 'disk'), 'keep': 1}]),
            'work': _model([{'type': 'local', 'path': str(tmp_path / 'disk'), 'keep': 5}]),
        })

        summary = enforce_retention_policies(policy)

        assert summary['models_processed'] == 2
        assert summary['deleted'] == 2
        assert summary['errors'] == []
        assert any('Retention enforcement complete' in line for line in summary['logs'])

    def test_backend_error_is_collected(self, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        model = _policy({'home': _model([
            {'type': 'local', 'name': 'broken', 'path': str(blocker / 'sub'), 'keep': 1},
        ])}).get('home')

        results = RetentionManager().enforce_model_policy(model)

        assert not results['broken'].ok
        assert results['broken'].errors[0].startswith('[broken]')

    @freeze_time('2024-05-01 02:00:00')
    def test_log_timestamps(self, tmp_path):
        model = _policy({'home': _model([
            {'type': 'local', 'path': str(tmp_path / 'disk'), 'keep': 1},
        ])}).get('home')
        manager = RetentionManager()

        manager.enforce_model_policy(model)

        assert manager.logs[0] == '[2024-05-01 02:00:00 UTC] Enforcing retention policy for model: home'
