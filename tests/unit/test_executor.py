"""
Unit tests for the backup executor (strongbox/backup/executor.py).

Runs whole backups against local backends, with mocked storage handlers
where a backend failure is needed.
"""

import os
import hashlib
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from strongbox.backup.archive import iter_archive
from strongbox.backup.chunker import split
from strongbox.backup.compression import decompress_stream
from strongbox.backup.errors import TransferError
from strongbox.backup.executor import DONE, BackupExecutor, execute_model
from strongbox.backup.storage import LocalStorage, Manifest, S3Storage, create_storage
from strongbox.backup.streams import iter_blocks
from strongbox.models import BackendResult, BackupRun


def _failing_offsite(backend, retry_settings):
    if backend.name == 'offsite':
        storage = MagicMock()
        storage.store.side_effect = TransferError('S3 upload of part 1 failed (AccessDenied)')
        return storage
    return create_storage(backend, retry_settings)


def _old_set(path, index):
    data = b'old %d' % index
    created_at = datetime(2020, 1, 1 + index, tzinfo=timezone.utc)
    LocalStorage(str(path)).store(split(data, 1024), Manifest(
        model_name='home',
        run_id=created_at.strftime('%Y.%m.%d.%H.%M.%S'),
        created_at=created_at,
        total_chunks=1,
        total_bytes=len(data),
        checksum=f"sha256:{hashlib.sha256(data).hexdigest()}",
        archive_name='home.sbxa.gz',
    ))


class TestBackupExecutor:
    """Test complete runs."""

    def test_successful_run(self, db, make_model, model_data, tmp_path):
        work = tmp_path / 'work'
        executor = BackupExecutor(make_model(model_data), temp_dir=str(work))

        run = executor.execute()

        assert run.status == 'success'
        assert run.state == DONE
        assert executor.succeeded
        assert run.completed_at is not None

        result = run.backend_results[0]
        assert result.backend_name == 'disk'
        assert result.status == 'success'
        assert result.chunks == 1

        data_path = tmp_path / 'backups' / 'home' / run.run_id / 'home.sbxa.gz'
        assert result.location == str(data_path)
        assert (data_path.parent / 'manifest.json').is_file()
        payload = data_path.read_bytes()
        assert run.total_bytes == len(payload)
        assert run.checksum == f"sha256:{hashlib.sha256(payload).hexdigest()}"

        with open(data_path, 'rb') as f:
            members = list(iter_archive(decompress_stream(iter_blocks(f), 'gzip')))
        by_path = {m.logical_path: m.data for m in members}
        assert by_path['source/nested/test_file3.txt'] == b'Nested test content'
        assert by_path['source/test_file1.txt'] == b'Test content 1'

        assert os.listdir(work) == []
        assert 'Cleaned up working directory' in run.logs

    def test_records_are_persisted(self, db, make_model, model_data, tmp_path):
        BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work')).execute()

        runs = db.session.scalars(db.select(BackupRun)).all()
        results = db.session.scalars(db.select(BackendResult)).all()
        assert len(runs) == 1
        assert runs[0].status == 'success'
        assert [r.backend_name for r in results] == ['disk']

    def test_small_chunks(self, db, make_model, model_data, tmp_path):
        model_data['chunk_size_mb'] = 0.0001

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work')).execute()

        assert run.status == 'success'
        assert run.backend_results[0].chunks > 1

    def test_mandatory_source_missing(self, db, make_model, model_data, tmp_path):
        model_data['sources'] = [{'path': str(tmp_path / 'missing'), 'mandatory': True}]
        factory = MagicMock()

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                             storage_factory=factory).execute()

        assert run.status == 'failed'
        assert run.state == 'enumerating'
        assert 'does not exist' in run.error_message
        factory.assert_not_called()
        assert run.backend_results == []
        assert not (tmp_path / 'backups' / 'home').exists()

    def test_optional_source_missing_warns(self, db, make_model, model_data, tmp_path):
        model_data['sources'].append({'path': str(tmp_path / 'missing')})

        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'))
        run = executor.execute()

        assert run.status == 'success'
        assert any('does not exist' in w for w in executor.warnings)

    def test_unknown_recipient_fails_fast(self, db, make_model, model_data, key_dir, tmp_path):
        model_data['encryption'] = {'recipients': ['nobody'], 'key_dir': str(key_dir)}
        factory = MagicMock()

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                             storage_factory=factory).execute()

        assert run.status == 'failed'
        assert 'Unknown recipient key: nobody' in run.error_message
        factory.assert_not_called()

    def test_mandatory_hook_failure(self, db, make_model, model_data, tmp_path):
        model_data['hooks'] = [{'name': 'dump', 'command': ['strongbox-no-such-tool']}]
        factory = MagicMock()

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                             storage_factory=factory).execute()

        assert run.status == 'failed'
        assert run.state == 'pre_hook'
        factory.assert_not_called()

    def test_hooks_run_before_enumeration(self, db, make_model, model_data, tmp_path):
        model_data['hooks'] = [{'name': 'marker', 'command': 'echo dumped > marker.txt'}]

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work')).execute()

        assert run.status == 'success'
        assert run.logs.index("State: pre_hook") < run.logs.index("State: enumerating")

    def test_partial_when_one_backend_fails(self, db, make_model, model_data, tmp_path):
        model_data['backends'].append({'type': 's3', 'name': 'offsite', 'bucket': 'test-bucket', 'keep': 3})

        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                                  storage_factory=_failing_offsite)
        run = executor.execute()

        assert run.status == 'partial'
        assert not executor.succeeded
        statuses = {r.backend_name: r.status for r in run.backend_results}
        assert statuses == {'disk': 'success', 'offsite': 'failed'}
        assert 'offsite: S3 upload of part 1 failed' in run.error_message
        assert len(LocalStorage(str(tmp_path / 'backups')).list('home')) == 1

    def test_primary_backend_is_enough_when_not_requiring_all(self, db, make_model, model_data, tmp_path):
        model_data['backends'].append({'type': 's3', 'name': 'offsite', 'bucket': 'test-bucket'})
        model_data['require_all_backends'] = False

        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                                  storage_factory=_failing_offsite)
        run = executor.execute()

        assert run.status == 'partial'
        assert executor.succeeded

    def test_all_backends_fail(self, db, make_model, model_data, tmp_path):
        model_data['backends'] = [{'type': 's3', 'name': 'offsite', 'bucket': 'test-bucket'}]

        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                                  storage_factory=_failing_offsite)
        run = executor.execute()

        assert run.status == 'failed'
        assert not executor.succeeded

    def test_retention_after_store(self, db, make_model, model_data, tmp_path):
        for i in range(3):
            _old_set(tmp_path / 'backups', i)

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work')).execute()

        assert run.backend_results[0].pruned == 1
        remaining = [s.run_id for s in LocalStorage(str(tmp_path / 'backups')).list('home')]
        assert remaining == [run.run_id, '2020.01.03.00.00.00', '2020.01.02.00.00.00']

    def test_failed_store_is_not_pruned(self, db, make_model, model_data, tmp_path):
        model_data['backends'] = [{'type': 's3', 'name': 'offsite', 'bucket': 'test-bucket', 'keep': 1}]

        run = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                             storage_factory=_failing_offsite).execute()

        assert run.backend_results[0].pruned == 0
        assert 'Store failed, not pruning' in run.logs

    def test_cancel_before_start(self, db, make_model, model_data, tmp_path):
        factory = MagicMock()
        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'),
                                  storage_factory=factory)
        executor.cancel()

        run = executor.execute()

        assert run.status == 'cancelled'
        factory.assert_not_called()
        assert os.listdir(tmp_path / 'work') == []
        assert 'Cancellation requested' in run.logs

    def test_cancel_during_upload_aborts_multipart(self, db, make_model, model_data, tmp_path):
        model_data['backends'] = [{'type': 's3', 'name': 'offsite', 'bucket': 'test-bucket'}]
        client = MagicMock()
        client.create_multipart_upload.return_value = {'UploadId': 'upload-1'}
        work = tmp_path / 'work'
        executor = BackupExecutor(
            make_model(model_data), temp_dir=str(work),
            storage_factory=lambda backend, retry_settings: S3Storage(
                backend.bucket, client=client, name=backend.name, sleep=lambda s: None
            ),
        )

        def upload_part(**kwargs):
            executor.cancel()
            return {'ETag': '"etag-1"'}

        client.upload_part.side_effect = upload_part

        run = executor.execute()

        assert run.status == 'cancelled'
        assert run.backend_results[0].status == 'cancelled'
        client.abort_multipart_upload.assert_called_once()
        client.complete_multipart_upload.assert_not_called()
        client.put_object.assert_not_called()
        assert os.listdir(work) == []

    def test_cancel_does_not_take_log_lock(self, make_model, model_data, tmp_path):
        executor = BackupExecutor(make_model(model_data), temp_dir=str(tmp_path / 'work'))

        # A signal handler runs on the thread that may already hold the lock
        with executor._log_lock:
            executor.cancel()

        assert executor.cancel_event.is_set()
        assert executor.logs == []


class TestExecuteModel:
    """Test running a model from the app's policy file."""

    def test_execute_model(self, app, db, write_policy, model_data):
        write_policy({'models': {'home': model_data}})

        run = execute_model('home')

        assert run.status == 'success'
        assert os.listdir(app.config['TEMP_DIR']) == []

    def test_unknown_model(self, app, db, write_policy, model_data):
        from strongbox.backup.errors import ConfigError

        write_policy({'models': {'home': model_data}})

        with pytest.raises(ConfigError, match='Unknown model'):
            execute_model('work')
