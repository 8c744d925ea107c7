"""
Shared pytest fixtures for Strongbox tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Policy files and parsed models
- Recipient key pairs
- Mock fixtures for external services (S3)
- Temporary file fixtures
"""

import json

import pytest
import boto3
from moto import mock_aws

from strongbox import create_app, db as _db
from strongbox.backup.policy import parse_policy
from strongbox.utils.keys import generate_key_pair, load_private_key


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    data_dir = tmp_path / 'data'
    app = create_app('testing', config_overrides={
        'DATA_DIR': str(data_dir),
        'TEMP_DIR': str(data_dir / 'temp'),
        'LOG_DIR': str(data_dir / 'logs'),
        'STRONGBOX_POLICY': str(tmp_path / 'policy.json'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - source/test_file1.txt
    - source/test_file2.log
    - source/nested/test_file3.txt
    - source/test_file.pyc (should be excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (source / 'test_file.pyc').write_bytes(b'compiled python')

    return source


@pytest.fixture
def key_dir(tmp_path):
    """
    Directory holding an X25519 recipient 'ops' and an RSA recipient 'vault'.

    Public keys are <id>.pub, private keys <id>.pem.
    """
    keys = tmp_path / 'keys'
    keys.mkdir()
    for key_id, kind in (('ops', 'x25519'), ('vault', 'rsa')):
        private_pem, public_pem = generate_key_pair(kind)
        (keys / f'{key_id}.pem').write_bytes(private_pem)
        (keys / f'{key_id}.pub').write_bytes(public_pem)
    return keys


@pytest.fixture
def ops_private_key(key_dir):
    return load_private_key(str(key_dir / 'ops.pem'))


@pytest.fixture
def vault_private_key(key_dir):
    return load_private_key(str(key_dir / 'vault.pem'))


@pytest.fixture
def model_data(temp_files, tmp_path):
    """Minimal model definition backing up temp_files to a local backend."""
    return {
        'sources': [{'type': 'path', 'path': str(temp_files), 'mandatory': True}],
        'compression': {'format': 'gzip', 'level': 6},
        'backends': [{'type': 'local', 'name': 'disk', 'path': str(tmp_path / 'backups'), 'keep': 3}],
    }


@pytest.fixture
def make_model():
    """Build a ModelPolicy from a model definition dict."""
    def _make(data, name='home', environ=None):
        return parse_policy({'models': {name: data}}, environ or {}).get(name)
    return _make


@pytest.fixture
def write_policy(app):
    """Write a policy dict to the app's configured policy path."""
    def _write(data):
        with open(app.config['STRONGBOX_POLICY'], 'w') as f:
            json.dump(data, f)
        return app.config['STRONGBOX_POLICY']
    return _write


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
