"""
Shared pytest fixtures for Tierkeep tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- API token headers
- Backup site fixtures
- Mock fixtures for external services (S3, Glacier, SSH, scheduler)
- Scripted transports and hot tier object factories
"""

import io
import json
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import boto3
import pytest
from moto import mock_aws

from tierkeep import create_app, db as _db
from tierkeep.models import BackupSite, TransferHistory
from tierkeep.backup.errors import TransportError
from tierkeep.backup.objects import StorageObject
from tierkeep.backup.sources import CommandResult
from tierkeep.backup.storage import ColdVault, HotStore, StorageClients


class FakeCapture:
    """Capture process whose stdout is an in-memory byte stream."""

    def __init__(self, data=b'', exit_status=0, stderr=''):
        self.command = None
        self.stdout = io.BytesIO(data)
        self.exit_status = exit_status
        self.stderr = stderr
        self.killed = False

    def wait(self):
        return self.exit_status, self.stderr

    def kill(self):
        self.killed = True


class FakeTransport:
    """
    Transport answering commands from a script.

    `responses` maps a command substring to stdout (str) or a CommandResult.
    Unmatched commands succeed with empty output.
    """

    name = 'fake'

    def __init__(self, responses=None, capture=None):
        self.responses = responses or {}
        self.capture = capture or FakeCapture()
        self.commands = []
        self.closed = False

    def execute(self, command):
        self.commands.append(command)
        for needle, result in self.responses.items():
            if needle in command:
                if isinstance(result, CommandResult):
                    return result
                return CommandResult(result, '', 0)
        return CommandResult('', '', 0)

    def run(self, command):
        result = self.execute(command)
        if result.exit_status != 0:
            raise TransportError(f"exit {result.exit_status}", stderr=result.stderr,
                                 exit_status=result.exit_status)
        return result.stdout

    def open_stream(self, command):
        self.commands.append(command)
        self.capture.command = command
        return self.capture

    def close(self):
        self.closed = True


@pytest.fixture(scope='function')
def aws_credentials(monkeypatch):
    """Fake AWS credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(scope='function')
def app(aws_credentials):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing')
    app.config.update({
        'TEMP_DIR': os.path.join(temp_dir, 'temp'),
        'HOT_BUCKET_PATH': None,
    })
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


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


@pytest.fixture
def auth_headers():
    """Authorization header matching TestingConfig.API_TOKEN."""
    return {'Authorization': 'Bearer test-token'}


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 and Glacier using moto.

    Creates bucket 'test-bucket' and vault 'test-vault' in us-east-1.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        glacier = boto3.client('glacier', region_name='us-east-1')
        glacier.create_vault(accountId='-', vaultName='test-vault')

        yield s3


@pytest.fixture
def hot_store(mock_s3):
    """HotStore bound to the mocked bucket."""
    return HotStore(bucket_name='test-bucket', access_key='testing', secret_key='testing')


@pytest.fixture
def cold_vault(mock_s3):
    """ColdVault bound to the mocked vault."""
    return ColdVault(vault_name='test-vault', access_key='testing', secret_key='testing')


@pytest.fixture
def storage_clients(hot_store, cold_vault):
    """Hot and cold clients against moto."""
    return StorageClients(hot=hot_store, cold=cold_vault)


@pytest.fixture
def make_object():
    """
    Factory for StorageObject values.

    `age` is a timedelta before 2024-06-30 12:00 UTC, or pass `when` directly.
    """
    base = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)

    def _make(key, size=1024, age=None, when=None):
        if when is None:
            when = base - (age or timedelta())
        return StorageObject(key=key, size=size, last_modified=when)

    return _make


@pytest.fixture
def make_transport():
    """Factory for FakeTransport."""
    return FakeTransport


@pytest.fixture
def make_capture():
    """Factory for FakeCapture."""
    return FakeCapture


@pytest.fixture(scope='function')
def local_site(db):
    """
    Create a backup site archiving a local directory.
    """
    site = BackupSite(
        name='example.com',
        description='Test local site',
        enabled=True,
        source_type='local',
        source_config='{}',
        working_dir='/srv/www/example.com',
        use_cold=True,
        schedule_cron='0 2 * * *',
        retention_keep=3
    )
    db.session.add(site)
    db.session.commit()
    return site


@pytest.fixture(scope='function')
def ssh_site(db):
    """
    Create a backup site archiving a directory on a remote host.
    """
    site = BackupSite(
        name='shop.example.org',
        description='Test SSH site',
        enabled=True,
        source_type='ssh',
        source_config=json.dumps({
            'host': 'web1.example.org',
            'port': 22,
            'username': 'deploy',
            'password': 'secret'
        }),
        working_dir='/var/www/shop',
        parent_dir='/var/www',
        bucket_path='',
        use_cold=False,
        retention_smart=True,
        pre_commands=json.dumps(['mysqldump shop > /var/www/shop/db.sql']),
        post_commands=json.dumps(['rm -f /var/www/shop/db.sql'])
    )
    db.session.add(site)
    db.session.commit()
    return site


@pytest.fixture(scope='function')
def transfer_history(db, local_site):
    """
    Create a transfer history record for testing.
    """
    history = TransferHistory(
        site_id=local_site.id,
        status='success',
        started_at=datetime.utcnow(),
        completed_at=datetime.utcnow(),
        object_key='backups/example.com/example.com-20240115-120000.tgz',
        bytes_written=1024000,
        hot_succeeded=True,
        cold_succeeded=True,
        archive_id='archive-1',
        logs='[2024-01-15 12:00:00 UTC] Backup started\n[2024-01-15 12:00:05 UTC] Backup finished'
    )
    db.session.add(history)
    db.session.commit()
    return history


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('tierkeep.backup.sources.SSHClient') as mock_ssh:
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import tierkeep.scheduler as scheduler_module

    with patch('tierkeep.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
