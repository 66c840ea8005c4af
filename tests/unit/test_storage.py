"""
Unit tests for storage tier clients (tierkeep/backup/storage.py).

Tests HotStore against a moto S3 bucket, ColdVault against a moto vault,
and StorageClients construction from config.
"""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from tierkeep.backup.errors import ConfigurationError, StorageError, UnsupportedOperation
from tierkeep.backup.storage import ColdVault, HotStore, StorageClients
from tierkeep.backup.treehash import tree_hash


class TestHotStore:
    """Test HotStore operations against moto."""

    def test_put_and_get_stream(self, hot_store):
        """Streams of unknown length upload and read back intact."""
        data = b'archive-bytes' * 1000

        written = hot_store.put_stream('backups/a/a-20240101-000000.tgz', io.BytesIO(data))

        assert written == len(data)
        assert hot_store.get_stream('backups/a/a-20240101-000000.tgz').read() == data

    def test_list_objects_by_prefix(self, hot_store, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='backups/a/a-1.tgz', Body=b'1')
        bucket.put_object(Key='backups/a/a-2.tgz', Body=b'22')
        bucket.put_object(Key='backups/b/b-1.tgz', Body=b'333')

        objects = hot_store.list_objects('backups/a/')

        assert [o.key for o in objects] == ['backups/a/a-1.tgz', 'backups/a/a-2.tgz']
        assert [o.size for o in objects] == [1, 2]
        assert all(o.last_modified.tzinfo is not None for o in objects)

    def test_list_objects_limit(self, hot_store, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        for i in range(5):
            bucket.put_object(Key=f'k{i}', Body=b'x')

        assert len(hot_store.list_objects(limit=2)) == 2

    def test_head_object(self, hot_store, mock_s3):
        mock_s3.Bucket('test-bucket').put_object(Key='one.tgz', Body=b'12345')

        obj = hot_store.head_object('one.tgz')

        assert obj.key == 'one.tgz'
        assert obj.size == 5

    def test_head_missing_object(self, hot_store):
        with pytest.raises(StorageError, match='not found'):
            hot_store.head_object('missing.tgz')

    def test_get_missing_object(self, hot_store):
        with pytest.raises(StorageError):
            hot_store.get_stream('missing.tgz')

    def test_latest_object(self, hot_store, mock_s3):
        assert hot_store.latest_object('backups/') is None

        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='backups/a-1.tgz', Body=b'1')
        bucket.put_object(Key='backups/a-2.tgz', Body=b'2')

        assert hot_store.latest_object('backups/') is not None

    def test_delete_object(self, hot_store, mock_s3):
        mock_s3.Bucket('test-bucket').put_object(Key='gone.tgz', Body=b'x')

        hot_store.delete_object('gone.tgz')

        assert hot_store.list_objects() == []

    def test_delete_objects(self, hot_store, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        for i in range(3):
            bucket.put_object(Key=f'old-{i}.tgz', Body=b'x')

        result = hot_store.delete_objects(['old-0.tgz', 'old-1.tgz'])

        assert sorted(result['deleted']) == ['old-0.tgz', 'old-1.tgz']
        assert result['errors'] == []
        assert [o.key for o in hot_store.list_objects()] == ['old-2.tgz']

    def test_delete_objects_reports_batch_failure(self):
        """A failed batch marks each of its keys as an error."""
        store = HotStore.__new__(HotStore)
        store.bucket_name = 'b'
        store.s3_client = MagicMock()
        store.s3_client.delete_objects.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'DeleteObjects'
        )

        result = store.delete_objects(['a', 'b'])

        assert result['deleted'] == []
        assert [key for key, _ in result['errors']] == ['a', 'b']

    def test_bucket_exists(self, hot_store, mock_s3):
        assert hot_store.bucket_exists() is True
        other = HotStore(bucket_name='no-such-bucket', access_key='testing', secret_key='testing')
        assert other.bucket_exists() is False

    def test_self_test(self, hot_store):
        result = hot_store.self_test()

        assert result['write'] and result['read'] and result['delete']
        assert hot_store.list_objects('.tierkeep-selftest/') == []

    def test_self_test_missing_bucket(self, mock_s3):
        store = HotStore(bucket_name='no-such-bucket', access_key='testing', secret_key='testing')
        with pytest.raises(StorageError):
            store.self_test()

    def test_http_timeout_config(self, mock_s3):
        store = HotStore(bucket_name='test-bucket', access_key='testing', secret_key='testing', http_timeout=7)
        assert store.s3_client.meta.config.read_timeout == 7
        assert store.s3_client.meta.config.connect_timeout == 7


class TestColdVault:
    """Test ColdVault operations."""

    def test_upload_archive(self, cold_vault, tmp_path):
        data = b'cold-copy' * 5000
        path = tmp_path / 'spool.tmp'
        path.write_bytes(data)

        result = cold_vault.upload_archive(str(path), 'Backup: a.tgz')

        assert result['archive_id']
        assert result['size'] == len(data)
        assert result['tree_hash'] == tree_hash(data)

    def test_ensure_existing_vault(self, cold_vault):
        description = cold_vault.ensure_vault()
        assert description['VaultName'] == 'test-vault'

    def test_ensure_vault_creates_missing(self):
        vault = ColdVault.__new__(ColdVault)
        vault.vault_name = 'new-vault'
        vault.account_id = '-'
        vault.glacier_client = MagicMock()
        vault.glacier_client.describe_vault.side_effect = [
            ClientError({'Error': {'Code': 'ResourceNotFoundException'}}, 'DescribeVault'),
            {'VaultName': 'new-vault'}
        ]

        assert vault.ensure_vault() == {'VaultName': 'new-vault'}
        vault.glacier_client.create_vault.assert_called_once_with(accountId='-', vaultName='new-vault')

    def test_upload_failure(self, tmp_path):
        vault = ColdVault.__new__(ColdVault)
        vault.vault_name = 'v'
        vault.account_id = '-'
        vault.glacier_client = MagicMock()
        vault.glacier_client.upload_archive.side_effect = ClientError(
            {'Error': {'Code': 'RequestTimeoutException'}}, 'UploadArchive'
        )
        path = tmp_path / 'spool.tmp'
        path.write_bytes(b'x')

        with pytest.raises(StorageError):
            vault.upload_archive(str(path), 'desc')

    def test_self_test(self, cold_vault, tmp_path):
        result = cold_vault.self_test(str(tmp_path))

        assert result['write'] and result['delete']
        assert list(tmp_path.iterdir()) == []

    def test_listing_unsupported(self, cold_vault):
        with pytest.raises(UnsupportedOperation):
            cold_vault.list_archives()


class TestStorageClients:
    """Test building clients from config."""

    def _config(self, **overrides):
        config = {
            'HOT_BUCKET': 'test-bucket',
            'HOT_ACCESS_KEY': 'testing',
            'HOT_SECRET_KEY': 'testing',
            'HOT_REGION': 'us-east-1',
            'HOT_BUCKET_PATH': 'nightly',
            'COLD_VAULT': 'test-vault',
            'COLD_ACCESS_KEY': 'testing',
            'COLD_SECRET_KEY': 'testing',
        }
        config.update(overrides)
        return config

    def test_from_config(self, mock_s3):
        clients = StorageClients.from_config(self._config())

        assert clients.hot.bucket_name == 'test-bucket'
        assert clients.cold.vault_name == 'test-vault'
        assert clients.hot_bucket_path == 'nightly'

    def test_missing_hot_settings(self):
        with pytest.raises(ConfigurationError, match='HOT_SECRET_KEY'):
            StorageClients.from_config(self._config(HOT_SECRET_KEY=None))

    def test_cold_optional(self, mock_s3):
        clients = StorageClients.from_config(self._config(COLD_VAULT=None))
        assert clients.cold is None

    def test_cold_required(self, mock_s3):
        with pytest.raises(ConfigurationError, match='COLD_VAULT'):
            StorageClients.from_config(self._config(COLD_VAULT=''), require_cold=True)

    def test_cold_credentials_missing(self, mock_s3):
        with pytest.raises(ConfigurationError, match='COLD_ACCESS_KEY'):
            StorageClients.from_config(self._config(COLD_ACCESS_KEY=''))

    def test_empty_bucket_path_is_kept(self, mock_s3):
        """'' means bucket root and must not collapse to unset."""
        clients = StorageClients.from_config(self._config(HOT_BUCKET_PATH=''))
        assert clients.hot_bucket_path == ''
