"""
Storage tier clients.

- HotStore: S3-compatible bucket holding immediately readable backups
- ColdVault: archival vault (Glacier API) for long-term copies
- StorageClients: both clients, built once per invocation and passed around
"""

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigurationError, IntegrityError, ObjectNotFound, StorageError, UnsupportedOperation
from .objects import StorageObject
from .treehash import hash_file

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000
SELF_TEST_PAYLOAD = b'tierkeep storage self-test payload\n' * 32


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


def _client_config(http_timeout: Optional[float]) -> Optional[BotoConfig]:
    """No explicit timeout keeps botocore's per-read defaults; long uploads are not capped overall."""
    if http_timeout is None:
        return None
    return BotoConfig(connect_timeout=http_timeout, read_timeout=http_timeout)


class _CountingReader:
    """Wrap a readable stream and count the bytes handed out."""

    def __init__(self, stream):
        self._stream = stream
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.bytes_read += len(data)
        return data


class HotStore:
    """
    Client for the hot tier bucket.

    Works against AWS S3 or any S3-compatible endpoint (e.g. MinIO) when
    `endpoint_url` is given.
    """

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        http_timeout: Optional[float] = None
    ):
        """
        Initialize the hot tier client.

        Args:
            bucket_name: Bucket holding backups
            access_key: Access key ID
            secret_key: Secret access key
            region: Bucket region
            endpoint_url: S3-compatible endpoint; None for AWS
            http_timeout: Connect/read timeout in seconds; None for defaults
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=_client_config(http_timeout)
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize hot tier client: {e}")

        self.transfer_config = TransferConfig(
            multipart_threshold=16 * 1024 * 1024,
            multipart_chunksize=16 * 1024 * 1024,
            max_concurrency=4
        )

    def bucket_exists(self) -> bool:
        """
        Check that the bucket exists and is reachable.

        Raises:
            StorageError: On access denied or connection failures
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            code = _error_code(e)
            if code in ('404', 'NoSuchBucket', 'NotFound'):
                return False
            if code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"Hot tier bucket check failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to reach hot tier: {e}")

    def put_stream(self, key: str, stream, content_type: str = 'application/gzip') -> int:
        """
        Upload a stream of unknown length.

        The stream is consumed in multipart-sized chunks; it is never held in
        memory as a whole.

        Args:
            key: Object key
            stream: Object with read(size)
            content_type: Content-Type of the stored object

        Returns:
            Number of bytes uploaded

        Raises:
            StorageError: If the upload fails
        """
        reader = _CountingReader(stream)
        try:
            self.s3_client.upload_fileobj(
                Fileobj=reader,
                Bucket=self.bucket_name,
                Key=key,
                ExtraArgs={'ContentType': content_type},
                Config=self.transfer_config
            )
        except ClientError as e:
            raise StorageError(f"Hot tier upload of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Hot tier upload of {key} failed: {e}")

        return reader.bytes_read

    def get_stream(self, key: str):
        """
        Open an object for streaming reads.

        Returns:
            botocore StreamingBody
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body']
        except ClientError as e:
            code = _error_code(e)
            if code in ('NoSuchKey', '404'):
                raise ObjectNotFound(f"Object not found: {key}")
            raise StorageError(f"Hot tier read of {key} failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Hot tier read of {key} failed: {e}")

    def head_object(self, key: str) -> StorageObject:
        """Fetch metadata for a single object."""
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            code = _error_code(e)
            if code in ('NoSuchKey', '404'):
                raise ObjectNotFound(f"Object not found: {key}")
            raise StorageError(f"Hot tier head of {key} failed ({code}): {e}")

        return StorageObject.from_listing({
            'Key': key,
            'Size': response['ContentLength'],
            'LastModified': response['LastModified']
        })

    def list_objects(self, prefix: str = '', limit: Optional[int] = None) -> List[StorageObject]:
        """
        List objects recursively under a prefix.

        Args:
            prefix: Key prefix to filter by
            limit: Stop after this many objects (None for all)

        Returns:
            List of StorageObject in listing (key) order

        Raises:
            StorageError: If listing fails
        """
        objects = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for entry in page.get('Contents', []):
                    objects.append(StorageObject.from_listing(entry))
                    if limit and len(objects) >= limit:
                        return objects

            return objects

        except ClientError as e:
            raise StorageError(f"Hot tier list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Hot tier list failed: {e}")

    def latest_object(self, prefix: str = '') -> Optional[StorageObject]:
        """Most recently modified object under a prefix, or None."""
        objects = self.list_objects(prefix)
        if not objects:
            return None
        return max(objects, key=lambda o: (o.last_modified, o.key))

    def delete_object(self, key: str):
        """
        Delete one object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise StorageError(f"Hot tier delete of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Hot tier delete of {key} failed: {e}")

    def delete_objects(self, keys: List[str]) -> Dict[str, Any]:
        """
        Delete many objects in batches.

        Per-key failures do not stop the remaining batches.

        Returns:
            Dict with 'deleted' (list of keys) and 'errors' (list of (key, message))
        """
        result = {'deleted': [], 'errors': []}

        for i in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[i:i + DELETE_BATCH_SIZE]
            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': k} for k in batch], 'Quiet': False}
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Batch delete of {len(batch)} objects failed: {e}")
                result['errors'].extend((k, str(e)) for k in batch)
                continue

            result['deleted'].extend(d['Key'] for d in response.get('Deleted', []))
            result['errors'].extend(
                (err['Key'], err.get('Message', err.get('Code', 'Unknown')))
                for err in response.get('Errors', [])
            )

        return result

    def self_test(self) -> Dict[str, Any]:
        """
        Write, read back, verify and delete a probe object.

        Returns:
            Dict describing the completed steps

        Raises:
            StorageError: If any step fails
            IntegrityError: If the object read back differs from what was written
        """
        if not self.bucket_exists():
            raise StorageError(f"Bucket does not exist: {self.bucket_name}")

        key = f".tierkeep-selftest/{uuid.uuid4().hex}.bin"
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=SELF_TEST_PAYLOAD)
        except ClientError as e:
            raise StorageError(f"Self-test write failed ({_error_code(e)}): {e}")

        try:
            body = self.get_stream(key).read()
            if len(body) != len(SELF_TEST_PAYLOAD):
                raise IntegrityError(
                    f"Size mismatch: wrote {len(SELF_TEST_PAYLOAD)} bytes, read {len(body)}"
                )
            if body != SELF_TEST_PAYLOAD:
                raise IntegrityError("Content mismatch between written and read data")
        finally:
            self.delete_object(key)

        return {
            'bucket': self.bucket_name,
            'endpoint': self.endpoint_url,
            'write': True,
            'read': True,
            'delete': True,
            'bytes': len(SELF_TEST_PAYLOAD)
        }


class ColdVault:
    """
    Client for the archival vault.

    Uploads need the full payload length, its linear SHA-256 and its tree
    hash up front, so callers hand over a file on disk rather than a stream.
    """

    def __init__(
        self,
        vault_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        account_id: str = '-',
        http_timeout: Optional[float] = None
    ):
        self.vault_name = vault_name
        self.account_id = account_id or '-'
        self.region = region

        try:
            self.glacier_client = boto3.client(
                'glacier',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=_client_config(http_timeout)
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize cold tier client: {e}")

    def ensure_vault(self) -> Dict[str, Any]:
        """Describe the vault, creating it when missing."""
        try:
            return self.glacier_client.describe_vault(
                accountId=self.account_id, vaultName=self.vault_name
            )
        except ClientError as e:
            if _error_code(e) != 'ResourceNotFoundException':
                raise StorageError(f"Cold vault check failed ({_error_code(e)}): {e}")

        logger.info(f"Vault {self.vault_name} not found, creating it")
        try:
            self.glacier_client.create_vault(accountId=self.account_id, vaultName=self.vault_name)
            return self.glacier_client.describe_vault(
                accountId=self.account_id, vaultName=self.vault_name
            )
        except ClientError as e:
            raise StorageError(f"Failed to create vault {self.vault_name} ({_error_code(e)}): {e}")

    def upload_archive(self, local_path: str, description: str) -> Dict[str, Any]:
        """
        Upload a file as one archive.

        Args:
            local_path: Fully written file to upload
            description: Archive description (the hot tier key)

        Returns:
            Dict with 'archive_id', 'tree_hash', 'linear_hash' and 'size'

        Raises:
            StorageError: If the upload fails
        """
        tree, linear, size = hash_file(local_path)
        logger.info(f"Uploading {size} bytes to vault {self.vault_name} (tree hash {tree})")

        try:
            with open(local_path, 'rb') as body:
                response = self.glacier_client.upload_archive(
                    vaultName=self.vault_name,
                    accountId=self.account_id,
                    archiveDescription=description,
                    body=body,
                    checksum=tree
                )
        except ClientError as e:
            raise StorageError(f"Cold tier upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Cold tier upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Cannot read {local_path} for cold upload: {e}")

        return {
            'archive_id': response['archiveId'],
            'tree_hash': tree,
            'linear_hash': linear,
            'size': size
        }

    def delete_archive(self, archive_id: str):
        try:
            self.glacier_client.delete_archive(
                vaultName=self.vault_name, accountId=self.account_id, archiveId=archive_id
            )
        except ClientError as e:
            raise StorageError(f"Cold tier delete failed ({_error_code(e)}): {e}")

    def list_archives(self, prefix: str = ''):
        """Vault listing needs an asynchronous inventory job and is not supported."""
        raise UnsupportedOperation(
            "Archive listing is not available synchronously from the cold tier"
        )

    def self_test(self, scratch_dir: Optional[str] = None) -> Dict[str, Any]:
        """
        Upload and delete a probe archive.

        Raises:
            StorageError: If any step fails
        """
        self.ensure_vault()

        fd, path = tempfile.mkstemp(prefix='tierkeep-selftest-', dir=scratch_dir)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(SELF_TEST_PAYLOAD)
            uploaded = self.upload_archive(path, 'tierkeep self-test')
            self.delete_archive(uploaded['archive_id'])
        finally:
            if os.path.exists(path):
                os.remove(path)

        return {
            'vault': self.vault_name,
            'write': True,
            'delete': True,
            'bytes': uploaded['size']
        }


def _timeout(value) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)


@dataclass
class StorageClients:
    """
    Storage clients for one command invocation.

    Build with `from_config` at the start of a request or job and pass the
    instance to the components that need it.
    """

    hot: HotStore
    cold: Optional[ColdVault] = None
    hot_bucket_path: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], require_cold: bool = False) -> 'StorageClients':
        """
        Build clients from application config.

        Args:
            config: Flask config or any mapping with HOT_* / COLD_* keys
            require_cold: Fail when the cold tier is not configured

        Raises:
            ConfigurationError: If required settings are missing
        """
        missing = [
            name for name in ('HOT_BUCKET', 'HOT_ACCESS_KEY', 'HOT_SECRET_KEY')
            if not config.get(name)
        ]
        if missing:
            raise ConfigurationError(f"Hot tier is not configured, missing: {', '.join(missing)}")

        hot = HotStore(
            bucket_name=config['HOT_BUCKET'],
            access_key=config['HOT_ACCESS_KEY'],
            secret_key=config['HOT_SECRET_KEY'],
            region=config.get('HOT_REGION') or 'us-east-1',
            endpoint_url=config.get('HOT_ENDPOINT_URL') or None,
            http_timeout=_timeout(config.get('HOT_HTTP_TIMEOUT'))
        )

        cold = None
        if config.get('COLD_VAULT'):
            missing = [
                name for name in ('COLD_ACCESS_KEY', 'COLD_SECRET_KEY')
                if not config.get(name)
            ]
            if missing:
                raise ConfigurationError(f"Cold tier is not configured, missing: {', '.join(missing)}")

            cold = ColdVault(
                vault_name=config['COLD_VAULT'],
                access_key=config['COLD_ACCESS_KEY'],
                secret_key=config['COLD_SECRET_KEY'],
                region=config.get('COLD_REGION') or 'us-east-1',
                account_id=config.get('COLD_ACCOUNT_ID') or '-',
                http_timeout=_timeout(config.get('COLD_HTTP_TIMEOUT'))
            )
        elif require_cold:
            raise ConfigurationError("Cold tier is not configured, missing: COLD_VAULT")

        return cls(hot=hot, cold=cold, hot_bucket_path=config.get('HOT_BUCKET_PATH'))
