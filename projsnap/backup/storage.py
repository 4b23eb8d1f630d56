"""
Remote sinks for snapshot archives.

A remote sink receives a copy of each committed archive after a successful
local build. Upload failures never roll back the local snapshot.

Supports:
- S3Storage: Upload to AWS S3 (or any S3-compatible endpoint)
- LocalStorage: Copy into a mirror directory (e.g. a mounted network share)
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

import boto3
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class RemoteSink(Protocol):
    """Anything that can receive a local archive under a destination key."""

    def upload(self, local_path: str, destination_key: str) -> str:
        ...


class ManagedSink(RemoteSink, Protocol):
    """A remote sink that can also be checked, listed and pruned."""

    def delete(self, destination_key: str) -> None:
        ...

    def list_objects(self, prefix: str) -> List[dict]:
        ...

    def test_connection(self) -> bool:
        ...


def remote_key_for(project_name: str, archive_path: str, created_at: Optional[datetime] = None) -> str:
    """
    Build the remote key for an archive.

    Format: {project_name}/{YYYY}/{MM}/{filename}
    """
    created_at = created_at or datetime.now()
    filename = os.path.basename(archive_path)
    return f"{project_name}/{created_at.year}/{created_at.month:02d}/{filename}"


class S3Storage:
    """
    Remote sink uploading archives to an S3 bucket.
    """

    def __init__(self, bucket_name: str, region: str = 'us-east-1', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (None = default credential chain)
            secret_key: AWS secret access key
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, destination_key: str) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            destination_key: S3 object key

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for large archives
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, destination_key)
            else:
                self._simple_upload(local_path, destination_key)

            logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{destination_key}")
            return destination_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload, aborting it on any error.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete(self, destination_key: str):
        """Delete a mirrored archive. Deleting a missing key is not an error."""
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=destination_key)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(f"delete s3://{self.bucket_name}/{destination_key}", e)
        logger.debug(f"Deleted s3://{self.bucket_name}/{destination_key}")

    def list_objects(self, prefix: str) -> List[dict]:
        """
        List mirrored objects below a key prefix, across all result pages.

        Args:
            prefix: Key prefix, e.g. "{project_name}/"

        Returns:
            List of dicts with 'Key', 'LastModified' (timezone-aware), and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        paginator = self.s3_client.get_paginator('list_objects_v2')
        try:
            return [
                {'Key': obj['Key'], 'LastModified': obj['LastModified'], 'Size': obj['Size']}
                for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix)
                for obj in page.get('Contents', [])
            ]
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(f"list s3://{self.bucket_name}/{prefix}", e)

    def test_connection(self) -> bool:
        """
        Check the bucket exists and these credentials can reach it.

        Raises:
            StorageError: If the bucket is missing, forbidden or unreachable
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as e:
            raise _storage_error(f"reach bucket {self.bucket_name}", e)
        return True


def _storage_error(action: str, error: Exception) -> StorageError:
    if not isinstance(error, ClientError):
        return StorageError(f"Failed to {action}: {error}")

    code = error.response.get('Error', {}).get('Code', 'Unknown')
    if code in ('404', 'NoSuchBucket'):
        return StorageError(f"Failed to {action}: bucket does not exist")
    if code in ('403', 'AccessDenied'):
        return StorageError(f"Failed to {action}: access denied")
    return StorageError(f"Failed to {action} ({code}): {error}")


class LocalStorage:
    """
    Remote sink copying archives into another local directory.

    Stores archives under the same key layout as S3:
    {base_path}/{project_name}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for mirrored archives
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def upload(self, local_path: str, destination_key: str) -> str:
        """
        Copy archive to the mirror directory.

        The copy is written under a temporary name and renamed into place.

        Args:
            local_path: Path to source archive file
            destination_key: Relative path below base_path

        Returns:
            destination_key

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        dest_path = self.base_path / destination_key
        temp_path = dest_path.with_name(f".{dest_path.name}.partial")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, temp_path)
            os.replace(temp_path, dest_path)
            return destination_key

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, relative_path: str):
        """
        Delete a mirrored archive.

        Args:
            relative_path: Key of the archive below base_path

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / relative_path

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_objects(self, prefix: str) -> List[dict]:
        """
        List mirrored archives whose key starts with prefix.

        Args:
            prefix: Key prefix, e.g. "{project_name}/"

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys (same shape as S3Storage)

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []

            for file_path in sorted(self.base_path.rglob('*')):
                if not file_path.is_file() or file_path.name.startswith('.'):
                    continue
                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                objects.append({
                    'Key': key,
                    'LastModified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    'Size': stat.st_size
                })

            return objects

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def test_connection(self) -> bool:
        """
        Check the mirror directory exists and is writable.

        Raises:
            StorageError: If the directory cannot be used
        """
        if not self.base_path.is_dir():
            raise StorageError(f"Mirror directory does not exist: {self.base_path}")
        if not os.access(self.base_path, os.W_OK | os.X_OK):
            raise StorageError(f"Mirror directory is not writable: {self.base_path}")
        return True
