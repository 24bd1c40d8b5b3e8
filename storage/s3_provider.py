"""
S3-compatible storage provider.

Works with AWS S3, Cloudflare R2 (zero egress fees, ideal for streaming),
Backblaze B2 and self-hosted endpoints such as MinIO, using the boto3 S3
client.
"""

import logging
from typing import Any, BinaryIO, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.constants import STREAM_CHUNK_SIZE
from shared.errors import BlobNotFound, StorageFailure, StorageWriteFailed
from shared.models import ByteRange
from .blob_store import BlobInfo, BlobStore, CountingReader

logger = logging.getLogger(__name__)

MISSING_KEY_CODES = ("NoSuchKey", "404", "NotFound")


def _is_missing(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') in MISSING_KEY_CODES


def _iter_body(body, chunk_size: int) -> Iterator[bytes]:
    try:
        for chunk in body.iter_chunks(chunk_size):
            if chunk:
                yield chunk
    finally:
        body.close()


class S3StorageProvider(BlobStore):
    """
    S3 blob store.

    ``endpoint_url`` is None for AWS itself and the provider endpoint for R2,
    B2 and other compatible services.
    """

    def __init__(self, endpoint_url: Optional[str] = None, region: Optional[str] = None,
                 chunk_size: int = STREAM_CHUNK_SIZE):
        self.s3_client = None
        self.bucket_name: Optional[str] = None
        self.endpoint_url = endpoint_url
        self.region = region
        self.chunk_size = chunk_size

    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        Create the S3 client and verify access to the bucket.

        Args:
            credentials: Must contain access_key_id, secret_access_key and bucket.
        """
        self.bucket_name = credentials.get('bucket')
        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=credentials['access_key_id'],
                aws_secret_access_key=credentials['secret_access_key'],
                region_name=self.region or credentials.get('region') or 'auto',
            )
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except KeyError as e:
            logger.error("Missing S3 credential field: %s", e)
            return False
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 authentication failed for bucket %s: %s", self.bucket_name, e)
            return False

    def put(self, key: str, stream: BinaryIO, content_type: Optional[str] = None) -> int:
        extra_args = {'ContentType': content_type} if content_type else {}
        reader = CountingReader(stream)
        try:
            self.s3_client.upload_fileobj(reader, self.bucket_name, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError) as e:
            raise StorageWriteFailed(f"Upload of {key} failed: {e}") from e
        return reader.bytes_read

    def get(self, key: str, byte_range: Optional[ByteRange] = None) -> Iterator[bytes]:
        kwargs = {'Bucket': self.bucket_name, 'Key': key}
        if byte_range is not None:
            if byte_range.length <= 0:
                return iter(())
            kwargs['Range'] = f"bytes={byte_range.start}-{byte_range.end - 1}"
        try:
            response = self.s3_client.get_object(**kwargs)
        except ClientError as e:
            if _is_missing(e):
                raise BlobNotFound(f"Blob {key} not found") from e
            raise StorageFailure(f"Download of {key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Download of {key} failed: {e}") from e
        return _iter_body(response['Body'], self.chunk_size)

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Delete of {key} failed: {e}") from e

    def _head(self, key: str) -> Dict[str, Any]:
        try:
            return self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _is_missing(e):
                raise BlobNotFound(f"Blob {key} not found") from e
            raise StorageFailure(f"Head of {key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Head of {key} failed: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            self._head(key)
            return True
        except BlobNotFound:
            return False

    def size(self, key: str) -> int:
        return self._head(key)['ContentLength']

    def list_blobs(self, prefix: Optional[str] = None) -> List[BlobInfo]:
        kwargs = {'Bucket': self.bucket_name}
        if prefix:
            kwargs['Prefix'] = prefix

        blobs = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(**kwargs):
                for obj in page.get('Contents', []):
                    blobs.append(BlobInfo(
                        key=obj['Key'],
                        size=obj['Size'],
                        modified=obj['LastModified'].timestamp(),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Listing {prefix or '/'} failed: {e}") from e
        return blobs

    def get_url(self, key: str, expires_in: int = 3600) -> Optional[str]:
        """Generate a presigned GET URL."""
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Presigned URL generation for %s failed: %s", key, e)
            return None
