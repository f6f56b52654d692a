"""S3 bucket management against a SeaweedFS gateway."""

import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from seaweedfs_broker.exceptions import StorageBackendError

logger = logging.getLogger(__name__)

_EXISTS_CODES = ("BucketAlreadyOwnedByYou", "BucketAlreadyExists")
_MISSING_CODES = ("404", "NoSuchBucket", "NotFound")


class S3Client:
    """Creates, checks and removes buckets on one S3 endpoint."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str,
                 region: str = "us-east-1", use_ssl: bool = False, client=None):
        self.endpoint = endpoint
        self.region = region
        scheme = "https" if use_ssl else "http"
        self.client = client or boto3.client(
            's3',
            endpoint_url=f"{scheme}://{endpoint}",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            verify=False,
            config=BotoConfig(
                s3={'addressing_style': 'path'},
                retries={'max_attempts': 3, 'mode': 'standard'},
                connect_timeout=5,
                read_timeout=30,
            ),
        )

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_CODES:
                return False
            raise StorageBackendError(f"failed to check bucket {bucket}", bucket=bucket, cause=e)
        except BotoCoreError as e:
            raise StorageBackendError(f"failed to check bucket {bucket}", bucket=bucket, cause=e)

    def create_bucket(self, bucket: str) -> None:
        """Create a bucket; a bucket that already exists counts as success."""
        kwargs = {'Bucket': bucket}
        if self.region and self.region != "us-east-1":
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.client.create_bucket(**kwargs)
            logger.info(f"Created bucket {bucket} on {self.endpoint}")
            return
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _EXISTS_CODES:
                logger.info(f"Bucket {bucket} already exists on {self.endpoint}")
                return
            create_error: Optional[Exception] = e
        except BotoCoreError as e:
            create_error = e

        if self.bucket_exists(bucket):
            logger.info(f"Bucket {bucket} already exists on {self.endpoint}")
            return
        raise StorageBackendError(f"failed to create bucket {bucket}", bucket=bucket, cause=create_error)

    def empty_and_delete_bucket(self, bucket: str) -> None:
        """Delete every object, then the bucket.

        Individual object deletion failures are logged; the bucket removal
        itself must succeed.
        """
        try:
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket):
                for obj in page.get('Contents', []):
                    try:
                        self.client.delete_object(Bucket=bucket, Key=obj['Key'])
                    except (ClientError, BotoCoreError) as e:
                        logger.warning(f"Error removing object {obj['Key']} from {bucket}: {e}")
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Error listing objects in {bucket}: {e}")

        try:
            self.client.delete_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageBackendError(f"failed to delete bucket {bucket}", bucket=bucket, cause=e)

        logger.info(f"Deleted bucket {bucket} on {self.endpoint}")
