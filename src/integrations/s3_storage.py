"""
S3 storage backend for persisted message records.

Each record is one JSON object:
    s3://{bucket}/{prefix}{environment}/{percent-encoded message id}.json

Every character outside [A-Za-z0-9_.~-] is percent-encoded, so two
different message ids never map to the same object.

Usage:
    from integrations.s3_storage import S3StorageBackend
    from services.persistence import MessagePersistenceService

    persistence = MessagePersistenceService(S3StorageBackend(bucket="my-records"))
"""

import json
import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from domain.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENVIRONMENT = os.environ.get('ENVIRONMENT', 'dev')

# Error codes S3 uses for a missing object
MISSING_OBJECT_CODES = ('NoSuchKey', '404', 'NotFound')


def _create_s3_client():
    """
    Create an S3 client with strict timeouts and no retries.

    Retry policy belongs to the caller (SQS redelivery), not the SDK.
    """
    s3_config = Config(
        retries={
            'max_attempts': 1,  # 1 attempt total (no retries)
            'mode': 'standard'
        },
        connect_timeout=10,
        read_timeout=30
    )
    region = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))
    client = boto3.client('s3', region_name=region, config=s3_config)
    logger.info(f"Persistence S3 client initialized: region={region}, connect=10s, read=30s, max_attempts=1")
    return client


class S3StorageBackend:
    """StorageBackend that keeps one JSON document per message id in S3."""

    def __init__(
        self,
        bucket: str,
        prefix: str = 'records/',
        environment: str = ENVIRONMENT,
        client=None
    ):
        """
        Args:
            bucket: Target bucket (required)
            prefix: Key prefix for all records
            environment: Environment segment of the key
            client: Optional pre-built boto3 S3 client

        Raises:
            ConfigurationError: If bucket is empty
        """
        if not bucket:
            raise ConfigurationError("S3 bucket name for persistence cannot be empty")

        self.bucket = bucket
        self.prefix = prefix
        self.environment = environment
        self.client = client if client is not None else _create_s3_client()

    @property
    def key_prefix(self) -> str:
        return f"{self.prefix}{self.environment}/"

    def key_for(self, message_id: str) -> str:
        return f"{self.key_prefix}{quote(message_id, safe='')}.json"

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        """
        Load the record document for message_id.

        Returns:
            Parsed document, or None if the object does not exist

        Raises:
            ClientError: For any S3 error other than a missing object
        """
        key = self.key_for(message_id)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code in MISSING_OBJECT_CODES:
                return None
            logger.error(f"Failed to fetch record s3://{self.bucket}/{key}: {e}")
            raise

        document = json.loads(response['Body'].read())
        stored_id = document.get('message_id')
        if stored_id is not None and stored_id != message_id:
            logger.warning(
                f"Record s3://{self.bucket}/{key} belongs to {stored_id!r}, not {message_id!r}; ignoring it"
            )
            return None
        return document

    def put(self, message_id: str, document: Dict[str, Any]) -> None:
        """Write the record document for message_id."""
        key = self.key_for(message_id)
        body = json.dumps(document, default=str).encode('utf-8')

        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType='application/json'
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            logger.error(
                f"Failed to write record to S3: bucket={self.bucket}, key={key}, "
                f"error_code={error_code}, error_message={error_message}"
            )
            raise

        logger.debug(f"Wrote record s3://{self.bucket}/{key} ({len(body)} bytes)")

    def contains(self, message_id: str) -> bool:
        """True if a record document for exactly this message_id exists."""
        return self.get(message_id) is not None

    def count(self) -> int:
        """Count record objects under this backend's prefix."""
        paginator = self.client.get_paginator('list_objects_v2')
        total = 0
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.key_prefix):
            total += page.get('KeyCount', len(page.get('Contents', [])))
        return total
