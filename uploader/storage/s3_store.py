"""S3-compatible object store backed by boto3."""

import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config

from uploader.storage.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)

# delete_objects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


def build_s3_client(region: Optional[str] = None, endpoint_url: Optional[str] = None):
    """
    Create an S3 client with bounded retries and socket timeouts.
    """
    config = Config(
        region_name=region,
        retries={"max_attempts": 5, "mode": "standard"},
        connect_timeout=5,
        read_timeout=60,
    )
    client = boto3.client("s3", endpoint_url=endpoint_url, config=config)
    logger.info(f"S3 client initialized region={region} endpoint={endpoint_url or 'default'}")
    return client


class S3ObjectStore(ObjectStore):
    """
    Stores objects in one bucket; signed URLs are presigned GET URLs.
    """

    name = "s3"

    def __init__(
        self,
        bucket: str,
        client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client or build_s3_client(region, endpoint_url)

    def public_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def upload_file(self, local_path: Path, key: str, content_type: Optional[str]) -> StoredObject:
        size = Path(local_path).stat().st_size
        with open(local_path, "rb") as body:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type or "application/octet-stream",
            )
        logger.debug(f"Uploaded s3://{self.bucket}/{key} ({size} bytes)")
        return StoredObject(key=key, url=self.public_url(key), size=size, content_type=content_type)

    def delete_object(self, key: str) -> bool:
        # S3 reports success for missing keys as well
        self._client.delete_object(Bucket=self.bucket, Key=key)
        return True

    def delete_prefix(self, prefix: str) -> int:
        paginator = self._client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))

        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            response = self._client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            errors = response.get("Errors") or []
            for error in errors:
                logger.warning(f"Could not delete s3://{self.bucket}/{error.get('Key')}: {error.get('Message')}")
            deleted += len(batch) - len(errors)

        return deleted

    def signed_url(self, key: str, expires_in_seconds: int) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in_seconds,
        )

    def check(self) -> None:
        self._client.head_bucket(Bucket=self.bucket)
