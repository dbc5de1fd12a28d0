"""
Object-storage handle.

Talks to any S3-compatible store (Aliyun OSS, MinIO, AWS S3) through boto3.
One client is built per process by `get_storage()`; `reset_storage()`
throws it away so the next call builds a fresh one from configuration.
"""

import logging
import os
from io import BytesIO
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from dotenv import load_dotenv

from backend.common.errors import StorageNotConfigured

load_dotenv()

OSS_ENDPOINT = os.getenv("OSS_ENDPOINT")
OSS_REGION = os.getenv("OSS_REGION")
OSS_ACCESS_KEY_ID = os.getenv("OSS_ACCESS_KEY_ID")
OSS_ACCESS_KEY_SECRET = os.getenv("OSS_ACCESS_KEY_SECRET")
OSS_BUCKET_NAME = os.getenv("OSS_BUCKET_NAME")
OSS_BASE_URL = (os.getenv("OSS_BASE_URL") or "").rstrip("/")

REQUIRED_SETTINGS = ("OSS_REGION", "OSS_ACCESS_KEY_ID", "OSS_ACCESS_KEY_SECRET", "OSS_BUCKET_NAME", "OSS_BASE_URL")

CACHE_CONTROL = "public, max-age=31536000"
STORAGE_TIMEOUT = 60


def missing_settings() -> list:
    values = {
        "OSS_REGION": OSS_REGION,
        "OSS_ACCESS_KEY_ID": OSS_ACCESS_KEY_ID,
        "OSS_ACCESS_KEY_SECRET": OSS_ACCESS_KEY_SECRET,
        "OSS_BUCKET_NAME": OSS_BUCKET_NAME,
        "OSS_BASE_URL": OSS_BASE_URL,
    }
    return [key for key in REQUIRED_SETTINGS if not values[key]]


def encode_metadata(meta: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """S3 user metadata must be ASCII; non-ASCII values are percent-encoded."""
    return {str(k): quote(str(v), safe=" ._-:/") for k, v in (meta or {}).items() if v is not None}


class StorageClient:
    """Thin wrapper around a boto3 S3 client bound to one bucket."""

    def __init__(self, bucket: str, base_url: str, client=None):
        self.bucket = bucket
        self.base_url = base_url
        self.client = client or boto3.client(
            "s3",
            endpoint_url=OSS_ENDPOINT,
            region_name=OSS_REGION,
            aws_access_key_id=OSS_ACCESS_KEY_ID,
            aws_secret_access_key=OSS_ACCESS_KEY_SECRET,
            config=Config(
                connect_timeout=STORAGE_TIMEOUT,
                read_timeout=STORAGE_TIMEOUT,
                retries={"max_attempts": 3},
                s3={"addressing_style": "virtual"},
            ),
        )

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def put_single(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: str = CACHE_CONTROL,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Upload in one request. Returns {url, etag}."""
        result = self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl=cache_control,
            Metadata=encode_metadata(metadata),
        )
        return {"url": self.public_url(key), "etag": (result.get("ETag") or "").strip('"')}

    def put_multipart(
        self,
        data: bytes,
        key: str,
        part_size: int,
        concurrency: int,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[int], None]] = None,
    ) -> Dict[str, Any]:
        """
        Upload in parts through the boto3 transfer manager.

        Parts are `part_size` bytes sent on up to `concurrency` threads.
        `callback` receives the number of bytes sent since the last call.
        """
        config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=concurrency,
        )
        self.client.upload_fileobj(
            BytesIO(data),
            self.bucket,
            key,
            ExtraArgs={
                "ContentType": content_type,
                "CacheControl": CACHE_CONTROL,
                "Metadata": encode_metadata(metadata),
            },
            Config=config,
            Callback=callback,
        )
        head = self.client.head_object(Bucket=self.bucket, Key=key)
        return {"url": self.public_url(key), "etag": (head.get("ETag") or "").strip('"')}

    def delete(self, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
            logging.info(f"Deleted object {key}")
            return True
        except Exception as e:
            logging.error(f"Failed to delete object {key}: {e}")
            return False

    def head_info(self, key: str) -> Dict[str, Any]:
        head = self.client.head_object(Bucket=self.bucket, Key=key)
        last_modified = head.get("LastModified")
        return {
            "filename": key,
            "size": head.get("ContentLength"),
            "lastModified": last_modified.isoformat() if last_modified else None,
            "etag": (head.get("ETag") or "").strip('"'),
            "contentType": head.get("ContentType"),
            "meta": head.get("Metadata", {}),
        }

    def signed_url(self, key: str, expires: int = 3600) -> str:
        """Temporary GET URL; degrades to the public URL if signing fails."""
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
            )
        except Exception as e:
            logging.error(f"Failed to sign URL for {key}: {e}")
            return self.public_url(key)

    def check_connection(self) -> bool:
        try:
            self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
            return True
        except Exception as e:
            logging.error(f"Storage connection check failed: {e}")
            return False


_storage: Optional[StorageClient] = None


def get_storage() -> StorageClient:
    """
    Return the process-wide storage client, building it on first use.

    Raises:
        StorageNotConfigured: If any required setting is missing.
    """
    global _storage
    if _storage is None:
        missing = missing_settings()
        if missing:
            logging.warning(f"Object storage not configured, missing: {', '.join(missing)}")
            raise StorageNotConfigured()
        _storage = StorageClient(OSS_BUCKET_NAME, OSS_BASE_URL)
        logging.info(f"Storage client initialized for bucket {OSS_BUCKET_NAME}")
    return _storage


def reset_storage() -> None:
    """Drop the cached client; the next get_storage() builds a new one."""
    global _storage
    _storage = None
