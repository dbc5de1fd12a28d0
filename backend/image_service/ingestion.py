"""
Image ingestion: re-encode, pick an upload path and push to object storage.

Payloads above MULTIPART_THRESHOLD go through the multipart path, everything
else (including a payload of exactly the threshold) is uploaded in one
request. Re-encoding is best effort: if Pillow cannot read the bytes the
original payload is stored unchanged.
"""

import logging
import mimetypes
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from dotenv import load_dotenv
from PIL import Image

from backend.common.errors import ImageDownloadError, StorageError, StorageNotConfigured
from backend.image_service import storage

load_dotenv()

MULTIPART_THRESHOLD = 5 * 1024 * 1024
# S3 rejects non-final parts under 5 MiB
PART_SIZE = 5 * 1024 * 1024
MULTIPART_CONCURRENCY = 4
DOWNLOAD_TIMEOUT = 30
MAX_IMAGE_DIMENSION = 800
JPEG_QUALITY = 85
DEFAULT_FOLDER = "poetry"

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

DOWNLOAD_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
}

# kind -> user-facing message
STORAGE_ERROR_MESSAGES = {
    "access_denied": "存储访问被拒绝，请检查权限配置",
    "bucket_missing": "存储桶不存在，请检查配置",
    "invalid_credentials": "存储访问密钥无效，请检查配置",
    "signature_mismatch": "存储签名校验失败，请稍后重试",
    "timeout": "上传超时，请检查网络连接",
    "unknown": "图片上传失败，请稍后重试",
}

ERROR_CODE_KINDS = {
    "AccessDenied": "access_denied",
    "403": "access_denied",
    "NoSuchBucket": "bucket_missing",
    "InvalidAccessKeyId": "invalid_credentials",
    "SignatureDoesNotMatch": "signature_mismatch",
    "RequestTimeout": "timeout",
}


def classify_storage_error(exc: Exception) -> str:
    """Map a boto3/botocore failure onto one of the StorageError kinds."""
    if isinstance(exc, StorageError):
        return exc.kind
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return ERROR_CODE_KINDS.get(code, "unknown")
    if isinstance(exc, NoCredentialsError):
        return "invalid_credentials"
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return "timeout"
    return "unknown"


def _storage_error(exc: Exception) -> StorageError:
    kind = classify_storage_error(exc)
    message = STORAGE_ERROR_MESSAGES.get(kind, STORAGE_ERROR_MESSAGES["unknown"])
    return StorageError(message, kind=kind, details=str(exc))


def guess_content_type(filename: Optional[str], default: str = "application/octet-stream") -> str:
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or default


def reencode_image(data: bytes, fallback_type: Optional[str] = None, fallback_name: str = "") -> Tuple[bytes, str, str]:
    """
    Shrink to fit MAX_IMAGE_DIMENSION and recompress as JPEG.

    Returns:
        tuple: (bytes, content_type, extension). On any failure the input bytes
               are returned with the fallback content type and extension.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            if img.mode != "RGB":
                img = img.convert("RGB")
            img.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION))
            buffered = BytesIO()
            img.save(buffered, format="JPEG", quality=JPEG_QUALITY)
            return buffered.getvalue(), "image/jpeg", ".jpg"
    except Exception as e:
        logging.warning(f"Image re-encoding failed, keeping original bytes: {e}")
        ext = os.path.splitext(fallback_name)[1].lower() or ".jpg"
        content_type = fallback_type or guess_content_type(fallback_name, "image/jpeg")
        return data, content_type, ext


def build_key(folder: str, ext: str) -> str:
    return f"{folder}/{int(time.time() * 1000)}_{uuid.uuid4()}{ext}"


def _metadata(original_name: str, method: str) -> Dict[str, str]:
    return {
        "originalName": original_name,
        "processedBy": "poetry-app",
        "uploadTime": datetime.now(timezone.utc).isoformat(),
        "uploadMethod": method,
    }


def _result(key: str, original_name: str, size: int, content_type: str, stored: Dict[str, Any], method: str) -> Dict[str, Any]:
    return {
        "filename": key,
        "originalName": original_name,
        "size": size,
        "mimetype": content_type,
        "url": stored["url"],
        "ossUrl": stored["url"],
        "etag": stored.get("etag"),
        "uploadMethod": method,
    }


def _put_single_with_retry(payload: bytes, key: str, content_type: str, meta: Dict[str, str]) -> Dict[str, Any]:
    """
    Single-shot put. A signature mismatch is retried once on a fresh client;
    any other failure (or a second failure) raises StorageError.
    """
    client = storage.get_storage()
    try:
        return client.put_single(payload, key, content_type=content_type, metadata=meta)
    except Exception as e:
        kind = classify_storage_error(e)
        logging.error(f"Single upload of {key} failed ({kind}): {e}")
        if kind != "signature_mismatch":
            raise _storage_error(e) from e

    logging.warning("Signature mismatch, rebuilding storage client and retrying once")
    storage.reset_storage()
    try:
        return storage.get_storage().put_single(payload, key, content_type=content_type, metadata=meta)
    except StorageNotConfigured:
        raise
    except Exception as retry_error:
        logging.error(f"Retry after client rebuild failed for {key}: {retry_error}")
        raise StorageError(STORAGE_ERROR_MESSAGES["unknown"], kind="unknown", details=str(retry_error)) from retry_error


def upload_image(data: bytes, original_name: str, folder: str = DEFAULT_FOLDER, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Re-encode (best effort) and upload in a single request."""
    payload, payload_type, ext = reencode_image(data, content_type, original_name)
    key = build_key(folder, ext)
    stored = _put_single_with_retry(payload, key, payload_type, _metadata(original_name, "simple"))
    logging.info(f"Uploaded image {key} ({len(payload)} bytes) to {stored['url']}")
    return _result(key, original_name, len(payload), payload_type, stored, "simple")


def multipart_upload_image(
    data: bytes,
    original_name: str,
    folder: str = DEFAULT_FOLDER,
    content_type: Optional[str] = None,
    progress_callback: Optional[Callable[[Dict[str, int]], None]] = None,
) -> Dict[str, Any]:
    """Re-encode (best effort) and upload in PART_SIZE parts."""
    payload, payload_type, ext = reencode_image(data, content_type, original_name)
    key = build_key(folder, ext)
    total = len(payload) or 1
    sent = {"bytes": 0}
    # s3transfer calls back from its worker threads
    lock = threading.Lock()

    def progress(chunk: int) -> None:
        with lock:
            sent["bytes"] += chunk
            done = sent["bytes"]
        percentage = round(done * 100 / total)
        logging.debug(f"Multipart upload {key}: {percentage}%")
        if progress_callback:
            progress_callback({"percentage": percentage, "bytes": done})

    try:
        stored = storage.get_storage().put_multipart(
            payload,
            key,
            part_size=PART_SIZE,
            concurrency=MULTIPART_CONCURRENCY,
            content_type=payload_type,
            metadata=_metadata(original_name, "multipart"),
            callback=progress,
        )
    except StorageNotConfigured:
        raise
    except Exception as e:
        logging.error(f"Multipart upload of {key} failed: {e}")
        raise _storage_error(e) from e

    logging.info(f"Multipart-uploaded image {key} ({len(payload)} bytes) to {stored['url']}")
    return _result(key, original_name, len(payload), payload_type, stored, "multipart")


def upload_image_direct(data: bytes, original_name: str, folder: str = DEFAULT_FOLDER, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Upload the bytes as they are, no re-encoding."""
    ext = os.path.splitext(original_name)[1].lower() or ".jpg"
    payload_type = content_type or guess_content_type(original_name, "image/jpeg")
    key = build_key(folder, ext)
    stored = _put_single_with_retry(data, key, payload_type, _metadata(original_name, "direct"))
    return _result(key, original_name, len(data), payload_type, stored, "direct")


def upload_file(data: bytes, filename: str, folder: str = "files", content_type: str = "application/octet-stream") -> Dict[str, Any]:
    """Generic file upload under `<folder>/<epoch ms>_<filename>`."""
    key = f"{folder}/{int(time.time() * 1000)}_{filename}"
    stored = _put_single_with_retry(data, key, content_type, _metadata(filename, "simple"))
    return _result(key, filename, len(data), content_type, stored, "simple")


def route_upload(
    data: bytes,
    original_name: str,
    folder: str = DEFAULT_FOLDER,
    content_type: Optional[str] = None,
    progress_callback: Optional[Callable[[Dict[str, int]], None]] = None,
) -> Dict[str, Any]:
    """Pick the upload path by payload size."""
    if len(data) > MULTIPART_THRESHOLD:
        logging.info(f"Large payload ({len(data)} bytes), using multipart upload")
        return multipart_upload_image(data, original_name, folder, content_type, progress_callback)
    return upload_image(data, original_name, folder, content_type)


def download_image(image_url: str) -> Tuple[bytes, Optional[str]]:
    """
    Fetch a remote image.

    Returns:
        tuple: (bytes, content_type header or None)

    Raises:
        ImageDownloadError: On timeout, connection failure or a non-2xx status.
    """
    try:
        response = requests.get(image_url, headers=DOWNLOAD_HEADERS, timeout=DOWNLOAD_TIMEOUT)
    except requests.Timeout as e:
        raise ImageDownloadError("下载图片超时，请检查网络连接", details=str(e)) from e
    except requests.RequestException as e:
        raise ImageDownloadError("下载图片失败，请检查图片URL", details=str(e)) from e

    if response.status_code == 404:
        raise ImageDownloadError("图片URL不存在")
    if not 200 <= response.status_code < 300:
        raise ImageDownloadError(f"下载图片失败: HTTP {response.status_code}")

    content_type = response.headers.get("Content-Type")
    return response.content, content_type.split(";")[0] if content_type else None


def upload_image_from_url(image_url: str, folder: str = DEFAULT_FOLDER) -> Dict[str, Any]:
    """Download a remote image, then route it like an uploaded file."""
    data, content_type = download_image(image_url)
    original_name = f"image_{int(time.time() * 1000)}.jpg"
    logging.info(f"Downloaded {len(data)} bytes from {image_url}")
    return route_upload(data, original_name, folder, content_type)


def save_image_locally(data: bytes, original_name: str, upload_dir: Optional[str] = None) -> Dict[str, Any]:
    """Re-encode (best effort) and write under the local upload directory."""
    target_dir = upload_dir or UPLOAD_DIR
    os.makedirs(target_dir, exist_ok=True)

    payload, payload_type, ext = reencode_image(data, None, original_name)
    filename = f"poetry_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{ext}"
    path = os.path.join(target_dir, filename)
    with open(path, "wb") as f:
        f.write(payload)

    return {
        "filename": filename,
        "originalName": original_name,
        "size": os.path.getsize(path),
        "mimetype": payload_type,
        "url": f"/uploads/{filename}",
    }
