"""
Image service routes: upload images to object storage (size-routed,
forced multipart, from a URL) or to local disk, and look up, sign or
delete stored objects.
"""

import logging
from typing import Tuple, Dict, Any

from flask import Blueprint, request, jsonify, Response

from backend.common.errors import (
    ImageDownloadError,
    StorageError,
    StorageNotConfigured,
    ValidationError,
    error_response,
)
from backend.common.validation import UPLOAD_MAX_FILE_SIZE, json_body, read_image_file, validate_url_upload
from backend.image_service import ingestion, storage

images_bp = Blueprint("images", __name__)

DEFAULT_SIGNED_EXPIRES = 3600


def _require_file():
    info = read_image_file(request, UPLOAD_MAX_FILE_SIZE)
    if info is None:
        raise ValidationError("请选择要上传的图片")
    return info


def _upload_failed(e: Exception) -> Tuple[Response, int]:
    """Storage errors carry a user-facing message; anything else is generic."""
    if isinstance(e, StorageNotConfigured):
        return error_response("对象存储未配置", 503, e)
    if isinstance(e, (StorageError, ImageDownloadError)):
        return error_response(e.message, 500, e)
    return error_response("图片上传失败，请稍后重试", 500, e)


# --- REQUEST LOGGING ---
@images_bp.before_request
def before_request() -> None:
    logging.info(f"[Images] Incoming {request.method} {request.path}")


@images_bp.after_request
def after_request(response: Response) -> Response:
    logging.info(f"[Images] Response {response.status}")
    return response


@images_bp.route("/upload", methods=["POST"])
def upload() -> Tuple[Response, int]:
    """
    Upload an image; files above 5 MB go through the multipart path.

    Returns:
        200: {success, data: upload record}
        400: No file or not an image.
        500: Storage failure.
    """
    try:
        data, filename, mimetype = _require_file()
    except ValidationError as e:
        return jsonify({"error": e.message}), 400

    try:
        result = ingestion.route_upload(
            data, filename, ingestion.DEFAULT_FOLDER, mimetype,
            progress_callback=lambda p: logging.debug(f"Upload progress: {p}"),
        )
    except Exception as e:
        logging.error(f"Image upload failed: {e}")
        return _upload_failed(e)

    return jsonify({"success": True, "data": result}), 200


@images_bp.route("/upload-multipart", methods=["POST"])
def upload_multipart() -> Tuple[Response, int]:
    """Always use the multipart path, whatever the size."""
    try:
        data, filename, mimetype = _require_file()
    except ValidationError as e:
        return jsonify({"error": e.message}), 400

    try:
        result = ingestion.multipart_upload_image(
            data, filename, ingestion.DEFAULT_FOLDER, mimetype,
            progress_callback=lambda p: logging.debug(f"Multipart progress: {p}"),
        )
    except Exception as e:
        logging.error(f"Multipart upload failed: {e}")
        return _upload_failed(e)

    return jsonify({"success": True, "data": result}), 200


@images_bp.route("/upload-url", methods=["POST"])
def upload_url() -> Tuple[Response, int]:
    """
    Download an image from `imageUrl` and store it under `folder`.

    Expects JSON: {"imageUrl": "https://...", "folder": "poetry"}
    """
    try:
        body: Dict[str, Any] = json_body(request)
        image_url, folder = validate_url_upload(body)
    except ValidationError as e:
        logging.warning(f"URL upload rejected: {e.message}")
        return jsonify({"error": "请求参数错误", "details": e.message}), 400

    try:
        result = ingestion.upload_image_from_url(image_url, folder)
    except Exception as e:
        logging.error(f"Upload from URL {image_url} failed: {e}")
        return _upload_failed(e)

    return jsonify({"success": True, "data": result}), 200


@images_bp.route("/upload-local", methods=["POST"])
def upload_local() -> Tuple[Response, int]:
    """Fallback: re-encode and keep the image on local disk (served at /uploads)."""
    try:
        data, filename, _ = _require_file()
    except ValidationError as e:
        return jsonify({"error": e.message}), 400

    try:
        result = ingestion.save_image_locally(data, filename)
    except Exception as e:
        logging.error(f"Local image upload failed: {e}")
        return error_response("图片上传失败", 500, e)

    return jsonify({"success": True, "data": result}), 200


@images_bp.route("/health/oss", methods=["GET"])
def storage_health() -> Tuple[Response, int]:
    try:
        connected = storage.get_storage().check_connection()
    except StorageNotConfigured:
        connected = False
    except Exception as e:
        logging.error(f"Storage health check failed: {e}")
        return error_response("OSS连接检查失败", 500, e)

    return jsonify({
        "success": True,
        "data": {
            "connected": connected,
            "service": "s3-compatible",
            "bucket": storage.OSS_BUCKET_NAME,
            "region": storage.OSS_REGION,
        },
    }), 200


@images_bp.route("/<path:filename>/info", methods=["GET"])
def image_info(filename: str) -> Tuple[Response, int]:
    """Size, type, etag and metadata of a stored object."""
    try:
        info = storage.get_storage().head_info(filename)
    except Exception as e:
        logging.error(f"Failed to get image info for {filename}: {e}")
        return error_response("获取图片详细信息失败", 500, e)
    return jsonify({"success": True, "data": info}), 200


@images_bp.route("/<path:filename>/signed", methods=["GET"])
def signed_url(filename: str) -> Tuple[Response, int]:
    """Temporary signed URL; `expires` in seconds (default one hour)."""
    try:
        expires = int(request.args.get("expires", DEFAULT_SIGNED_EXPIRES))
    except (TypeError, ValueError):
        return jsonify({"error": "expires must be an integer"}), 400
    if expires <= 0:
        return jsonify({"error": "expires must be positive"}), 400

    try:
        url = storage.get_storage().signed_url(filename, expires)
    except Exception as e:
        logging.error(f"Failed to sign URL for {filename}: {e}")
        return error_response("生成签名URL失败", 500, e)

    return jsonify({
        "success": True,
        "data": {"filename": filename, "signedUrl": url, "expires": expires},
    }), 200


@images_bp.route("/<path:filename>", methods=["GET"])
def image_url(filename: str) -> Tuple[Response, int]:
    try:
        url = storage.get_storage().public_url(filename)
    except Exception as e:
        logging.error(f"Failed to build URL for {filename}: {e}")
        return error_response("获取图片信息失败", 500, e)
    return jsonify({"success": True, "data": {"filename": filename, "url": url}}), 200


@images_bp.route("/<path:filename>", methods=["DELETE"])
def delete_image(filename: str) -> Tuple[Response, int]:
    try:
        deleted = storage.get_storage().delete(filename)
    except Exception as e:
        logging.error(f"Failed to delete image {filename}: {e}")
        return error_response("删除图片失败", 500, e)

    if not deleted:
        return jsonify({"error": "图片删除失败"}), 500
    return jsonify({"success": True, "message": "图片删除成功"}), 200
