"""
Request validation shared by the poetry and image blueprints.

Each validator either returns cleaned values or raises ValidationError with
the message that goes back to the client as a 400.
"""

import base64
import binascii
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from flask import Request

from backend.common.errors import ValidationError
from backend.poetry_service.generator import GenerationRequest

# --- CONSTANTS FOR VALIDATION ---
GENERATE_MAX_FILE_SIZE = 10 * 1024 * 1024
UPLOAD_MAX_FILE_SIZE = 50 * 1024 * 1024
COMMENT_MAX_LENGTH = 500
RATING_MIN, RATING_MAX = 1, 5
FEEDBACK_FIELDS = ("rating", "comment", "isLiked")


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def decode_image_buffer(value: Any) -> bytes:
    """Decode a base64 image string; a data-URI prefix is accepted."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("图片数据不能为空")
    payload = value.strip()
    if payload.startswith("data:"):
        payload = payload.partition(",")[2]
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("图片数据不是有效的base64编码")
    if not data:
        raise ValidationError("图片数据不能为空")
    return data


def read_image_file(req: Request, max_size: int, field: str = "image"):
    """
    Read the uploaded image from a multipart request.

    Returns:
        tuple: (bytes, filename, mimetype), or None if no file was sent.
    """
    upload = req.files.get(field)
    if upload is None or not upload.filename:
        return None
    if not (upload.mimetype or "").startswith("image/"):
        raise ValidationError("只支持上传图片文件")
    data = upload.read()
    if len(data) > max_size:
        raise ValidationError(f"图片文件不能超过{max_size // (1024 * 1024)}MB")
    if not data:
        raise ValidationError("上传的图片为空")
    return data, upload.filename, upload.mimetype


def json_body(req: Request) -> Dict[str, Any]:
    """
    The request's JSON object; an empty or missing body is {}.

    Raises:
        ValidationError: If the body is JSON but not an object.
    """
    data = req.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("请求体必须是JSON对象")
    return data


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} 必须是字符串")
    return value


def parse_generation_request(req: Request) -> GenerationRequest:
    """
    Build a GenerationRequest from either a multipart form or a JSON body.

    Raises:
        ValidationError: No image source, or a malformed field.
    """
    if req.files:
        data: Dict[str, Any] = req.form.to_dict()
    else:
        data = json_body(req) or req.form.to_dict()

    file_info = read_image_file(req, GENERATE_MAX_FILE_SIZE)
    image_url = _optional_str(data, "imageUrl")
    image_buffer = data.get("imageBuffer")

    if file_info is None and not image_url and not image_buffer:
        raise ValidationError("请提供图片文件、图片数据或图片URL")

    if image_url and not is_valid_url(image_url):
        raise ValidationError("请提供有效的图片URL")

    image_bytes = decode_image_buffer(image_buffer) if image_buffer else None

    generation = GenerationRequest(
        style=_optional_str(data, "style"),
        user_id=_optional_str(data, "userId"),
        image_url=image_url,
        image_bytes=image_bytes,
        ip=req.remote_addr,
        user_agent=req.headers.get("User-Agent"),
    )
    if file_info is not None:
        generation.file_bytes, generation.file_name, generation.file_mimetype = file_info
    return generation


def validate_feedback(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check a feedback patch. Only rating, comment and isLiked are accepted.

    Returns:
        dict: The fields that were present.
    """
    if not data:
        raise ValidationError("No feedback data provided")

    unknown = [key for key in data if key not in FEEDBACK_FIELDS]
    if unknown:
        raise ValidationError(f"不支持的字段: {', '.join(unknown)}")

    cleaned: Dict[str, Any] = {}
    if "rating" in data:
        rating = data["rating"]
        if isinstance(rating, bool) or not isinstance(rating, (int, float)):
            raise ValidationError("评分必须是数字")
        if not RATING_MIN <= rating <= RATING_MAX:
            raise ValidationError("评分必须在1-5之间")
        cleaned["rating"] = rating

    if "comment" in data:
        comment = data["comment"]
        if not isinstance(comment, str):
            raise ValidationError("评论必须是字符串")
        if len(comment) > COMMENT_MAX_LENGTH:
            raise ValidationError("评论不能超过500字")
        cleaned["comment"] = comment

    if "isLiked" in data:
        if not isinstance(data["isLiked"], bool):
            raise ValidationError("isLiked 必须是布尔值")
        cleaned["isLiked"] = data["isLiked"]

    return cleaned


def validate_url_upload(data: Dict[str, Any]):
    """
    Check the body of POST /api/images/upload-url.

    Returns:
        tuple: (image_url, folder)
    """
    image_url = data.get("imageUrl")
    if not image_url:
        raise ValidationError("请提供图片URL")
    if not is_valid_url(image_url):
        raise ValidationError("请提供有效的图片URL")

    folder = data.get("folder", "poetry")
    if not isinstance(folder, str) or not folder.strip():
        raise ValidationError("文件夹名称不能为空")
    return image_url, folder.strip().strip("/")
