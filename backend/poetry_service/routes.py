"""
Poetry service routes: generate a poem from an image, list, read, rate,
share and delete generated poems.
"""

import logging
import uuid
from typing import Tuple, Dict, Any

from flask import Blueprint, request, jsonify, Response

from backend.common.errors import ValidationError, error_response
from backend.common.validation import json_body, parse_generation_request, validate_feedback
from backend.poetry_service import models
from backend.poetry_service.generator import generate_poetry

poetry_bp = Blueprint("poetry", __name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def _valid_id(poetry_id: str) -> bool:
    """Record ids are UUIDs; anything else can never match a row."""
    try:
        uuid.UUID(str(poetry_id))
        return True
    except ValueError:
        return False


def _int_arg(name: str, default: int, minimum: int = 1, maximum: int = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if value < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


# --- REQUEST LOGGING ---
@poetry_bp.before_request
def before_request() -> None:
    logging.info(f"[Poetry] Incoming {request.method} {request.path}")


@poetry_bp.after_request
def after_request(response: Response) -> Response:
    logging.info(f"[Poetry] Response {response.status}")
    return response


@poetry_bp.route("/generate", methods=["POST"])
def generate() -> Tuple[Response, int]:
    """
    Generate a poem from an image.

    Accepts either a multipart form (`image` file, `style`, `userId`) or a
    JSON body with `imageUrl` or `imageBuffer` (base64) plus `style`, `userId`.

    Returns:
        201: The poem, even if storage, inference or persistence degraded.
        400: No image provided, or malformed input.
        500: Unexpected error.
    """
    try:
        generation_request = parse_generation_request(request)
    except ValidationError as e:
        logging.warning(f"Poetry generation request rejected: {e.message}")
        return jsonify({"error": "请求参数错误", "details": e.message}), 400

    try:
        body = generate_poetry(generation_request)
    except ValidationError as e:
        return jsonify({"error": "请求参数错误", "details": e.message}), 400
    except Exception as e:
        logging.exception(f"Poetry generation failed: {e}")
        return error_response("诗歌生成失败，请稍后重试", 500, e)

    return jsonify(body), 201


@poetry_bp.route("/", methods=["GET"], strict_slashes=False)
def list_poetry() -> Tuple[Response, int]:
    """
    Paginated list of poems.

    Query params: page, limit, style, userId, sort (createdAt | popular | rating).
    """
    try:
        page = _int_arg("page", DEFAULT_PAGE)
        limit = _int_arg("limit", DEFAULT_LIMIT, maximum=MAX_LIMIT)
    except ValidationError as e:
        return jsonify({"error": e.message}), 400

    sort = request.args.get("sort", "createdAt")
    if sort not in models.VALID_SORTS:
        sort = "createdAt"

    query: Dict[str, Any] = {
        "style": request.args.get("style"),
        "userId": request.args.get("userId"),
    }

    try:
        poems = models.find_poetry(query, sort=sort, limit=limit, offset=(page - 1) * limit)
        total = models.count_poetry(query)
    except Exception as e:
        logging.error(f"Database error listing poems: {e}")
        return error_response("获取诗歌列表失败", 500, e)

    return jsonify({
        "success": True,
        "data": {
            "poems": [models.to_json(p) for p in poems],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": -(-total // limit),
            },
        },
    }), 200


@poetry_bp.route("/popular", methods=["GET"])
def popular_poetry() -> Tuple[Response, int]:
    """Public poems ordered by share count and rating."""
    try:
        limit = _int_arg("limit", DEFAULT_LIMIT, maximum=MAX_LIMIT)
    except ValidationError as e:
        return jsonify({"error": e.message}), 400

    try:
        poems = models.find_popular(limit)
    except Exception as e:
        logging.error(f"Database error getting popular poems: {e}")
        return error_response("获取热门诗歌失败", 500, e)

    return jsonify({"success": True, "data": [models.to_json(p) for p in poems]}), 200


@poetry_bp.route("/stats", methods=["GET"])
def poetry_stats() -> Tuple[Response, int]:
    try:
        stats = models.get_stats()
    except Exception as e:
        logging.error(f"Database error getting stats: {e}")
        return error_response("获取统计信息失败", 500, e)
    return jsonify({"success": True, "data": stats}), 200


@poetry_bp.route("/<poetry_id>", methods=["GET"])
def get_poetry(poetry_id: str) -> Tuple[Response, int]:
    """
    Get a single poem by id.

    Returns:
        200: Poem object.
        404: Not found.
    """
    if not _valid_id(poetry_id):
        return jsonify({"error": "诗歌不存在"}), 404

    try:
        poem = models.find_by_id(poetry_id)
    except Exception as e:
        logging.error(f"Database error getting poem {poetry_id}: {e}")
        return error_response("获取诗歌详情失败", 500, e)

    if not poem:
        return jsonify({"error": "诗歌不存在"}), 404
    return jsonify({"success": True, "data": models.to_json(poem)}), 200


@poetry_bp.route("/<poetry_id>/feedback", methods=["PUT"])
def update_feedback(poetry_id: str) -> Tuple[Response, int]:
    """
    Partially update feedback: rating (1-5), comment (<= 500 chars), isLiked.

    Validation happens before the database is touched.
    """
    try:
        data: Dict[str, Any] = json_body(request)
        feedback = validate_feedback(data)
    except ValidationError as e:
        logging.warning(f"Feedback update rejected: {e.message}")
        return jsonify({"error": "请求参数错误", "details": e.message}), 400

    if not _valid_id(poetry_id):
        return jsonify({"error": "诗歌不存在"}), 404

    try:
        poem = models.update_feedback(poetry_id, feedback)
    except Exception as e:
        logging.error(f"Database error updating feedback for {poetry_id}: {e}")
        return error_response("更新反馈失败", 500, e)

    if not poem:
        return jsonify({"error": "诗歌不存在"}), 404
    return jsonify({"success": True, "data": poem.get("feedback") or {}}), 200


@poetry_bp.route("/<poetry_id>/share", methods=["POST"])
def share_poetry(poetry_id: str) -> Tuple[Response, int]:
    """Mark a poem shared (public by default) and bump its share counter."""
    try:
        data: Dict[str, Any] = json_body(request)
    except ValidationError as e:
        return jsonify({"error": "请求参数错误", "details": e.message}), 400

    is_public = data.get("isPublic", True)
    if not isinstance(is_public, bool):
        return jsonify({"error": "请求参数错误", "details": "isPublic 必须是布尔值"}), 400

    if not _valid_id(poetry_id):
        return jsonify({"error": "诗歌不存在"}), 404

    try:
        poem = models.increment_share_count(poetry_id, is_public, f"/poetry/{poetry_id}")
    except Exception as e:
        logging.error(f"Database error sharing poem {poetry_id}: {e}")
        return error_response("分享诗歌失败", 500, e)

    if not poem:
        return jsonify({"error": "诗歌不存在"}), 404

    share = poem.get("share") or {}
    return jsonify({
        "success": True,
        "data": {
            "shareUrl": share.get("shareUrl"),
            "shareCount": share.get("share_count"),
            "isPublic": share.get("is_public"),
        },
    }), 200


@poetry_bp.route("/<poetry_id>", methods=["DELETE"])
def delete_poetry(poetry_id: str) -> Tuple[Response, int]:
    """
    Delete a poem.

    Anonymous poems can be deleted by anyone; owned poems only when the
    `userId` in the body (or query string) matches the owner.
    """
    try:
        data: Dict[str, Any] = json_body(request)
    except ValidationError as e:
        return jsonify({"error": "请求参数错误", "details": e.message}), 400

    user_id = data.get("userId") or request.args.get("userId")

    if not _valid_id(poetry_id):
        return jsonify({"error": "诗歌不存在"}), 404

    try:
        poem = models.find_by_id(poetry_id)
        if not poem:
            return jsonify({"error": "诗歌不存在"}), 404

        owner = poem.get("user_id")
        if owner and owner != user_id:
            return jsonify({"error": "无权限删除此诗歌"}), 403

        if not models.delete_by_id(poetry_id):
            return jsonify({"error": "诗歌不存在"}), 404
    except Exception as e:
        logging.error(f"Database error deleting poem {poetry_id}: {e}")
        return error_response("删除诗歌失败", 500, e)

    return jsonify({"success": True, "message": "诗歌删除成功"}), 200
