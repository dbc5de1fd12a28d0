"""
User service routes.
There are no accounts yet; every caller is the anonymous user.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify

users_bp = Blueprint("users", __name__)


@users_bp.route("/health", methods=["GET"])
def health():
    return jsonify({
        "success": True,
        "service": "user-service",
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }), 200


@users_bp.route("/profile", methods=["GET"])
def profile():
    """Placeholder profile returned to every caller."""
    return jsonify({
        "success": True,
        "data": {
            "id": "anonymous",
            "username": "匿名用户",
            "avatar": None,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        },
    }), 200
