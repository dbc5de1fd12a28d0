"""
API gateway: combines the poetry, image and user blueprints.
This is the local entrypoint for development.
"""

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from datetime import datetime, timezone
import os
import logging
import sys
from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
FRONTEND_URL = os.getenv("FRONTEND_URL")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", 3008))
MAX_CONTENT_LENGTH = 50 * 1024 * 1024

# Basic console logging during API requests
logging.basicConfig(level=LOG_LEVEL, format="[%(levelname)s] %(asctime)s - %(message)s")


def _cors_origins():
    origins = [
        "http://localhost:3000",  # Frontend dev server
        "http://localhost:5173",  # Vite dev server
        "http://localhost:8080",  # Local static server
    ]
    if FRONTEND_URL:
        origins.append(FRONTEND_URL)
    return origins


def create_app() -> Flask:
    """
    Application factory for creating the Flask app.

    Returns:
        Flask: The configured Flask application.
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
    app.json.ensure_ascii = False

    CORS(app, resources={
        r"/*": {
            "origins": _cors_origins(),
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"],
            "supports_credentials": True
        }
    })

    # Add the project root to Python path
    # This allows imports like 'from backend.poetry_service.routes import poetry_bp'
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

    # --- REGISTER BLUEPRINTS ---
    try:
        from backend.poetry_service.routes import poetry_bp
        from backend.image_service.routes import images_bp
        from backend.user_service.routes import users_bp

        app.register_blueprint(poetry_bp, url_prefix="/api/poetry")
        app.register_blueprint(images_bp, url_prefix="/api/images")
        app.register_blueprint(users_bp, url_prefix="/api/users")

        logging.info("All blueprints registered successfully.")

    except ImportError as e:
        logging.error(f"Failed to import blueprints. Module not found: {e}")
        sys.exit(1)

    from backend.common.errors import is_development
    from backend.image_service import ingestion

    # --- BASIC HEALTH CHECKPOINTS ---
    @app.route("/")
    def ping():
        """
        Root URL for simple 'online' check.
        """
        return jsonify({"status": "gateway_ok", "message": "AI诗歌生成服务"}), 200

    @app.route("/health")
    def health():
        """
        Health check endpoint.
        """
        return jsonify({
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "poetry-backend",
        }), 200

    @app.route("/debug/env")
    def debug_env():
        """Which settings are present (never their values). Development only."""
        if not is_development():
            return jsonify({"error": "接口不存在", "path": request.path}), 404
        keys = [
            "DATABASE_URL", "DOUBAO_API_KEY", "DOUBAO_MODEL", "GEMINI_API_KEY",
            "OSS_ENDPOINT", "OSS_REGION", "OSS_ACCESS_KEY_ID",
            "OSS_ACCESS_KEY_SECRET", "OSS_BUCKET_NAME", "OSS_BASE_URL",
        ]
        return jsonify({
            "appEnv": os.getenv("APP_ENV", "production"),
            "configured": {key: bool(os.getenv(key)) for key in keys},
        }), 200

    @app.route("/uploads/<path:filename>")
    def uploaded_file(filename):
        return send_from_directory(os.path.abspath(ingestion.UPLOAD_DIR), filename)

    # --- JSON ERROR HANDLERS ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "接口不存在", "path": request.path}), 404

    @app.errorhandler(413)
    def too_large(e):
        return jsonify({"error": "文件大小超过限制"}), 413

    @app.errorhandler(500)
    def server_error(e):
        logging.error(f"Unhandled server error: {e}")
        body = {"error": "服务器内部错误"}
        if is_development():
            body["details"] = str(getattr(e, "original_exception", e))
        return jsonify(body), 500

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=GATEWAY_PORT, debug=True)
