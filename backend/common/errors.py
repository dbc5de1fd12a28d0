"""
Shared exception types and error-response helpers.

Route handlers return `jsonify({"error": ...}), status` directly; these
classes are raised by the service layers so the routes (and the generation
flow) can decide whether to surface or degrade.
"""

import os
from typing import Optional, Tuple

from flask import jsonify, Response
from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "production")


class PoetryAppError(Exception):
    """Base exception for the poetry backend."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(PoetryAppError):
    """Missing or malformed input. Never retried."""

    status_code = 400


class PersistenceError(PoetryAppError):
    """Database unavailable or a query failed."""


class InferenceError(PoetryAppError):
    """The vision model could not produce a poem."""


class ImageDownloadError(PoetryAppError):
    """A remote image could not be fetched."""


class StorageError(PoetryAppError):
    """
    An object-storage call failed.

    `kind` is one of: access_denied, bucket_missing, invalid_credentials,
    signature_mismatch, timeout, unknown.
    """

    def __init__(self, message: str, kind: str = "unknown", details: Optional[str] = None):
        super().__init__(message, details)
        self.kind = kind


class StorageNotConfigured(StorageError):
    def __init__(self, message: str = "对象存储未配置"):
        super().__init__(message, kind="not_configured")


def is_development() -> bool:
    return APP_ENV == "development"


def error_response(message: str, status: int = 500, exc: Optional[BaseException] = None) -> Tuple[Response, int]:
    """
    Build the standard error body.

    The exception text is only exposed as `details` in development mode.
    """
    body = {"error": message}
    if exc is not None and is_development():
        body["details"] = str(exc)
    return jsonify(body), status
