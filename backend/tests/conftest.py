import pytest
from flask import Flask
import os

# Keep error bodies free of exception details unless a test opts in
os.environ.setdefault("APP_ENV", "test")

from backend.poetry_service.routes import poetry_bp
from backend.image_service import storage


@pytest.fixture
def app():
    app = Flask(__name__)
    app.register_blueprint(poetry_bp, url_prefix="/api/poetry")

    from backend.image_service.routes import images_bp
    app.register_blueprint(images_bp, url_prefix="/api/images")

    from backend.user_service.routes import users_bp
    app.register_blueprint(users_bp, url_prefix="/api/users")

    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def fresh_storage():
    """Every test starts without a cached storage client."""
    storage.reset_storage()
    yield
    storage.reset_storage()


@pytest.fixture
def mock_db(mocker):
    """
    Mocks the database connection and cursor.
    """
    mock_conn = mocker.MagicMock()
    mock_cursor = mocker.MagicMock()

    # Setup the context manager for connection
    mock_conn.__enter__.return_value = mock_conn
    mock_conn.__exit__.return_value = None

    # Setup the context manager for cursor
    mock_cursor.__enter__.return_value = mock_cursor
    mock_cursor.__exit__.return_value = None

    # Connect cursor to connection
    mock_conn.cursor.return_value = mock_cursor

    # Mock get_db to return our mock connection
    mocker.patch("backend.poetry_service.models.get_db", return_value=mock_conn)

    return mock_conn, mock_cursor


@pytest.fixture
def mock_storage(mocker):
    """A StorageClient stand-in returned by get_storage()."""
    client = mocker.MagicMock()
    client.put_single.return_value = {"url": "https://cdn.example.com/poetry/a.jpg", "etag": "abc"}
    client.put_multipart.return_value = {"url": "https://cdn.example.com/poetry/b.jpg", "etag": "def"}
    mocker.patch("backend.image_service.storage.get_storage", return_value=client)
    return client
