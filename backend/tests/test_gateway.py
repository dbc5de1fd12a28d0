import pytest

from backend.gateway.server import create_app


@pytest.fixture
def gateway():
    app = create_app()
    app.config["TESTING"] = True
    return app.test_client()


def test_root_and_health(gateway):
    assert gateway.get("/").status_code == 200
    body = gateway.get("/health").get_json()
    assert body["status"] == "OK"
    assert "timestamp" in body


def test_unknown_route_is_json_404(gateway):
    response = gateway.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.get_json() == {"error": "接口不存在", "path": "/api/nothing-here"}


def test_debug_env_hidden_outside_development(gateway, mocker):
    mocker.patch("backend.common.errors.APP_ENV", "production")
    assert gateway.get("/debug/env").status_code == 404


def test_debug_env_in_development(gateway, mocker):
    mocker.patch("backend.common.errors.APP_ENV", "development")
    body = gateway.get("/debug/env").get_json()
    assert "DATABASE_URL" in body["configured"]
    assert all(isinstance(v, bool) for v in body["configured"].values())


def test_blueprints_mounted(gateway):
    assert gateway.get("/api/users/health").status_code == 200


def test_uploads_served(gateway, mocker, tmp_path):
    (tmp_path / "poetry_1.jpg").write_bytes(b"jpeg")
    mocker.patch("backend.image_service.ingestion.UPLOAD_DIR", str(tmp_path))
    response = gateway.get("/uploads/poetry_1.jpg")
    assert response.status_code == 200
    assert response.data == b"jpeg"
