from fastapi.testclient import TestClient

from taskboard.config import Settings
from taskboard.main import create_app


def test_health():
    client = TestClient(create_app(Settings()))
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_version_comes_from_settings():
    client = TestClient(create_app(Settings(api_version="2.3.4")))
    assert client.get("/v1/version").json() == {"version": "2.3.4"}
