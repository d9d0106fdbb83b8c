import pytest

from appserve import Server, ServerConfig


CLIENT_HEADERS = {"X-Forwarded-For": "203.0.113.7", "User-Agent": "Mozilla/5.0 (pytest)"}


@pytest.fixture
def make_server(tmp_path, monkeypatch):
    """Server rooted in a temp dir, in development mode, with a short startup wait."""
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("CORS_ALLOWED_ORIGINS", raising=False)

    def _make(**overrides):
        values = {
            "root": tmp_path,
            "environment": "development",
            "host": "127.0.0.1",
            "startup_wait": 2.0,
            "cors_origins": [],
            "watch": False,
        }
        values.update(overrides)
        return Server(ServerConfig(**values))

    return _make
