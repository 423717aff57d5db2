"""Smoke tests for the health endpoint."""

from contextlib import contextmanager
from importlib import reload
from pathlib import Path
import sys

import pytest
import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover - import-time guard
    sys.path.insert(0, str(ROOT))

import app as app_module  # noqa: E402  (import after path adjustment)
from security_relay import config  # noqa: E402
from security_relay.db import get_engine, get_session_factory  # noqa: E402


@pytest.fixture(autouse=True)
def seed_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "test-token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "test-secret")
    monkeypatch.setenv("ORGANIZATION_TEAM_ID", "TORG")
    monkeypatch.setenv("ACTIVITY_SWEEP_ENABLED", "false")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'smoke.db'}")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()

    yield

    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    structlog.reset_defaults()


def test_health_endpoint_returns_ok():
    reload(app_module)
    flask_app = app_module.create_app()

    with flask_app.test_client() as client:
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.get_json()
        assert data["ok"] is True
        assert data["config"] == "valid"
        assert data["db"] == "up"
        assert data["sweeper"] == "stopped"
        assert "version" in data


def test_health_endpoint_reports_db_down(monkeypatch):
    reload(app_module)
    flask_app = app_module.create_app()

    @contextmanager
    def failing_session_scope():
        raise RuntimeError("db down")
        yield

    monkeypatch.setattr(app_module, "session_scope", failing_session_scope)

    with flask_app.test_client() as client:
        response = client.get("/healthz")
        data = response.get_json()
        assert response.status_code == 503
        assert data["ok"] is False
        assert data["db"] == "down"
        assert "db_error" in data


def test_health_endpoint_reports_installed_version(monkeypatch):
    reload(app_module)
    monkeypatch.setattr(app_module.metadata, "version", lambda name: "1.4.2" if name == "security-relay" else "0")
    flask_app = app_module.create_app()

    with flask_app.test_client() as client:
        data = client.get("/healthz").get_json()
        assert data["version"] == "1.4.2"


def test_health_endpoint_version_unknown_when_not_installed(monkeypatch):
    reload(app_module)

    def missing(name):
        raise app_module.metadata.PackageNotFoundError(name)

    monkeypatch.setattr(app_module.metadata, "version", missing)
    flask_app = app_module.create_app()

    with flask_app.test_client() as client:
        data = client.get("/healthz").get_json()
        assert data["version"] == "unknown"
