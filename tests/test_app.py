"""Tests for the Flask application factory."""

from pathlib import Path
import sys

import pytest
import structlog
from flask import Response

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover
    sys.path.insert(0, str(ROOT))

import app as app_module  # noqa: E402
from security_relay import config  # noqa: E402
from security_relay.db import get_engine, get_session_factory  # noqa: E402


class DummyHandler:
    called = False

    def __init__(self, bolt_app):
        self.bolt_app = bolt_app

    def handle(self, _request):
        DummyHandler.called = True
        return Response("ok", status=200)


class ExplodingHandler(DummyHandler):
    def handle(self, _request):
        raise RuntimeError("boom")


@pytest.fixture(autouse=True)
def seed_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "secret")
    monkeypatch.setenv("ORGANIZATION_TEAM_ID", "TORG")
    monkeypatch.setenv("ACTIVITY_SWEEP_ENABLED", "false")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()

    yield

    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    structlog.reset_defaults()


def test_slack_events_route_uses_handler(monkeypatch):
    DummyHandler.called = False
    monkeypatch.setattr(app_module, "SlackRequestHandler", DummyHandler)
    flask_app = app_module.create_app()

    client = flask_app.test_client()
    response = client.post("/slack/events", data="{}", content_type="application/json")

    assert response.status_code == 200
    assert response.data == b"ok"
    assert DummyHandler.called is True


def test_unexpected_errors_return_trace_id(monkeypatch):
    monkeypatch.setattr(app_module, "SlackRequestHandler", ExplodingHandler)
    flask_app = app_module.create_app()

    client = flask_app.test_client()
    response = client.post("/slack/events", data="{}", content_type="application/json")

    assert response.status_code == 500
    payload = response.get_json()
    assert payload["error"] == "internal_server_error"
    assert payload["trace_id"]


def test_sweeper_starts_once_when_enabled(monkeypatch):
    started = []

    class FakeTask:
        is_running = True

    def fake_start(settings):
        started.append(settings.inactivity_threshold_days)
        return FakeTask()

    monkeypatch.setenv("ACTIVITY_SWEEP_ENABLED", "true")
    monkeypatch.setenv("INACTIVITY_THRESHOLD_DAYS", "14")
    config.get_settings.cache_clear()
    monkeypatch.setattr(app_module, "start_activity_sweeper", fake_start)
    monkeypatch.setattr(app_module, "_SWEEPER", None)

    app_module._start_sweeper(config.get_settings())
    app_module._start_sweeper(config.get_settings())

    assert started == [14]
    assert app_module._SWEEPER.is_running is True


def test_sweeper_stays_off_when_disabled(monkeypatch):
    monkeypatch.setattr(app_module, "_SWEEPER", None)
    monkeypatch.setattr(app_module, "start_activity_sweeper", lambda settings: pytest.fail("should not start"))

    app_module._start_sweeper(config.get_settings())

    assert app_module._SWEEPER is None
