"""Tests for per-workspace configuration and permission helpers."""

from pathlib import Path
import sys

import pytest
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from security_relay import config  # noqa: E402
from security_relay.actors import ActorDescriptor  # noqa: E402
from security_relay.db import Base, get_engine, get_session_factory, session_scope  # noqa: E402
from security_relay.org_config import (  # noqa: E402
    REQUEST_FIELDS,
    can_blacklist,
    get_config,
    is_manager,
    missing_fields,
    upsert_config,
)


@pytest.fixture(autouse=True)
def configure_environment(monkeypatch, tmp_path):
    db_path = tmp_path / "config.db"
    monkeypatch.setenv("SLACK_BOT_TOKEN", "token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "secret")
    monkeypatch.setenv("ORGANIZATION_TEAM_ID", "TORG")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")

    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()

    engine = get_engine()
    Base.metadata.create_all(engine)

    yield

    Base.metadata.drop_all(engine)
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


def _actor(user_id="U1", *, roles=(), is_admin=False, is_owner=False):
    return ActorDescriptor(
        user_id=user_id,
        display_name=user_id,
        team_id="TORG",
        role_ids=frozenset(roles),
        is_admin=is_admin,
        is_owner=is_owner,
    )


def test_upsert_creates_then_merges_without_clearing():
    with session_scope() as session:
        upsert_config(session, "TORG", security_role_id="SSEC", alert_channel_id="CALERT")

    with session_scope() as session:
        upsert_config(session, "TORG", manager_role_id="SMGR", security_role_id=None)

    with session_scope() as session:
        stored = get_config(session, "TORG")
        assert stored.security_role_id == "SSEC"
        assert stored.alert_channel_id == "CALERT"
        assert stored.manager_role_id == "SMGR"
        assert stored.customer_role_id is None


def test_upsert_rejects_unknown_fields():
    with session_scope() as session:
        with pytest.raises(ValueError):
            upsert_config(session, "TORG", favourite_color="blue")


def test_get_config_returns_none_when_absent():
    with session_scope() as session:
        assert get_config(session, "TNONE") is None


def test_get_config_logs_and_returns_none_on_store_failure(monkeypatch):
    with session_scope() as session:
        def broken_get(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "get", broken_get)
        with capture_logs() as logs:
            assert get_config(session, "TORG") is None

    assert any(entry["event"] == "config_lookup_failed" for entry in logs)


def test_missing_fields_lists_unconfigured_names():
    assert missing_fields(None) == list(REQUEST_FIELDS)

    with session_scope() as session:
        stored = upsert_config(session, "TORG", customer_role_id="SCUS")
        assert missing_fields(stored) == ["security_role_id", "alert_channel_id"]


def test_is_manager_rules():
    with session_scope() as session:
        assert is_manager(session, _actor(is_admin=True), "TORG") is True
        assert is_manager(session, _actor("UDEV"), "TORG", ["UDEV"]) is True
        # No manager role configured: only admins and overrides qualify.
        assert is_manager(session, _actor(roles={"SMGR"}), "TORG") is False

        upsert_config(session, "TORG", manager_role_id="SMGR")
        assert is_manager(session, _actor(roles={"SMGR"}), "TORG") is True
        assert is_manager(session, _actor(roles={"SOTHER"}), "TORG") is False


def test_can_blacklist_rules():
    with session_scope() as session:
        assert can_blacklist(session, _actor(is_owner=True), "TORG") is True
        assert can_blacklist(session, _actor(is_admin=True), "TORG") is False
        assert can_blacklist(session, _actor("UDEV"), "TORG", ["UDEV"]) is True

        upsert_config(session, "TORG", blacklist_role_id="SBL")
        assert can_blacklist(session, _actor(roles={"SBL"}), "TORG") is True
