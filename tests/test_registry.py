"""Tests for the customer workspace registry and the activity sweep."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from security_relay import config  # noqa: E402
from security_relay.db import Base, get_engine, get_session_factory, session_scope  # noqa: E402
from security_relay.models import ExternalServer, ServerNotRegisteredError  # noqa: E402
from security_relay.registry import (  # noqa: E402
    RoleChange,
    add_allowed_role,
    clear_allowed_roles,
    clear_blacklist,
    get_server,
    list_blacklisted,
    list_servers,
    register_server,
    remove_allowed_role,
    set_allowed_roles,
    set_blacklist,
    sweep_inactive,
    touch_activity,
)
from security_relay.sweeper import run_activity_sweep  # noqa: E402


@pytest.fixture(autouse=True)
def configure_environment(monkeypatch, tmp_path):
    db_path = tmp_path / "registry.db"
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


NOW = datetime.now(UTC).replace(microsecond=0)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def _set_last_access(guild_id: str, when: datetime, *, active: bool = True) -> None:
    with session_scope() as session:
        server = session.get(ExternalServer, guild_id)
        server.last_accessed_at = when
        server.is_active = active


def test_register_is_idempotent_and_reactivates():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")

    _set_last_access("TG1", NOW - timedelta(days=90), active=False)

    with session_scope() as session:
        server = register_server(session, "TG1", "Guild Renamed", "C2")
        assert server.guild_name == "Guild Renamed"
        assert server.channel_id == "C2"
        assert server.is_active is True

    with session_scope() as session:
        servers = list_servers(session, include_inactive=True)
        assert [server.guild_id for server in servers] == ["TG1"]
        assert _naive(servers[0].last_accessed_at) > _naive(NOW - timedelta(days=1))


def test_touch_activity_never_creates_registrations():
    with session_scope() as session:
        assert touch_activity(session, "TUNKNOWN") is False
        assert get_server(session, "TUNKNOWN") is None


def test_touch_activity_refreshes_and_reactivates():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")
    _set_last_access("TG1", NOW - timedelta(days=45), active=False)

    with session_scope() as session:
        assert touch_activity(session, "TG1") is True

    with session_scope() as session:
        server = get_server(session, "TG1")
        assert server.is_active is True
        assert _naive(server.last_accessed_at) > _naive(NOW - timedelta(days=1))


def test_allowed_roles_keep_order_and_report_no_ops():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")

    with session_scope() as session:
        assert add_allowed_role(session, "TG1", "SB") is RoleChange.ADDED
        assert add_allowed_role(session, "TG1", "SA") is RoleChange.ADDED
        assert add_allowed_role(session, "TG1", "SB") is RoleChange.ALREADY_PRESENT

    with session_scope() as session:
        assert get_server(session, "TG1").allowed_role_ids == ["SB", "SA"]
        assert remove_allowed_role(session, "TG1", "SZ") is RoleChange.NOT_PRESENT
        assert remove_allowed_role(session, "TG1", "SB") is RoleChange.REMOVED

    with session_scope() as session:
        assert add_allowed_role(session, "TG1", "SC") is RoleChange.ADDED

    with session_scope() as session:
        assert get_server(session, "TG1").allowed_role_ids == ["SA", "SC"]
        assert clear_allowed_roles(session, "TG1") == 2

    with session_scope() as session:
        assert get_server(session, "TG1").allowed_role_ids == []


def test_set_allowed_roles_replaces_and_deduplicates():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")
        set_allowed_roles(session, "TG1", ["SA", "SB"])

    with session_scope() as session:
        assert set_allowed_roles(session, "TG1", ["SC", "SA", "SC"]) == ["SC", "SA"]

    with session_scope() as session:
        assert get_server(session, "TG1").allowed_role_ids == ["SC", "SA"]


def test_mutators_require_registration():
    with session_scope() as session:
        with pytest.raises(ServerNotRegisteredError):
            add_allowed_role(session, "TNONE", "SA")
        with pytest.raises(ServerNotRegisteredError):
            set_blacklist(session, "TNONE", "spam")


def test_blacklist_round_trip_reports_no_change():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")
        register_server(session, "TG2", "Guild Two", "C2")

    with session_scope() as session:
        assert set_blacklist(session, "TG1", "abuse") is True
        assert set_blacklist(session, "TG1", "again") is False

    with session_scope() as session:
        blacklisted = list_blacklisted(session)
        assert [server.guild_id for server in blacklisted] == ["TG1"]
        assert blacklisted[0].blacklist_reason == "abuse"
        assert clear_blacklist(session, "TG1") is True
        assert clear_blacklist(session, "TG1") is False

    with session_scope() as session:
        assert list_blacklisted(session) == []
        assert get_server(session, "TG1").blacklist_reason is None


def test_list_servers_orders_by_last_activity_and_hides_inactive():
    with session_scope() as session:
        register_server(session, "TG1", "Guild One", "C1")
        register_server(session, "TG2", "Guild Two", "C2")
        register_server(session, "TG3", "Guild Three", "C3")
    _set_last_access("TG1", NOW - timedelta(days=3))
    _set_last_access("TG2", NOW - timedelta(days=1))
    _set_last_access("TG3", NOW - timedelta(days=2), active=False)

    with session_scope() as session:
        assert [server.guild_id for server in list_servers(session)] == ["TG2", "TG1"]
        assert [server.guild_id for server in list_servers(session, include_inactive=True)] == ["TG2", "TG3", "TG1"]


def test_sweep_demotes_only_registrations_older_than_threshold():
    with session_scope() as session:
        for guild_id in ("TOLD", "TEDGE", "TNEW", "TIDLE"):
            register_server(session, guild_id, guild_id, "C1")
    _set_last_access("TOLD", NOW - timedelta(days=31))
    _set_last_access("TEDGE", NOW - timedelta(days=30))
    _set_last_access("TNEW", NOW - timedelta(days=2))
    _set_last_access("TIDLE", NOW - timedelta(days=60), active=False)

    with session_scope() as session:
        stats = sweep_inactive(session, 30, now=NOW)

    assert stats.demoted == 1
    assert stats.active_count == 2
    assert stats.inactive_count == 2

    with session_scope() as session:
        assert get_server(session, "TOLD").is_active is False
        assert get_server(session, "TEDGE").is_active is True
        assert get_server(session, "TNEW").is_active is True

    with session_scope() as session:
        second = sweep_inactive(session, 30, now=NOW)
    assert second.demoted == 0
    assert second.inactive_count == 2


def test_sweep_rejects_non_positive_threshold():
    with session_scope() as session:
        with pytest.raises(ValueError):
            sweep_inactive(session, 0)


def test_run_activity_sweep_uses_session_scope():
    with session_scope() as session:
        register_server(session, "TOLD", "Old", "C1")
    _set_last_access("TOLD", NOW - timedelta(days=40))

    stats = run_activity_sweep(30, now=NOW)

    assert stats.demoted == 1
    assert stats.inactive_count == 1
