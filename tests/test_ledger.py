"""Tests for the request ledger."""

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from security_relay import config  # noqa: E402
from security_relay.db import Base, get_engine, get_session_factory, session_scope  # noqa: E402
from security_relay.ledger import (  # noqa: E402
    active_request_counts,
    add_responder,
    conclude_request,
    count_active_by_external_guild,
    create_request,
    get_request,
)
from security_relay.models import (  # noqa: E402
    DuplicateRequestError,
    RequestConcludedError,
    RequestNotFoundError,
    RequestStatus,
    StatusTransitionError,
    ViewPlacement,
    advance_request_status,
)
from security_relay.registry import register_server  # noqa: E402


@pytest.fixture(autouse=True)
def configure_environment(monkeypatch, tmp_path):
    db_path = tmp_path / "ledger.db"
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


def _create_internal(request_id="r1"):
    with session_scope() as session:
        create_request(
            session,
            request_id=request_id,
            requester_id="U1",
            requester_name="Alice",
            location="Gate 3",
            organization_ref=("CALERT", "100.1"),
        )


def _create_external(request_id="r2", guild_id="TG1"):
    with session_scope() as session:
        register_server(session, guild_id, "Guild One", "C1")
        create_request(
            session,
            request_id=request_id,
            requester_id="U2",
            requester_name="Bob",
            location="Lobby",
            details="Suspicious person",
            contact="ext 4422",
            external_guild_id=guild_id,
            origin_ref=("C1", "200.1"),
            organization_ref=("CALERT", "200.2"),
        )


def test_external_request_round_trip():
    _create_external()

    with session_scope() as session:
        stored = get_request(session, "r2")
        assert stored.is_external is True
        assert stored.status == RequestStatus.PENDING.value
        assert stored.responder_ids == []
        assert stored.view_for(ViewPlacement.ORIGIN).ts == "200.1"
        assert stored.view_for(ViewPlacement.ORGANIZATION).channel_id == "CALERT"
        assert stored.contact == "ext 4422"


def test_internal_request_has_no_external_fields():
    _create_internal()

    with session_scope() as session:
        stored = get_request(session, "r1")
        assert stored.is_external is False
        assert stored.external_guild_id is None
        assert stored.view_for(ViewPlacement.ORIGIN) is None
        assert stored.contact is None


def test_internal_request_rejects_origin_view():
    with session_scope() as session:
        with pytest.raises(ValueError):
            create_request(
                session,
                request_id="bad",
                requester_id="U1",
                requester_name="Alice",
                location="Gate",
                origin_ref=("C1", "1.1"),
            )


def test_create_request_never_overwrites():
    _create_internal()

    with pytest.raises(DuplicateRequestError):
        with session_scope() as session:
            create_request(
                session,
                request_id="r1",
                requester_id="U9",
                requester_name="Mallory",
                location="Elsewhere",
            )

    with session_scope() as session:
        assert get_request(session, "r1").requester_id == "U1"


def test_add_responder_is_idempotent_and_ordered():
    _create_internal()

    with session_scope() as session:
        first = add_responder(session, "r1", "U7", "Grace")
        assert first.already_present is False
        assert first.request.status == RequestStatus.RESPONDING.value

    with session_scope() as session:
        again = add_responder(session, "r1", "U7", "Grace")
        assert again.already_present is True

    with session_scope() as session:
        add_responder(session, "r1", "U3", "Heidi")

    with session_scope() as session:
        stored = get_request(session, "r1")
        assert stored.responder_ids == ["U7", "U3"]
        assert stored.responder_names == ["Grace", "Heidi"]
        assert stored.status == RequestStatus.RESPONDING.value
        transitions = [(row.from_status, row.to_status) for row in stored.status_history]
        assert transitions == [("pending", "responding")]


def test_add_responder_errors():
    _create_internal()
    with session_scope() as session:
        conclude_request(session, "r1", "false alarm", "U7", "Grace")

    with pytest.raises(RequestNotFoundError):
        with session_scope() as session:
            add_responder(session, "missing", "U7")

    with pytest.raises(RequestConcludedError):
        with session_scope() as session:
            add_responder(session, "r1", "U8")

    with session_scope() as session:
        stored = get_request(session, "r1")
        assert stored.responder_ids == []
        assert stored.status == RequestStatus.CONCLUDED.value


def test_conclude_is_terminal_and_keeps_first_reason():
    _create_external()
    with session_scope() as session:
        add_responder(session, "r2", "U7", "Grace")

    with session_scope() as session:
        concluded = conclude_request(session, "r2", "resolved", "U7", "Grace")
        assert concluded.status == RequestStatus.CONCLUDED.value
        assert concluded.concluded_at is not None

    with pytest.raises(RequestConcludedError):
        with session_scope() as session:
            conclude_request(session, "r2", "again", "U8", "Ivan")

    with session_scope() as session:
        stored = get_request(session, "r2")
        assert stored.conclusion_reason == "resolved"
        assert stored.concluded_by_id == "U7"
        assert stored.concluded_by_name == "Grace"
        transitions = [(row.from_status, row.to_status) for row in stored.status_history]
        assert transitions == [("pending", "responding"), ("responding", "concluded")]


def test_conclude_with_zero_responders_is_allowed():
    _create_internal()

    with session_scope() as session:
        concluded = conclude_request(session, "r1", "false alarm", "U7", "Grace")
        assert concluded.status == RequestStatus.CONCLUDED.value
        assert concluded.responder_ids == []


def test_conclude_unknown_request():
    with pytest.raises(RequestNotFoundError):
        with session_scope() as session:
            conclude_request(session, "nope", "reason", "U7", "Grace")


def test_status_never_moves_backward():
    _create_internal()
    with session_scope() as session:
        add_responder(session, "r1", "U7", "Grace")

    with pytest.raises(StatusTransitionError):
        with session_scope() as session:
            stored = get_request(session, "r1")
            advance_request_status(session, stored, new_status=RequestStatus.PENDING, changed_by="U7")

    with session_scope() as session:
        assert get_request(session, "r1").status == RequestStatus.RESPONDING.value


def test_active_counts_exclude_concluded_requests():
    _create_external("r2", "TG1")
    _create_external("r3", "TG1")
    _create_external("r4", "TG2")
    with session_scope() as session:
        conclude_request(session, "r3", "done", "U7", "Grace")

    with session_scope() as session:
        assert count_active_by_external_guild(session, "TG1") == 1
        assert count_active_by_external_guild(session, "TG9") == 0
        assert active_request_counts(session, ["TG1", "TG2", "TG9"]) == {"TG1": 1, "TG2": 1, "TG9": 0}
        assert active_request_counts(session, []) == {}
