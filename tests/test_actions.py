"""Tests for request button action ids."""

from pathlib import Path
import re
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from security_relay.actions import (  # noqa: E402
    CONCLUDE_ACTION_PATTERN,
    RESPOND_ACTION_PATTERN,
    ControlAction,
    build_control_id,
    parse_control_id,
)


def test_parse_internal_control():
    context = parse_control_id("respond_abc123")

    assert context.action is ControlAction.RESPOND
    assert context.request_id == "abc123"
    assert context.external_guild_id is None
    assert context.is_external is False


def test_parse_external_control():
    context = parse_control_id("extconclude_abc123_T0G1")

    assert context.action is ControlAction.EXTERNAL_CONCLUDE
    assert context.request_id == "abc123"
    assert context.external_guild_id == "T0G1"
    assert context.is_external is True


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "respond",
        "respond_",
        "respond_abc_T1",
        "extrespond_abc",
        "extrespond_abc_T1_extra",
        "approve_abc",
        "conclude__",
    ],
)
def test_parse_rejects_wrong_field_counts_and_unknown_kinds(raw):
    with pytest.raises(ValueError):
        parse_control_id(raw)


def test_build_control_id_produces_parseable_ids():
    raw = build_control_id(ControlAction.EXTERNAL_RESPOND, "abc123", "T0G1")

    assert raw == "extrespond_abc123_T0G1"
    assert parse_control_id(raw).external_guild_id == "T0G1"


def test_build_control_id_validates_guild_usage():
    with pytest.raises(ValueError):
        build_control_id(ControlAction.RESPOND, "abc", "T1")
    with pytest.raises(ValueError):
        build_control_id(ControlAction.EXTERNAL_CONCLUDE, "abc")
    with pytest.raises(ValueError):
        build_control_id(ControlAction.CONCLUDE, "a_b")


def test_listener_patterns_route_by_kind():
    assert re.match(RESPOND_ACTION_PATTERN, "extrespond_abc_T1")
    assert re.match(RESPOND_ACTION_PATTERN, "respond_abc")
    assert not re.match(RESPOND_ACTION_PATTERN, "conclude_abc")
    assert re.match(CONCLUDE_ACTION_PATTERN, "extconclude_abc_T1")
    assert not re.match(CONCLUDE_ACTION_PATTERN, "respond_abc")
