"""Encoding and parsing of the action ids carried by request buttons."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ControlAction(str, Enum):
    RESPOND = "respond"
    CONCLUDE = "conclude"
    EXTERNAL_RESPOND = "extrespond"
    EXTERNAL_CONCLUDE = "extconclude"

    @property
    def is_external(self) -> bool:
        return self in (ControlAction.EXTERNAL_RESPOND, ControlAction.EXTERNAL_CONCLUDE)

    @property
    def is_respond(self) -> bool:
        return self in (ControlAction.RESPOND, ControlAction.EXTERNAL_RESPOND)


RESPOND_ACTION_PATTERN = r"^(respond|extrespond)_"
CONCLUDE_ACTION_PATTERN = r"^(conclude|extconclude)_"


@dataclass(frozen=True)
class ControlContext:
    """Parsed routing state of a Respond or Conclude button."""

    action: ControlAction
    request_id: str
    external_guild_id: str | None = None

    @property
    def is_external(self) -> bool:
        return self.action.is_external


def build_control_id(action: ControlAction, request_id: str, external_guild_id: str | None = None) -> str:
    """Return the action id for *action* on *request_id*."""

    if not request_id or "_" in request_id:
        raise ValueError("Request ids must be non-empty and free of underscores.")
    if action.is_external:
        if not external_guild_id or "_" in external_guild_id:
            raise ValueError("External controls require a guild id without underscores.")
        return f"{action.value}_{request_id}_{external_guild_id}"
    if external_guild_id is not None:
        raise ValueError("Internal controls do not carry a guild id.")
    return f"{action.value}_{request_id}"


def parse_control_id(raw_value: str) -> ControlContext:
    """Parse an action id into a :class:`ControlContext`.

    Internal kinds need exactly two underscore-separated fields and external
    kinds exactly three; anything else is rejected as malformed.
    """

    if not isinstance(raw_value, str) or not raw_value:
        raise ValueError("Invalid control id.")

    parts = raw_value.split("_")
    try:
        action = ControlAction(parts[0])
    except ValueError as exc:
        raise ValueError("Invalid control id.") from exc

    expected = 3 if action.is_external else 2
    if len(parts) != expected or not all(parts[1:]):
        raise ValueError("Invalid control id.")

    if action.is_external:
        return ControlContext(action=action, request_id=parts[1], external_guild_id=parts[2])
    return ControlContext(action=action, request_id=parts[1])
