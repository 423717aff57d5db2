"""Boundary through which the lifecycle posts and edits request views."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol


@dataclass(frozen=True)
class MessageRef:
    channel_id: str
    ts: str


class ViewDeliveryError(Exception):
    """Raised when a view could not be posted or edited."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ViewGateway(Protocol):
    def post_view(self, channel_id: str, payload: Mapping[str, Any]) -> MessageRef:
        ...

    def update_view(self, ref: MessageRef, payload: Mapping[str, Any]) -> None:
        ...
