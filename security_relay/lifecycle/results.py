"""Typed outcomes returned by the lifecycle entry points."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple


class Outcome(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    DEGRADED = "degraded"
    FAILED = "failed"


class Reason(str, Enum):
    NOT_CONFIGURED = "not_configured"
    ORGANIZATION_NOT_CONFIGURED = "organization_not_configured"
    NOT_AUTHORIZED = "not_authorized"
    SERVER_NOT_REGISTERED = "server_not_registered"
    SERVER_BLACKLISTED = "server_blacklisted"
    WRONG_CHANNEL = "wrong_channel"
    ROLE_NOT_ALLOWED = "role_not_allowed"
    REQUEST_NOT_FOUND = "request_not_found"
    MALFORMED_CONTROL = "malformed_control"
    ALREADY_RESPONDING = "already_responding"
    ALREADY_CONCLUDED = "already_concluded"
    REASON_REQUIRED = "reason_required"
    DUPLICATE_REQUEST = "duplicate_request"
    ALERT_UNDELIVERED = "alert_undelivered"
    ORIGIN_VIEW_FAILED = "origin_view_failed"
    ORIGIN_VIEW_STALE = "origin_view_stale"
    ORGANIZATION_VIEW_STALE = "organization_view_stale"
    NOT_TRACKED = "not_tracked"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class LifecycleResult:
    """What happened to a lifecycle call, for the command surface to phrase.

    ``detail`` carries reason-specific data (missing field names, the
    designated channel, allowed role ids). ``issues`` lists every secondary
    problem of a degraded call; ``reason`` is the first of them.
    """

    outcome: Outcome
    reason: Reason | None = None
    request_id: str | None = None
    detail: dict = field(default_factory=dict)
    issues: Tuple[Reason, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.DEGRADED)

    @classmethod
    def success(cls, request_id: str | None = None, *, reason: Reason | None = None, **detail) -> "LifecycleResult":
        return cls(Outcome.SUCCESS, reason, request_id, dict(detail))

    @classmethod
    def rejected(cls, reason: Reason, request_id: str | None = None, **detail) -> "LifecycleResult":
        return cls(Outcome.REJECTED, reason, request_id, dict(detail))

    @classmethod
    def degraded(cls, issues: Tuple[Reason, ...], request_id: str | None = None, **detail) -> "LifecycleResult":
        return cls(Outcome.DEGRADED, issues[0], request_id, dict(detail), tuple(issues))

    @classmethod
    def failed(cls, reason: Reason, request_id: str | None = None, **detail) -> "LifecycleResult":
        return cls(Outcome.FAILED, reason, request_id, dict(detail))
