"""Parsing helpers for slash commands and user-facing result messages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from security_relay.lifecycle.results import LifecycleResult, Outcome, Reason
from security_relay.org_config import describe_missing

_ROLE_PATTERN = re.compile(r"^(?:<!subteam\^(?P<escaped>S[A-Z0-9]+)(?:\|[^>]*)?>|(?P<raw>S[A-Z0-9]+))$")
_CHANNEL_PATTERN = re.compile(r"^(?:<#(?P<escaped>[CG][A-Z0-9]+)(?:\|[^>]*)?>|(?P<raw>[CG][A-Z0-9]+))$")
_USER_PATTERN = re.compile(r"^(?:<@(?P<escaped>[UW][A-Z0-9]+)(?:\|[^>]*)?>|(?P<raw>[UW][A-Z0-9]+))$")
_TEAM_PATTERN = re.compile(r"^[TE][A-Z0-9]+$")


@dataclass
class CommandContext:
    subcommand: str | None
    args: List[str] = field(default_factory=list)


def parse_subcommand(text: str | None) -> CommandContext:
    """Split command text into a lower-cased subcommand and its raw arguments."""

    parts = (text or "").strip().split()
    if not parts:
        return CommandContext(subcommand=None)
    return CommandContext(subcommand=parts[0].lower(), args=parts[1:])


def _match(pattern: re.Pattern, value: str | None, message: str) -> str:
    match = pattern.match((value or "").strip())
    if match is None:
        raise ValueError(message)
    return match.group("escaped") or match.group("raw")


def parse_role_reference(value: str | None) -> str:
    return _match(_ROLE_PATTERN, value, "Please mention a user group, for example `@security`.")


def parse_channel_reference(value: str | None) -> str:
    return _match(_CHANNEL_PATTERN, value, "Please mention a channel, for example `#security-alerts`.")


def parse_user_reference(value: str | None) -> str:
    return _match(_USER_PATTERN, value, "Please mention a user, for example `@jane`.")


def parse_team_id(value: str | None) -> str:
    cleaned = (value or "").strip().upper()
    if not _TEAM_PATTERN.match(cleaned):
        raise ValueError("Please provide a workspace id, for example `T0123456`.")
    return cleaned


def role_mention(role_id: str | None) -> str:
    return f"<!subteam^{role_id}>" if role_id else "_Not set_"


def channel_mention(channel_id: str | None) -> str:
    return f"<#{channel_id}>" if channel_id else "_Not set_"


_REJECTION_TEXT = {
    Reason.NOT_AUTHORIZED: "You do not have permission to do this.",
    Reason.SERVER_NOT_REGISTERED: (
        "This workspace has not been set up for security requests. "
        "An administrator needs to use `/setup-security-channel` first."
    ),
    Reason.REQUEST_NOT_FOUND: "Could not find the original security request.",
    Reason.MALFORMED_CONTROL: "This button is not valid for this request. Please contact an administrator.",
    Reason.ALREADY_CONCLUDED: "This security request has already been concluded.",
    Reason.REASON_REQUIRED: "Please provide a reason for concluding the request.",
    Reason.DUPLICATE_REQUEST: "This request was already submitted.",
}


def _rejection_text(result: LifecycleResult, organization_name: str) -> str:
    reason = result.reason
    detail = result.detail
    if reason is Reason.NOT_CONFIGURED:
        return (
            "This workspace is not fully configured for security requests "
            f"(missing: {describe_missing(detail.get('missing', []))}). "
            "Please ask an administrator to run `/config-server`."
        )
    if reason is Reason.ORGANIZATION_NOT_CONFIGURED:
        return (
            f"{organization_name} is not fully configured "
            f"(missing: {describe_missing(detail.get('missing', []))}). "
            f"Please contact the {organization_name} administrators."
        )
    if reason is Reason.SERVER_BLACKLISTED:
        suffix = f" Reason: {detail['blacklist_reason']}" if detail.get("blacklist_reason") else ""
        return f"This workspace has been blocked from sending security requests.{suffix}"
    if reason is Reason.WRONG_CHANNEL:
        return (
            "You can only use this command in the designated security request channel: "
            f"{channel_mention(detail.get('channel_id'))}"
        )
    if reason is Reason.ROLE_NOT_ALLOWED:
        roles = ", ".join(role_mention(role_id) for role_id in detail.get("allowed_role_ids", []))
        return f"You do not have permission to use this command. You need one of these groups: {roles}"
    return _REJECTION_TEXT.get(reason, "This action could not be completed.")


_ISSUE_TEXT = {
    Reason.ALERT_UNDELIVERED: "the alert could not be delivered to {org}, please contact them directly",
    Reason.ORIGIN_VIEW_FAILED: "the confirmation could not be posted in this channel",
    Reason.ORIGIN_VIEW_STALE: "the requesting workspace could not be updated and may show an outdated status",
    Reason.ORGANIZATION_VIEW_STALE: "the alert message could not be updated",
    Reason.NOT_TRACKED: "the request could not be saved and will not be tracked",
}


def describe_result(result: LifecycleResult, *, action: str, organization_name: str) -> str:
    """Translate a lifecycle result into the ephemeral text shown to the actor.

    *action* is one of ``"file"``, ``"file_external"``, ``"respond"`` or ``"conclude"``.
    """

    if result.outcome is Outcome.REJECTED:
        return _rejection_text(result, organization_name)
    if result.outcome is Outcome.FAILED:
        if result.reason is Reason.STORE_UNAVAILABLE:
            return "Something went wrong while saving. Please try again."
        return f"Failed to send your request to {organization_name}. Please contact them directly."

    if result.reason is Reason.ALREADY_RESPONDING:
        return "You are already marked as responding to this request."

    if action == "file":
        base = "Your security request has been sent to the alert channel."
    elif action == "file_external":
        base = f"Your security request has been sent to {organization_name}!"
    elif action == "respond":
        base = "You are now marked as responding to this request."
        if result.detail.get("is_external") and result.outcome is Outcome.SUCCESS:
            base = "You are now responding to this external request. The requester has been notified."
    else:
        base = "The security request has been concluded."
        if result.detail.get("is_external") and result.outcome is Outcome.SUCCESS:
            base = "The external security request has been concluded. The requesting workspace has been updated."

    if result.outcome is Outcome.DEGRADED:
        problems = "; ".join(
            _ISSUE_TEXT[issue].format(org=organization_name) for issue in result.issues if issue in _ISSUE_TEXT
        )
        if action.startswith("file") and Reason.ALERT_UNDELIVERED in result.issues:
            base = "Your security request was received."
        return f"{base} However, {problems}."
    return base
