"""Modals that collect request details and conclusion reasons."""

from __future__ import annotations

import json
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError

INTERNAL_REQUEST_CALLBACK_ID = "security_request_submit"
EXTERNAL_REQUEST_CALLBACK_ID = "external_security_request_submit"
CONCLUDE_CALLBACK_ID = "conclude_request_submit"

CONCLUDE_REASON_BLOCK_ID = "conclude_reason"

MAX_TITLE_LENGTH = 24
MAX_INPUT_LENGTH = 1000


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _input_block(
    block_id: str,
    label: str,
    *,
    placeholder: str,
    multiline: bool = False,
    optional: bool = False,
) -> Dict[str, Any]:
    element: Dict[str, Any] = {
        "type": "plain_text_input",
        "action_id": block_id,
        "placeholder": {"type": "plain_text", "text": placeholder},
        "max_length": MAX_INPUT_LENGTH,
    }
    if multiline:
        element["multiline"] = True
    return {
        "type": "input",
        "block_id": block_id,
        "label": {"type": "plain_text", "text": label, "emoji": True},
        "element": element,
        "optional": optional,
    }


def _modal(callback_id: str, title: str, submit: str, blocks: List[Dict[str, Any]], metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "modal",
        "callback_id": callback_id,
        "private_metadata": json.dumps(metadata, separators=(",", ":")),
        "title": {"type": "plain_text", "text": _truncate(title, MAX_TITLE_LENGTH), "emoji": True},
        "submit": {"type": "plain_text", "text": submit, "emoji": True},
        "close": {"type": "plain_text", "text": "Cancel", "emoji": True},
        "blocks": blocks,
    }


def build_internal_request_modal(*, channel_id: str) -> Dict[str, Any]:
    blocks = [
        _input_block("location", "Location", placeholder="Where is security needed?"),
        _input_block(
            "details",
            "Details",
            placeholder="Optional details about the situation",
            multiline=True,
            optional=True,
        ),
    ]
    return _modal(INTERNAL_REQUEST_CALLBACK_ID, "Request Security", "Send", blocks, {"channel_id": channel_id})


def build_external_request_modal(*, channel_id: str, organization_name: str) -> Dict[str, Any]:
    blocks = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"This request is sent to *{organization_name}*."},
        },
        _input_block("location", "Location", placeholder="Where is security needed?"),
        _input_block("details", "Details", placeholder="Details about the situation", multiline=True),
        _input_block("contact", "Contact", placeholder="Phone, email or extension"),
    ]
    return _modal(EXTERNAL_REQUEST_CALLBACK_ID, "Request Security", "Send", blocks, {"channel_id": channel_id})


def build_conclude_modal(*, control_id: str, channel_id: str | None, is_external: bool) -> Dict[str, Any]:
    title = "Conclude Ext. Request" if is_external else "Conclude Request"
    blocks = [
        _input_block(
            CONCLUDE_REASON_BLOCK_ID,
            "Reason for concluding the request",
            placeholder="What was the outcome?",
            multiline=True,
        ),
    ]
    metadata = {"control_id": control_id, "channel_id": channel_id}
    return _modal(CONCLUDE_CALLBACK_ID, title, "Conclude", blocks, metadata)


def build_notice_modal(*, title: str, text: str) -> Dict[str, Any]:
    """Read-only modal used to replace a form the actor may not submit."""

    return {
        "type": "modal",
        "title": {"type": "plain_text", "text": _truncate(title, MAX_TITLE_LENGTH), "emoji": True},
        "close": {"type": "plain_text", "text": "Close", "emoji": True},
        "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": text}}],
    }


class SubmissionValue(BaseModel):
    """Represents a single field value coming from Slack modal state."""

    value: str | None = Field(None, alias="value")


class SubmissionState(BaseModel):
    """Model to validate Slack modal state payloads."""

    values: Dict[str, Dict[str, SubmissionValue]]


class RequestSubmission(BaseModel):
    location: str
    details: str | None = None
    contact: str | None = None


def _field_value(state: SubmissionState, block_id: str) -> str | None:
    block = state.values.get(block_id, {})
    if block_id in block:
        raw = block[block_id].value
    else:
        raw = next(iter(block.values()), SubmissionValue()).value
    if raw is None:
        return None
    cleaned = raw.strip()
    return cleaned or None


def _parse_state(state_payload: Dict[str, Any]) -> SubmissionState:
    try:
        return SubmissionState.model_validate(state_payload)
    except ValidationError as exc:
        raise ValueError("general: Invalid submission payload.") from exc


def parse_request_submission(state_payload: Dict[str, Any], *, external: bool) -> RequestSubmission:
    """Validate a request modal; errors read ``"<block_id>: <message>"``."""

    state = _parse_state(state_payload)
    location = _field_value(state, "location")
    details = _field_value(state, "details")
    contact = _field_value(state, "contact") if external else None

    if location is None:
        raise ValueError("location: Please enter a location.")
    if external and details is None:
        raise ValueError("details: Please describe the situation.")
    if external and contact is None:
        raise ValueError("contact: Please provide contact information.")

    return RequestSubmission(location=location, details=details, contact=contact)


def parse_conclusion_reason(state_payload: Dict[str, Any]) -> str | None:
    """Return the trimmed conclusion reason, or None when it is blank."""

    return _field_value(_parse_state(state_payload), CONCLUDE_REASON_BLOCK_ID)


def parse_metadata(raw: str | None) -> Dict[str, Any]:
    try:
        metadata = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid modal metadata.") from exc
    if not isinstance(metadata, dict):
        raise ValueError("Invalid modal metadata.")
    return metadata
