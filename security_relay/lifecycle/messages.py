"""Block Kit builders for the organization alert and the origin confirmation.

Both views are projections of a ledger entry; they are rebuilt from the
request on every change instead of being patched in place.
"""

from __future__ import annotations

from typing import Any, Dict, List

from security_relay.actions import ControlAction, build_control_id
from security_relay.models import RequestStatus, SecurityRequest

_MISSING_VALUE = "_Not provided_"
_NO_RESPONDERS = "None yet."
MAX_FIELD_LENGTH = 1900

_ALERT_TITLES = {
    (False, False): "🚨 Security Request 🚨",
    (True, False): "🚨 External Security Request 🚨",
    (False, True): "✅ Security Request Concluded ✅",
    (True, True): "✅ External Security Request Concluded ✅",
}


def _truncate(text: str, limit: int = MAX_FIELD_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _field(label: str, value: Any) -> Dict[str, str]:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        rendered = _MISSING_VALUE
    else:
        rendered = _truncate(str(value))
    return {"type": "mrkdwn", "text": f"*{label}:*\n{rendered}"}


def _header(text: str) -> Dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}


def _request_id_context(request_id: str) -> Dict[str, Any]:
    return {
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": f"Request ID: `{request_id}`"}],
    }


def _responder_mentions(request: SecurityRequest) -> str:
    if not request.responders:
        return _NO_RESPONDERS
    return ", ".join(f"<@{responder.responder_id}>" for responder in request.responders)


def _responder_names(request: SecurityRequest) -> str:
    names = request.responder_names
    return ", ".join(names) if names else _NO_RESPONDERS


def _control_buttons(request: SecurityRequest) -> Dict[str, Any]:
    guild_id = request.external_guild_id if request.is_external else None
    respond = ControlAction.EXTERNAL_RESPOND if request.is_external else ControlAction.RESPOND
    conclude = ControlAction.EXTERNAL_CONCLUDE if request.is_external else ControlAction.CONCLUDE
    return {
        "type": "actions",
        "block_id": "security_request_controls",
        "elements": [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": "Respond", "emoji": True},
                "style": "primary",
                "action_id": build_control_id(respond, request.request_id, guild_id),
                "value": request.request_id,
            },
            {
                "type": "button",
                "text": {"type": "plain_text", "text": "Conclude Request", "emoji": True},
                "style": "danger",
                "action_id": build_control_id(conclude, request.request_id, guild_id),
                "value": request.request_id,
            },
        ],
    }


def build_organization_view(
    request: SecurityRequest,
    *,
    source_name: str | None = None,
    mention_role_id: str | None = None,
) -> Dict[str, Any]:
    """Build the alert shown in the organization's alert channel.

    *mention_role_id* pings the security user group and is only passed when
    the alert is first posted.
    """

    concluded = request.status == RequestStatus.CONCLUDED.value
    title = _ALERT_TITLES[(request.is_external, concluded)]

    if request.is_external:
        fields = [
            _field("Source Server", source_name or request.external_guild_id),
            _field("Location", request.location),
            _field("Details", request.details),
            _field("Contact", request.contact),
            _field("Requester", f"{request.requester_name} ({request.requester_id})"),
        ]
        summary = f"New security request from external server {source_name or request.external_guild_id}!"
    else:
        fields = [
            _field("Location", request.location),
            _field("Details", request.details),
            _field("Requested By", f"<@{request.requester_id}>"),
        ]
        summary = "New security request!"

    blocks: List[Dict[str, Any]] = []
    if mention_role_id and not concluded:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"<!subteam^{mention_role_id}> {summary}"},
            }
        )
    blocks.append(_header(title))
    blocks.append({"type": "section", "fields": fields})

    detail_fields = [_field("Responding Security", _responder_mentions(request))]
    if concluded:
        detail_fields.append(_field("Conclusion Reason", request.conclusion_reason))
        detail_fields.append(_field("Concluded By", f"<@{request.concluded_by_id}>"))
    blocks.append({"type": "section", "fields": detail_fields})
    blocks.append(_request_id_context(request.request_id))

    if not concluded:
        blocks.append(_control_buttons(request))

    text = title if concluded else f"{title} {summary}"
    return {"text": text, "blocks": blocks}


def _origin_status(request: SecurityRequest, organization_name: str) -> str:
    if request.status == RequestStatus.CONCLUDED.value:
        return "Completed"
    if request.status == RequestStatus.RESPONDING.value:
        return f"Security personnel responding: {_responder_names(request)}"
    return f"Your request has been sent to {organization_name}"


def build_origin_view(request: SecurityRequest, *, organization_name: str) -> Dict[str, Any]:
    """Build the confirmation shown in the customer workspace's request channel."""

    concluded = request.status == RequestStatus.CONCLUDED.value
    title = "✅ Security Request Concluded ✅" if concluded else "Security Request Sent"

    fields = [
        _field("Location", request.location),
        _field("Details", request.details),
        _field("Contact", request.contact or "Not provided"),
        _field("Status", _origin_status(request, organization_name)),
    ]
    if concluded:
        fields.append(_field("Conclusion", request.conclusion_reason))
        fields.append(_field("Concluded By", request.concluded_by_name))

    blocks: List[Dict[str, Any]] = [
        _header(title),
        {"type": "section", "fields": fields},
        _request_id_context(request.request_id),
    ]
    return {"text": f"{title}: {_origin_status(request, organization_name)}", "blocks": blocks}
