"""Thin wrapper utilities around the Slack WebClient."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import structlog
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from security_relay.lifecycle.gateway import MessageRef, ViewDeliveryError


class SlackClient:
    """Encapsulate Slack WebClient interactions for easier testing."""

    def __init__(self, *, token: str | None = None, client: WebClient | None = None) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or WebClient(token=token)

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def post_message(
        self,
        *,
        channel: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> Mapping[str, Any]:
        """Post a message with Block Kit content to a Slack channel."""

        return self._client.chat_postMessage(channel=channel, text=text, blocks=list(blocks))

    def update_message(
        self,
        *,
        channel: str,
        ts: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> Mapping[str, Any]:
        """Update an existing Slack message."""

        return self._client.chat_update(channel=channel, ts=ts, text=text, blocks=list(blocks))

    def post_ephemeral(self, *, channel: str, user: str, text: str) -> Mapping[str, Any]:
        return self._client.chat_postEphemeral(channel=channel, user=user, text=text)

    def open_view(self, *, trigger_id: str, view: Mapping[str, Any]) -> Mapping[str, Any]:
        return self._client.views_open(trigger_id=trigger_id, view=dict(view))

    def update_view(self, *, view_id: str, view: Mapping[str, Any]) -> Mapping[str, Any]:
        return self._client.views_update(view_id=view_id, view=dict(view))


def _error_code(exc: SlackApiError) -> str:
    response = getattr(exc, "response", None)
    if response is None:
        return str(exc)
    return response.get("error") or str(exc)


class SlackViewGateway:
    """Post and edit request views through Slack, raising ViewDeliveryError on failure."""

    def __init__(self, slack_client: SlackClient) -> None:
        self._slack = slack_client
        self._log = structlog.get_logger(__name__)

    @classmethod
    def from_client(cls, client: WebClient) -> "SlackViewGateway":
        return cls(SlackClient(client=client))

    def post_view(self, channel_id: str, payload: Mapping[str, Any]) -> MessageRef:
        try:
            response = self._slack.post_message(
                channel=channel_id,
                text=payload["text"],
                blocks=payload["blocks"],
            )
        except SlackApiError as exc:
            code = _error_code(exc)
            self._log.error("view_post_failed", channel=channel_id, error=code)
            raise ViewDeliveryError(f"Could not post to {channel_id}: {code}", code=code) from exc

        ts = response.get("ts")
        if not ts:
            raise ViewDeliveryError(f"Slack did not return a message timestamp for {channel_id}")
        return MessageRef(channel_id=response.get("channel") or channel_id, ts=ts)

    def update_view(self, ref: MessageRef, payload: Mapping[str, Any]) -> None:
        try:
            self._slack.update_message(
                channel=ref.channel_id,
                ts=ref.ts,
                text=payload["text"],
                blocks=payload["blocks"],
            )
        except SlackApiError as exc:
            code = _error_code(exc)
            self._log.error("view_update_failed", channel=ref.channel_id, ts=ref.ts, error=code)
            raise ViewDeliveryError(f"Could not update {ref.channel_id}/{ref.ts}: {code}", code=code) from exc
