"""Resolve Slack users into the actor descriptors the lifecycle works with."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog
from slack_sdk.errors import SlackApiError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ActorDescriptor:
    """A fully resolved user: identity, workspace flags and user-group memberships."""

    user_id: str
    display_name: str
    team_id: str
    role_ids: frozenset[str] = field(default_factory=frozenset)
    is_admin: bool = False
    is_owner: bool = False

    def has_role(self, role_id: str | None) -> bool:
        return bool(role_id) and role_id in self.role_ids

    def has_any_role(self, role_ids: Iterable[str]) -> bool:
        return any(role_id in self.role_ids for role_id in role_ids)

    @property
    def mention(self) -> str:
        return f"<@{self.user_id}>"


def _display_name(user: dict[str, Any]) -> str:
    profile = user.get("profile") or {}
    for candidate in (
        profile.get("display_name"),
        profile.get("real_name"),
        user.get("real_name"),
        user.get("name"),
    ):
        if candidate:
            return str(candidate)
    return str(user.get("id", ""))


def resolve_actor(client: Any, *, team_id: str, user_id: str) -> ActorDescriptor:
    """Look the user up once and return an :class:`ActorDescriptor`.

    ``users.info`` failures propagate. A failure to list user groups (usually a
    missing ``usergroups:read`` scope) degrades to an actor with no roles.
    """

    response = client.users_info(user=user_id)
    user = response.get("user") or {}

    role_ids: set[str] = set()
    try:
        groups = client.usergroups_list(team_id=team_id, include_users=True)
    except SlackApiError as exc:
        logger.warning(
            "usergroups_lookup_failed",
            user_id=user_id,
            team_id=team_id,
            error=exc.response.get("error") if exc.response is not None else str(exc),
        )
    else:
        for group in groups.get("usergroups") or []:
            if user_id in (group.get("users") or []):
                role_ids.add(group["id"])

    return ActorDescriptor(
        user_id=user_id,
        display_name=_display_name(user),
        team_id=team_id,
        role_ids=frozenset(role_ids),
        is_admin=bool(user.get("is_admin")),
        is_owner=bool(user.get("is_owner") or user.get("is_primary_owner")),
    )
