"""Per-workspace configuration: roles, alert channel and permission helpers."""

from __future__ import annotations

from typing import Iterable, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from security_relay.actors import ActorDescriptor
from security_relay.models import OrganizationConfig

logger = structlog.get_logger(__name__)

CONFIG_FIELDS = (
    "manager_role_id",
    "customer_role_id",
    "security_role_id",
    "alert_channel_id",
    "blacklist_role_id",
)

# Fields an internal request needs in the filing workspace.
REQUEST_FIELDS = ("customer_role_id", "security_role_id", "alert_channel_id")
# Fields the organization workspace needs before it can receive external requests.
ORGANIZATION_FIELDS = ("security_role_id", "alert_channel_id")

FIELD_LABELS = {
    "manager_role_id": "manager role",
    "customer_role_id": "customer role",
    "security_role_id": "security role",
    "alert_channel_id": "alert channel",
    "blacklist_role_id": "blacklist role",
}


def get_config(session: Session, server_id: str) -> OrganizationConfig | None:
    """Return the stored configuration for *server_id*, or None.

    A failing lookup is logged and reported as absent so callers fall back to
    their deny policy.
    """

    try:
        return session.get(OrganizationConfig, server_id)
    except SQLAlchemyError:
        logger.exception("config_lookup_failed", server_id=server_id)
        return None


def upsert_config(session: Session, server_id: str, **fields: str | None) -> OrganizationConfig:
    """Create or update the configuration for *server_id*.

    Omitted fields and fields passed as None keep their stored value.
    """

    unknown = set(fields) - set(CONFIG_FIELDS)
    if unknown:
        raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

    config = session.get(OrganizationConfig, server_id)
    if config is None:
        config = OrganizationConfig(server_id=server_id)
        session.add(config)

    changed = []
    for name, value in fields.items():
        if value is None:
            continue
        setattr(config, name, value)
        changed.append(name)

    session.flush()
    logger.info("config_updated", server_id=server_id, fields=changed)
    return config


def missing_fields(config: OrganizationConfig | None, fields: Sequence[str] = REQUEST_FIELDS) -> list[str]:
    """Return the names in *fields* that are not configured."""

    if config is None:
        return list(fields)
    return [name for name in fields if not getattr(config, name)]


def describe_missing(fields: Iterable[str]) -> str:
    return ", ".join(FIELD_LABELS.get(name, name) for name in fields)


def _is_override(actor: ActorDescriptor, override_user_ids: Iterable[str]) -> bool:
    normalized = {item.strip() for item in override_user_ids if item}
    return actor.user_id in normalized


def is_manager(
    session: Session,
    actor: ActorDescriptor,
    server_id: str,
    override_user_ids: Iterable[str] = (),
) -> bool:
    """Administrators, override identities and holders of the manager role."""

    if actor.is_admin or _is_override(actor, override_user_ids):
        return True
    config = get_config(session, server_id)
    if config is None or not config.manager_role_id:
        return False
    return actor.has_role(config.manager_role_id)


def can_blacklist(
    session: Session,
    actor: ActorDescriptor,
    server_id: str,
    override_user_ids: Iterable[str] = (),
) -> bool:
    """Workspace owners, override identities and holders of the blacklist role."""

    if actor.is_owner or _is_override(actor, override_user_ids):
        return True
    config = get_config(session, server_id)
    if config is None or not config.blacklist_role_id:
        return False
    return actor.has_role(config.blacklist_role_id)
