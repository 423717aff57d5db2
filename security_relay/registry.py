"""Registry of customer workspaces allowed to file external requests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from security_relay.models import AllowedRole, ExternalServer, ServerNotRegisteredError, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_INACTIVITY_DAYS = 30


class RoleChange(str, Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    REMOVED = "removed"
    NOT_PRESENT = "not_present"


@dataclass(frozen=True)
class SweepStats:
    demoted: int
    active_count: int
    inactive_count: int


def get_server(session: Session, guild_id: str) -> ExternalServer | None:
    return session.get(ExternalServer, guild_id)


def _require_server(session: Session, guild_id: str) -> ExternalServer:
    server = get_server(session, guild_id)
    if server is None:
        raise ServerNotRegisteredError(f"Workspace {guild_id} is not registered")
    return server


def register_server(session: Session, guild_id: str, guild_name: str, channel_id: str) -> ExternalServer:
    """Create or refresh the registration for *guild_id* and mark it active."""

    now = utcnow()
    server = get_server(session, guild_id)
    if server is None:
        server = ExternalServer(
            guild_id=guild_id,
            guild_name=guild_name,
            channel_id=channel_id,
            is_active=True,
            is_blacklisted=False,
            last_accessed_at=now,
            created_at=now,
        )
        session.add(server)
        created = True
    else:
        server.guild_name = guild_name
        server.channel_id = channel_id
        server.is_active = True
        server.last_accessed_at = now
        created = False

    session.flush()
    logger.info("server_registered", guild_id=guild_id, channel_id=channel_id, created=created)
    return server


def touch_activity(session: Session, guild_id: str) -> bool:
    """Record activity for *guild_id*; return False when it is not registered."""

    result = session.execute(
        update(ExternalServer)
        .where(ExternalServer.guild_id == guild_id)
        .values(last_accessed_at=utcnow(), is_active=True)
        .execution_options(synchronize_session=False)
    )
    touched = result.rowcount == 1
    if touched:
        server = session.get(ExternalServer, guild_id)
        if server is not None:
            session.refresh(server)
    return touched


def set_allowed_roles(session: Session, guild_id: str, role_ids: Iterable[str]) -> List[str]:
    """Replace the allow-list, keeping first occurrences in order."""

    server = _require_server(session, guild_id)
    ordered: List[str] = []
    for role_id in role_ids:
        if role_id and role_id not in ordered:
            ordered.append(role_id)

    server.allowed_roles.clear()
    session.flush()
    for position, role_id in enumerate(ordered):
        server.allowed_roles.append(AllowedRole(role_id=role_id, position=position))
    session.flush()
    return server.allowed_role_ids


def add_allowed_role(session: Session, guild_id: str, role_id: str) -> RoleChange:
    server = _require_server(session, guild_id)
    if role_id in server.allowed_role_ids:
        return RoleChange.ALREADY_PRESENT

    next_position = max((role.position for role in server.allowed_roles), default=-1) + 1
    server.allowed_roles.append(AllowedRole(role_id=role_id, position=next_position))
    session.flush()
    logger.info("allowed_role_added", guild_id=guild_id, role_id=role_id)
    return RoleChange.ADDED


def remove_allowed_role(session: Session, guild_id: str, role_id: str) -> RoleChange:
    server = _require_server(session, guild_id)
    for role in list(server.allowed_roles):
        if role.role_id == role_id:
            server.allowed_roles.remove(role)
            session.flush()
            logger.info("allowed_role_removed", guild_id=guild_id, role_id=role_id)
            return RoleChange.REMOVED
    return RoleChange.NOT_PRESENT


def clear_allowed_roles(session: Session, guild_id: str) -> int:
    server = _require_server(session, guild_id)
    removed = len(server.allowed_roles)
    server.allowed_roles.clear()
    session.flush()
    return removed


def set_blacklist(session: Session, guild_id: str, reason: str) -> bool:
    """Blacklist *guild_id*; False when it already was."""

    server = _require_server(session, guild_id)
    if server.is_blacklisted:
        return False
    server.is_blacklisted = True
    server.blacklist_reason = reason
    session.flush()
    logger.info("server_blacklisted", guild_id=guild_id, reason=reason)
    return True


def clear_blacklist(session: Session, guild_id: str) -> bool:
    server = _require_server(session, guild_id)
    if not server.is_blacklisted:
        return False
    server.is_blacklisted = False
    server.blacklist_reason = None
    session.flush()
    logger.info("server_unblacklisted", guild_id=guild_id)
    return True


def list_servers(session: Session, *, include_inactive: bool = False) -> List[ExternalServer]:
    stmt = select(ExternalServer)
    if not include_inactive:
        stmt = stmt.where(ExternalServer.is_active.is_(True))
    stmt = stmt.order_by(ExternalServer.last_accessed_at.desc(), ExternalServer.guild_id)
    return list(session.scalars(stmt))


def list_blacklisted(session: Session) -> List[ExternalServer]:
    stmt = (
        select(ExternalServer)
        .where(ExternalServer.is_blacklisted.is_(True))
        .order_by(ExternalServer.guild_name, ExternalServer.guild_id)
    )
    return list(session.scalars(stmt))


def sweep_inactive(
    session: Session,
    threshold_days: int = DEFAULT_INACTIVITY_DAYS,
    *,
    now: datetime | None = None,
) -> SweepStats:
    """Mark active registrations idle for longer than *threshold_days* inactive."""

    if threshold_days <= 0:
        raise ValueError("threshold_days must be greater than zero")

    cutoff = (now or utcnow()) - timedelta(days=threshold_days)
    result = session.execute(
        update(ExternalServer)
        .where(
            ExternalServer.is_active.is_(True),
            ExternalServer.last_accessed_at < cutoff,
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    demoted = result.rowcount or 0
    session.expire_all()

    active_count = session.scalar(
        select(func.count()).select_from(ExternalServer).where(ExternalServer.is_active.is_(True))
    )
    inactive_count = session.scalar(
        select(func.count()).select_from(ExternalServer).where(ExternalServer.is_active.is_(False))
    )
    return SweepStats(demoted=demoted, active_count=active_count or 0, inactive_count=inactive_count or 0)
