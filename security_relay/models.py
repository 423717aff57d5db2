"""SQLAlchemy models for organization settings, customer servers and requests."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import List

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    update,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from security_relay.db import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class RequestStatus(str, Enum):
    PENDING = "pending"
    RESPONDING = "responding"
    CONCLUDED = "concluded"


class ViewPlacement(str, Enum):
    ORIGIN = "origin"
    ORGANIZATION = "organization"


class OrganizationConfig(Base):
    """Per-workspace settings: roles, alert channel and blacklist role."""

    __tablename__ = "organization_configs"

    server_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    manager_role_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_role_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    security_role_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    alert_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    blacklist_role_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ExternalServer(Base):
    """A customer workspace registered to file requests with the organization."""

    __tablename__ = "external_servers"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    guild_name: Mapped[str] = mapped_column(String(255), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_blacklisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blacklist_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    allowed_roles: Mapped[List["AllowedRole"]] = relationship(
        "AllowedRole",
        back_populates="server",
        cascade="all, delete-orphan",
        order_by="(AllowedRole.position, AllowedRole.id)",
        lazy="selectin",
    )

    @property
    def allowed_role_ids(self) -> list[str]:
        return [role.role_id for role in self.allowed_roles]


class AllowedRole(Base):
    """One entry of a customer workspace's request allow-list."""

    __tablename__ = "external_server_allowed_roles"
    __table_args__ = (
        UniqueConstraint("guild_id", "role_id", name="uq_allowed_roles_guild_role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        ForeignKey("external_servers.guild_id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    server: Mapped[ExternalServer] = relationship("ExternalServer", back_populates="allowed_roles")


class SecurityRequest(Base):
    """A filed security request; the ledger's authoritative record."""

    __tablename__ = "security_requests"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requester_id: Mapped[str] = mapped_column(String(32), nullable=False)
    requester_name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_guild_id: Mapped[str | None] = mapped_column(
        ForeignKey("external_servers.guild_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestStatus.PENDING.value)
    conclusion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    concluded_by_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    concluded_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    concluded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    responders: Mapped[List["RequestResponder"]] = relationship(
        "RequestResponder",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="(RequestResponder.position, RequestResponder.id)",
        lazy="selectin",
    )
    views: Mapped[List["ViewReference"]] = relationship(
        "ViewReference",
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    status_history: Mapped[List["StatusHistory"]] = relationship(
        "StatusHistory",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="StatusHistory.changed_at",
    )

    @property
    def responder_ids(self) -> list[str]:
        return [responder.responder_id for responder in self.responders]

    @property
    def responder_names(self) -> list[str]:
        return [responder.responder_name or responder.responder_id for responder in self.responders]

    @property
    def is_concluded(self) -> bool:
        return self.status == RequestStatus.CONCLUDED.value

    def view_for(self, placement: ViewPlacement) -> "ViewReference | None":
        for view in self.views:
            if view.placement == placement.value:
                return view
        return None


class RequestResponder(Base):
    """A security member attending a request, in the order they responded."""

    __tablename__ = "request_responders"
    __table_args__ = (
        UniqueConstraint("request_id", "responder_id", name="uq_responders_request_responder"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("security_requests.request_id", ondelete="CASCADE"), nullable=False
    )
    responder_id: Mapped[str] = mapped_column(String(32), nullable=False)
    responder_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    responded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    request: Mapped[SecurityRequest] = relationship("SecurityRequest", back_populates="responders")


class ViewReference(Base):
    """Stores the Slack message reference of one rendered view of a request."""

    __tablename__ = "view_references"
    __table_args__ = (
        UniqueConstraint("request_id", "placement", name="uq_view_references_request_placement"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("security_requests.request_id", ondelete="CASCADE"), nullable=False
    )
    placement: Mapped[str] = mapped_column(String(16), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    ts: Mapped[str] = mapped_column(String(32), nullable=False)

    request: Mapped[SecurityRequest] = relationship("SecurityRequest", back_populates="views")


class StatusHistory(Base):
    """Audit log of request status transitions."""

    __tablename__ = "status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("security_requests.request_id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    changed_by: Mapped[str] = mapped_column(String(32), nullable=False)

    request: Mapped[SecurityRequest] = relationship("SecurityRequest", back_populates="status_history")


class StatusTransitionError(Exception):
    """Raised when an invalid status transition is attempted."""


class DuplicateRequestError(Exception):
    """Raised when a request identifier is already present in the ledger."""


class RequestNotFoundError(LookupError):
    """Raised when a request identifier is unknown to the ledger."""


class RequestConcludedError(StatusTransitionError):
    """Raised when a concluded request is mutated."""


class ServerNotRegisteredError(LookupError):
    """Raised when a registry operation targets an unregistered workspace."""


_ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING.value: {RequestStatus.RESPONDING.value, RequestStatus.CONCLUDED.value},
    RequestStatus.RESPONDING.value: {RequestStatus.CONCLUDED.value},
    RequestStatus.CONCLUDED.value: set(),
}


def is_forward_transition(previous_status: str, new_status: str) -> bool:
    return new_status in _ALLOWED_TRANSITIONS.get(previous_status, set())


def advance_request_status(
    session: Session,
    request: SecurityRequest,
    *,
    new_status: RequestStatus,
    changed_by: str,
    changed_at: datetime | None = None,
    values: dict | None = None,
) -> SecurityRequest:
    """Move *request* forward to *new_status* with a compare-and-set update.

    The UPDATE only matches while the row still holds the status read into
    *request*, so a concurrent transition makes this call fail instead of
    overwriting it. Extra column *values* are written in the same statement.
    """

    changed_time = changed_at or utcnow()
    previous_status = request.status
    if not is_forward_transition(previous_status, new_status.value):
        if previous_status == RequestStatus.CONCLUDED.value:
            raise RequestConcludedError(f"Request {request.request_id} is already concluded")
        raise StatusTransitionError(f"Cannot transition from {previous_status} to {new_status.value}")

    stmt = (
        update(SecurityRequest)
        .where(
            SecurityRequest.request_id == request.request_id,
            SecurityRequest.status == previous_status,
        )
        .values(status=new_status.value, updated_at=changed_time, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        session.refresh(request)
        if request.status == RequestStatus.CONCLUDED.value:
            raise RequestConcludedError(f"Request {request.request_id} is already concluded")
        raise StatusTransitionError(f"Request {request.request_id} changed status concurrently")

    session.add(
        StatusHistory(
            request_id=request.request_id,
            from_status=previous_status,
            to_status=new_status.value,
            changed_at=changed_time,
            changed_by=changed_by,
        )
    )
    session.flush()
    session.refresh(request)
    return request
