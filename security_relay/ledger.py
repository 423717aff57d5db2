"""Data access for security requests: filing, responders and conclusion."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from security_relay.models import (
    DuplicateRequestError,
    RequestConcludedError,
    RequestNotFoundError,
    RequestResponder,
    RequestStatus,
    SecurityRequest,
    StatusHistory,
    ViewPlacement,
    ViewReference,
    advance_request_status,
    utcnow,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResponderResult:
    already_present: bool
    request: SecurityRequest


def create_request(
    session: Session,
    *,
    request_id: str,
    requester_id: str,
    requester_name: str,
    location: str,
    details: str | None = None,
    contact: str | None = None,
    external_guild_id: str | None = None,
    origin_ref: tuple[str, str] | None = None,
    organization_ref: tuple[str, str] | None = None,
) -> SecurityRequest:
    """Persist a new pending request; an existing *request_id* is never overwritten."""

    is_external = external_guild_id is not None
    if not is_external and origin_ref is not None:
        raise ValueError("Internal requests have no origin view.")
    if is_external and not details:
        raise ValueError("External requests require details.")

    existing = session.execute(
        select(SecurityRequest.request_id).where(SecurityRequest.request_id == request_id)
    ).scalar_one_or_none()
    if existing is not None:
        raise DuplicateRequestError(f"Request {request_id} already exists")

    now = utcnow()
    request = SecurityRequest(
        request_id=request_id,
        is_external=is_external,
        requester_id=requester_id,
        requester_name=requester_name,
        location=location,
        details=details,
        contact=contact if is_external else None,
        external_guild_id=external_guild_id,
        status=RequestStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    for placement, ref in ((ViewPlacement.ORIGIN, origin_ref), (ViewPlacement.ORGANIZATION, organization_ref)):
        if ref is not None:
            channel_id, ts = ref
            request.views.append(ViewReference(placement=placement.value, channel_id=channel_id, ts=ts))

    session.add(request)
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateRequestError(f"Request {request_id} already exists") from exc

    logger.info("request_recorded", request_id=request_id, is_external=is_external)
    return request


def get_request(session: Session, request_id: str) -> SecurityRequest | None:
    return session.get(SecurityRequest, request_id)


def add_responder(
    session: Session,
    request_id: str,
    responder_id: str,
    responder_name: str | None = None,
) -> ResponderResult:
    """Append *responder_id* to the request and move pending requests to responding.

    The request row is locked for the rest of the transaction and the insert
    relies on the ``(request_id, responder_id)`` unique constraint, so two
    concurrent responds by the same user record a single responder.
    """

    request = session.execute(
        select(SecurityRequest)
        .where(SecurityRequest.request_id == request_id)
        .with_for_update()
    ).scalar_one_or_none()
    if request is None:
        raise RequestNotFoundError(f"Request {request_id} not found")
    if request.status == RequestStatus.CONCLUDED.value:
        raise RequestConcludedError(f"Request {request_id} is already concluded")
    if responder_id in request.responder_ids:
        return ResponderResult(already_present=True, request=request)

    next_position = session.scalar(
        select(func.coalesce(func.max(RequestResponder.position), -1) + 1).where(
            RequestResponder.request_id == request_id
        )
    )
    now = utcnow()
    try:
        with session.begin_nested():
            session.add(
                RequestResponder(
                    request_id=request_id,
                    responder_id=responder_id,
                    responder_name=responder_name,
                    position=next_position,
                    responded_at=now,
                )
            )
    except IntegrityError:
        session.refresh(request)
        return ResponderResult(already_present=True, request=request)

    previous_status = request.status
    result = session.execute(
        update(SecurityRequest)
        .where(
            SecurityRequest.request_id == request_id,
            SecurityRequest.status != RequestStatus.CONCLUDED.value,
        )
        .values(
            status=case(
                (SecurityRequest.status == RequestStatus.PENDING.value, RequestStatus.RESPONDING.value),
                else_=SecurityRequest.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise RequestConcludedError(f"Request {request_id} was concluded concurrently")

    if previous_status == RequestStatus.PENDING.value:
        session.add(
            StatusHistory(
                request_id=request_id,
                from_status=previous_status,
                to_status=RequestStatus.RESPONDING.value,
                changed_at=now,
                changed_by=responder_id,
            )
        )
    session.flush()
    session.refresh(request)
    logger.info("responder_added", request_id=request_id, responder_id=responder_id, status=request.status)
    return ResponderResult(already_present=False, request=request)


def conclude_request(
    session: Session,
    request_id: str,
    reason: str,
    concluded_by_id: str,
    concluded_by_name: str,
) -> SecurityRequest:
    """Conclude the request, writing every conclusion field in one statement."""

    request = session.execute(
        select(SecurityRequest)
        .where(SecurityRequest.request_id == request_id)
        .with_for_update()
    ).scalar_one_or_none()
    if request is None:
        raise RequestNotFoundError(f"Request {request_id} not found")

    now = utcnow()
    advance_request_status(
        session,
        request,
        new_status=RequestStatus.CONCLUDED,
        changed_by=concluded_by_id,
        changed_at=now,
        values={
            "conclusion_reason": reason,
            "concluded_by_id": concluded_by_id,
            "concluded_by_name": concluded_by_name,
            "concluded_at": now,
        },
    )
    logger.info("request_concluded", request_id=request_id, concluded_by=concluded_by_id)
    return request


def count_active_by_external_guild(session: Session, guild_id: str) -> int:
    """Number of requests from *guild_id* that are not yet concluded."""

    return session.scalar(
        select(func.count())
        .select_from(SecurityRequest)
        .where(
            SecurityRequest.external_guild_id == guild_id,
            SecurityRequest.status != RequestStatus.CONCLUDED.value,
        )
    ) or 0


def active_request_counts(session: Session, guild_ids: Iterable[str]) -> Dict[str, int]:
    ids = list(guild_ids)
    counts = {guild_id: 0 for guild_id in ids}
    if not ids:
        return counts
    rows = session.execute(
        select(SecurityRequest.external_guild_id, func.count())
        .where(
            SecurityRequest.external_guild_id.in_(ids),
            SecurityRequest.status != RequestStatus.CONCLUDED.value,
        )
        .group_by(SecurityRequest.external_guild_id)
    )
    for guild_id, count in rows:
        counts[guild_id] = count
    return counts
