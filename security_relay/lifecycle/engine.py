"""Request lifecycle: filing, responding and concluding security requests.

The ledger is the source of truth. Each entry point validates, commits the
ledger change, and only then re-renders the views from the committed state.
View failures after a commit are reported as degraded results and are never
rolled back.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from functools import wraps
from typing import Callable, Iterable, List

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from security_relay.actors import ActorDescriptor
from security_relay.config import AppSettings
from security_relay.db import session_scope
from security_relay import ledger
from security_relay.lifecycle.gateway import MessageRef, ViewDeliveryError, ViewGateway
from security_relay.lifecycle.messages import build_organization_view, build_origin_view
from security_relay.lifecycle.results import LifecycleResult, Outcome, Reason
from security_relay.models import (
    DuplicateRequestError,
    RequestConcludedError,
    RequestNotFoundError,
    RequestStatus,
    SecurityRequest,
    ViewPlacement,
)
from security_relay.org_config import (
    ORGANIZATION_FIELDS,
    REQUEST_FIELDS,
    get_config,
    missing_fields,
)
from security_relay.registry import get_server, touch_activity

SessionFactory = Callable[[], AbstractContextManager[Session]]

logger = structlog.get_logger(__name__)


def _store_guard(method):
    """Turn an escaping SQLAlchemyError into a ``store_unavailable`` failure."""

    @wraps(method)
    def wrapper(self, actor, request_id, *args, **kwargs):
        try:
            return method(self, actor, request_id, *args, **kwargs)
        except SQLAlchemyError:
            logger.exception("store_unavailable", operation=method.__name__, request_id=request_id)
            return LifecycleResult.failed(Reason.STORE_UNAVAILABLE, request_id)

    return wrapper


def _control_mismatch(request: SecurityRequest, external_guild_id: str | None) -> bool:
    if external_guild_id is None:
        return request.is_external
    return not request.is_external or request.external_guild_id != external_guild_id


def _ref(request: SecurityRequest, placement: ViewPlacement) -> MessageRef | None:
    view = request.view_for(placement)
    if view is None:
        return None
    return MessageRef(channel_id=view.channel_id, ts=view.ts)


class RequestLifecycle:
    """Orchestrates the configuration store, registry, ledger and view gateway."""

    def __init__(
        self,
        *,
        organization_team_id: str,
        gateway: ViewGateway,
        override_user_ids: Iterable[str] = (),
        organization_name: str = "Security Operations",
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self.organization_team_id = organization_team_id
        self.organization_name = organization_name
        self.override_user_ids = tuple(override_user_ids)
        self._gateway = gateway
        self._session_factory = session_factory

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        gateway: ViewGateway,
        *,
        session_factory: SessionFactory = session_scope,
    ) -> "RequestLifecycle":
        return cls(
            organization_team_id=settings.organization_team_id,
            gateway=gateway,
            override_user_ids=settings.override_user_ids,
            organization_name=settings.organization_name,
            session_factory=session_factory,
        )

    # Filing

    @_store_guard
    def file_internal_request(
        self,
        actor: ActorDescriptor,
        request_id: str,
        location: str,
        details: str | None = None,
    ) -> LifecycleResult:
        log = logger.bind(request_id=request_id, user_id=actor.user_id, team_id=actor.team_id)

        with self._session_factory() as session:
            config = get_config(session, actor.team_id)
            missing = missing_fields(config, REQUEST_FIELDS)
            if missing:
                log.info("request_rejected", reason=Reason.NOT_CONFIGURED.value, missing=missing)
                return LifecycleResult.rejected(Reason.NOT_CONFIGURED, request_id, missing=missing)
            if not actor.has_role(config.customer_role_id):
                log.info("request_rejected", reason=Reason.NOT_AUTHORIZED.value)
                return LifecycleResult.rejected(Reason.NOT_AUTHORIZED, request_id)
            if ledger.get_request(session, request_id) is not None:
                return LifecycleResult.rejected(Reason.DUPLICATE_REQUEST, request_id)
            alert_channel_id = config.alert_channel_id
            security_role_id = config.security_role_id

        draft = SecurityRequest(
            request_id=request_id,
            is_external=False,
            requester_id=actor.user_id,
            requester_name=actor.display_name,
            location=location,
            details=details,
            status=RequestStatus.PENDING.value,
        )

        issues: List[Reason] = []
        alert_ref = self._post(alert_channel_id, build_organization_view(draft, mention_role_id=security_role_id), log)
        if alert_ref is None:
            issues.append(Reason.ALERT_UNDELIVERED)

        tracked = self._record(
            log,
            request_id=request_id,
            requester_id=actor.user_id,
            requester_name=actor.display_name,
            location=location,
            details=details,
            organization_ref=(alert_ref.channel_id, alert_ref.ts) if alert_ref else None,
        )
        if not tracked:
            issues.append(Reason.NOT_TRACKED)

        if alert_ref is None and not tracked:
            return LifecycleResult(Outcome.FAILED, Reason.ALERT_UNDELIVERED, request_id, {}, tuple(issues))
        log.info("request_filed", is_external=False, issues=[issue.value for issue in issues])
        if issues:
            return LifecycleResult.degraded(tuple(issues), request_id)
        return LifecycleResult.success(request_id, channel_id=alert_channel_id)

    @_store_guard
    def file_external_request(
        self,
        actor: ActorDescriptor,
        request_id: str,
        channel_id: str,
        location: str,
        details: str,
        contact: str,
    ) -> LifecycleResult:
        guild_id = actor.team_id
        log = logger.bind(request_id=request_id, user_id=actor.user_id, guild_id=guild_id)

        with self._session_factory() as session:
            server = get_server(session, guild_id)
            if server is None:
                log.info("external_request_rejected", reason=Reason.SERVER_NOT_REGISTERED.value)
                return LifecycleResult.rejected(Reason.SERVER_NOT_REGISTERED, request_id)
            if server.is_blacklisted:
                log.info("external_request_rejected", reason=Reason.SERVER_BLACKLISTED.value)
                return LifecycleResult.rejected(
                    Reason.SERVER_BLACKLISTED, request_id, blacklist_reason=server.blacklist_reason
                )
            if server.channel_id != channel_id:
                log.info("external_request_rejected", reason=Reason.WRONG_CHANNEL.value)
                return LifecycleResult.rejected(Reason.WRONG_CHANNEL, request_id, channel_id=server.channel_id)
            allowed = server.allowed_role_ids
            if allowed and not actor.has_any_role(allowed):
                log.info("external_request_rejected", reason=Reason.ROLE_NOT_ALLOWED.value)
                return LifecycleResult.rejected(Reason.ROLE_NOT_ALLOWED, request_id, allowed_role_ids=allowed)

            org_config = get_config(session, self.organization_team_id)
            missing = missing_fields(org_config, ORGANIZATION_FIELDS)
            if missing:
                log.warning("external_request_rejected", reason=Reason.ORGANIZATION_NOT_CONFIGURED.value)
                return LifecycleResult.rejected(Reason.ORGANIZATION_NOT_CONFIGURED, request_id, missing=missing)
            if ledger.get_request(session, request_id) is not None:
                return LifecycleResult.rejected(Reason.DUPLICATE_REQUEST, request_id)

            source_name = server.guild_name
            alert_channel_id = org_config.alert_channel_id
            security_role_id = org_config.security_role_id

        with self._session_factory() as session:
            touch_activity(session, guild_id)

        draft = SecurityRequest(
            request_id=request_id,
            is_external=True,
            requester_id=actor.user_id,
            requester_name=actor.display_name,
            location=location,
            details=details,
            contact=contact,
            external_guild_id=guild_id,
            status=RequestStatus.PENDING.value,
        )

        issues: List[Reason] = []
        origin_ref = self._post(
            channel_id, build_origin_view(draft, organization_name=self.organization_name), log
        )
        if origin_ref is None:
            issues.append(Reason.ORIGIN_VIEW_FAILED)

        alert_payload = build_organization_view(
            draft, source_name=source_name, mention_role_id=security_role_id
        )
        alert_ref = self._post(alert_channel_id, alert_payload, log)
        if alert_ref is None:
            issues.append(Reason.ALERT_UNDELIVERED)

        tracked = self._record(
            log,
            request_id=request_id,
            requester_id=actor.user_id,
            requester_name=actor.display_name,
            location=location,
            details=details,
            contact=contact,
            external_guild_id=guild_id,
            origin_ref=(origin_ref.channel_id, origin_ref.ts) if origin_ref else None,
            organization_ref=(alert_ref.channel_id, alert_ref.ts) if alert_ref else None,
        )
        if not tracked:
            issues.append(Reason.NOT_TRACKED)

        if origin_ref is None and alert_ref is None and not tracked:
            return LifecycleResult(Outcome.FAILED, Reason.ALERT_UNDELIVERED, request_id, {}, tuple(issues))
        log.info("request_filed", is_external=True, issues=[issue.value for issue in issues])
        if issues:
            return LifecycleResult.degraded(tuple(issues), request_id, source_name=source_name)
        return LifecycleResult.success(request_id, source_name=source_name)

    # Responding and concluding

    def _authorize_responder(self, session: Session, actor: ActorDescriptor, request_id: str) -> LifecycleResult | None:
        config = get_config(session, self.organization_team_id)
        missing = missing_fields(config, ("security_role_id",))
        if missing:
            return LifecycleResult.rejected(Reason.ORGANIZATION_NOT_CONFIGURED, request_id, missing=missing)
        if not actor.has_role(config.security_role_id):
            return LifecycleResult.rejected(Reason.NOT_AUTHORIZED, request_id)
        return None

    def _check_request(
        self,
        session: Session,
        request_id: str,
        external_guild_id: str | None,
    ) -> LifecycleResult | None:
        request = ledger.get_request(session, request_id)
        if request is None:
            return LifecycleResult.rejected(Reason.REQUEST_NOT_FOUND, request_id)
        if _control_mismatch(request, external_guild_id):
            return LifecycleResult.rejected(Reason.MALFORMED_CONTROL, request_id)
        if request.is_concluded:
            return LifecycleResult.rejected(Reason.ALREADY_CONCLUDED, request_id)
        return None

    @_store_guard
    def respond_to_request(
        self,
        actor: ActorDescriptor,
        request_id: str,
        external_guild_id: str | None = None,
    ) -> LifecycleResult:
        log = logger.bind(request_id=request_id, user_id=actor.user_id)

        try:
            with self._session_factory() as session:
                rejection = self._authorize_responder(session, actor, request_id)
                if rejection is None:
                    rejection = self._check_request(session, request_id, external_guild_id)
                if rejection is not None:
                    log.info("respond_rejected", reason=rejection.reason.value)
                    return rejection

                result = ledger.add_responder(session, request_id, actor.user_id, actor.display_name)
                request = result.request
                source_name = self._source_name(session, request)
        except RequestNotFoundError:
            return LifecycleResult.rejected(Reason.REQUEST_NOT_FOUND, request_id)
        except RequestConcludedError:
            log.info("respond_rejected", reason=Reason.ALREADY_CONCLUDED.value)
            return LifecycleResult.rejected(Reason.ALREADY_CONCLUDED, request_id)

        if result.already_present:
            log.info("respond_duplicate")
            return LifecycleResult.success(request_id, reason=Reason.ALREADY_RESPONDING)

        issues = self._refresh_views(request, source_name, log)
        if issues:
            return LifecycleResult.degraded(tuple(issues), request_id, is_external=request.is_external)
        return LifecycleResult.success(request_id, is_external=request.is_external)

    @_store_guard
    def prepare_conclusion(
        self,
        actor: ActorDescriptor,
        request_id: str,
        external_guild_id: str | None = None,
    ) -> LifecycleResult:
        """Check that *actor* may conclude the request before the reason prompt is shown."""

        with self._session_factory() as session:
            rejection = self._authorize_responder(session, actor, request_id)
            if rejection is None:
                rejection = self._check_request(session, request_id, external_guild_id)
        if rejection is not None:
            logger.info("conclude_prompt_rejected", request_id=request_id, reason=rejection.reason.value)
            return rejection
        return LifecycleResult.success(request_id)

    @_store_guard
    def conclude_request(
        self,
        actor: ActorDescriptor,
        request_id: str,
        reason: str | None,
        external_guild_id: str | None = None,
    ) -> LifecycleResult:
        log = logger.bind(request_id=request_id, user_id=actor.user_id)
        cleaned_reason = (reason or "").strip()

        try:
            with self._session_factory() as session:
                rejection = self._authorize_responder(session, actor, request_id)
                if rejection is None and not cleaned_reason:
                    rejection = LifecycleResult.rejected(Reason.REASON_REQUIRED, request_id)
                if rejection is None:
                    rejection = self._check_request(session, request_id, external_guild_id)
                if rejection is not None:
                    log.info("conclude_rejected", reason=rejection.reason.value)
                    return rejection

                request = ledger.conclude_request(
                    session,
                    request_id,
                    cleaned_reason,
                    concluded_by_id=actor.user_id,
                    concluded_by_name=actor.display_name,
                )
                source_name = self._source_name(session, request)
        except RequestNotFoundError:
            return LifecycleResult.rejected(Reason.REQUEST_NOT_FOUND, request_id)
        except RequestConcludedError:
            log.info("conclude_rejected", reason=Reason.ALREADY_CONCLUDED.value)
            return LifecycleResult.rejected(Reason.ALREADY_CONCLUDED, request_id)

        issues = self._refresh_views(request, source_name, log)
        if issues:
            return LifecycleResult.degraded(tuple(issues), request_id, is_external=request.is_external)
        return LifecycleResult.success(request_id, is_external=request.is_external)

    # Views

    @staticmethod
    def _source_name(session: Session, request: SecurityRequest) -> str | None:
        if not request.is_external or request.external_guild_id is None:
            return None
        server = get_server(session, request.external_guild_id)
        return server.guild_name if server is not None else None

    def _post(self, channel_id: str, payload: dict, log) -> MessageRef | None:
        try:
            return self._gateway.post_view(channel_id, payload)
        except ViewDeliveryError as exc:
            log.warning("view_post_failed", channel=channel_id, error=exc.code or str(exc))
            return None

    def _update(self, ref: MessageRef | None, payload: dict, log) -> bool:
        if ref is None:
            return False
        try:
            self._gateway.update_view(ref, payload)
        except ViewDeliveryError as exc:
            log.warning("view_update_failed", channel=ref.channel_id, ts=ref.ts, error=exc.code or str(exc))
            return False
        return True

    def _refresh_views(self, request: SecurityRequest, source_name: str | None, log) -> List[Reason]:
        issues: List[Reason] = []
        alert = build_organization_view(request, source_name=source_name)
        if not self._update(_ref(request, ViewPlacement.ORGANIZATION), alert, log):
            issues.append(Reason.ORGANIZATION_VIEW_STALE)
        if request.is_external:
            origin = build_origin_view(request, organization_name=self.organization_name)
            if not self._update(_ref(request, ViewPlacement.ORIGIN), origin, log):
                issues.append(Reason.ORIGIN_VIEW_STALE)
        return issues

    def _record(self, log, **fields) -> bool:
        try:
            with self._session_factory() as session:
                ledger.create_request(session, **fields)
        except (DuplicateRequestError, SQLAlchemyError):
            log.exception("request_not_tracked")
            return False
        return True
