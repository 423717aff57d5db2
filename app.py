"""Flask entrypoint and Slack Bolt handlers for the security relay bot."""

from __future__ import annotations

import re
from dataclasses import dataclass
from importlib import metadata
from typing import Callable, List
from uuid import uuid4

from flask import Flask, jsonify, request
from slack_bolt import App as SlackApp
from slack_bolt.adapter.flask import SlackRequestHandler
from slack_sdk.errors import SlackApiError
from sqlalchemy import text
import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from security_relay.actions import (
    CONCLUDE_ACTION_PATTERN,
    RESPOND_ACTION_PATTERN,
    build_control_id,
    parse_control_id,
)
from security_relay.actors import ActorDescriptor, resolve_actor
from security_relay.background import PeriodicTask, run_async
from security_relay.commands import (
    channel_mention,
    describe_result,
    parse_channel_reference,
    parse_role_reference,
    parse_subcommand,
    parse_team_id,
    parse_user_reference,
    role_mention,
)
from security_relay.config import AppSettings, get_settings
from security_relay.db import init_database, session_scope
from security_relay.ledger import active_request_counts
from security_relay.lifecycle import RequestLifecycle
from security_relay.lifecycle.modal import (
    CONCLUDE_CALLBACK_ID,
    CONCLUDE_REASON_BLOCK_ID,
    EXTERNAL_REQUEST_CALLBACK_ID,
    INTERNAL_REQUEST_CALLBACK_ID,
    build_conclude_modal,
    build_external_request_modal,
    build_internal_request_modal,
    build_notice_modal,
    parse_conclusion_reason,
    parse_metadata,
    parse_request_submission,
)
from security_relay.logging_config import configure_logging
from security_relay.models import ServerNotRegisteredError
from security_relay.org_config import can_blacklist, get_config, is_manager, upsert_config
from security_relay.registry import (
    RoleChange,
    add_allowed_role,
    clear_allowed_roles,
    clear_blacklist,
    get_server,
    list_blacklisted,
    list_servers,
    register_server,
    remove_allowed_role,
    set_blacklist,
)
from security_relay.slack_client import SlackClient, SlackViewGateway
from security_relay.sweeper import start_activity_sweeper

MAX_LISTED_SERVERS = 25
DISTRIBUTION_NAME = "security-relay"


def _create_bolt_app(settings: AppSettings) -> SlackApp:
    """Initialise the Slack Bolt application using validated settings."""

    return SlackApp(
        token=settings.bot_token,
        signing_secret=settings.signing_secret,
        token_verification_enabled=False,
    )


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        trace_id = str(uuid4())
        flask_app.logger.exception(
            "Unhandled application error", extra={"trace_id": trace_id}, exc_info=error
        )
        response = jsonify({"error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def _lifecycle(client) -> RequestLifecycle:
    return RequestLifecycle.from_settings(get_settings(), SlackViewGateway.from_client(client))


def _error_code(exc: SlackApiError) -> str:
    return exc.response.get("error") if getattr(exc, "response", None) else str(exc)


def _body_team_id(body: dict) -> str | None:
    user = body.get("user") or {}
    return user.get("team_id") or (body.get("team") or {}).get("id")


def _post_ephemeral(client, *, channel_id: str | None, user_id: str, text: str, log) -> None:
    if not channel_id:
        log.warning("ephemeral_skipped", reason="missing_channel")
        return
    try:
        SlackClient(client=client).post_ephemeral(channel=channel_id, user=user_id, text=text)
    except SlackApiError as exc:  # pragma: no cover - network dependent
        log.error("ephemeral_failed", channel=channel_id, error=_error_code(exc))


def _open_modal(client, trigger_id: str, view: dict, logger, trace_id: str | None = None) -> str | None:
    logger.info("Attempting to open modal", extra={"callback_id": view.get("callback_id")})
    try:
        response = SlackClient(client=client).open_view(trigger_id=trigger_id, view=view)
    except SlackApiError as exc:  # pragma: no cover - network dependent
        logger.error(
            "Failed to open modal",
            extra={"callback_id": view.get("callback_id"), "error": _error_code(exc)},
        )
        return None
    return (response.get("view") or {}).get("id")


# Request filing


def _handle_request_command(ack, command, client, logger, *, external: bool):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        log.info("slash_command_received", command=command.get("command"), team_id=command.get("team_id"))
        channel_id = command.get("channel_id", "")
        if external:
            view = build_external_request_modal(
                channel_id=channel_id,
                organization_name=get_settings().organization_name,
            )
        else:
            view = build_internal_request_modal(channel_id=channel_id)

        ack()
        run_async(_open_modal, client, command.get("trigger_id"), view, logger, trace_id=trace_id)
    finally:
        unbind_contextvars("trace_id")


def _file_request_job(
    *,
    client,
    team_id: str,
    user_id: str,
    channel_id: str,
    submission,
    external: bool,
    trace_id: str | None = None,
) -> None:
    log = structlog.get_logger().bind(user_id=user_id, team_id=team_id, external=external)
    settings = get_settings()
    try:
        actor = resolve_actor(client, team_id=team_id, user_id=user_id)
    except SlackApiError as exc:
        log.error("actor_lookup_failed", error=_error_code(exc))
        _post_ephemeral(
            client,
            channel_id=channel_id,
            user_id=user_id,
            text="Could not retrieve your member information. Please try again.",
            log=log,
        )
        return

    request_id = uuid4().hex
    engine = _lifecycle(client)
    if external:
        result = engine.file_external_request(
            actor,
            request_id,
            channel_id=channel_id,
            location=submission.location,
            details=submission.details,
            contact=submission.contact,
        )
    else:
        result = engine.file_internal_request(
            actor,
            request_id,
            location=submission.location,
            details=submission.details,
        )

    log.info("request_submission_processed", request_id=request_id, outcome=result.outcome.value)
    _post_ephemeral(
        client,
        channel_id=channel_id,
        user_id=user_id,
        text=describe_result(
            result,
            action="file_external" if external else "file",
            organization_name=settings.organization_name,
        ),
        log=log,
    )


def _handle_request_submission(ack, body, client, logger, *, external: bool):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        view = body.get("view", {})
        try:
            metadata = parse_metadata(view.get("private_metadata"))
        except ValueError:
            ack({"response_action": "errors", "errors": {"location": "Invalid request metadata."}})
            return

        state_payload = {"values": view.get("state", {}).get("values", {})}
        try:
            submission = parse_request_submission(state_payload, external=external)
        except ValueError as exc:
            block, _, message = str(exc).partition(":")
            if block == "general":
                block = "location"
            ack({"response_action": "errors", "errors": {block.strip(): message.strip()}})
            return

        user_id = body.get("user", {}).get("id")
        team_id = _body_team_id(body)
        if not user_id or not team_id:
            ack({"response_action": "errors", "errors": {"location": "We could not identify the requesting user."}})
            log.warning("missing_user_id")
            return

        ack({"response_action": "clear"})
        run_async(
            _file_request_job,
            client=client,
            team_id=team_id,
            user_id=user_id,
            channel_id=metadata.get("channel_id") or "",
            submission=submission,
            external=external,
            trace_id=trace_id,
        )
    finally:
        unbind_contextvars("trace_id")


# Respond and conclude controls


def _action_payload(body: dict) -> tuple[dict | None, str | None, str | None, str | None]:
    actions = body.get("actions") or []
    action = actions[0] if actions else None
    user_id = (body.get("user") or {}).get("id")
    channel_id = (body.get("channel") or {}).get("id")
    return action, user_id, channel_id, _body_team_id(body)


def _respond_job(*, client, team_id: str, user_id: str, channel_id: str, control, trace_id: str | None = None) -> None:
    log = structlog.get_logger().bind(request_id=control.request_id, user_id=user_id)
    try:
        actor = resolve_actor(client, team_id=team_id, user_id=user_id)
    except SlackApiError as exc:
        log.error("actor_lookup_failed", error=_error_code(exc))
        _post_ephemeral(
            client,
            channel_id=channel_id,
            user_id=user_id,
            text="Could not retrieve your member information.",
            log=log,
        )
        return

    result = _lifecycle(client).respond_to_request(actor, control.request_id, control.external_guild_id)
    log.info("respond_processed", outcome=result.outcome.value, reason=result.reason.value if result.reason else None)
    _post_ephemeral(
        client,
        channel_id=channel_id,
        user_id=user_id,
        text=describe_result(result, action="respond", organization_name=get_settings().organization_name),
        log=log,
    )


def _handle_respond_action(ack, body, client, logger):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        action, user_id, channel_id, team_id = _action_payload(body)
        if action is None:
            ack({"response_type": "ephemeral", "text": "Unable to process this action payload."})
            return
        if not user_id or not team_id:
            ack({"response_type": "ephemeral", "text": "We could not identify the acting user."})
            log.warning("missing_user_id")
            return

        ack()
        try:
            control = parse_control_id(action.get("action_id", ""))
        except ValueError:
            log.warning("invalid_control_id", action_id=action.get("action_id"))
            _post_ephemeral(
                client,
                channel_id=channel_id,
                user_id=user_id,
                text="Invalid button format. Please contact an administrator.",
                log=log,
            )
            return

        run_async(
            _respond_job,
            client=client,
            team_id=team_id,
            user_id=user_id,
            channel_id=channel_id,
            control=control,
            trace_id=trace_id,
        )
    finally:
        unbind_contextvars("trace_id")


def _conclude_check_job(
    *,
    client,
    team_id: str,
    user_id: str,
    channel_id: str | None,
    control,
    view_id: str | None,
    trace_id: str | None = None,
) -> None:
    log = structlog.get_logger().bind(request_id=control.request_id, user_id=user_id)
    try:
        actor = resolve_actor(client, team_id=team_id, user_id=user_id)
    except SlackApiError as exc:
        log.error("actor_lookup_failed", error=_error_code(exc))
        text = "Could not retrieve your member information."
    else:
        result = _lifecycle(client).prepare_conclusion(actor, control.request_id, control.external_guild_id)
        if result.ok:
            return
        log.info("conclude_refused", reason=result.reason.value if result.reason else None)
        text = describe_result(result, action="conclude", organization_name=get_settings().organization_name)

    if view_id:
        try:
            SlackClient(client=client).update_view(
                view_id=view_id,
                view=build_notice_modal(title="Conclude Request", text=text),
            )
            return
        except SlackApiError as exc:  # pragma: no cover - network dependent
            log.error("view_update_failed", view_id=view_id, error=_error_code(exc))
    _post_ephemeral(client, channel_id=channel_id, user_id=user_id, text=text, log=log)


def _handle_conclude_action(ack, body, client, logger):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        action, user_id, channel_id, team_id = _action_payload(body)
        if action is None:
            ack({"response_type": "ephemeral", "text": "Unable to process this action payload."})
            return
        if not user_id or not team_id:
            ack({"response_type": "ephemeral", "text": "We could not identify the acting user."})
            log.warning("missing_user_id")
            return

        ack()
        try:
            control = parse_control_id(action.get("action_id", ""))
        except ValueError:
            log.warning("invalid_control_id", action_id=action.get("action_id"))
            _post_ephemeral(
                client,
                channel_id=channel_id,
                user_id=user_id,
                text="Invalid button format. Please contact an administrator.",
                log=log,
            )
            return

        # The trigger_id expires after three seconds, so the modal opens before any lookups.
        # The conclusion is authorised again when the modal is submitted.
        view = build_conclude_modal(
            control_id=build_control_id(control.action, control.request_id, control.external_guild_id),
            channel_id=channel_id,
            is_external=control.is_external,
        )
        view_id = _open_modal(client, body.get("trigger_id"), view, logger, trace_id=trace_id)
        run_async(
            _conclude_check_job,
            client=client,
            team_id=team_id,
            user_id=user_id,
            channel_id=channel_id,
            control=control,
            view_id=view_id,
            trace_id=trace_id,
        )
    finally:
        unbind_contextvars("trace_id")


def _conclude_job(
    *,
    client,
    team_id: str,
    user_id: str,
    channel_id: str | None,
    control,
    reason: str,
    trace_id: str | None = None,
) -> None:
    log = structlog.get_logger().bind(request_id=control.request_id, user_id=user_id)
    try:
        actor = resolve_actor(client, team_id=team_id, user_id=user_id)
    except SlackApiError as exc:
        log.error("actor_lookup_failed", error=_error_code(exc))
        _post_ephemeral(
            client,
            channel_id=channel_id,
            user_id=user_id,
            text="Could not retrieve your member information.",
            log=log,
        )
        return

    result = _lifecycle(client).conclude_request(actor, control.request_id, reason, control.external_guild_id)
    log.info("conclude_processed", outcome=result.outcome.value, reason=result.reason.value if result.reason else None)
    _post_ephemeral(
        client,
        channel_id=channel_id,
        user_id=user_id,
        text=describe_result(result, action="conclude", organization_name=get_settings().organization_name),
        log=log,
    )


def _handle_conclude_submission(ack, body, client, logger):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        view = body.get("view", {})
        try:
            metadata = parse_metadata(view.get("private_metadata"))
            control = parse_control_id(metadata.get("control_id", ""))
        except ValueError:
            ack({"response_action": "errors", "errors": {CONCLUDE_REASON_BLOCK_ID: "Invalid modal format. Please contact an administrator."}})
            log.warning("invalid_conclude_metadata")
            return

        state_payload = {"values": view.get("state", {}).get("values", {})}
        try:
            reason = parse_conclusion_reason(state_payload)
        except ValueError:
            reason = None
        if not reason:
            ack({"response_action": "errors", "errors": {CONCLUDE_REASON_BLOCK_ID: "Please provide a reason for concluding the request."}})
            return

        user_id = body.get("user", {}).get("id")
        team_id = _body_team_id(body)
        if not user_id or not team_id:
            ack({"response_action": "errors", "errors": {CONCLUDE_REASON_BLOCK_ID: "We could not identify the acting user."}})
            log.warning("missing_user_id")
            return

        ack({"response_action": "clear"})
        run_async(
            _conclude_job,
            client=client,
            team_id=team_id,
            user_id=user_id,
            channel_id=metadata.get("channel_id"),
            control=control,
            reason=reason,
            trace_id=trace_id,
        )
    finally:
        unbind_contextvars("trace_id")


# Administration commands


@dataclass
class AdminContext:
    settings: AppSettings
    actor: ActorDescriptor
    client: object
    team_id: str
    channel_id: str
    team_name: str
    text: str
    args: List[str]
    subcommand: str | None

    @property
    def in_organization(self) -> bool:
        return self.team_id == self.settings.organization_team_id

    @property
    def is_override(self) -> bool:
        return self.actor.user_id in self.settings.override_user_ids


def _handle_admin_command(ack, command, client, logger, handler: Callable[[AdminContext], str]):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id, command=command.get("command"))

    try:
        team_id = command.get("team_id")
        user_id = command.get("user_id")
        if not team_id or not user_id:
            ack({"response_type": "ephemeral", "text": "We could not identify the acting user."})
            return

        try:
            actor = resolve_actor(client, team_id=team_id, user_id=user_id)
        except SlackApiError as exc:
            log.error("actor_lookup_failed", error=_error_code(exc))
            ack({"response_type": "ephemeral", "text": "Could not retrieve your member information."})
            return

        parsed = parse_subcommand(command.get("text"))
        context = AdminContext(
            settings=get_settings(),
            actor=actor,
            client=client,
            team_id=team_id,
            channel_id=command.get("channel_id", ""),
            team_name=command.get("team_domain") or team_id,
            text=(command.get("text") or "").strip(),
            args=parsed.args,
            subcommand=parsed.subcommand,
        )
        try:
            reply = handler(context)
        except ValueError as exc:
            reply = str(exc)
        except ServerNotRegisteredError:
            reply = "That workspace is not registered. An administrator needs to use `/setup-security-channel` first."
        log.info("admin_command_processed", subcommand=parsed.subcommand, user_id=user_id)
        ack({"response_type": "ephemeral", "text": reply})
    finally:
        unbind_contextvars("trace_id")


def _setup_security_channel(ctx: AdminContext) -> str:
    if ctx.in_organization:
        return f"This command configures customer workspaces and cannot be used in the {ctx.settings.organization_name} workspace."
    if not (ctx.actor.is_admin or ctx.is_override):
        return "You need to be a workspace administrator to use this command."

    tokens = ctx.text.split()
    channel_id = parse_channel_reference(tokens[0]) if tokens else ctx.channel_id
    if not channel_id:
        return "Please mention the channel that should receive security requests."

    with session_scope() as session:
        register_server(session, ctx.team_id, ctx.team_name, channel_id)
    return (
        f"Security requests are now enabled for this workspace. "
        f"Members can use `/request-external-security` in {channel_mention(channel_id)}."
    )


def _set_required_roles(ctx: AdminContext) -> str:
    if not (ctx.actor.is_admin or ctx.is_override):
        return "You need to be a workspace administrator to use this command."

    usage = "Usage: `/set-required-roles add|remove @group`, `/set-required-roles list` or `/set-required-roles clear`."
    with session_scope() as session:
        server = get_server(session, ctx.team_id)
        if server is None:
            raise ServerNotRegisteredError(ctx.team_id)

        if ctx.subcommand == "list":
            if not server.allowed_role_ids:
                return "No required groups are set. Anyone in the request channel can file requests."
            roles = ", ".join(role_mention(role_id) for role_id in server.allowed_role_ids)
            return f"Members need one of these groups to file requests: {roles}"
        if ctx.subcommand == "clear":
            removed = clear_allowed_roles(session, ctx.team_id)
            return f"Cleared {removed} required group(s). Anyone in the request channel can now file requests."
        if ctx.subcommand in ("add", "remove"):
            role_id = parse_role_reference(ctx.args[0] if ctx.args else None)
            if ctx.subcommand == "add":
                change = add_allowed_role(session, ctx.team_id, role_id)
            else:
                change = remove_allowed_role(session, ctx.team_id, role_id)
            messages = {
                RoleChange.ADDED: f"{role_mention(role_id)} can now file security requests.",
                RoleChange.ALREADY_PRESENT: f"{role_mention(role_id)} is already a required group.",
                RoleChange.REMOVED: f"{role_mention(role_id)} is no longer a required group.",
                RoleChange.NOT_PRESENT: f"{role_mention(role_id)} was not a required group.",
            }
            return messages[change]
    return usage


_CONFIG_ROLE_COMMANDS = {
    "set-manager-role": "manager_role_id",
    "set-customer-role": "customer_role_id",
    "set-security-role": "security_role_id",
}


def _config_server(ctx: AdminContext) -> str:
    if not ctx.in_organization and not ctx.is_override:
        return f"This command can only be used in the {ctx.settings.organization_name} workspace."

    usage = (
        "Usage: `/config-server set-manager-role|set-customer-role|set-security-role @group`, "
        "`/config-server set-alert-channel #channel` or `/config-server view-config`."
    )
    with session_scope() as session:
        if ctx.subcommand == "set-manager-role":
            if not (ctx.actor.is_admin or ctx.is_override):
                return "Only workspace administrators can set the manager role."
        elif not is_manager(session, ctx.actor, ctx.team_id, ctx.settings.override_user_ids):
            return "You do not have permission to use this command."

        if ctx.subcommand in _CONFIG_ROLE_COMMANDS:
            role_id = parse_role_reference(ctx.args[0] if ctx.args else None)
            field_name = _CONFIG_ROLE_COMMANDS[ctx.subcommand]
            upsert_config(session, ctx.team_id, **{field_name: role_id})
            label = field_name.replace("_role_id", "")
            return f"The {label} role is now {role_mention(role_id)}."
        if ctx.subcommand == "set-alert-channel":
            channel_id = parse_channel_reference(ctx.args[0] if ctx.args else None)
            upsert_config(session, ctx.team_id, alert_channel_id=channel_id)
            return f"Security alerts will be posted in {channel_mention(channel_id)}."
        if ctx.subcommand == "view-config":
            config = get_config(session, ctx.team_id)
            if config is None:
                return "This workspace has not been configured yet."
            return "\n".join(
                [
                    "*Server configuration*",
                    f"Manager role: {role_mention(config.manager_role_id)}",
                    f"Customer role: {role_mention(config.customer_role_id)}",
                    f"Security role: {role_mention(config.security_role_id)}",
                    f"Alert channel: {channel_mention(config.alert_channel_id)}",
                    f"Blacklist role: {role_mention(config.blacklist_role_id)}",
                ]
            )
    return usage


def _set_blacklist_role(ctx: AdminContext) -> str:
    if not ctx.in_organization:
        return f"This command can only be used in the {ctx.settings.organization_name} workspace."
    if not (ctx.actor.is_owner or ctx.is_override):
        return "Only the workspace owner can set the blacklist role."

    tokens = ctx.text.split()
    role_id = parse_role_reference(tokens[0] if tokens else None)
    with session_scope() as session:
        upsert_config(session, ctx.team_id, blacklist_role_id=role_id)
    return f"Members of {role_mention(role_id)} can now manage the blacklist."


def _manage_blacklist(ctx: AdminContext) -> str:
    if not ctx.in_organization:
        return f"This command can only be used in the {ctx.settings.organization_name} workspace."

    usage = "Usage: `/manage-blacklist blacklist <workspace id> <reason>`, `unblacklist <workspace id>` or `list`."
    with session_scope() as session:
        if not can_blacklist(session, ctx.actor, ctx.team_id, ctx.settings.override_user_ids):
            return "You do not have permission to manage the blacklist."

        if ctx.subcommand == "list":
            servers = list_blacklisted(session)
            if not servers:
                return "No workspaces are blacklisted."
            lines = ["*Blacklisted workspaces*"]
            for server in servers:
                lines.append(f"• {server.guild_name} (`{server.guild_id}`): {server.blacklist_reason or 'No reason given'}")
            return "\n".join(lines)

        if ctx.subcommand == "blacklist":
            guild_id = parse_team_id(ctx.args[0] if ctx.args else None)
            reason = " ".join(ctx.args[1:]).strip()
            if not reason:
                return "Please provide a reason for blacklisting this workspace."
            server = get_server(session, guild_id)
            if server is None:
                return f"Workspace `{guild_id}` is not registered."
            if not set_blacklist(session, guild_id, reason):
                return f"{server.guild_name} is already blacklisted."
            return f"{server.guild_name} has been blacklisted. Reason: {reason}"

        if ctx.subcommand == "unblacklist":
            guild_id = parse_team_id(ctx.args[0] if ctx.args else None)
            server = get_server(session, guild_id)
            if server is None:
                return f"Workspace `{guild_id}` is not registered."
            if not clear_blacklist(session, guild_id):
                return f"{server.guild_name} is not blacklisted."
            return f"{server.guild_name} has been removed from the blacklist."
    return usage


def _list_external_servers(ctx: AdminContext) -> str:
    if not ctx.in_organization:
        return f"This command can only be used in the {ctx.settings.organization_name} workspace."

    include_inactive = ctx.subcommand == "all"
    with session_scope() as session:
        if not is_manager(session, ctx.actor, ctx.team_id, ctx.settings.override_user_ids):
            return "You do not have permission to use this command."

        servers = list_servers(session, include_inactive=include_inactive)
        if not servers:
            return "No external workspaces are registered." if include_inactive else "No active external workspaces."

        shown = servers[:MAX_LISTED_SERVERS]
        counts = active_request_counts(session, [server.guild_id for server in shown])
        lines = [f"*External workspaces* ({len(servers)})"]
        for server in shown:
            status = "Blacklisted" if server.is_blacklisted else ("Active" if server.is_active else "Inactive")
            last_seen = server.last_accessed_at.strftime("%Y-%m-%d")
            lines.append(
                f"• {server.guild_name} (`{server.guild_id}`): {status}, "
                f"channel {channel_mention(server.channel_id)}, last active {last_seen}, "
                f"{counts.get(server.guild_id, 0)} open request(s)"
            )
        if len(servers) > MAX_LISTED_SERVERS:
            lines.append(f"…and {len(servers) - MAX_LISTED_SERVERS} more.")
        return "\n".join(lines)


def _manage_customer(ctx: AdminContext) -> str:
    usage = "Usage: `/manage-customer add @user` or `/manage-customer remove @user`."
    if ctx.subcommand not in ("add", "remove"):
        return usage
    user_id = parse_user_reference(ctx.args[0] if ctx.args else None)

    with session_scope() as session:
        config = get_config(session, ctx.team_id)
        if config is None or not config.security_role_id or not config.customer_role_id:
            return "The security and customer roles must be configured with `/config-server` first."
        if not ctx.actor.has_role(config.security_role_id):
            return "You need the security role to manage customers."
        customer_role_id = config.customer_role_id

    try:
        response = ctx.client.usergroups_users_list(usergroup=customer_role_id)
        members = list(response.get("users") or [])
        if ctx.subcommand == "add":
            if user_id in members:
                return f"<@{user_id}> is already a customer."
            members.append(user_id)
        else:
            if user_id not in members:
                return f"<@{user_id}> is not a customer."
            members.remove(user_id)
            if not members:
                return "Slack user groups cannot be empty, so the last customer cannot be removed."
        ctx.client.usergroups_users_update(usergroup=customer_role_id, users=",".join(members))
    except SlackApiError as exc:
        structlog.get_logger().error("customer_update_failed", error=_error_code(exc), usergroup=customer_role_id)
        return "Could not update the customer group. Please check the app's permissions."

    if ctx.subcommand == "add":
        return f"<@{user_id}> has been given the customer role."
    return f"<@{user_id}> no longer has the customer role."


_ADMIN_COMMANDS = {
    "/setup-security-channel": _setup_security_channel,
    "/set-required-roles": _set_required_roles,
    "/config-server": _config_server,
    "/set-blacklist-role": _set_blacklist_role,
    "/manage-blacklist": _manage_blacklist,
    "/list-external-servers": _list_external_servers,
    "/manage-customer": _manage_customer,
}


# Registration


def _register_slash_handlers(bolt_app: SlackApp) -> None:
    @bolt_app.command("/request-security")
    def handle_request_security(ack, command, client, logger):
        _handle_request_command(ack=ack, command=command, client=client, logger=logger, external=False)

    @bolt_app.command("/request-external-security")
    def handle_request_external_security(ack, command, client, logger):
        _handle_request_command(ack=ack, command=command, client=client, logger=logger, external=True)

    for name, handler in _ADMIN_COMMANDS.items():
        bolt_app.command(name)(_admin_listener(handler))


def _admin_listener(handler: Callable[[AdminContext], str]):
    def listener(ack, command, client, logger):
        _handle_admin_command(ack=ack, command=command, client=client, logger=logger, handler=handler)

    return listener


def _register_view_handlers(bolt_app: SlackApp) -> None:
    @bolt_app.view(INTERNAL_REQUEST_CALLBACK_ID)
    def handle_internal_submission(ack, body, client, logger):
        _handle_request_submission(ack=ack, body=body, client=client, logger=logger, external=False)

    @bolt_app.view(EXTERNAL_REQUEST_CALLBACK_ID)
    def handle_external_submission(ack, body, client, logger):
        _handle_request_submission(ack=ack, body=body, client=client, logger=logger, external=True)

    @bolt_app.view(CONCLUDE_CALLBACK_ID)
    def handle_conclude_submission(ack, body, client, logger):
        _handle_conclude_submission(ack=ack, body=body, client=client, logger=logger)


def _register_action_handlers(bolt_app: SlackApp) -> None:
    @bolt_app.action(re.compile(RESPOND_ACTION_PATTERN))
    def handle_respond(ack, body, client, logger):
        _handle_respond_action(ack=ack, body=body, client=client, logger=logger)

    @bolt_app.action(re.compile(CONCLUDE_ACTION_PATTERN))
    def handle_conclude(ack, body, client, logger):
        _handle_conclude_action(ack=ack, body=body, client=client, logger=logger)


_LOGGING_CONFIGURED = False
_SWEEPER: PeriodicTask | None = None


def _load_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "unknown"


def _start_sweeper(settings: AppSettings) -> None:
    global _SWEEPER
    if not settings.activity_sweep_enabled or _SWEEPER is not None:
        return
    _SWEEPER = start_activity_sweeper(settings)


def create_app() -> Flask:
    """Create and configure the Flask application."""

    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        configure_logging()
        _LOGGING_CONFIGURED = True

    settings = get_settings()
    init_database()
    bolt_app = _create_bolt_app(settings)
    handler = SlackRequestHandler(bolt_app)

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = _load_version()
    flask_app.logger.setLevel("INFO")
    _register_error_handlers(flask_app)

    _register_slash_handlers(bolt_app)
    _register_view_handlers(bolt_app)
    _register_action_handlers(bolt_app)
    _start_sweeper(settings)

    @flask_app.route("/slack/events", methods=["POST"])
    def slack_events():
        return handler.handle(request)

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        health: dict[str, object] = {"ok": True}
        health["version"] = flask_app.config.get("APP_VERSION", "unknown")

        try:
            get_settings()
            health["config"] = "valid"
        except Exception as exc:  # pragma: no cover - defensive guard
            health["config"] = "invalid"
            health["config_error"] = str(exc)
            health["ok"] = False

        try:
            with session_scope() as session:
                session.execute(text("SELECT 1"))
            health["db"] = "up"
        except Exception as exc:
            health["db"] = "down"
            health["db_error"] = str(exc)
            health["ok"] = False

        health["sweeper"] = "running" if _SWEEPER is not None and _SWEEPER.is_running else "stopped"
        status = 200 if health["ok"] else 503
        return jsonify(health), status

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000, debug=True)
