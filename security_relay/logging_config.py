"""Structlog setup for the security relay."""

from __future__ import annotations

import logging

import structlog

LOG_LEVEL = logging.INFO
SERVICE_NAME = "security-relay"


def _add_service(_logger, _method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: int = LOG_LEVEL) -> None:
    """Emit one JSON object per event through stdlib logging.

    Context bound with ``structlog.contextvars`` (the per-interaction
    ``trace_id``) is merged into every event, including those logged from
    ``run_async`` workers and the activity sweeper thread.
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger("slack_bolt").setLevel(max(level, logging.WARNING))
