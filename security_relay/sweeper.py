"""Periodic demotion of customer workspaces that stopped filing requests."""

from __future__ import annotations

from datetime import datetime

import structlog

from security_relay.background import PeriodicTask
from security_relay.config import AppSettings
from security_relay.db import session_scope
from security_relay.registry import SweepStats, sweep_inactive

logger = structlog.get_logger(__name__)

SWEEP_TASK_NAME = "activity-sweeper"


def run_activity_sweep(threshold_days: int, *, now: datetime | None = None, session_factory=session_scope) -> SweepStats:
    with session_factory() as session:
        stats = sweep_inactive(session, threshold_days, now=now)
    logger.info(
        "activity_sweep_completed",
        threshold_days=threshold_days,
        demoted=stats.demoted,
        active=stats.active_count,
        inactive=stats.inactive_count,
    )
    return stats


def start_activity_sweeper(settings: AppSettings, *, session_factory=session_scope) -> PeriodicTask:
    task = PeriodicTask(
        SWEEP_TASK_NAME,
        lambda: run_activity_sweep(settings.inactivity_threshold_days, session_factory=session_factory),
        interval=settings.sweep_interval_seconds,
        initial_delay=settings.sweep_initial_delay_seconds,
    )
    task.start()
    return task
