"""Utilities for running background and periodic tasks."""

from __future__ import annotations

import threading
from contextvars import copy_context
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars


_executor = ThreadPoolExecutor(max_workers=4)

logger = structlog.get_logger(__name__)


def run_async(
    func: Callable[..., Any],
    /,
    *args: Any,
    trace_id: str | None = None,
    **kwargs: Any,
) -> Future:
    """Submit *func* to the shared thread pool and return a Future."""

    context = copy_context()

    if trace_id is not None:
        existing_trace = context.run(lambda: get_contextvars().get("trace_id"))
        if existing_trace != trace_id:
            context.run(lambda: bind_contextvars(trace_id=trace_id))

    def runner() -> Any:
        return context.run(func, *args, **kwargs)

    return _executor.submit(runner)


class PeriodicTask:
    """Run *func* on a daemon thread: once after *initial_delay*, then every *interval* seconds.

    A failing pass is logged and the schedule carries on.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        *,
        interval: float,
        initial_delay: float = 0.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        if initial_delay < 0:
            raise ValueError("initial_delay cannot be negative")

        self.name = name
        self._func = func
        self._interval = interval
        self._initial_delay = initial_delay
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Execute a single pass; return False when it raised."""

        try:
            self._func()
        except Exception:
            logger.exception("periodic_task_failed", task=self.name)
            return False
        return True

    def _loop(self) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        while True:
            self.run_once()
            if self._stop_event.wait(self._interval):
                return

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            "periodic_task_started",
            task=self.name,
            initial_delay=self._initial_delay,
            interval=self._interval,
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
