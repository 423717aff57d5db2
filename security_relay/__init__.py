"""Security relay bot package initialisation."""

from .background import PeriodicTask, run_async  # noqa: F401
from .config import AppSettings, get_settings  # noqa: F401
from .db import Base, get_engine, get_session_factory, init_database, session_scope  # noqa: F401
from .logging_config import configure_logging  # noqa: F401
from .models import ExternalServer, OrganizationConfig, SecurityRequest  # noqa: F401

__all__ = [
    "AppSettings",
    "get_settings",
    "run_async",
    "PeriodicTask",
    "Base",
    "get_engine",
    "get_session_factory",
    "init_database",
    "session_scope",
    "OrganizationConfig",
    "ExternalServer",
    "SecurityRequest",
    "configure_logging",
]
