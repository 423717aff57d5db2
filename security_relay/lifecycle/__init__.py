"""Cross-workspace request lifecycle and the views it renders."""

from .engine import RequestLifecycle  # noqa: F401
from .gateway import MessageRef, ViewDeliveryError, ViewGateway  # noqa: F401
from .results import LifecycleResult, Outcome, Reason  # noqa: F401

__all__ = [
    "RequestLifecycle",
    "LifecycleResult",
    "Outcome",
    "Reason",
    "MessageRef",
    "ViewDeliveryError",
    "ViewGateway",
]
