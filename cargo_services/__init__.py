"""
cargo_services -- event dispatch, listeners and the runtime composition root.

Sits above ``cargo_kernel`` and ``cargo_config``; nothing below imports it.
"""

from cargo_services.event_dispatcher import DeliveryFailure, EventDispatcher
from cargo_services.runtime import ServiceBundle, WorkflowRuntime

__all__ = [
    "DeliveryFailure",
    "EventDispatcher",
    "ServiceBundle",
    "WorkflowRuntime",
]
