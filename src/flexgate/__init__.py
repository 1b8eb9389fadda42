"""FlexGate notifications - event bus and webhook delivery for the gateway.

Gateway components publish operational events (circuit breaker changes,
rate limits, proxy requests, health checks, configuration changes) on an
in-process bus. Registered webhooks receive matching events as signed
HTTP POSTs with retries.

Quick Start:
    >>> from flexgate import EventBus, EventPublisher, WebhookManager
    >>> bus = EventBus()
    >>> manager = WebhookManager(bus)
    >>> manager.register_webhook({"url": "https://example.com/hook", "events": ["*"]})
    >>> EventPublisher(bus, source="health_monitor").health_check_failed("users-api")
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from flexgate.config import NotificationConfig
from flexgate.errors import (
    DeliveryError,
    ErrorCode,
    FlexGateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from flexgate.events import Event, EventBus, EventPublisher, EventType
from flexgate.webhooks import WebhookManager

__all__ = [
    "DeliveryError",
    "ErrorCode",
    "Event",
    "EventBus",
    "EventPublisher",
    "EventType",
    "FlexGateError",
    "NotFoundError",
    "NotificationConfig",
    "PersistenceError",
    "ValidationError",
    "WebhookManager",
    "__license__",
    "__version__",
]
