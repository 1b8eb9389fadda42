"""Event bus for gateway operational events.

Example:
    >>> from flexgate.events import EventBus, EventPublisher
    >>> bus = EventBus(history_size=500)
    >>> EventPublisher(bus, source="health_monitor").health_check_failed("users-api")
    'evt_...'
"""

from flexgate.events.bus import EventBus, EventHandler
from flexgate.events.models import (
    EVENT_PAYLOAD_MODELS,
    WILDCARD,
    BaseEventPayload,
    CircuitBreakerPayload,
    ConfigChangedPayload,
    Event,
    EventBusStats,
    EventPayload,
    EventType,
    HealthCheckPayload,
    HealthMetrics,
    ProxyRequestPayload,
    RateLimitPayload,
    generate_event_id,
    payload_model_for,
)
from flexgate.events.publisher import EventPublisher

__all__ = [
    "EVENT_PAYLOAD_MODELS",
    "WILDCARD",
    "BaseEventPayload",
    "CircuitBreakerPayload",
    "ConfigChangedPayload",
    "Event",
    "EventBus",
    "EventBusStats",
    "EventHandler",
    "EventPayload",
    "EventPublisher",
    "EventType",
    "HealthCheckPayload",
    "HealthMetrics",
    "ProxyRequestPayload",
    "RateLimitPayload",
    "generate_event_id",
    "payload_model_for",
]
