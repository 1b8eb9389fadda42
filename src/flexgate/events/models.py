"""Pydantic models for gateway operational events.

Each event type has exactly one payload model. The mapping lives in
``EVENT_PAYLOAD_MODELS`` and is the single source of truth for which
fields a producer must supply for a given ``EventType``.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "EVENT_PAYLOAD_MODELS",
    "WILDCARD",
    "BaseEventPayload",
    "CircuitBreakerPayload",
    "ConfigChangedPayload",
    "Event",
    "EventBusStats",
    "EventPayload",
    "EventType",
    "HealthCheckPayload",
    "HealthMetrics",
    "ProxyRequestPayload",
    "RateLimitPayload",
    "generate_event_id",
    "now_iso",
    "payload_model_for",
]

# Subscription key matching every event type
WILDCARD = "*"


def generate_event_id() -> str:
    """Generate a unique event ID."""
    return f"evt_{secrets.token_hex(12)}"


def now_iso() -> str:
    """Get current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


class EventType(str, Enum):
    """Operational events emitted by gateway components."""

    # Circuit breaker
    CIRCUIT_BREAKER_OPENED = "circuit_breaker.opened"
    CIRCUIT_BREAKER_CLOSED = "circuit_breaker.closed"
    CIRCUIT_BREAKER_HALF_OPEN = "circuit_breaker.half_open"

    # Rate limiter
    RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"
    RATE_LIMIT_APPROACHING = "rate_limit.approaching"
    RATE_LIMIT_RECOVERED = "rate_limit.recovered"

    # Proxy
    PROXY_REQUEST_STARTED = "proxy.request_started"
    PROXY_REQUEST_COMPLETED = "proxy.request_completed"
    PROXY_REQUEST_FAILED = "proxy.request_failed"

    # Health monitor
    HEALTH_CHECK_FAILED = "health.check_failed"
    HEALTH_CHECK_RECOVERED = "health.check_recovered"

    # Configuration
    CONFIG_CHANGED = "config.changed"


# =============================================================================
# Payload Models
# =============================================================================


class BaseEventPayload(BaseModel):
    """Fields shared by every event payload."""

    model_config = ConfigDict(extra="forbid")

    timestamp: str | None = Field(
        default=None,
        description="ISO 8601 time the condition occurred (stamped at emission if omitted)",
    )
    source: str = Field(
        description="Component that produced the event",
        examples=["circuit_breaker", "rate_limiter"],
    )


class CircuitBreakerPayload(BaseEventPayload):
    """Data for circuit_breaker.* events."""

    route_id: str
    route_path: str
    target: str
    error_rate: float = Field(description="Observed error rate (0-100)")
    threshold: float = Field(description="Configured error-rate threshold")
    failure_count: int = Field(ge=0)
    window_size: int = Field(description="Requests in the sliding window", ge=0)
    state: Literal["open", "closed", "half_open"] | None = None


class RateLimitPayload(BaseEventPayload):
    """Data for rate_limit.* events."""

    client_id: str
    limit: int = Field(ge=0)
    current: int = Field(ge=0)
    window_seconds: int = Field(ge=0)
    percent_used: float
    route_id: str | None = None
    route_path: str | None = None


class ProxyRequestPayload(BaseEventPayload):
    """Data for proxy.* events."""

    route_id: str
    route_path: str
    target: str
    method: str
    status_code: int | None = None
    error: str | None = None
    duration_ms: float | None = None


class HealthMetrics(BaseModel):
    """Point-in-time health metrics of a service."""

    model_config = ConfigDict(extra="forbid")

    uptime: float
    error_rate: float
    avg_response_time: float


class HealthCheckPayload(BaseEventPayload):
    """Data for health.* events."""

    service: str
    status: Literal["healthy", "degraded", "unhealthy"]
    metrics: HealthMetrics | None = None


class ConfigChangedPayload(BaseEventPayload):
    """Data for config.changed events."""

    change_type: Literal[
        "route_added", "route_updated", "route_deleted", "settings_updated"
    ]
    entity_id: str | None = None
    changes: dict[str, Any] = Field(default_factory=dict)


EventPayload = Union[
    CircuitBreakerPayload,
    RateLimitPayload,
    ProxyRequestPayload,
    HealthCheckPayload,
    ConfigChangedPayload,
]

EVENT_PAYLOAD_MODELS: dict[EventType, type[BaseEventPayload]] = {
    EventType.CIRCUIT_BREAKER_OPENED: CircuitBreakerPayload,
    EventType.CIRCUIT_BREAKER_CLOSED: CircuitBreakerPayload,
    EventType.CIRCUIT_BREAKER_HALF_OPEN: CircuitBreakerPayload,
    EventType.RATE_LIMIT_EXCEEDED: RateLimitPayload,
    EventType.RATE_LIMIT_APPROACHING: RateLimitPayload,
    EventType.RATE_LIMIT_RECOVERED: RateLimitPayload,
    EventType.PROXY_REQUEST_STARTED: ProxyRequestPayload,
    EventType.PROXY_REQUEST_COMPLETED: ProxyRequestPayload,
    EventType.PROXY_REQUEST_FAILED: ProxyRequestPayload,
    EventType.HEALTH_CHECK_FAILED: HealthCheckPayload,
    EventType.HEALTH_CHECK_RECOVERED: HealthCheckPayload,
    EventType.CONFIG_CHANGED: ConfigChangedPayload,
}


def payload_model_for(event_type: EventType) -> type[BaseEventPayload]:
    """Return the payload model registered for an event type."""
    return EVENT_PAYLOAD_MODELS[EventType(event_type)]


# =============================================================================
# Bus Records
# =============================================================================


class Event(BaseModel):
    """An emitted event as recorded in the bus history.

    Example:
        >>> event = Event(
        ...     id="evt_abc123",
        ...     type=EventType.CONFIG_CHANGED,
        ...     payload=ConfigChangedPayload(
        ...         source="config_loader",
        ...         timestamp="2025-01-01T00:00:00+00:00",
        ...         change_type="route_added",
        ...     ),
        ...     timestamp="2025-01-01T00:00:00+00:00",
        ...     source="config_loader",
        ... )
    """

    id: str = Field(description="Unique event identifier")
    type: EventType
    payload: EventPayload
    timestamp: str = Field(description="ISO 8601 time the bus accepted the event")
    source: str

    def payload_data(self) -> dict[str, Any]:
        """Payload as JSON-compatible data, omitting unset optional fields."""
        return self.payload.model_dump(mode="json", exclude_none=True)


class EventBusStats(BaseModel):
    """Snapshot of event bus activity."""

    total_events: int = Field(description="Events currently held in history")
    events_by_type: dict[str, int] = Field(default_factory=dict)
    recent_events: int = Field(description="History events inside the recent window")
    total_emitted: int = Field(description="Events emitted over the bus lifetime")
