"""Typed convenience emitters for gateway components.

Producers can call ``EventBus.emit`` directly; the publisher exists so a
component only has to supply the fields that matter to it and always
reports the same ``source``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal

from flexgate.events.models import (
    CircuitBreakerPayload,
    ConfigChangedPayload,
    EventType,
    HealthCheckPayload,
    HealthMetrics,
    ProxyRequestPayload,
    RateLimitPayload,
)

if TYPE_CHECKING:
    from flexgate.events.bus import EventBus

logger = logging.getLogger(__name__)

__all__ = [
    "EventPublisher",
]

ChangeType = Literal["route_added", "route_updated", "route_deleted", "settings_updated"]


class EventPublisher:
    """Emit well-formed events on behalf of one gateway component.

    Example:
        >>> publisher = EventPublisher(bus, source="circuit_breaker")
        >>> publisher.circuit_opened(
        ...     route_id="r1",
        ...     route_path="/api/users",
        ...     target="http://users:8080",
        ...     error_rate=62.5,
        ...     threshold=50.0,
        ...     failure_count=5,
        ...     window_size=8,
        ... )
        'evt_...'
    """

    def __init__(self, bus: EventBus, source: str) -> None:
        self._bus = bus
        self.source = source

    # Circuit breaker

    def _circuit(self, event_type: EventType, state: str, fields: dict[str, Any]) -> str:
        # state and source follow from the helper, not the caller
        payload = CircuitBreakerPayload(**{**fields, "source": self.source, "state": state})
        return self._bus.emit(event_type, payload)

    def circuit_opened(self, **fields: Any) -> str:
        return self._circuit(EventType.CIRCUIT_BREAKER_OPENED, "open", fields)

    def circuit_closed(self, **fields: Any) -> str:
        return self._circuit(EventType.CIRCUIT_BREAKER_CLOSED, "closed", fields)

    def circuit_half_open(self, **fields: Any) -> str:
        return self._circuit(EventType.CIRCUIT_BREAKER_HALF_OPEN, "half_open", fields)

    # Rate limiter

    def _rate_limit(
        self,
        event_type: EventType,
        client_id: str,
        limit: int,
        current: int,
        window_seconds: int,
        route_id: str | None = None,
        route_path: str | None = None,
    ) -> str:
        percent_used = round(current / limit * 100, 2) if limit else 100.0
        payload = RateLimitPayload(
            source=self.source,
            client_id=client_id,
            limit=limit,
            current=current,
            window_seconds=window_seconds,
            percent_used=percent_used,
            route_id=route_id,
            route_path=route_path,
        )
        return self._bus.emit(event_type, payload)

    def rate_limit_exceeded(
        self,
        client_id: str,
        limit: int,
        current: int,
        window_seconds: int,
        **route: str | None,
    ) -> str:
        return self._rate_limit(
            EventType.RATE_LIMIT_EXCEEDED, client_id, limit, current, window_seconds, **route
        )

    def rate_limit_approaching(
        self,
        client_id: str,
        limit: int,
        current: int,
        window_seconds: int,
        **route: str | None,
    ) -> str:
        return self._rate_limit(
            EventType.RATE_LIMIT_APPROACHING, client_id, limit, current, window_seconds, **route
        )

    def rate_limit_recovered(
        self,
        client_id: str,
        limit: int,
        current: int,
        window_seconds: int,
        **route: str | None,
    ) -> str:
        return self._rate_limit(
            EventType.RATE_LIMIT_RECOVERED, client_id, limit, current, window_seconds, **route
        )

    # Proxy

    def request_started(self, **fields: Any) -> str:
        return self._bus.emit(
            EventType.PROXY_REQUEST_STARTED,
            ProxyRequestPayload(**{**fields, "source": self.source}),
        )

    def request_completed(self, **fields: Any) -> str:
        return self._bus.emit(
            EventType.PROXY_REQUEST_COMPLETED,
            ProxyRequestPayload(**{**fields, "source": self.source}),
        )

    def request_failed(self, **fields: Any) -> str:
        return self._bus.emit(
            EventType.PROXY_REQUEST_FAILED,
            ProxyRequestPayload(**{**fields, "source": self.source}),
        )

    # Health monitor

    def health_check_failed(
        self,
        service: str,
        status: Literal["degraded", "unhealthy"] = "unhealthy",
        metrics: HealthMetrics | dict[str, float] | None = None,
    ) -> str:
        return self._bus.emit(
            EventType.HEALTH_CHECK_FAILED,
            HealthCheckPayload(source=self.source, service=service, status=status, metrics=metrics),
        )

    def health_check_recovered(
        self,
        service: str,
        metrics: HealthMetrics | dict[str, float] | None = None,
    ) -> str:
        return self._bus.emit(
            EventType.HEALTH_CHECK_RECOVERED,
            HealthCheckPayload(
                source=self.source, service=service, status="healthy", metrics=metrics
            ),
        )

    # Configuration

    def config_changed(
        self,
        change_type: ChangeType,
        changes: dict[str, Any] | None = None,
        entity_id: str | None = None,
    ) -> str:
        """Emit config.changed after a route or settings mutation."""
        payload = ConfigChangedPayload(
            source=self.source,
            change_type=change_type,
            entity_id=entity_id,
            changes=changes or {},
        )
        logger.debug(f"Publishing config change {change_type} entity={entity_id}")
        return self._bus.emit(EventType.CONFIG_CHANGED, payload)
