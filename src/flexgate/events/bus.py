"""In-process event bus for gateway operational events.

Producers (circuit breaker, rate limiter, health monitor, config loader)
call ``emit``; subscribers are invoked synchronously, in registration
order, with per-handler fault isolation.

Example:
    >>> from flexgate.events import EventBus, EventType
    >>> bus = EventBus()
    >>> seen = []
    >>> bus.subscribe(EventType.CONFIG_CHANGED, seen.append)
    >>> event_id = bus.emit(
    ...     EventType.CONFIG_CHANGED,
    ...     {"source": "config_loader", "change_type": "route_added"},
    ... )
    >>> seen[0].id == event_id
    True
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from flexgate.errors import ErrorCode, ValidationError
from flexgate.events.models import (
    WILDCARD,
    BaseEventPayload,
    Event,
    EventBusStats,
    EventType,
    generate_event_id,
    now_iso,
    payload_model_for,
)

if TYPE_CHECKING:
    from flexgate.config import NotificationConfig

logger = logging.getLogger(__name__)

__all__ = [
    "EventBus",
    "EventHandler",
]

EventHandler = Callable[[Event], Any]


class EventBus:
    """Publish/subscribe hub with a bounded event history.

    The bus is an ordinary object: construct one per gateway process and
    hand it to every producer and to the webhook manager.
    """

    def __init__(self, history_size: int = 1000, recent_window: int = 300) -> None:
        """Initialize event bus.

        Args:
            history_size: Maximum events kept in history (oldest dropped first)
            recent_window: Seconds counted as "recent" by ``get_stats``
        """
        if history_size < 1:
            raise ValueError("history_size must be at least 1")
        self.history_size = history_size
        self.recent_window = recent_window
        self._history: deque[Event] = deque(maxlen=history_size)
        self._handlers: dict[str, list[EventHandler]] = {}
        self._total_emitted = 0

    @classmethod
    def from_config(cls, config: NotificationConfig) -> EventBus:
        """Build a bus sized from configuration."""
        return cls(
            history_size=config.event_history_size,
            recent_window=config.recent_events_window,
        )

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def emit(
        self,
        event_type: EventType | str,
        payload: BaseEventPayload | Mapping[str, Any],
    ) -> str:
        """Emit an event to all matching subscribers.

        Args:
            event_type: Type of the event
            payload: Payload model for the type, or a mapping validated into it

        Returns:
            The new event's ID

        Raises:
            ValidationError: If the payload does not match the event type
        """
        event_type = self._coerce_type(event_type)
        payload_model = self._coerce_payload(event_type, payload)

        timestamp = now_iso()
        if payload_model.timestamp is None:
            payload_model = payload_model.model_copy(update={"timestamp": timestamp})

        event = Event(
            id=generate_event_id(),
            type=event_type,
            payload=payload_model,
            timestamp=timestamp,
            source=payload_model.source,
        )

        self._history.append(event)
        self._total_emitted += 1

        handlers = [
            *self._handlers.get(event_type.value, ()),
            *self._handlers.get(WILDCARD, ()),
        ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    f"Event handler {getattr(handler, '__qualname__', handler)!r} "
                    f"failed for {event.type.value} ({event.id})"
                )

        logger.debug(
            f"Event emitted: {event.id} type={event_type.value} "
            f"source={event.source} handlers={len(handlers)}"
        )
        return event.id

    @staticmethod
    def _coerce_type(event_type: EventType | str) -> EventType:
        try:
            return EventType(event_type)
        except ValueError as e:
            raise ValidationError(
                f"Unknown event type: {event_type}",
                ErrorCode.FIELD_VALIDATION_FAILED,
            ) from e

    @staticmethod
    def _coerce_payload(
        event_type: EventType,
        payload: BaseEventPayload | Mapping[str, Any],
    ) -> BaseEventPayload:
        model = payload_model_for(event_type)

        if isinstance(payload, BaseEventPayload):
            if type(payload) is not model:
                raise ValidationError(
                    f"{event_type.value} requires {model.__name__}, "
                    f"got {type(payload).__name__}",
                    ErrorCode.FIELD_VALIDATION_FAILED,
                )
            return payload

        try:
            return model.model_validate(dict(payload))
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid payload for {event_type.value}: {e}",
                ErrorCode.FIELD_VALIDATION_FAILED,
            ) from e

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Register a handler for one event type, or ``"*"`` for all."""
        key = self._subscription_key(event_type)
        self._handlers.setdefault(key, []).append(handler)
        logger.debug(f"Event subscription added: {key}")

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        """Remove one registration of a handler.

        Returns:
            True if a matching registration was found and removed
        """
        key = self._subscription_key(event_type)
        handlers = self._handlers.get(key, [])
        for index, registered in enumerate(handlers):
            if registered == handler:
                del handlers[index]
                logger.debug(f"Event subscription removed: {key}")
                return True
        return False

    def subscriber_count(self, event_type: EventType | str | None = None) -> int:
        """Count handlers for one subscription key, or all of them."""
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(self._subscription_key(event_type), []))

    def _subscription_key(self, event_type: EventType | str) -> str:
        if event_type == WILDCARD:
            return WILDCARD
        return self._coerce_type(event_type).value

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def get_history(
        self, limit: int = 100, event_type: EventType | str | None = None
    ) -> list[Event]:
        """Get recent events, oldest first.

        Args:
            limit: Maximum number of events to return
            event_type: Optional filter by event type
        """
        if limit <= 0:
            return []

        history: list[Event] = list(self._history)
        if event_type is not None:
            wanted = self._coerce_type(event_type)
            history = [event for event in history if event.type == wanted]

        return history[-limit:]

    def clear_history(self) -> None:
        """Drop all recorded events. Subscriptions are untouched."""
        self._history.clear()
        logger.debug("Event history cleared")

    def get_stats(self) -> EventBusStats:
        """Summarize the current history."""
        events_by_type: dict[str, int] = {}
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.recent_window)
        recent = 0

        for event in self._history:
            events_by_type[event.type.value] = events_by_type.get(event.type.value, 0) + 1
            if datetime.fromisoformat(event.timestamp) > cutoff:
                recent += 1

        return EventBusStats(
            total_events=len(self._history),
            events_by_type=events_by_type,
            recent_events=recent,
            total_emitted=self._total_emitted,
        )
