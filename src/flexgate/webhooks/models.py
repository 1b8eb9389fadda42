"""Pydantic models for webhook registration, envelopes and delivery records.

All models are designed for API serialization and Redis storage.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from flexgate.events.models import WILDCARD, EventType, now_iso

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "ManagerStats",
    "RetryPolicy",
    "RetryPolicyUpdate",
    "SubscribedEvent",
    "WebhookConfig",
    "WebhookCreateRequest",
    "WebhookEnvelope",
    "WebhookUpdateRequest",
]

# An event type, or "*" for every event
SubscribedEvent = Union[EventType, Literal["*"]]


class DeliveryStatus(str, Enum):
    """Webhook delivery status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# Retry Policy
# =============================================================================


class RetryPolicy(BaseModel):
    """Exponential backoff settings for one webhook.

    Example:
        >>> RetryPolicy().delays()
        [1000.0, 2000.0, 4000.0]
    """

    max_retries: int = Field(
        default=3,
        description="Retries after the first attempt (total attempts = max_retries + 1)",
        ge=0,
    )
    backoff_multiplier: float = Field(
        default=2.0,
        description="Factor applied to the delay after every failed attempt",
        ge=1,
    )
    initial_delay_ms: int = Field(
        default=1000,
        description="Delay before the first retry in milliseconds",
        ge=0,
    )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_ms(self, attempt: int) -> float:
        """Delay to wait after the zero-based ``attempt`` fails."""
        return float(self.initial_delay_ms * self.backoff_multiplier**attempt)

    def delays(self) -> list[float]:
        """Every pre-retry delay, in order."""
        return [self.delay_ms(attempt) for attempt in range(self.max_retries)]


DEFAULT_RETRY_POLICY = RetryPolicy()


class RetryPolicyUpdate(BaseModel):
    """Partial retry policy; unset fields keep their current value."""

    max_retries: int | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, ge=1)
    initial_delay_ms: int | None = Field(default=None, ge=0)


# =============================================================================
# Registration Models
# =============================================================================


class WebhookCreateRequest(BaseModel):
    """Input for webhook registration.

    Example:
        >>> request = WebhookCreateRequest(
        ...     url="https://example.com/hooks/flexgate",
        ...     events=[EventType.CIRCUIT_BREAKER_OPENED],
        ... )
    """

    id: str | None = Field(
        default=None,
        description="Webhook identifier (generated if omitted)",
        min_length=1,
    )
    url: str = Field(
        description="HTTP(S) URL receiving events",
        examples=["https://example.com/hooks/flexgate"],
    )
    events: list[SubscribedEvent] = Field(
        description="Event types to subscribe to, or ['*'] for all",
        min_length=1,
    )
    enabled: bool = True
    secret: str | None = Field(
        default=None,
        description="HMAC secret (generated if omitted or empty)",
    )
    retry_policy: RetryPolicy | None = None
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every delivery",
    )
    timeout_ms: int | None = Field(
        default=None,
        description="Per-attempt HTTP timeout (configured default if omitted)",
        ge=1,
    )


class WebhookUpdateRequest(BaseModel):
    """Partial webhook update.

    All fields are optional; only provided fields are updated.
    """

    url: str | None = None
    events: list[SubscribedEvent] | None = Field(default=None, min_length=1)
    enabled: bool | None = None
    secret: str | None = Field(default=None, min_length=1)
    retry_policy: RetryPolicyUpdate | None = None
    headers: dict[str, str] | None = None
    timeout_ms: int | None = Field(default=None, ge=1)


class WebhookConfig(BaseModel):
    """A registered webhook."""

    id: str
    url: str
    events: list[SubscribedEvent] = Field(min_length=1)
    enabled: bool = True
    secret: str = Field(min_length=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int = Field(default=5000, ge=1)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    def subscribes_to(self, event_type: EventType) -> bool:
        """Whether this webhook wants ``event_type`` (ignores ``enabled``)."""
        return WILDCARD in self.events or event_type in self.events


# =============================================================================
# Delivery Models
# =============================================================================


class WebhookEnvelope(BaseModel):
    """Body sent to webhook endpoints, minus the signature field.

    The signature is spliced onto the serialized envelope at send time;
    see ``flexgate.webhooks.signature.attach_signature``.
    """

    id: str = Field(description="Delivery ID (stable across retries)")
    event: EventType
    timestamp: str = Field(description="ISO 8601 time the event was emitted")
    data: dict[str, Any] = Field(description="Event payload")


class Delivery(BaseModel):
    """One unit of work: send this event to this webhook.

    Status only moves forward, from pending to success or failed.
    """

    id: str
    webhook_id: str
    event_type: EventType
    payload: WebhookEnvelope
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    delivered_at: str | None = None
    created_at: str = Field(default_factory=now_iso)

    def _require_pending(self) -> None:
        if self.status != DeliveryStatus.PENDING:
            raise ValueError(
                f"Delivery {self.id} already {self.status.value}; status is final"
            )

    def mark_success(self, response_code: int, response_body: str | None) -> None:
        self._require_pending()
        self.status = DeliveryStatus.SUCCESS
        self.response_code = response_code
        self.response_body = response_body
        self.error = None
        self.delivered_at = now_iso()

    def mark_failed(self, error: str | None, response_code: int | None) -> None:
        self._require_pending()
        self.status = DeliveryStatus.FAILED
        self.error = error
        self.response_code = response_code


class DeliveryStats(BaseModel):
    """Delivery aggregates for one webhook."""

    webhook_id: str
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    pending_deliveries: int = 0
    average_attempts: float = 0.0
    last_delivery_at: str | None = Field(
        default=None,
        description="Most recent successful delivery time",
    )
    by_event_type: dict[str, int] = Field(default_factory=dict)


class ManagerStats(BaseModel):
    """In-memory registry and queue statistics."""

    total_webhooks: int
    enabled_webhooks: int
    pending_deliveries: int = Field(description="Deliveries waiting in all queues")
    active_workers: int
    queue_depths: dict[str, int] = Field(default_factory=dict)
