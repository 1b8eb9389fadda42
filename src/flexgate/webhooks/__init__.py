"""Webhook notifications for gateway events.

Provides webhook registration, signed HTTP delivery with per-webhook
queues and exponential backoff retries, and delivery persistence.

Example:
    >>> from flexgate.events import EventBus
    >>> from flexgate.webhooks import WebhookManager
    >>> bus = EventBus()
    >>> manager = WebhookManager(bus)
    >>> webhook = manager.register_webhook({
    ...     "url": "https://example.com/hooks/flexgate",
    ...     "events": ["circuit_breaker.opened", "health.check_failed"],
    ... })
"""

from flexgate.webhooks.delivery import DeliveryResult, WebhookDeliveryService
from flexgate.webhooks.manager import WebhookManager, generate_secret
from flexgate.webhooks.models import (
    DEFAULT_RETRY_POLICY,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    ManagerStats,
    RetryPolicy,
    RetryPolicyUpdate,
    WebhookConfig,
    WebhookCreateRequest,
    WebhookEnvelope,
    WebhookUpdateRequest,
)
from flexgate.webhooks.security import ValidatedURL, WebhookURLValidator
from flexgate.webhooks.signature import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    extract_signed_bytes,
    sign,
    verify,
    verify_body,
)
from flexgate.webhooks.store import (
    DeliveryStoreProtocol,
    MemoryDeliveryStore,
    RedisDeliveryStore,
    ResilientDeliveryStore,
    create_store,
)

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "Delivery",
    "DeliveryResult",
    "DeliveryStats",
    "DeliveryStatus",
    "DeliveryStoreProtocol",
    "ManagerStats",
    "MemoryDeliveryStore",
    "RedisDeliveryStore",
    "ResilientDeliveryStore",
    "RetryPolicy",
    "RetryPolicyUpdate",
    "ValidatedURL",
    "WebhookConfig",
    "WebhookCreateRequest",
    "WebhookDeliveryService",
    "WebhookEnvelope",
    "WebhookManager",
    "WebhookURLValidator",
    "WebhookUpdateRequest",
    "create_store",
    "extract_signed_bytes",
    "generate_secret",
    "sign",
    "verify",
    "verify_body",
]
