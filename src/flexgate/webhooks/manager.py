"""Webhook registry and delivery workers.

The manager subscribes to every event on the bus, turns each event into
one ``Delivery`` per matching webhook, and drains deliveries through one
asyncio worker per webhook:

- Per-webhook FIFO: deliveries to the same webhook are attempted in the
  order their events were observed.
- No cross-webhook blocking: a slow endpoint only delays its own queue.
- Soft persistence: every store call is wrapped; a failing store is
  logged and never blocks delivery or registry operations.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from flexgate.config import NotificationConfig
from flexgate.errors import ErrorCode, NotFoundError, ValidationError
from flexgate.events.models import (
    WILDCARD,
    ConfigChangedPayload,
    Event,
    EventType,
    now_iso,
)
from flexgate.webhooks.delivery import WebhookDeliveryService
from flexgate.webhooks.models import (
    Delivery,
    DeliveryStats,
    ManagerStats,
    RetryPolicy,
    WebhookConfig,
    WebhookCreateRequest,
    WebhookEnvelope,
    WebhookUpdateRequest,
)
from flexgate.webhooks.security import WebhookURLValidator
from flexgate.webhooks.store import (
    DeliveryStoreProtocol,
    MemoryDeliveryStore,
    create_store,
    generate_delivery_id,
    generate_webhook_id,
)

if TYPE_CHECKING:
    from flexgate.events.bus import EventBus
    from flexgate.webhooks.delivery import DeliveryResult

logger = logging.getLogger(__name__)

__all__ = [
    "WebhookManager",
    "generate_secret",
]

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

SleepFunc = Callable[[float], Awaitable[Any]]

# (registration token, delivery)
QueuedDelivery = tuple[int, Delivery]

UNREGISTERED_ERROR = "webhook unregistered"


def generate_secret() -> str:
    """Generate a webhook signing secret (32 random bytes, hex-encoded)."""
    return secrets.token_hex(32)


class WebhookManager:
    """Registry of webhooks plus the queues and workers that deliver to them.

    Example:
        >>> bus = EventBus()
        >>> manager = WebhookManager(bus)
        >>> manager.register_webhook({
        ...     "url": "https://example.com/hook",
        ...     "events": ["circuit_breaker.opened"],
        ... })
        >>> bus.emit(EventType.CIRCUIT_BREAKER_OPENED, payload)
        >>> await manager.join()
    """

    def __init__(
        self,
        bus: EventBus,
        store: DeliveryStoreProtocol | None = None,
        config: NotificationConfig | None = None,
        delivery_service: WebhookDeliveryService | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the manager and subscribe it to the bus.

        Args:
            bus: Event bus to observe (wildcard subscription)
            store: Delivery/webhook store (in-memory if omitted)
            config: Notification configuration (loaded from env if omitted)
            delivery_service: HTTP delivery service (built from config if omitted)
            sleep: Coroutine used for backoff waits, in seconds
        """
        self._config = config or NotificationConfig()
        self._bus = bus
        self._store = store if store is not None else MemoryDeliveryStore()
        self._delivery = delivery_service or WebhookDeliveryService.from_config(self._config)
        self._validator = WebhookURLValidator(require_https=self._config.is_production)
        self._sleep = sleep

        self._webhooks: dict[str, WebhookConfig] = {}
        # New token per registration; updates keep it
        self._registrations: dict[str, int] = {}
        self._tokens = itertools.count(1)
        self._queues: dict[str, deque[QueuedDelivery]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._closed = False

        self._bus.subscribe(WILDCARD, self.handle_event)

    @classmethod
    def from_config(
        cls,
        bus: EventBus,
        config: NotificationConfig,
        delivery_service: WebhookDeliveryService | None = None,
    ) -> WebhookManager:
        """Build a manager with the store described by ``config``."""
        return cls(
            bus,
            store=create_store(config),
            config=config,
            delivery_service=delivery_service,
        )

    @property
    def store(self) -> DeliveryStoreProtocol:
        return self._store

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def _persist(
        self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T | None:
        """Run a store call; failures are logged and swallowed."""
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Delivery store {operation} failed (continuing): {e}")
            return None

    @staticmethod
    def _parse(model: type[M], value: M | Mapping[str, Any]) -> M:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {model.__name__}: {e}",
                ErrorCode.FIELD_VALIDATION_FAILED,
            ) from e

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register_webhook(
        self, request: WebhookCreateRequest | Mapping[str, Any]
    ) -> WebhookConfig:
        """Validate, fill defaults and register a webhook.

        Re-registering an existing ID replaces its configuration but keeps
        the original ``created_at``. Deliveries queued for the previous
        registration are dropped, not sent to the new one.

        Raises:
            ValidationError: If the URL is malformed or insecure, or a field is invalid
        """
        request = self._parse(WebhookCreateRequest, request)
        self._validator.validate(request.url)

        now = now_iso()
        webhook_id = request.id or generate_webhook_id()
        existing = self._webhooks.get(webhook_id)

        webhook = WebhookConfig(
            id=webhook_id,
            url=request.url,
            events=request.events,
            enabled=request.enabled,
            secret=request.secret or generate_secret(),
            retry_policy=request.retry_policy or RetryPolicy(),
            headers=request.headers,
            timeout_ms=request.timeout_ms or self._config.default_timeout_ms,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

        self._webhooks[webhook_id] = webhook
        self._registrations[webhook_id] = next(self._tokens)
        self._persist("save_webhook", self._store.save_webhook, webhook)

        logger.info(
            f"Webhook registered: {webhook_id} url={webhook.url} "
            f"events={[str(getattr(e, 'value', e)) for e in webhook.events]}"
        )
        return webhook

    def update_webhook(
        self, webhook_id: str, updates: WebhookUpdateRequest | Mapping[str, Any]
    ) -> WebhookConfig:
        """Merge provided fields into an existing webhook.

        Raises:
            NotFoundError: If the webhook does not exist
            ValidationError: If a new URL is malformed or insecure
        """
        existing = self._webhooks.get(webhook_id)
        if existing is None:
            raise NotFoundError(f"Webhook not found: {webhook_id}")

        request = self._parse(WebhookUpdateRequest, updates)
        changes = {
            key: value
            for key, value in request.model_dump(exclude_unset=True).items()
            if value is not None
        }

        if "url" in changes:
            self._validator.validate(changes["url"])

        if "retry_policy" in changes:
            policy_changes = {
                key: value
                for key, value in changes["retry_policy"].items()
                if value is not None
            }
            changes["retry_policy"] = existing.retry_policy.model_copy(update=policy_changes)

        try:
            updated = WebhookConfig.model_validate(
                {
                    **existing.model_dump(),
                    **changes,
                    "id": existing.id,
                    "created_at": existing.created_at,
                    "updated_at": now_iso(),
                }
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid webhook update: {e}",
                ErrorCode.FIELD_VALIDATION_FAILED,
            ) from e

        self._webhooks[webhook_id] = updated
        self._persist("save_webhook", self._store.save_webhook, updated)

        logger.info(f"Webhook updated: {webhook_id} fields={sorted(changes)}")
        return updated

    def unregister_webhook(self, webhook_id: str) -> bool:
        """Remove a webhook.

        Queued deliveries are recorded as failed immediately. A delivery
        waiting between retries is dropped before its next attempt.

        Returns:
            True if the webhook existed
        """
        removed = self._webhooks.pop(webhook_id, None)
        if removed is None:
            return False

        self._registrations.pop(webhook_id, None)
        queue = self._queues.pop(webhook_id, None)
        if queue:
            for _, delivery in queue:
                self._drop(delivery, "unregistered")
            queue.clear()

        self._persist("delete_webhook", self._store.delete_webhook, webhook_id)
        logger.info(f"Webhook unregistered: {webhook_id}")
        return True

    def get_webhook(self, webhook_id: str) -> WebhookConfig | None:
        return self._webhooks.get(webhook_id)

    def get_all_webhooks(self) -> list[WebhookConfig]:
        return list(self._webhooks.values())

    def load_webhooks(self) -> int:
        """Restore registrations from the store (call once at startup).

        Returns:
            Number of webhooks loaded
        """
        stored = self._persist("load_webhooks", self._store.load_webhooks) or []
        for webhook in stored:
            self._webhooks[webhook.id] = webhook
            self._registrations[webhook.id] = next(self._tokens)
        if stored:
            logger.info(f"Loaded {len(stored)} webhooks from store")
        return len(stored)

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def handle_event(self, event: Event) -> None:
        """Bus callback: queue one delivery per matching enabled webhook.

        Runs synchronously inside ``EventBus.emit`` and never awaits.
        """
        if self._closed:
            return

        matched = [
            webhook
            for webhook in self._webhooks.values()
            if webhook.enabled and webhook.subscribes_to(event.type)
        ]
        if not matched:
            return

        logger.debug(f"Event {event.id} ({event.type.value}) matched {len(matched)} webhooks")
        for webhook in matched:
            token = self._registrations[webhook.id]
            self._enqueue(token, self._build_delivery(webhook.id, event))

    @staticmethod
    def _build_delivery(webhook_id: str, event: Event) -> Delivery:
        delivery_id = generate_delivery_id()
        return Delivery(
            id=delivery_id,
            webhook_id=webhook_id,
            event_type=event.type,
            payload=WebhookEnvelope(
                id=delivery_id,
                event=event.type,
                timestamp=event.timestamp,
                data=event.payload_data(),
            ),
        )

    def _enqueue(self, token: int, delivery: Delivery) -> None:
        self._persist("create_delivery", self._store.create_delivery, delivery)
        self._queues.setdefault(delivery.webhook_id, deque()).append((token, delivery))
        logger.debug(
            f"Delivery queued: {delivery.id} webhook={delivery.webhook_id} "
            f"event={delivery.event_type.value}"
        )
        self._ensure_worker(delivery.webhook_id)

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def _ensure_worker(self, webhook_id: str) -> None:
        """Start a worker for a webhook's queue unless one is running."""
        task = self._workers.get(webhook_id)
        if task is not None and not task.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; delivery for {webhook_id} stays queued")
            return

        self._workers[webhook_id] = loop.create_task(
            self._drain(webhook_id), name=f"webhook-worker:{webhook_id}"
        )

    async def _drain(self, webhook_id: str) -> None:
        """Deliver everything queued for one webhook, one at a time.

        The queue is looked up on every pass, since unregistering a webhook
        detaches it and a later registration starts a new one.
        """
        try:
            while True:
                queue = self._queues.get(webhook_id)
                if not queue:
                    break
                token, delivery = queue.popleft()
                if not self._is_current(webhook_id, token):
                    self._drop(delivery, "replaced")
                    continue

                try:
                    await self._attempt_delivery(self._webhooks[webhook_id], delivery, token)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(f"Delivery {delivery.id} aborted by unexpected error")
        finally:
            if self._workers.get(webhook_id) is asyncio.current_task():
                del self._workers[webhook_id]
            queue = self._queues.get(webhook_id)
            if queue is not None and not queue:
                del self._queues[webhook_id]

    def _is_current(self, webhook_id: str, token: int) -> bool:
        """Whether the registration a delivery was queued for still exists."""
        return self._registrations.get(webhook_id) == token

    def _drop(self, delivery: Delivery, reason: str) -> None:
        """Record a delivery whose registration is gone as failed."""
        logger.warning(
            f"Webhook {delivery.webhook_id} {reason}, dropping delivery {delivery.id} "
            f"after {delivery.attempts} attempts"
        )
        delivery.mark_failed(UNREGISTERED_ERROR, delivery.response_code)
        self._persist(
            "update_delivery",
            self._store.update_delivery,
            delivery.id,
            status=delivery.status,
            error=delivery.error,
        )

    async def _attempt_delivery(
        self, webhook: WebhookConfig, delivery: Delivery, token: int
    ) -> None:
        """Run the retry loop for one delivery.

        ``webhook`` is the configuration snapshot taken when the delivery
        started; later updates do not affect an in-progress sequence.
        """
        policy = webhook.retry_policy

        for attempt in range(policy.max_attempts):
            if attempt > 0 and not self._is_current(webhook.id, token):
                self._drop(delivery, "unregistered during retries")
                return

            delivery.attempts = attempt + 1
            self._persist(
                "update_delivery",
                self._store.update_delivery,
                delivery.id,
                attempts=delivery.attempts,
            )

            result = await self._delivery.deliver(webhook, delivery.payload)

            if result.success:
                self._record_success(webhook, delivery, result)
                return

            delivery.error = result.error
            delivery.response_code = result.status_code

            if attempt == policy.max_retries:
                self._record_failure(webhook, delivery, result)
                return

            delay_ms = policy.delay_ms(attempt)
            logger.warning(
                f"Webhook delivery failed, retrying: {delivery.id} webhook={webhook.id} "
                f"attempt={delivery.attempts} next_retry_in={delay_ms:.0f}ms error={result.error}"
            )
            await self._sleep(delay_ms / 1000)

    def _record_success(
        self, webhook: WebhookConfig, delivery: Delivery, result: DeliveryResult
    ) -> None:
        delivery.mark_success(result.status_code or 200, result.response_body)
        self._persist(
            "update_delivery",
            self._store.update_delivery,
            delivery.id,
            status=delivery.status,
            response_code=delivery.response_code,
            response_body=delivery.response_body,
            error=None,
            delivered_at=delivery.delivered_at,
        )
        logger.info(
            f"Webhook delivered: {delivery.id} webhook={webhook.id} "
            f"attempt={delivery.attempts} status={result.status_code} "
            f"duration={result.duration_ms:.0f}ms"
        )

    def _record_failure(
        self, webhook: WebhookConfig, delivery: Delivery, result: DeliveryResult
    ) -> None:
        delivery.mark_failed(result.error, result.status_code)
        delivery.response_body = result.response_body
        self._persist(
            "update_delivery",
            self._store.update_delivery,
            delivery.id,
            status=delivery.status,
            error=delivery.error,
            response_code=delivery.response_code,
            response_body=delivery.response_body,
        )
        logger.error(
            f"Webhook delivery failed after retries: {delivery.id} webhook={webhook.id} "
            f"attempts={delivery.attempts} error={result.error}"
        )

    async def join(self) -> None:
        """Wait until every queue is drained.

        Also starts workers for deliveries queued while no event loop was running.
        """
        for webhook_id, queue in list(self._queues.items()):
            if queue:
                self._ensure_worker(webhook_id)

        while self._workers:
            tasks = list(self._workers.items())
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
            for webhook_id, task in tasks:
                if task.done() and self._workers.get(webhook_id) is task:
                    del self._workers[webhook_id]

    async def close(self) -> None:
        """Stop observing the bus, cancel workers and close the HTTP client."""
        self._closed = True
        self._bus.unsubscribe(WILDCARD, self.handle_event)

        tasks = list(self._workers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()

        await self._delivery.close()
        logger.info("Webhook manager closed")

    # -------------------------------------------------------------------------
    # Management surface
    # -------------------------------------------------------------------------

    async def test_webhook(self, webhook_id: str) -> Delivery:
        """Send one synthetic config.changed event immediately.

        Bypasses the queue and the retry policy.

        Raises:
            NotFoundError: If the webhook does not exist
        """
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            raise NotFoundError(f"Webhook not found: {webhook_id}")

        now = now_iso()
        payload = ConfigChangedPayload(
            timestamp=now,
            source="webhook_test",
            change_type="route_updated",
            entity_id="test_route",
            changes={"test": True},
        )
        delivery_id = generate_delivery_id()
        delivery = Delivery(
            id=delivery_id,
            webhook_id=webhook.id,
            event_type=EventType.CONFIG_CHANGED,
            payload=WebhookEnvelope(
                id=delivery_id,
                event=EventType.CONFIG_CHANGED,
                timestamp=now,
                data=payload.model_dump(mode="json", exclude_none=True),
            ),
            attempts=1,
        )

        result = await self._delivery.deliver(webhook, delivery.payload)
        if result.success:
            delivery.mark_success(result.status_code or 200, result.response_body)
        else:
            delivery.mark_failed(result.error, result.status_code)
            delivery.response_body = result.response_body

        logger.info(f"Webhook test sent: {webhook_id} status={delivery.status.value}")
        return delivery

    def get_stats(self, webhook_id: str | None = None) -> DeliveryStats | ManagerStats:
        """Delivery statistics.

        With ``webhook_id``: aggregates from the store (empty stats if the
        store is unavailable). Without: registry and queue figures only,
        which never touch the store.
        """
        if webhook_id is not None:
            stats = self._persist("get_stats", self._store.get_stats, webhook_id)
            return stats if stats is not None else DeliveryStats(webhook_id=webhook_id)

        queue_depths = {wh_id: len(queue) for wh_id, queue in self._queues.items() if queue}
        return ManagerStats(
            total_webhooks=len(self._webhooks),
            enabled_webhooks=sum(1 for webhook in self._webhooks.values() if webhook.enabled),
            pending_deliveries=sum(queue_depths.values()),
            active_workers=sum(1 for task in self._workers.values() if not task.done()),
            queue_depths=queue_depths,
        )

    def get_delivery_logs(
        self, webhook_id: str, limit: int = 100, offset: int = 0
    ) -> list[Delivery]:
        """Recorded deliveries for a webhook, newest first."""
        logs = self._persist(
            "find_by_webhook", self._store.find_by_webhook, webhook_id, limit, offset
        )
        return logs or []

    def purge_deliveries(self, older_than_days: float) -> int:
        """Apply the retention policy; returns rows deleted."""
        deleted = self._persist(
            "delete_older_than", self._store.delete_older_than, older_than_days
        )
        if deleted:
            logger.info(f"Purged {deleted} deliveries older than {older_than_days} days")
        return deleted or 0
