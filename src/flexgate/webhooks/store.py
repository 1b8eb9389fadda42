"""Delivery and webhook persistence with Redis backend and memory fallback.

The manager treats the store as a passive, optional collaborator: every
call it makes is wrapped, and a failing store never blocks delivery.
Implementations raise ``PersistenceError`` when the backend fails.
"""

from __future__ import annotations

import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from flexgate.errors import PersistenceError
from flexgate.webhooks.models import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    WebhookConfig,
)

__all__ = [
    "DeliveryStoreProtocol",
    "MemoryDeliveryStore",
    "RedisDeliveryStore",
    "ResilientDeliveryStore",
    "aggregate_stats",
    "create_store",
    "generate_delivery_id",
    "generate_webhook_id",
]

if TYPE_CHECKING:
    import redis

    from flexgate.config import NotificationConfig

logger = logging.getLogger(__name__)


def generate_webhook_id() -> str:
    """Generate a unique webhook ID."""
    return f"wh_{secrets.token_hex(12)}"


def generate_delivery_id() -> str:
    """Generate a unique delivery ID."""
    return f"del_{secrets.token_hex(12)}"


def _timestamp(iso: str) -> float:
    return datetime.fromisoformat(iso).timestamp()


def _cutoff(days: float) -> float:
    return (datetime.now(timezone.utc) - timedelta(days=days)).timestamp()


def aggregate_stats(webhook_id: str, deliveries: Iterable[Delivery]) -> DeliveryStats:
    """Aggregate delivery rows for one webhook."""
    stats = DeliveryStats(webhook_id=webhook_id)
    total_attempts = 0

    for delivery in deliveries:
        stats.total_deliveries += 1
        total_attempts += delivery.attempts
        if delivery.status == DeliveryStatus.SUCCESS:
            stats.successful_deliveries += 1
        elif delivery.status == DeliveryStatus.FAILED:
            stats.failed_deliveries += 1
        else:
            stats.pending_deliveries += 1

        key = delivery.event_type.value
        stats.by_event_type[key] = stats.by_event_type.get(key, 0) + 1

        if delivery.delivered_at and (
            stats.last_delivery_at is None
            or _timestamp(delivery.delivered_at) > _timestamp(stats.last_delivery_at)
        ):
            stats.last_delivery_at = delivery.delivered_at

    if stats.total_deliveries:
        stats.average_attempts = total_attempts / stats.total_deliveries
    return stats


class DeliveryStoreProtocol(ABC):
    """Protocol for delivery and webhook storage backends."""

    # Delivery log

    @abstractmethod
    def create_delivery(self, delivery: Delivery) -> Delivery:
        """Insert a new delivery row."""
        ...

    @abstractmethod
    def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        """Apply a partial update; returns None if the row does not exist."""
        ...

    @abstractmethod
    def get_delivery(self, delivery_id: str) -> Delivery | None:
        """Get a delivery row by ID."""
        ...

    @abstractmethod
    def find_by_webhook(
        self, webhook_id: str, limit: int = 100, offset: int = 0
    ) -> list[Delivery]:
        """Deliveries for a webhook, newest first."""
        ...

    @abstractmethod
    def find_by_status(self, status: DeliveryStatus, limit: int = 100) -> list[Delivery]:
        """Deliveries in a given status, oldest first."""
        ...

    @abstractmethod
    def get_stats(self, webhook_id: str) -> DeliveryStats:
        """Aggregate statistics for a webhook."""
        ...

    @abstractmethod
    def delete_older_than(self, days: float) -> int:
        """Delete deliveries created more than ``days`` ago; returns count."""
        ...

    @abstractmethod
    def delete_by_webhook(self, webhook_id: str) -> int:
        """Delete every delivery of a webhook; returns count."""
        ...

    # Webhook table

    @abstractmethod
    def save_webhook(self, webhook: WebhookConfig) -> None:
        """Insert or replace a webhook configuration."""
        ...

    @abstractmethod
    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook configuration."""
        ...

    @abstractmethod
    def load_webhooks(self) -> list[WebhookConfig]:
        """All stored webhook configurations."""
        ...


class MemoryDeliveryStore(DeliveryStoreProtocol):
    """In-memory storage (non-persistent, default and for testing)."""

    def __init__(self) -> None:
        self._deliveries: dict[str, Delivery] = {}
        self._deliveries_by_webhook: dict[str, list[str]] = {}
        self._webhooks: dict[str, WebhookConfig] = {}

    def create_delivery(self, delivery: Delivery) -> Delivery:
        record = delivery.model_copy(deep=True)
        self._deliveries[record.id] = record
        ids = self._deliveries_by_webhook.setdefault(record.webhook_id, [])
        if record.id not in ids:
            ids.append(record.id)
        return record.model_copy(deep=True)

    def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        record = self._deliveries.get(delivery_id)
        if record is None:
            return None
        updated = Delivery.model_validate({**record.model_dump(), **fields})
        self._deliveries[delivery_id] = updated
        return updated.model_copy(deep=True)

    def get_delivery(self, delivery_id: str) -> Delivery | None:
        record = self._deliveries.get(delivery_id)
        return record.model_copy(deep=True) if record else None

    def find_by_webhook(
        self, webhook_id: str, limit: int = 100, offset: int = 0
    ) -> list[Delivery]:
        ids = list(reversed(self._deliveries_by_webhook.get(webhook_id, [])))
        return [
            self._deliveries[d_id].model_copy(deep=True)
            for d_id in ids[offset : offset + limit]
            if d_id in self._deliveries
        ]

    def find_by_status(self, status: DeliveryStatus, limit: int = 100) -> list[Delivery]:
        matches = [d for d in self._deliveries.values() if d.status == status]
        return [d.model_copy(deep=True) for d in matches[:limit]]

    def get_stats(self, webhook_id: str) -> DeliveryStats:
        ids = self._deliveries_by_webhook.get(webhook_id, [])
        return aggregate_stats(
            webhook_id, (self._deliveries[d_id] for d_id in ids if d_id in self._deliveries)
        )

    def delete_older_than(self, days: float) -> int:
        cutoff = _cutoff(days)
        expired = [
            d_id
            for d_id, record in self._deliveries.items()
            if _timestamp(record.created_at) < cutoff
        ]
        for d_id in expired:
            record = self._deliveries.pop(d_id)
            ids = self._deliveries_by_webhook.get(record.webhook_id, [])
            if d_id in ids:
                ids.remove(d_id)
        return len(expired)

    def delete_by_webhook(self, webhook_id: str) -> int:
        ids = self._deliveries_by_webhook.pop(webhook_id, [])
        for d_id in ids:
            self._deliveries.pop(d_id, None)
        return len(ids)

    def save_webhook(self, webhook: WebhookConfig) -> None:
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)

    def delete_webhook(self, webhook_id: str) -> bool:
        return self._webhooks.pop(webhook_id, None) is not None

    def load_webhooks(self) -> list[WebhookConfig]:
        return [webhook.model_copy(deep=True) for webhook in self._webhooks.values()]

    def all_deliveries(self) -> list[Delivery]:
        """Every stored delivery, in insertion order."""
        return [record.model_copy(deep=True) for record in self._deliveries.values()]


class RedisDeliveryStore(DeliveryStoreProtocol):
    """Redis-backed storage.

    Key schema:
        flexgate:webhook:{id}                  -> JSON: WebhookConfig
        flexgate:webhooks                      -> Set: webhook IDs
        flexgate:delivery:{id}                 -> JSON: Delivery (with TTL)
        flexgate:delivery:by_webhook:{wh_id}   -> Sorted set: delivery IDs by created_at
        flexgate:delivery:all                  -> Sorted set: delivery IDs by created_at
    """

    def __init__(
        self,
        redis_client: redis.Redis[bytes],
        prefix: str = "flexgate:",
        delivery_ttl: int = 604800,  # 7 days
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._delivery_ttl = delivery_ttl

    def _webhook_key(self, webhook_id: str) -> str:
        return f"{self._prefix}webhook:{webhook_id}"

    def _webhook_set_key(self) -> str:
        return f"{self._prefix}webhooks"

    def _delivery_key(self, delivery_id: str) -> str:
        return f"{self._prefix}delivery:{delivery_id}"

    def _delivery_index_key(self, webhook_id: str) -> str:
        return f"{self._prefix}delivery:by_webhook:{webhook_id}"

    def _delivery_all_key(self) -> str:
        return f"{self._prefix}delivery:all"

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        """Translate backend failures into PersistenceError."""
        import redis as redis_lib

        try:
            yield
        except (redis_lib.RedisError, PydanticValidationError) as e:
            raise PersistenceError(f"Redis {operation} failed: {e}") from e

    @staticmethod
    def _decode(value: bytes | str) -> str:
        return value.decode() if isinstance(value, bytes) else value

    def _load_deliveries(self, ids: Iterable[bytes | str]) -> list[Delivery]:
        keys = [self._delivery_key(self._decode(d_id)) for d_id in ids]
        if not keys:
            return []
        return [
            Delivery.model_validate_json(data)
            for data in self._redis.mget(keys)
            if data
        ]

    def create_delivery(self, delivery: Delivery) -> Delivery:
        score = _timestamp(delivery.created_at)
        with self._errors("create_delivery"):
            pipe = self._redis.pipeline()
            pipe.set(
                self._delivery_key(delivery.id),
                delivery.model_dump_json(),
                ex=self._delivery_ttl,
            )
            pipe.zadd(self._delivery_index_key(delivery.webhook_id), {delivery.id: score})
            pipe.zadd(self._delivery_all_key(), {delivery.id: score})
            pipe.execute()
        return delivery

    def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        with self._errors("update_delivery"):
            data = self._redis.get(self._delivery_key(delivery_id))
            if not data:
                return None
            record = Delivery.model_validate_json(data)
            updated = Delivery.model_validate({**record.model_dump(), **fields})
            self._redis.set(
                self._delivery_key(delivery_id),
                updated.model_dump_json(),
                keepttl=True,
            )
        return updated

    def get_delivery(self, delivery_id: str) -> Delivery | None:
        with self._errors("get_delivery"):
            data = self._redis.get(self._delivery_key(delivery_id))
            if not data:
                return None
            return Delivery.model_validate_json(data)

    def find_by_webhook(
        self, webhook_id: str, limit: int = 100, offset: int = 0
    ) -> list[Delivery]:
        if limit <= 0:
            return []
        with self._errors("find_by_webhook"):
            ids = self._redis.zrevrange(
                self._delivery_index_key(webhook_id), offset, offset + limit - 1
            )
            return self._load_deliveries(ids)

    def find_by_status(self, status: DeliveryStatus, limit: int = 100) -> list[Delivery]:
        with self._errors("find_by_status"):
            ids = self._redis.zrange(self._delivery_all_key(), 0, -1)
            matches = [d for d in self._load_deliveries(ids) if d.status == status]
        return matches[:limit]

    def get_stats(self, webhook_id: str) -> DeliveryStats:
        with self._errors("get_stats"):
            ids = self._redis.zrange(self._delivery_index_key(webhook_id), 0, -1)
            deliveries = self._load_deliveries(ids)
        return aggregate_stats(webhook_id, deliveries)

    def delete_older_than(self, days: float) -> int:
        with self._errors("delete_older_than"):
            ids = [
                self._decode(d_id)
                for d_id in self._redis.zrangebyscore(
                    self._delivery_all_key(), "-inf", f"({_cutoff(days)}"
                )
            ]
            if not ids:
                return 0

            # Rows may already have expired via TTL; index entries still need removal
            rows = self._redis.mget([self._delivery_key(d_id) for d_id in ids])
            pipe = self._redis.pipeline()
            for d_id, data in zip(ids, rows):
                if data:
                    webhook_id = Delivery.model_validate_json(data).webhook_id
                    pipe.zrem(self._delivery_index_key(webhook_id), d_id)
                pipe.delete(self._delivery_key(d_id))
            pipe.zrem(self._delivery_all_key(), *ids)
            pipe.execute()
        return len(ids)

    def delete_by_webhook(self, webhook_id: str) -> int:
        with self._errors("delete_by_webhook"):
            ids = [
                self._decode(d_id)
                for d_id in self._redis.zrange(self._delivery_index_key(webhook_id), 0, -1)
            ]
            if not ids:
                return 0
            pipe = self._redis.pipeline()
            pipe.delete(*[self._delivery_key(d_id) for d_id in ids])
            pipe.zrem(self._delivery_all_key(), *ids)
            pipe.delete(self._delivery_index_key(webhook_id))
            pipe.execute()
        return len(ids)

    def save_webhook(self, webhook: WebhookConfig) -> None:
        with self._errors("save_webhook"):
            pipe = self._redis.pipeline()
            pipe.set(self._webhook_key(webhook.id), webhook.model_dump_json())
            pipe.sadd(self._webhook_set_key(), webhook.id)
            pipe.execute()

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._errors("delete_webhook"):
            removed = self._redis.delete(self._webhook_key(webhook_id))
            self._redis.srem(self._webhook_set_key(), webhook_id)
        return bool(removed)

    def load_webhooks(self) -> list[WebhookConfig]:
        with self._errors("load_webhooks"):
            results: list[WebhookConfig] = []
            for wh_id in self._redis.smembers(self._webhook_set_key()):
                data = self._redis.get(self._webhook_key(self._decode(wh_id)))
                if data:
                    results.append(WebhookConfig.model_validate_json(data))
        return sorted(results, key=lambda webhook: webhook.created_at)


class ResilientDeliveryStore(DeliveryStoreProtocol):
    """Store with automatic Redis fallback.

    Mode transitions:
    - "redis": Primary Redis store active
    - "degraded": Started with Redis config but using memory fallback
    - "memory": No Redis configured, using memory only
    """

    def __init__(
        self,
        redis_url: str | None,
        prefix: str = "flexgate:",
        fallback_enabled: bool = True,
        reconnect_interval: int = 60,
        delivery_ttl: int = 604800,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._fallback_enabled = fallback_enabled
        self._reconnect_interval = reconnect_interval
        self._delivery_ttl = delivery_ttl

        self._primary: RedisDeliveryStore | None = None
        self._fallback: MemoryDeliveryStore | None = None
        self._mode: str = "memory"
        self._last_check: float = 0.0

        self._initialize()

    def _connect(self) -> RedisDeliveryStore:
        import redis as redis_lib

        client = redis_lib.from_url(self._redis_url)
        client.ping()
        return RedisDeliveryStore(client, self._prefix, self._delivery_ttl)

    def _initialize(self) -> None:
        """Initialize storage backend."""
        if not self._redis_url:
            logger.info("Delivery store: Using in-memory storage (no Redis URL)")
            self._fallback = MemoryDeliveryStore()
            self._mode = "memory"
            return

        try:
            self._primary = self._connect()
            self._mode = "redis"
            logger.info(f"Delivery store: Redis ({self._redis_url})")

        except Exception as e:
            if not self._fallback_enabled:
                raise RuntimeError(
                    f"Delivery Redis store unavailable: {e}. "
                    "Set FLEXGATE_FALLBACK_ENABLED=true for degraded mode."
                ) from e

            self._fallback = MemoryDeliveryStore()
            self._mode = "degraded"
            self._last_check = time.monotonic()
            logger.warning(
                "Delivery Redis unavailable - using in-memory fallback. "
                "Delivery logs will not persist across restarts."
            )

    @property
    def mode(self) -> str:
        """Current storage mode: 'redis', 'memory', or 'degraded'."""
        return self._mode

    @property
    def active_store(self) -> DeliveryStoreProtocol:
        """Get the currently active store."""
        if self._mode == "degraded":
            self._try_recover()
        if self._mode == "redis" and self._primary:
            return self._primary
        if self._fallback:
            return self._fallback
        raise RuntimeError("No delivery store available")

    def _try_recover(self) -> bool:
        """Attempt Redis reconnection.

        Rows written to the fallback while degraded are copied into Redis
        before switching over, so later updates and reads still find them.
        """
        if self._mode != "degraded" or not self._redis_url:
            return False

        now = time.monotonic()
        if now - self._last_check < self._reconnect_interval:
            return False

        self._last_check = now

        try:
            primary = self._connect()
        except Exception:
            return False

        try:
            migrated = self._migrate_fallback(primary)
        except PersistenceError as e:
            logger.warning(f"Delivery Redis reachable but migration failed, staying degraded: {e}")
            return False

        self._primary = primary
        self._fallback = MemoryDeliveryStore()
        self._mode = "redis"
        logger.info(f"Delivery Redis connection recovered (migrated {migrated} rows)")
        return True

    def _migrate_fallback(self, primary: RedisDeliveryStore) -> int:
        if self._fallback is None:
            return 0
        webhooks = self._fallback.load_webhooks()
        deliveries = self._fallback.all_deliveries()
        for webhook in webhooks:
            primary.save_webhook(webhook)
        for delivery in deliveries:
            primary.create_delivery(delivery)
        return len(webhooks) + len(deliveries)

    # Delegate all protocol methods to active store

    def create_delivery(self, delivery: Delivery) -> Delivery:
        return self.active_store.create_delivery(delivery)

    def update_delivery(self, delivery_id: str, **fields: Any) -> Delivery | None:
        return self.active_store.update_delivery(delivery_id, **fields)

    def get_delivery(self, delivery_id: str) -> Delivery | None:
        return self.active_store.get_delivery(delivery_id)

    def find_by_webhook(
        self, webhook_id: str, limit: int = 100, offset: int = 0
    ) -> list[Delivery]:
        return self.active_store.find_by_webhook(webhook_id, limit, offset)

    def find_by_status(self, status: DeliveryStatus, limit: int = 100) -> list[Delivery]:
        return self.active_store.find_by_status(status, limit)

    def get_stats(self, webhook_id: str) -> DeliveryStats:
        return self.active_store.get_stats(webhook_id)

    def delete_older_than(self, days: float) -> int:
        return self.active_store.delete_older_than(days)

    def delete_by_webhook(self, webhook_id: str) -> int:
        return self.active_store.delete_by_webhook(webhook_id)

    def save_webhook(self, webhook: WebhookConfig) -> None:
        self.active_store.save_webhook(webhook)

    def delete_webhook(self, webhook_id: str) -> bool:
        return self.active_store.delete_webhook(webhook_id)

    def load_webhooks(self) -> list[WebhookConfig]:
        return self.active_store.load_webhooks()


def create_store(config: NotificationConfig) -> DeliveryStoreProtocol:
    """Build the store described by configuration."""
    if not config.redis_url:
        return MemoryDeliveryStore()
    return ResilientDeliveryStore(
        redis_url=config.redis_url,
        fallback_enabled=config.fallback_enabled,
        reconnect_interval=config.reconnect_interval,
        delivery_ttl=config.delivery_ttl_days * 86400,
    )
