"""Tests for the webhook manager: registry, queues, retries and stats."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from flexgate.config import NotificationConfig
from flexgate.errors import ErrorCode, NotFoundError, PersistenceError, ValidationError
from flexgate.events import EventBus, EventType
from flexgate.webhooks import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    DeliveryStoreProtocol,
    ManagerStats,
    MemoryDeliveryStore,
    RetryPolicy,
    WebhookConfig,
    WebhookEnvelope,
    WebhookManager,
)
from flexgate.webhooks.signature import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    verify_body,
)

URL = "https://hooks.example.com/flexgate"

ManagerFactory = Callable[..., WebhookManager]


def register(manager: WebhookManager, **overrides: Any) -> WebhookConfig:
    request = {"url": URL, "events": ["*"], "secret": "s3cret", **overrides}
    return manager.register_webhook(request)


def config_change(bus: EventBus, entity_id: str = "route_1") -> str:
    return bus.emit(
        EventType.CONFIG_CHANGED,
        {"source": "config_loader", "change_type": "route_added", "entity_id": entity_id},
    )


class TestRegistration:
    """Tests for register/update/unregister."""

    def test_register_fills_defaults(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())

        webhook = manager.register_webhook({"url": URL, "events": ["circuit_breaker.opened"]})

        assert webhook.id.startswith("wh_")
        assert len(webhook.secret) == 64
        assert webhook.enabled is True
        assert webhook.retry_policy == RetryPolicy()
        assert webhook.timeout_ms == 5000
        assert webhook.headers == {}
        assert manager.get_webhook(webhook.id) == webhook

    def test_register_empty_secret_generated(
        self, make_manager: ManagerFactory, respond: Any
    ) -> None:
        webhook = register(make_manager(respond()), secret="")
        assert len(webhook.secret) == 64

    def test_register_explicit_fields(self, make_manager: ManagerFactory, respond: Any) -> None:
        webhook = register(
            make_manager(respond()),
            id="wh_ops",
            retry_policy={"max_retries": 1, "initial_delay_ms": 10},
            timeout_ms=250,
        )

        assert webhook.id == "wh_ops"
        assert webhook.secret == "s3cret"
        assert webhook.retry_policy.max_retries == 1
        assert webhook.retry_policy.backoff_multiplier == 2.0
        assert webhook.timeout_ms == 250

    def test_register_invalid_url(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())

        with pytest.raises(ValidationError, match="Invalid webhook URL"):
            register(manager, url="not-a-url")

        assert manager.get_all_webhooks() == []

    def test_register_invalid_fields(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())

        with pytest.raises(ValidationError) as exc_info:
            register(manager, events=[])

        assert exc_info.value.code == ErrorCode.FIELD_VALIDATION_FAILED

    def test_register_https_required_in_production(
        self, make_manager: ManagerFactory, respond: Any
    ) -> None:
        manager = make_manager(respond(), config=NotificationConfig(environment="production"))

        with pytest.raises(ValidationError) as exc_info:
            register(manager, url="http://hooks.example.com/flexgate")

        assert exc_info.value.code == ErrorCode.WEBHOOK_HTTPS_REQUIRED

    def test_reregister_replaces_and_keeps_created_at(
        self, make_manager: ManagerFactory, respond: Any
    ) -> None:
        manager = make_manager(respond())
        first = register(manager, id="wh_1")

        second = register(manager, id="wh_1", url="https://other.example.com/hook")

        assert len(manager.get_all_webhooks()) == 1
        assert second.url == "https://other.example.com/hook"
        assert second.created_at == first.created_at

    def test_register_persists(
        self, make_manager: ManagerFactory, respond: Any, store: MemoryDeliveryStore
    ) -> None:
        register(make_manager(respond()), id="wh_1")
        assert [w.id for w in store.load_webhooks()] == ["wh_1"]

    def test_update_merges_fields(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())
        original = register(manager, id="wh_1", headers={"X-Team": "ops"})

        updated = manager.update_webhook(
            "wh_1", {"id": "wh_other", "enabled": False, "retry_policy": {"max_retries": 5}}
        )

        assert updated.id == "wh_1"
        assert updated.enabled is False
        assert updated.retry_policy.max_retries == 5
        assert updated.retry_policy.initial_delay_ms == 1000
        assert updated.headers == {"X-Team": "ops"}
        assert updated.url == original.url
        assert updated.created_at == original.created_at
        assert manager.get_webhook("wh_other") is None

    def test_update_validates_url(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())
        register(manager, id="wh_1")

        with pytest.raises(ValidationError, match="Invalid webhook URL"):
            manager.update_webhook("wh_1", {"url": "ftp://example.com"})

        webhook = manager.get_webhook("wh_1")
        assert webhook is not None
        assert webhook.url == URL

    def test_update_unknown(self, make_manager: ManagerFactory, respond: Any) -> None:
        with pytest.raises(NotFoundError, match="wh_missing"):
            make_manager(respond()).update_webhook("wh_missing", {"enabled": False})

    def test_unregister_idempotent(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())
        register(manager, id="wh_1")

        assert manager.unregister_webhook("wh_1") is True
        assert manager.unregister_webhook("wh_1") is False
        assert manager.get_webhook("wh_1") is None

    def test_load_webhooks(
        self, make_manager: ManagerFactory, respond: Any, store: MemoryDeliveryStore
    ) -> None:
        store.save_webhook(
            WebhookConfig(id="wh_saved", url=URL, events=["*"], secret="s3cret")
        )
        manager = make_manager(respond())

        assert manager.load_webhooks() == 1
        assert manager.get_webhook("wh_saved") is not None


class TestDelivery:
    """Tests for event fan-out and delivery."""

    @pytest.mark.asyncio
    async def test_failed_delivery_end_to_end(
        self,
        bus: EventBus,
        make_manager: ManagerFactory,
        respond: Any,
        circuit_payload: dict[str, Any],
    ) -> None:
        """A 503 with no retries records one failed attempt."""
        handler = respond(503, body="unavailable")
        manager = make_manager(handler)
        webhook = register(
            manager, events=["circuit_breaker.opened"], retry_policy={"max_retries": 0}
        )

        bus.emit(EventType.CIRCUIT_BREAKER_OPENED, circuit_payload)
        await manager.join()

        assert len(handler.requests) == 1
        request = handler.requests[0]
        assert request.headers[EVENT_HEADER] == "circuit_breaker.opened"
        assert verify_body(request.content, request.headers[SIGNATURE_HEADER], "s3cret")

        body = json.loads(request.content)
        assert body["event"] == "circuit_breaker.opened"
        assert body["data"] == circuit_payload
        assert body["id"] == request.headers[DELIVERY_HEADER]

        logs = manager.get_delivery_logs(webhook.id)
        assert len(logs) == 1
        assert logs[0].status == DeliveryStatus.FAILED
        assert logs[0].attempts == 1
        assert logs[0].response_code == 503
        assert logs[0].response_body == "unavailable"
        await manager.close()

    @pytest.mark.asyncio
    async def test_successful_delivery(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any, sleeper: Any
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        webhook = register(manager)

        config_change(bus)
        await manager.join()

        [delivery] = manager.get_delivery_logs(webhook.id)
        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempts == 1
        assert delivery.response_code == 200
        assert delivery.delivered_at is not None
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_retry_exhaustion(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any, sleeper: Any
    ) -> None:
        """Default policy makes four attempts with 1s, 2s, 4s waits."""
        handler = respond(500)
        manager = make_manager(handler)
        webhook = register(manager)

        config_change(bus)
        await manager.join()

        assert len(handler.requests) == 4
        assert sleeper.calls == [1.0, 2.0, 4.0]
        assert len({r.headers[DELIVERY_HEADER] for r in handler.requests}) == 1

        [delivery] = manager.get_delivery_logs(webhook.id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 4
        assert delivery.error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_success_after_retries(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any, sleeper: Any
    ) -> None:
        handler = respond(500, 502, 200)
        manager = make_manager(handler)
        webhook = register(manager)

        config_change(bus)
        await manager.join()

        [delivery] = manager.get_delivery_logs(webhook.id)
        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempts == 3
        assert delivery.error is None
        assert sleeper.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_subscription_filtering(
        self,
        bus: EventBus,
        make_manager: ManagerFactory,
        respond: Any,
        circuit_payload: dict[str, Any],
    ) -> None:
        """Only subscribed event types are delivered."""
        handler = respond(200)
        manager = make_manager(handler)
        register(manager, id="wh_config", events=["config.changed"])

        bus.emit(EventType.CIRCUIT_BREAKER_OPENED, circuit_payload)
        config_change(bus)
        await manager.join()

        assert [r.headers[EVENT_HEADER] for r in handler.requests] == ["config.changed"]

    @pytest.mark.asyncio
    async def test_wildcard_receives_all(
        self,
        bus: EventBus,
        make_manager: ManagerFactory,
        respond: Any,
        circuit_payload: dict[str, Any],
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        register(manager, events=["*"])

        bus.emit(EventType.CIRCUIT_BREAKER_OPENED, circuit_payload)
        config_change(bus)
        await manager.join()

        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_disabled_webhook_skipped(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        webhook = register(manager, enabled=False)

        config_change(bus)
        await manager.join()

        assert handler.requests == []
        assert manager.get_delivery_logs(webhook.id) == []

    @pytest.mark.asyncio
    async def test_per_webhook_fifo(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """Deliveries to one webhook follow event order."""
        handler = respond(200)
        manager = make_manager(handler)
        register(manager)

        for entity_id in ("a", "b", "c"):
            config_change(bus, entity_id)
        await manager.join()

        entity_ids = [json.loads(r.content)["data"]["entity_id"] for r in handler.requests]
        assert entity_ids == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_slow_webhook_does_not_block_others(
        self, bus: EventBus, make_manager: ManagerFactory
    ) -> None:
        gate = asyncio.Event()
        fast_seen = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "slow.example.com":
                await gate.wait()
            else:
                fast_seen.set()
            return httpx.Response(200)

        manager = make_manager(handler)
        register(manager, id="wh_slow", url="https://slow.example.com/hook")
        register(manager, id="wh_fast", url="https://fast.example.com/hook")

        config_change(bus)
        await asyncio.wait_for(fast_seen.wait(), timeout=1)

        assert not gate.is_set()
        gate.set()
        await manager.join()
        assert manager.get_stats().active_workers == 0

    @pytest.mark.asyncio
    async def test_custom_headers_sent(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        register(manager, headers={"X-Team": "platform", SIGNATURE_HEADER: "sha256=forged"})

        config_change(bus)
        await manager.join()

        request = handler.requests[0]
        assert request.headers["X-Team"] == "platform"
        assert verify_body(request.content, request.headers[SIGNATURE_HEADER], "s3cret")


class TestUnregisterInFlight:
    """Tests for deliveries whose webhook disappears."""

    @pytest.mark.asyncio
    async def test_queued_delivery_dropped_on_unregister(
        self,
        bus: EventBus,
        make_manager: ManagerFactory,
        respond: Any,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        webhook = register(manager)

        config_change(bus)
        with caplog.at_level(logging.WARNING, logger="flexgate.webhooks.manager"):
            manager.unregister_webhook(webhook.id)
        await manager.join()

        assert handler.requests == []
        assert "dropping delivery" in caplog.text
        [delivery] = manager.get_delivery_logs(webhook.id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.error == "webhook unregistered"
        assert manager.get_stats(webhook.id).pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_dropped_between_retries(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(500)
        manager: WebhookManager

        async def sleep_then_unregister(seconds: float) -> None:
            manager.unregister_webhook("wh_1")

        manager = make_manager(handler, sleep=sleep_then_unregister)
        register(manager, id="wh_1")

        config_change(bus)
        await manager.join()

        assert len(handler.requests) == 1
        [delivery] = manager.get_delivery_logs("wh_1")
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.error == "webhook unregistered"
        assert delivery.attempts == 1

    @pytest.mark.asyncio
    async def test_reregistered_id_does_not_receive_queued_event(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """A new registration under the same id never gets the old queue."""
        handler = respond(200)
        manager = make_manager(handler)
        register(manager, id="wh_1")

        config_change(bus)
        manager.unregister_webhook("wh_1")
        register(
            manager,
            id="wh_1",
            url="https://new-owner.example.com/hook",
            events=["health.check_failed"],
            secret="other",
        )
        await manager.join()

        assert handler.requests == []
        [delivery] = manager.get_delivery_logs("wh_1")
        assert delivery.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_replaced_registration_drops_queued_event(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        register(manager, id="wh_1")

        config_change(bus)
        register(manager, id="wh_1", url="https://new-owner.example.com/hook")
        await manager.join()

        assert handler.requests == []
        [delivery] = manager.get_delivery_logs("wh_1")
        assert delivery.error == "webhook unregistered"

    @pytest.mark.asyncio
    async def test_reregister_during_backoff_stops_retries(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(500)
        manager: WebhookManager

        async def sleep_then_reregister(seconds: float) -> None:
            manager.unregister_webhook("wh_1")
            register(manager, id="wh_1", events=["health.check_failed"])

        manager = make_manager(handler, sleep=sleep_then_reregister)
        register(manager, id="wh_1", retry_policy={"max_retries": 2})

        config_change(bus)
        await manager.join()

        assert len(handler.requests) == 1
        [delivery] = manager.get_delivery_logs("wh_1")
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 1

    @pytest.mark.asyncio
    async def test_new_registration_delivers_after_old_retry_dropped(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """Events for the new registration still drain on the shared worker."""
        handler = respond(500, 200)
        manager: WebhookManager

        async def sleep_then_reregister(seconds: float) -> None:
            manager.unregister_webhook("wh_1")
            register(manager, id="wh_1", url="https://new-owner.example.com/hook")
            config_change(bus, "route_2")

        manager = make_manager(handler, sleep=sleep_then_reregister)
        register(manager, id="wh_1")

        config_change(bus, "route_1")
        await manager.join()

        assert [str(r.url) for r in handler.requests] == [
            URL,
            "https://new-owner.example.com/hook",
        ]
        logs = manager.get_delivery_logs("wh_1")
        assert [(d.payload.data["entity_id"], d.status) for d in logs] == [
            ("route_2", DeliveryStatus.SUCCESS),
            ("route_1", DeliveryStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_update_does_not_affect_in_progress_delivery(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """Retries keep using the configuration they started with."""
        handler = respond(500, 200)
        manager: WebhookManager

        async def sleep_then_update(seconds: float) -> None:
            manager.update_webhook("wh_1", {"url": "https://moved.example.com/hook"})

        manager = make_manager(handler, sleep=sleep_then_update)
        register(manager, id="wh_1")

        config_change(bus)
        await manager.join()

        assert [str(r.url) for r in handler.requests] == [URL, URL]


class TestStatsAndLogs:
    """Tests for stats, logs, test sends and retention."""

    @pytest.mark.asyncio
    async def test_webhook_stats(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """Three deliveries, two successful, one failed."""
        manager = make_manager(respond(200, 200, 500))
        webhook = register(manager, retry_policy={"max_retries": 0})

        for entity_id in ("a", "b", "c"):
            config_change(bus, entity_id)
        await manager.join()

        stats = manager.get_stats(webhook.id)
        assert isinstance(stats, DeliveryStats)
        assert stats.total_deliveries == 3
        assert stats.successful_deliveries == 2
        assert stats.failed_deliveries == 1
        assert stats.pending_deliveries == 0
        assert stats.average_attempts == 1.0
        assert stats.by_event_type == {"config.changed": 3}

    def test_manager_stats(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond())
        register(manager, id="wh_1")
        register(manager, id="wh_2", enabled=False)

        stats = manager.get_stats()

        assert isinstance(stats, ManagerStats)
        assert stats.total_webhooks == 2
        assert stats.enabled_webhooks == 1
        assert stats.pending_deliveries == 0
        assert stats.active_workers == 0

    @pytest.mark.asyncio
    async def test_delivery_logs_newest_first(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        manager = make_manager(respond(200))
        webhook = register(manager)

        for entity_id in ("a", "b", "c"):
            config_change(bus, entity_id)
        await manager.join()

        logs = manager.get_delivery_logs(webhook.id, limit=2)
        assert [d.payload.data["entity_id"] for d in logs] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_test_webhook(
        self, make_manager: ManagerFactory, respond: Any, store: MemoryDeliveryStore
    ) -> None:
        """Test sends bypass the queue and are not recorded."""
        handler = respond(200)
        manager = make_manager(handler)
        webhook = register(manager, events=["health.check_failed"])

        delivery = await manager.test_webhook(webhook.id)

        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.attempts == 1
        request = handler.requests[0]
        assert request.headers[EVENT_HEADER] == "config.changed"
        data = json.loads(request.content)["data"]
        assert data["source"] == "webhook_test"
        assert data["change_type"] == "route_updated"
        assert data["entity_id"] == "test_route"
        assert data["changes"] == {"test": True}
        assert store.find_by_webhook(webhook.id) == []

    @pytest.mark.asyncio
    async def test_test_webhook_failure(self, make_manager: ManagerFactory, respond: Any) -> None:
        manager = make_manager(respond(404))
        webhook = register(manager)

        delivery = await manager.test_webhook(webhook.id)

        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.response_code == 404

    @pytest.mark.asyncio
    async def test_test_webhook_unknown(self, make_manager: ManagerFactory, respond: Any) -> None:
        with pytest.raises(NotFoundError):
            await make_manager(respond()).test_webhook("wh_missing")

    def test_purge_deliveries(
        self, make_manager: ManagerFactory, respond: Any, store: MemoryDeliveryStore
    ) -> None:
        old = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()
        store.create_delivery(
            Delivery(
                id="del_old",
                webhook_id="wh_1",
                event_type=EventType.CONFIG_CHANGED,
                payload=WebhookEnvelope(
                    id="del_old", event=EventType.CONFIG_CHANGED, timestamp=old, data={}
                ),
                created_at=old,
            )
        )

        assert make_manager(respond()).purge_deliveries(7) == 1
        assert store.get_delivery("del_old") is None


class TestStoreFailures:
    """A failing store never blocks delivery."""

    @pytest.fixture
    def failing_store(self) -> MagicMock:
        store = MagicMock(spec=DeliveryStoreProtocol)
        for name in (
            "create_delivery",
            "update_delivery",
            "get_stats",
            "find_by_webhook",
            "delete_older_than",
            "save_webhook",
            "delete_webhook",
            "load_webhooks",
        ):
            getattr(store, name).side_effect = PersistenceError("store down")
        return store

    @pytest.mark.asyncio
    async def test_delivery_continues(
        self,
        bus: EventBus,
        make_manager: ManagerFactory,
        respond: Any,
        failing_store: MagicMock,
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler, store=failing_store)
        webhook = register(manager)

        config_change(bus)
        await manager.join()

        assert len(handler.requests) == 1
        assert manager.unregister_webhook(webhook.id) is True

    def test_reads_degrade(
        self, make_manager: ManagerFactory, respond: Any, failing_store: MagicMock
    ) -> None:
        manager = make_manager(respond(), store=failing_store)

        stats = manager.get_stats("wh_1")

        assert isinstance(stats, DeliveryStats)
        assert stats.total_deliveries == 0
        assert manager.get_delivery_logs("wh_1") == []
        assert manager.purge_deliveries(7) == 0
        assert manager.load_webhooks() == 0


class TestLifecycle:
    """Tests for join and close."""

    def test_join_starts_workers_for_queued_deliveries(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        """Events emitted without a running loop wait for join."""
        handler = respond(200)
        manager = make_manager(handler)
        register(manager)

        config_change(bus)
        assert manager.get_stats().pending_deliveries == 1
        assert handler.requests == []

        async def drain() -> None:
            await manager.join()
            await manager.close()

        asyncio.run(drain())

        assert len(handler.requests) == 1
        assert manager.get_stats().pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_close_stops_observing(
        self, bus: EventBus, make_manager: ManagerFactory, respond: Any
    ) -> None:
        handler = respond(200)
        manager = make_manager(handler)
        register(manager)

        await manager.close()
        config_change(bus)
        await manager.join()

        assert handler.requests == []
        assert bus.subscriber_count("*") == 0

    @pytest.mark.asyncio
    async def test_from_config(self, bus: EventBus) -> None:
        manager = WebhookManager.from_config(bus, NotificationConfig(redis_url=None))

        assert isinstance(manager.store, MemoryDeliveryStore)
        assert bus.subscriber_count("*") == 1
        await manager.close()
