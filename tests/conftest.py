"""Pytest configuration and shared fixtures for FlexGate notification tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from flexgate.config import NotificationConfig
from flexgate.events import EventBus
from flexgate.webhooks import MemoryDeliveryStore, WebhookDeliveryService, WebhookManager

WEBHOOK_URL = "https://hooks.example.com/flexgate"


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingHandler:
    """MockTransport handler replying with a fixed sequence of status codes.

    The last status repeats once the sequence is exhausted.
    """

    def __init__(self, *statuses: int, body: str = "ok") -> None:
        self.statuses = list(statuses) or [200]
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        index = min(len(self.requests), len(self.statuses) - 1)
        self.requests.append(request)
        return httpx.Response(self.statuses[index], text=self.body)


@pytest.fixture
def config() -> NotificationConfig:
    """Development configuration that ignores the process environment."""
    return NotificationConfig(environment="development", redis_url=None)


@pytest.fixture
def bus() -> EventBus:
    return EventBus(history_size=100)


@pytest.fixture
def store() -> MemoryDeliveryStore:
    return MemoryDeliveryStore()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_manager(
    bus: EventBus,
    store: MemoryDeliveryStore,
    config: NotificationConfig,
    sleeper: SleepRecorder,
) -> Callable[..., WebhookManager]:
    """Factory building a manager whose HTTP calls go to a mock transport."""

    def factory(handler: Callable[[httpx.Request], Any], **kwargs: Any) -> WebhookManager:
        service = WebhookDeliveryService.from_config(
            config, transport=httpx.MockTransport(handler)
        )
        kwargs.setdefault("store", store)
        kwargs.setdefault("config", config)
        kwargs.setdefault("sleep", sleeper)
        return WebhookManager(bus, delivery_service=service, **kwargs)

    return factory


@pytest.fixture
def circuit_payload() -> dict[str, Any]:
    """A complete circuit_breaker.opened payload."""
    return {
        "source": "circuit_breaker",
        "timestamp": "2025-01-01T00:00:00+00:00",
        "route_id": "route_users",
        "route_path": "/api/users",
        "target": "http://users:8080",
        "error_rate": 62.5,
        "threshold": 50.0,
        "failure_count": 5,
        "window_size": 8,
        "state": "open",
    }


@pytest.fixture
def respond() -> type[RecordingHandler]:
    """Build a recording transport handler: ``respond(503)``, ``respond(500, 200)``."""
    return RecordingHandler
