"""Configuration for the notification subsystem.

All configuration is loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "NotificationConfig",
]


class NotificationConfig(BaseSettings):
    """Event bus and webhook delivery configuration.

    Environment Variables:
        FLEXGATE_ENVIRONMENT: Deployment environment (default: development)
        FLEXGATE_EVENT_HISTORY_SIZE: Events kept in bus history (default: 1000)
        FLEXGATE_RECENT_EVENTS_WINDOW: Window for "recent" stats in seconds (default: 300)
        FLEXGATE_DEFAULT_TIMEOUT_MS: Per-attempt HTTP timeout (default: 5000)
        FLEXGATE_MAX_RESPONSE_BODY: Stored response body chars (default: 1000)
        FLEXGATE_REDIS_URL: Redis URL for delivery storage (default: memory only)
        FLEXGATE_FALLBACK_ENABLED: Fall back to memory if Redis is down (default: true)
        FLEXGATE_RECONNECT_INTERVAL: Seconds between Redis reconnects (default: 60)
        FLEXGATE_DELIVERY_TTL_DAYS: Redis TTL for delivery rows (default: 7)
        FLEXGATE_USER_AGENT: User-Agent header for deliveries

    Example:
        >>> config = NotificationConfig()
        >>> config.is_production
        False
        >>> NotificationConfig(environment="production").is_production
        True
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEXGATE_",
        env_file=".env",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        description="Deployment environment; 'production' enforces HTTPS webhooks",
    )

    # Event bus
    event_history_size: int = Field(
        default=1000,
        description="Maximum events retained in the bus history",
        ge=1,
    )
    recent_events_window: int = Field(
        default=300,
        description="Window in seconds counted as recent by bus stats",
        ge=1,
    )

    # Delivery
    default_timeout_ms: int = Field(
        default=5000,
        description="Default per-attempt HTTP timeout in milliseconds",
        ge=1,
    )
    max_response_body: int = Field(
        default=1000,
        description="Maximum response body characters stored per delivery",
        ge=0,
    )
    user_agent: str = Field(
        default="FlexGate-Webhooks/1.0",
        description="User-Agent header sent with every delivery",
    )

    # Storage
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for delivery storage (memory store when unset)",
    )
    fallback_enabled: bool = Field(
        default=True,
        description="Use in-memory storage if Redis is unavailable",
    )
    reconnect_interval: int = Field(
        default=60,
        description="Seconds between Redis reconnection attempts in degraded mode",
        ge=1,
    )
    delivery_ttl_days: int = Field(
        default=7,
        description="Days a delivery row lives in Redis",
        ge=1,
    )

    @property
    def is_production(self) -> bool:
        """Whether production-only rules (HTTPS webhooks) apply."""
        return self.environment.strip().lower() == "production"
