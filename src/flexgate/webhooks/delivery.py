"""Single-attempt HTTP delivery of signed webhook envelopes.

Handles the HTTP side of a delivery attempt: envelope signing, headers,
per-attempt timeouts and result handling. Retry scheduling lives in the
manager; this service performs exactly one POST per call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from flexgate.errors import DeliveryError
from flexgate.webhooks.signature import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    attach_signature,
    serialize_envelope,
    sign,
)

if TYPE_CHECKING:
    from flexgate.config import NotificationConfig
    from flexgate.webhooks.models import WebhookConfig, WebhookEnvelope

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_USER_AGENT",
    "DeliveryResult",
    "WebhookDeliveryService",
]

DEFAULT_USER_AGENT = "FlexGate-Webhooks/1.0"

# Custom webhook headers never replace these
_RESERVED_HEADERS = frozenset(
    name.lower() for name in (SIGNATURE_HEADER, EVENT_HEADER, DELIVERY_HEADER)
)


@dataclass
class DeliveryResult:
    """Outcome of one POST to a webhook endpoint."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: float = 0.0


class WebhookDeliveryService:
    """Sends signed envelopes to webhook endpoints.

    Uses a shared httpx.AsyncClient for connection pooling. Tests inject an
    ``httpx.MockTransport`` through ``transport``.

    Example:
        >>> service = WebhookDeliveryService()
        >>> result = await service.deliver(webhook, envelope)
        >>> if not result.success:
        ...     logger.warning(result.error)
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        max_response_size: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize delivery service.

        Args:
            user_agent: User-Agent header for every request
            max_response_size: Max response body characters to keep
            transport: Optional httpx transport (mocking, proxies)
        """
        self.user_agent = user_agent
        self.max_response_size = max_response_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: NotificationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> WebhookDeliveryService:
        return cls(
            user_agent=config.user_agent,
            max_response_size=config.max_response_body,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_request(
        self, webhook: WebhookConfig, envelope: WebhookEnvelope
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize, sign and assemble headers for one attempt.

        Returns:
            Tuple of (body bytes, headers)
        """
        unsigned = serialize_envelope(envelope)
        signature = sign(unsigned, webhook.secret)
        body = attach_signature(unsigned, signature)

        custom = {
            name: value
            for name, value in webhook.headers.items()
            if name.lower() not in _RESERVED_HEADERS
        }
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            **custom,
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: envelope.event.value,
            DELIVERY_HEADER: envelope.id,
        }
        return body, headers

    def _truncate(self, text: str) -> str:
        return text[: self.max_response_size]

    async def post(self, webhook: WebhookConfig, envelope: WebhookEnvelope) -> httpx.Response:
        """Send one signed POST.

        Returns:
            The 2xx response

        Raises:
            DeliveryError: On transport failure, timeout, or non-2xx status
        """
        body, headers = self.build_request(webhook, envelope)
        client = await self._get_client()

        try:
            response = await client.post(
                webhook.url,
                content=body,
                headers=headers,
                timeout=httpx.Timeout(webhook.timeout_ms / 1000),
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timeout after {webhook.timeout_ms}ms: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"HTTP error: {type(e).__name__}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=self._truncate(response.text),
            )
        return response

    async def deliver(
        self, webhook: WebhookConfig, envelope: WebhookEnvelope
    ) -> DeliveryResult:
        """Deliver an envelope once, never raising.

        Returns:
            DeliveryResult; failures are reported, not raised
        """
        start_time = time.monotonic()

        try:
            response = await self.post(webhook, envelope)
        except DeliveryError as e:
            return DeliveryResult(
                success=False,
                status_code=e.status_code,
                response_body=e.response_body,
                error=e.message,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )
        except Exception as e:
            logger.exception(f"Unexpected error delivering webhook {webhook.id}: {e}")
            return DeliveryResult(
                success=False,
                error=f"Unexpected error: {type(e).__name__}: {e}",
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        return DeliveryResult(
            success=True,
            status_code=response.status_code,
            response_body=self._truncate(response.text),
            duration_ms=(time.monotonic() - start_time) * 1000,
        )
