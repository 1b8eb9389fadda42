"""URL validation for webhook registration.

Security Controls:
    - Scheme restricted to http/https
    - HTTPS required when running in production
    - Hostname required
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from flexgate.errors import ErrorCode, ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "ALLOWED_SCHEMES",
    "ValidatedURL",
    "WebhookURLValidator",
]

ALLOWED_SCHEMES = ("http", "https")


def _rejected(message: str, code: ErrorCode) -> ValidationError:
    logger.warning(f"Webhook URL rejected ({code.value}): {message}")
    return ValidationError(message, code)


@dataclass
class ValidatedURL:
    """Result of URL validation.

    Attributes:
        url: The validated URL
        scheme: Lower-cased scheme
        host: Lower-cased hostname
    """

    url: str
    scheme: str
    host: str


class WebhookURLValidator:
    """Validates webhook URLs before they enter the registry.

    Example:
        >>> validator = WebhookURLValidator(require_https=True)
        >>> validator.validate("https://example.com/webhook").host
        'example.com'

        >>> validator.validate("http://example.com/webhook")
        ValidationError: Webhook URLs must use HTTPS in production

        >>> validator.validate("not-a-url")
        ValidationError: Invalid webhook URL: not-a-url
    """

    def __init__(self, require_https: bool = False) -> None:
        """Initialize URL validator.

        Args:
            require_https: Reject plain HTTP URLs (production mode)
        """
        self.require_https = require_https

    def validate(self, url: str) -> ValidatedURL:
        """Validate a webhook URL.

        Raises:
            ValidationError: E001 for malformed URLs, E002 for HTTP in production
        """
        if not isinstance(url, str) or not url.strip():
            raise _rejected(
                f"Invalid webhook URL: {url!r}",
                ErrorCode.WEBHOOK_URL_INVALID,
            )

        try:
            parsed = urlparse(url)
            # Accessing port validates it
            parsed.port  # noqa: B018
        except ValueError as e:
            raise _rejected(
                f"Invalid webhook URL: {url} ({e})",
                ErrorCode.WEBHOOK_URL_INVALID,
            ) from e

        scheme = parsed.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise _rejected(
                f"Invalid webhook URL: {url} (scheme must be http or https)",
                ErrorCode.WEBHOOK_URL_INVALID,
            )

        if not parsed.hostname:
            raise _rejected(
                f"Invalid webhook URL: {url} (missing hostname)",
                ErrorCode.WEBHOOK_URL_INVALID,
            )

        if self.require_https and scheme != "https":
            raise _rejected(
                "Webhook URLs must use HTTPS in production",
                ErrorCode.WEBHOOK_HTTPS_REQUIRED,
            )

        return ValidatedURL(url=url, scheme=scheme, host=parsed.hostname.lower())
