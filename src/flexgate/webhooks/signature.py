"""HMAC-SHA256 signature generation and verification for webhooks.

Signature Format:
    X-Webhook-Signature: sha256=<hex digest>

The digest is computed over the exact bytes of the serialized envelope
``{"id", "event", "timestamp", "data"}``. The signature is then spliced
in as a final ``"signature"`` member, so the signed bytes are a literal
prefix of the transmitted body (up to the closing brace). Receivers must
recover them with ``extract_signed_bytes`` rather than re-serializing,
since key order or whitespace differences would break verification.

Example:
    >>> from flexgate.webhooks.signature import sign, verify
    >>> payload = b'{"id":"del_123","event":"config.changed"}'
    >>> signature = sign(payload, "s3cret")
    >>> signature.startswith("sha256=")
    True
    >>> verify(payload, signature, "s3cret")
    True
    >>> verify(payload, signature, "other")
    False
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flexgate.webhooks.models import WebhookEnvelope

__all__ = [
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "SIGNATURE_PREFIX",
    "attach_signature",
    "extract_signed_bytes",
    "serialize_envelope",
    "sign",
    "verify",
    "verify_body",
]

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"

SIGNATURE_PREFIX = "sha256="

# Length of a hex-encoded SHA-256 digest
_DIGEST_HEX_LENGTH = 64

_SIGNATURE_MEMBER = b',"signature":'


def sign(payload: bytes, secret: str) -> str:
    """Sign payload bytes.

    Args:
        payload: Exact bytes that will be transmitted (without signature)
        secret: Webhook secret

    Returns:
        ``"sha256=" + hex(HMAC_SHA256(secret, payload))``
    """
    digest = hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Verify a signature in constant time.

    Malformed input (non-string signature, missing prefix, wrong length,
    non-hex digest, non-bytes payload) yields False rather than raising.
    """
    if not isinstance(payload, (bytes, bytearray)):
        return False
    if not isinstance(signature, str) or not isinstance(secret, str):
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        return False

    provided = signature[len(SIGNATURE_PREFIX) :]
    if len(provided) != _DIGEST_HEX_LENGTH:
        return False
    try:
        bytes.fromhex(provided)
    except ValueError:
        return False

    expected = sign(bytes(payload), secret)
    # Timing-safe comparison
    return hmac.compare_digest(expected.encode("ascii"), signature.lower().encode("ascii"))


def serialize_envelope(envelope: WebhookEnvelope) -> bytes:
    """Serialize an envelope to the compact JSON bytes that get signed."""
    return envelope.model_dump_json().encode("utf-8")


def attach_signature(unsigned: bytes, signature: str) -> bytes:
    """Append the signature as the last member of a serialized JSON object.

    Args:
        unsigned: Serialized envelope (a JSON object ending in ``}``)
        signature: Value returned by ``sign(unsigned, secret)``

    Returns:
        Body bytes whose prefix is exactly ``unsigned[:-1]``
    """
    if not unsigned.endswith(b"}"):
        raise ValueError("Envelope must be a serialized JSON object")
    return unsigned[:-1] + _SIGNATURE_MEMBER + json.dumps(signature).encode("ascii") + b"}"


def extract_signed_bytes(body: bytes) -> bytes:
    """Recover the signed bytes from a received body.

    Inverse of ``attach_signature``: strips the trailing signature member
    without parsing or re-serializing the JSON.

    Raises:
        ValueError: If the body carries no trailing signature member
    """
    index = body.rfind(_SIGNATURE_MEMBER)
    if index == -1 or not body.endswith(b"}"):
        raise ValueError("Body has no trailing signature member")
    return body[:index] + b"}"


def verify_body(body: bytes, signature: str, secret: str) -> bool:
    """Receiver helper: verify a raw request body against its signature header."""
    try:
        signed = extract_signed_bytes(body)
    except (TypeError, ValueError, AttributeError):
        return False
    return verify(signed, signature, secret)
