"""Tests for the error code catalog."""

from __future__ import annotations

import pytest

from flexgate.errors import (
    ERROR_REGISTRY,
    DeliveryError,
    ErrorCode,
    NotFoundError,
    PersistenceError,
    ValidationError,
    get_error_message,
    get_error_status,
)


class TestErrorRegistry:
    """Tests for ERROR_REGISTRY."""

    def test_every_code_registered(self) -> None:
        assert set(ERROR_REGISTRY) == set(ErrorCode)

    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (ErrorCode.WEBHOOK_URL_INVALID, 400),
            (ErrorCode.WEBHOOK_HTTPS_REQUIRED, 400),
            (ErrorCode.FIELD_VALIDATION_FAILED, 422),
            (ErrorCode.WEBHOOK_NOT_FOUND, 404),
            (ErrorCode.DELIVERY_FAILED, 502),
            (ErrorCode.STORE_UNAVAILABLE, 503),
        ],
    )
    def test_status(self, code: ErrorCode, status: int) -> None:
        assert get_error_status(code) == status

    def test_default_message(self) -> None:
        assert get_error_message(ErrorCode.WEBHOOK_NOT_FOUND) == "Webhook not found"


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_default_codes(self) -> None:
        assert ValidationError().code == ErrorCode.FIELD_VALIDATION_FAILED
        assert NotFoundError().code == ErrorCode.WEBHOOK_NOT_FOUND
        assert DeliveryError().code == ErrorCode.DELIVERY_FAILED
        assert PersistenceError().code == ErrorCode.STORE_UNAVAILABLE

    def test_default_message_from_registry(self) -> None:
        err = PersistenceError()
        assert str(err) == "Delivery store temporarily unavailable"

    def test_explicit_code(self) -> None:
        err = ValidationError("Invalid webhook URL: x", ErrorCode.WEBHOOK_URL_INVALID)

        assert err.http_status == 400
        assert err.to_dict() == {
            "code": "E001",
            "error": "webhook_url_invalid",
            "message": "Invalid webhook URL: x",
            "recoverable": False,
        }

    def test_delivery_error_details(self) -> None:
        err = DeliveryError("HTTP 503", status_code=503, response_body="busy")

        assert err.status_code == 503
        assert err.response_body == "busy"
        assert err.to_dict()["recoverable"] is True
