"""
Tests for settings validation, the error contract and logging setup
"""
import logging
import pytest
import structlog
from decimal import Decimal
from pydantic import ValidationError
from uuid import uuid4

from parking_reservations.config import Settings
from parking_reservations.exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    PaymentFailedError,
    ReservationError,
    SlotUnavailableError,
    StorageConflictError,
)
from parking_reservations.logging_config import add_app_context, configure_logging
from parking_reservations.pricing import CatalogDiscountPolicy

from conftest import at


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.payment_timeout_minutes == 30
        assert settings.lock_backend == "local"
        assert settings.currency == "INR"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_TIMEOUT_MINUTES", "45")
        monkeypatch.setenv("LOCK_BACKEND", "REDIS")
        settings = Settings()
        assert settings.payment_timeout_minutes == 45
        assert settings.lock_backend == "redis"

    @pytest.mark.parametrize("field,value", [
        ("log_level", "LOUD"),
        ("lock_backend", "zookeeper"),
        ("environment", "moon"),
        ("currency", "RUPEES"),
        ("storage_retry_attempts", 0),
    ])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_discount_catalog_from_settings(self):
        policy = CatalogDiscountPolicy.from_settings(
            Settings(discount_codes={"WELCOME": {"percent": "20"}})
        )
        assert policy.resolve("WELCOME", Decimal("100")) == Decimal("20")


class TestErrors:

    def test_every_error_is_a_reservation_error(self):
        for error in (
            NotFoundError("Reservation", uuid4()),
            ForbiddenError(),
            IllegalTransitionError("nope", "cancelled", "approve"),
            SlotUnavailableError(uuid4(), at(9), at(11)),
            PaymentFailedError(uuid4(), "declined"),
            StorageConflictError(),
        ):
            assert isinstance(error, ReservationError)
            assert error.to_dict()["error"] == error.error_code

    def test_only_storage_conflicts_are_retryable(self):
        assert StorageConflictError().retryable is True
        assert SlotUnavailableError(uuid4()).retryable is False
        assert IllegalTransitionError("nope", "pending", "check_in").retryable is False

    def test_illegal_transition_details(self):
        error = IllegalTransitionError("Cannot approve", "cancelled", "approve")
        payload = error.to_dict()
        assert payload["error"] == "ILLEGAL_TRANSITION"
        assert payload["details"]["current_state"] == "cancelled"
        assert payload["details"]["event"] == "approve"


class TestLogging:

    def test_configure_routes_stdlib_through_structlog(self):
        configure_logging(log_level="debug", json_logs=True)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_app_context_is_added_once(self):
        event = add_app_context(None, "info", {"event": "reservation_created"})
        assert event["app"]
        assert "environment" in event

        kept = add_app_context(None, "info", {"event": "x", "app": "worker"})
        assert kept["app"] == "worker"
