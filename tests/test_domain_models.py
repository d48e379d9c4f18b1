"""
Tests for domain and wire models.

Covers validation in the frozen dataclasses and pydantic models.
"""

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from renewal_engine.models.api import Checkpoint, ClientStatus, GatewayTransaction
from renewal_engine.models.domain import (
    CheckpointKey,
    CheckpointWindow,
    ClientSnapshot,
    PaymentEvent,
    RenewalWrite,
    days_until,
    to_money,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class TestMoneyAndDays:
    """Tests for the numeric helpers."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("10", Decimal("10.00")),
            ("10.005", Decimal("10.01")),
            ("10.004", Decimal("10.00")),
            (0.1, Decimal("0.10")),
            (7, Decimal("7.00")),
        ],
    )
    def test_to_money(self, value, expected):
        assert to_money(value) == expected

    def test_days_until_rounds_up(self):
        assert days_until(NOW + timedelta(minutes=30), NOW) == 1
        assert days_until(NOW + timedelta(days=2), NOW) == 2
        assert days_until(NOW - timedelta(hours=12), NOW) == 0


class TestClientSnapshot:
    def _snapshot(self, balance="0", rate="1000") -> ClientSnapshot:
        return ClientSnapshot(
            client_id=uuid4(),
            name="Test",
            wallet_balance=Decimal(balance),
            monthly_rate=Decimal(rate),
            subscription_end_date=NOW,
            status=ClientStatus.ACTIVE,
            package_name="Home 10Mbps",
        )

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError, match="balance"):
            self._snapshot(balance="-0.01")

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError, match="rate"):
            self._snapshot(rate="-1")

    def test_frozen(self):
        snapshot = self._snapshot()
        with pytest.raises(AttributeError):
            snapshot.wallet_balance = Decimal("5")  # type: ignore[misc]


class TestPaymentEvent:
    def _event(self, reference="TXN1", amount="100") -> PaymentEvent:
        return PaymentEvent(
            external_reference=reference,
            client_id=uuid4(),
            amount=Decimal(amount),
            payment_method="mpesa",
            billing_reference=None,
            intent_tag=None,
            confirmed_at=NOW,
        )

    def test_empty_reference_rejected(self):
        with pytest.raises(ValueError, match="external_reference"):
            self._event(reference="")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(ValueError, match="positive"):
            self._event(amount=amount)


class TestRenewalWrite:
    def test_negative_debit_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            RenewalWrite(uuid4(), Decimal("-1"), NOW, NOW, "Renewal")

    def test_zero_debit_allowed(self):
        write = RenewalWrite(uuid4(), Decimal("0"), NOW, None, "Renewal")
        assert write.debit_amount == 0

    def test_empty_description_rejected(self):
        with pytest.raises(ValueError, match="Description"):
            RenewalWrite(uuid4(), Decimal("10"), NOW, NOW, "")


class TestCheckpoints:
    """Tests for checkpoint offsets, keys and windows."""

    @pytest.mark.parametrize(
        ("checkpoint", "hours"),
        [
            (Checkpoint.HOURS_72, 72),
            (Checkpoint.HOURS_48, 48),
            (Checkpoint.HOURS_24, 24),
            (Checkpoint.EXPIRY, 0),
        ],
    )
    def test_offsets(self, checkpoint, hours):
        assert checkpoint.offset == timedelta(hours=hours)

    def test_idempotency_key_is_timezone_stable(self):
        client_id = uuid4()
        eat = timezone(timedelta(hours=3))
        utc_key = CheckpointKey(client_id, Checkpoint.HOURS_24, NOW)
        local_key = CheckpointKey(client_id, Checkpoint.HOURS_24, NOW.astimezone(eat))

        assert utc_key.idempotency_key == local_key.idempotency_key
        assert utc_key.idempotency_key == f"{client_id}:24h:2026-03-01T12:00:00+00:00"

    def test_reminder_window_is_symmetric(self):
        window = CheckpointWindow.for_tick(Checkpoint.HOURS_72, NOW, timedelta(minutes=2))

        assert window.earliest_end == NOW + timedelta(hours=72, minutes=-2)
        assert window.latest_end == NOW + timedelta(hours=72, minutes=2)
        assert window.contains(NOW + timedelta(hours=72))
        assert not window.contains(NOW + timedelta(hours=72, minutes=3))

    def test_expiry_window_only_looks_back(self):
        window = CheckpointWindow.for_tick(Checkpoint.EXPIRY, NOW, timedelta(minutes=2))

        assert window.contains(NOW)
        assert window.contains(NOW - timedelta(minutes=2))
        assert not window.contains(NOW + timedelta(seconds=1))


class TestGatewayTransaction:
    def _payload(self, **overrides) -> dict:
        payload = {
            "transaction_id": "QK7X2ABCDE",
            "client_id": str(uuid4()),
            "amount": "150.50",
            "payment_method": "mpesa",
            "confirmed_at": "2026-03-01T12:00:00Z",
        }
        payload.update(overrides)
        return payload

    def test_valid(self):
        txn = GatewayTransaction.model_validate(self._payload())
        assert txn.amount == Decimal("150.50")
        assert txn.status == "completed"
        assert txn.confirmed_at == NOW

    def test_sub_cent_amount_rejected(self):
        with pytest.raises(ValidationError, match="2 decimal places"):
            GatewayTransaction.model_validate(self._payload(amount="10.001"))

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            GatewayTransaction.model_validate(self._payload(amount="0"))

    def test_naive_timestamp_assumed_utc(self):
        txn = GatewayTransaction.model_validate(
            self._payload(confirmed_at="2026-03-01T12:00:00")
        )
        assert txn.confirmed_at == NOW
