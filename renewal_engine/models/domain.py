"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from renewal_engine.models.api import (
    Checkpoint,
    ClientStatus,
    NotificationData,
    NotificationType,
    RenewalActionType,
    TransactionType,
)

CENT = Decimal("0.01")
ONE_DAY_SECONDS = 86400


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def to_money(value: Decimal | int | str | float) -> Decimal:
    """Quantize an amount to 2-digit cent precision."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def days_until(end: datetime, now: datetime) -> int:
    """Whole days until `end`, rounded up (30 minutes left counts as 1 day)."""
    return math.ceil((end - now).total_seconds() / ONE_DAY_SECONDS)


@dataclass(frozen=True)
class ClientSnapshot:
    """Immutable client/subscription state as read from the datastore."""

    client_id: UUID
    name: str
    wallet_balance: Decimal
    monthly_rate: Decimal
    subscription_end_date: datetime | None
    status: ClientStatus
    package_name: str

    def __post_init__(self) -> None:
        """Validate wallet invariants."""
        if self.wallet_balance < 0:
            raise ValueError(f"Wallet balance cannot be negative: {self.wallet_balance}")
        if self.monthly_rate < 0:
            raise ValueError(f"Monthly rate cannot be negative: {self.monthly_rate}")


@dataclass(frozen=True)
class WalletAnalysis:
    """Point-in-time wallet evaluation - recomputed on every decision, never cached."""

    client_id: UUID
    current_balance: Decimal
    required_amount: Decimal
    shortfall: Decimal
    can_afford_renewal: bool
    days_until_expiry: int
    package_name: str
    subscription_end_date: datetime | None
    analyzed_at: datetime
    client_status: ClientStatus = ClientStatus.ACTIVE

    def __post_init__(self) -> None:
        """Validate derived fields are consistent with the inputs."""
        if self.shortfall != max(Decimal("0"), self.required_amount - self.current_balance):
            raise ValueError("shortfall must equal max(0, required - balance)")
        if self.can_afford_renewal != (self.current_balance >= self.required_amount):
            raise ValueError("can_afford_renewal must equal balance >= required")


@dataclass(frozen=True)
class RenewalAction:
    """Tagged renewal outcome consumed by the scheduler and payment worker."""

    type: RenewalActionType
    message: str
    amount: Decimal | None = None
    new_expiry_date: datetime | None = None
    affordable_days: int | None = None


@dataclass(frozen=True)
class PaymentEvent:
    """Gateway-confirmed payment - read-only view of an external transaction."""

    external_reference: str
    client_id: UUID
    amount: Decimal
    payment_method: str
    billing_reference: str | None
    intent_tag: str | None
    confirmed_at: datetime

    def __post_init__(self) -> None:
        """Validate payment constraints."""
        if not self.external_reference:
            raise ValueError("external_reference cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount}")


@dataclass(frozen=True)
class CheckpointKey:
    """Natural key of one checkpoint firing for one subscription period."""

    client_id: UUID
    checkpoint: Checkpoint
    subscription_end_date: datetime

    @property
    def idempotency_key(self) -> str:
        """Stable key for notification dispatch deduplication."""
        return (
            f"{self.client_id}:{self.checkpoint.value}:"
            f"{self.subscription_end_date.astimezone(UTC).isoformat()}"
        )


@dataclass(frozen=True)
class NotificationRequest:
    """Outbound notification dispatch request."""

    client_id: UUID
    type: NotificationType
    data: NotificationData
    idempotency_key: str | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable wallet ledger entry after persistence."""

    transaction_id: UUID
    client_id: UUID
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    external_reference: str | None
    created_at: datetime


@dataclass(frozen=True)
class RenewalWrite:
    """Intent for an atomic renewal debit + expiry move + ledger append."""

    client_id: UUID
    debit_amount: Decimal
    new_end_date: datetime
    expected_end_date: datetime | None
    description: str

    def __post_init__(self) -> None:
        """Validate renewal write constraints."""
        if self.debit_amount < 0:
            raise ValueError(f"Debit amount cannot be negative: {self.debit_amount}")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class CheckpointWindow:
    """Closed interval of expiry timestamps that are due for a checkpoint."""

    checkpoint: Checkpoint
    earliest_end: datetime
    latest_end: datetime

    @classmethod
    def for_tick(cls, checkpoint: Checkpoint, now: datetime, tolerance: timedelta) -> "CheckpointWindow":
        """Window of expiry timestamps matching `checkpoint` at `now`."""
        if checkpoint is Checkpoint.EXPIRY:
            return cls(checkpoint, now - tolerance, now)
        target = now + checkpoint.offset
        return cls(checkpoint, target - tolerance, target + tolerance)

    def contains(self, end_date: datetime) -> bool:
        """Whether an expiry timestamp falls inside this window."""
        return self.earliest_end <= end_date <= self.latest_end
