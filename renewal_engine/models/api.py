"""
API Models - Enumerations and Pydantic models for wire payloads.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ClientStatus(str, Enum):
    """Client subscription status enumeration."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISCONNECTED = "disconnected"


class TransactionType(str, Enum):
    """Wallet ledger entry direction."""

    CREDIT = "credit"
    DEBIT = "debit"


class InvoiceStatus(str, Enum):
    """Installation invoice status enumeration."""

    PENDING = "pending"
    PAID = "paid"


class RenewalActionType(str, Enum):
    """Outcome of a renewal decision."""

    AUTO_RENEW = "auto_renew"
    PARTIAL_PAYMENT = "partial_payment"
    TOP_UP_REQUIRED = "top_up_required"
    SUSPEND_SERVICE = "suspend_service"


class NotificationType(str, Enum):
    """Notification types understood by the dispatch service."""

    PAYMENT_REMINDER = "payment_reminder"
    FINAL_REMINDER = "final_reminder"
    URGENT_TOP_UP = "urgent_top_up"
    TOP_UP_REMINDER = "top_up_reminder"
    RENEWAL_SUCCESS = "renewal_success"
    PARTIAL_RENEWAL = "partial_renewal"
    SERVICE_DISCONNECTED = "service_disconnected"


class Checkpoint(str, Enum):
    """Fixed offsets before subscription expiry, in evaluation order."""

    HOURS_72 = "72h"
    HOURS_48 = "48h"
    HOURS_24 = "24h"
    EXPIRY = "expiry"

    @property
    def offset(self) -> timedelta:
        """Time before expiry at which this checkpoint is due."""
        hours = {"72h": 72, "48h": 48, "24h": 24, "expiry": 0}[self.value]
        return timedelta(hours=hours)


class PaymentIntent(str, Enum):
    """Classified purpose of an ingested payment."""

    INSTALLATION = "installation"
    WALLET_TOPUP = "wallet_topup"
    SUBSCRIPTION = "subscription"


class ClientEvent(str, Enum):
    """Discrete client lifecycle events routed by the orchestrator."""

    ACTIVATE = "activate"
    SUSPEND = "suspend"
    PAYMENT_RECEIVED = "payment_received"


class ProcessState(str, Enum):
    """Background process state."""

    RUNNING = "running"
    STOPPED = "stopped"


# ============================================================================
# Notification Models
# ============================================================================


class NotificationData(BaseModel):
    """Numeric and display fields carried by a notification - explicit fields, no dict."""

    days_remaining: int | None = None
    hours_remaining: int | None = None
    amount: Decimal | None = None
    remaining_balance: Decimal | None = None
    current_balance: Decimal | None = None
    required_amount: Decimal | None = None
    shortfall: Decimal | None = None
    days_extended: int | None = None
    package_name: str | None = None
    sufficient_balance: bool | None = None
    can_afford_partial: bool | None = None
    action_required: str | None = None
    disconnection_time: datetime | None = None
    reason: str | None = None


class NotificationPayload(BaseModel):
    """Body posted to the notification dispatch service."""

    client_id: UUID
    type: NotificationType
    data: NotificationData


# ============================================================================
# Payment Gateway Models
# ============================================================================


class GatewayTransaction(BaseModel):
    """One confirmed transaction as reported by a payment gateway."""

    transaction_id: str = Field(..., min_length=1, max_length=255)
    client_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, max_length=50)
    bill_reference: str | None = Field(None, max_length=255)
    intent: str | None = Field(None, max_length=50)
    status: str = "completed"
    confirmed_at: datetime

    @field_validator("amount")
    @classmethod
    def validate_amount_precision(cls, v: Decimal) -> Decimal:
        """Reject sub-cent amounts."""
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("amount must have at most 2 decimal places")
        return v

    @field_validator("confirmed_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Gateways that omit an offset report UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class GatewayTransactionList(BaseModel):
    """Response envelope for a gateway transaction query."""

    transactions: list[GatewayTransaction] = Field(default_factory=list)


# ============================================================================
# Host API Models
# ============================================================================


class ClientEventRequest(BaseModel):
    """POST /v1/automation/clients/{client_id}/events request body."""

    event: ClientEvent


class ClientEventResponse(BaseModel):
    """POST /v1/automation/clients/{client_id}/events response."""

    client_id: UUID
    event: ClientEvent
    action: RenewalActionType | None = None
    message: str | None = None


class ProcessStatus(BaseModel):
    """Running state of one background process."""

    name: str
    status: ProcessState


class AutomationStatusResponse(BaseModel):
    """GET /v1/automation/status response."""

    processes: list[ProcessStatus]
