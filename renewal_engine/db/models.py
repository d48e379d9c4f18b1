"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from renewal_engine.models.api import (
    Checkpoint,
    ClientStatus,
    InvoiceStatus,
    PaymentIntent,
    TransactionType,
)
from renewal_engine.models.domain import utc_now

MONEY = Numeric(12, 2)


def _str_enum(enum_cls: type, name: str) -> SQLEnum:
    """Store a str Enum as its value in a VARCHAR column."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Client(Base):
    """
    ORM model for clients table.

    Holds the subscription and prepaid wallet state mutated by the engine.
    """

    __tablename__ = "clients"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Contact information (display only)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Wallet
    wallet_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    monthly_rate: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # Subscription
    service_package_name: Mapped[str] = mapped_column(
        String(255), nullable=False, default="Unknown Package"
    )
    subscription_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[ClientStatus] = mapped_column(
        _str_enum(ClientStatus, "client_status"),
        nullable=False,
        default=ClientStatus.PENDING,
    )
    service_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_wallet_balance_non_negative"),
        CheckConstraint("monthly_rate >= 0", name="ck_monthly_rate_non_negative"),
        Index("idx_clients_status_end_date", "status", "subscription_end_date"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Client(id={self.id}, status={self.status}, "
            f"balance={self.wallet_balance}, end={self.subscription_end_date})>"
        )


class WalletTransaction(Base):
    """
    ORM model for wallet_transactions table.

    Append-only ledger of wallet credits and debits.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        _str_enum(TransactionType, "wallet_transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transaction_amount_positive"),
        CheckConstraint("balance_after >= 0", name="ck_wallet_transaction_balance_non_negative"),
        Index("idx_wallet_transactions_created_at", "created_at"),
        Index(
            "idx_wallet_transactions_external_reference",
            "external_reference",
            postgresql_where=(external_reference.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<WalletTransaction(id={self.id}, client_id={self.client_id}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )


class InstallationInvoice(Base):
    """ORM model for installation_invoices table."""

    __tablename__ = "installation_invoices"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    client_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        _str_enum(InvoiceStatus, "invoice_status"),
        nullable=False,
        default=InvoiceStatus.PENDING,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_installation_invoices_client_status", "client_id", "status"),)


class ProcessedPayment(Base):
    """
    ORM model for processed_payments table.

    One row per consumed gateway reference; the unique constraint is the
    idempotency guard for the trailing-window poll.
    """

    __tablename__ = "processed_payments"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    intent: Mapped[PaymentIntent] = mapped_column(
        _str_enum(PaymentIntent, "payment_intent"), nullable=False
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("external_reference", name="uq_processed_payments_reference"),
    )


class CheckpointFiring(Base):
    """
    ORM model for checkpoint_firings table.

    Persisted at-most-once marker per (client, checkpoint, expiry timestamp).
    """

    __tablename__ = "checkpoint_firings"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    checkpoint: Mapped[Checkpoint] = mapped_column(
        _str_enum(Checkpoint, "checkpoint"), nullable=False
    )
    subscription_end_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    fired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "client_id",
            "checkpoint",
            "subscription_end_date",
            name="uq_checkpoint_firings_natural_key",
        ),
    )
