"""
Wallet Store - Atomic datastore operations for wallets and subscriptions.

Every mutation is a single transaction. Balance changes are applied with
`wallet_balance = wallet_balance ± :amount` in the UPDATE itself (never
read-then-write), guarded in the WHERE clause so a concurrent top-up or
renewal cannot be lost or applied twice.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from renewal_engine.db.models import (
    CheckpointFiring,
    Client,
    InstallationInvoice,
    ProcessedPayment,
    WalletTransaction,
)
from renewal_engine.exceptions import (
    ClientNotFoundError,
    ConcurrencyError,
    DatabaseError,
    DuplicatePaymentError,
    InsufficientBalanceError,
    InvoiceNotFoundError,
    RenewalMutationError,
)
from renewal_engine.models.api import (
    ClientStatus,
    InvoiceStatus,
    PaymentIntent,
    TransactionType,
)
from renewal_engine.models.domain import (
    CheckpointKey,
    CheckpointWindow,
    ClientSnapshot,
    LedgerEntry,
    PaymentEvent,
    RenewalWrite,
)

logger = get_logger(__name__)


class WalletStore(Protocol):
    """
    Datastore protocol used by the analyzer, decision engine and loops.

    Implementations must apply each mutating call atomically.
    """

    async def get_client(self, client_id: UUID) -> ClientSnapshot | None:
        """Read one client record, or None if it doesn't exist."""
        ...

    async def list_monitored_clients(
        self, windows: list[CheckpointWindow] | None = None
    ) -> list[ClientSnapshot]:
        """
        Active clients with an expiry date.

        When `windows` is given only clients whose expiry falls inside one of
        them are returned; None scans every active client.
        """
        ...

    async def apply_renewal(self, write: RenewalWrite) -> LedgerEntry | None:
        """
        Debit the wallet, move the expiry and append the ledger entry as one unit.

        Returns the debit entry, or None when the debit amount is zero.

        Raises:
            ClientNotFoundError: Client doesn't exist
            ConcurrencyError: Expiry no longer matches `write.expected_end_date`
            InsufficientBalanceError: Balance dropped below the debit amount
            RenewalMutationError: The datastore rejected the write
        """
        ...

    async def credit_wallet(self, event: PaymentEvent, intent: PaymentIntent) -> LedgerEntry:
        """
        Consume a payment reference and credit the wallet in one transaction.

        Raises:
            DuplicatePaymentError: Reference already consumed
            ClientNotFoundError: Client doesn't exist
        """
        ...

    async def settle_installation(
        self, event: PaymentEvent, now: datetime, service_period: timedelta
    ) -> str:
        """
        Consume a payment reference, mark the pending installation invoice paid
        and activate the subscription. Returns the invoice number.

        Raises:
            DuplicatePaymentError: Reference already consumed
            InvoiceNotFoundError: No pending installation invoice for the client
        """
        ...

    async def suspend_client(self, client_id: UUID, expected_end_date: datetime) -> bool:
        """Suspend an active client whose expiry is still `expected_end_date`."""
        ...

    async def claim_checkpoint(self, key: CheckpointKey, now: datetime) -> bool:
        """Record a checkpoint firing. False if it was already claimed."""
        ...

    async def is_payment_processed(self, external_reference: str) -> bool:
        """Whether a gateway reference was already consumed."""
        ...


class SqlWalletStore:
    """PostgreSQL implementation of WalletStore over async SQLAlchemy sessions."""

    def __init__(
        self,
        write_session_factory: async_sessionmaker[AsyncSession],
        read_session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._write_factory = write_session_factory
        self._read_factory = read_session_factory or write_session_factory

    async def get_client(self, client_id: UUID) -> ClientSnapshot | None:
        # Decisions must see the primary, never a lagging replica
        async with self._write_factory() as session:
            client = await session.get(Client, client_id)
            return _client_to_domain(client) if client is not None else None

    async def list_monitored_clients(
        self, windows: list[CheckpointWindow] | None = None
    ) -> list[ClientSnapshot]:
        stmt = select(Client).where(
            Client.status == ClientStatus.ACTIVE,
            Client.subscription_end_date.isnot(None),
        )
        if windows:
            stmt = stmt.where(
                or_(
                    *[
                        Client.subscription_end_date.between(w.earliest_end, w.latest_end)
                        for w in windows
                    ]
                )
            )

        async with self._read_factory() as session:
            result = await session.execute(stmt)
            return [_client_to_domain(client) for client in result.scalars().all()]

    async def apply_renewal(self, write: RenewalWrite) -> LedgerEntry | None:
        try:
            async with self._write_factory() as session:
                async with session.begin():
                    if write.expected_end_date is None:
                        expiry_unchanged = Client.subscription_end_date.is_(None)
                    else:
                        expiry_unchanged = Client.subscription_end_date == write.expected_end_date

                    stmt = (
                        update(Client)
                        .where(
                            Client.id == write.client_id,
                            expiry_unchanged,
                            Client.wallet_balance >= write.debit_amount,
                        )
                        .values(
                            wallet_balance=Client.wallet_balance - write.debit_amount,
                            subscription_end_date=write.new_end_date,
                            status=ClientStatus.ACTIVE,
                        )
                        .returning(Client.wallet_balance)
                    )
                    result = await session.execute(stmt)
                    row = result.first()

                    if row is None:
                        await self._raise_renewal_conflict(session, write)

                    balance_after: Decimal = row[0]
                    if write.debit_amount == 0:
                        return None

                    entry = WalletTransaction(
                        client_id=write.client_id,
                        transaction_type=TransactionType.DEBIT,
                        amount=write.debit_amount,
                        balance_after=balance_after,
                        description=write.description,
                    )
                    session.add(entry)
                    await session.flush()
                    return _entry_to_domain(entry)
        except IntegrityError as e:
            # A CHECK constraint rejected the write; nothing was committed
            raise RenewalMutationError(write.client_id, str(e.orig)) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"renewal write failed: {e}") from e

    async def credit_wallet(self, event: PaymentEvent, intent: PaymentIntent) -> LedgerEntry:
        try:
            async with self._write_factory() as session:
                async with session.begin():
                    await self._consume_reference(session, event, intent)

                    stmt = (
                        update(Client)
                        .where(Client.id == event.client_id)
                        .values(wallet_balance=Client.wallet_balance + event.amount)
                        .returning(Client.wallet_balance)
                    )
                    result = await session.execute(stmt)
                    row = result.first()
                    if row is None:
                        raise ClientNotFoundError(event.client_id)

                    entry = WalletTransaction(
                        client_id=event.client_id,
                        transaction_type=TransactionType.CREDIT,
                        amount=event.amount,
                        balance_after=row[0],
                        description=f"Wallet top-up via {event.payment_method}",
                        external_reference=event.external_reference,
                    )
                    session.add(entry)
                    await session.flush()
                    return _entry_to_domain(entry)
        except SQLAlchemyError as e:
            raise DatabaseError(f"wallet credit failed: {e}") from e

    async def settle_installation(
        self, event: PaymentEvent, now: datetime, service_period: timedelta
    ) -> str:
        try:
            async with self._write_factory() as session:
                async with session.begin():
                    await self._consume_reference(session, event, PaymentIntent.INSTALLATION)

                    stmt = (
                        select(InstallationInvoice)
                        .where(
                            InstallationInvoice.client_id == event.client_id,
                            InstallationInvoice.status == InvoiceStatus.PENDING,
                        )
                        .order_by(InstallationInvoice.created_at)
                        .limit(1)
                        .with_for_update()
                    )
                    invoice = (await session.execute(stmt)).scalar_one_or_none()
                    if invoice is None:
                        # Rolls back the consumed reference so the payment can
                        # be credited as a top-up instead
                        raise InvoiceNotFoundError(event.client_id)

                    invoice.status = InvoiceStatus.PAID
                    invoice.paid_at = now
                    invoice.payment_method = event.payment_method
                    invoice.payment_reference = event.external_reference

                    activated = await session.execute(
                        update(Client)
                        .where(Client.id == event.client_id)
                        .values(
                            status=ClientStatus.ACTIVE,
                            service_activated_at=now,
                            subscription_start_date=now,
                            subscription_end_date=now + service_period,
                        )
                        .returning(Client.id)
                    )
                    if activated.first() is None:
                        raise ClientNotFoundError(event.client_id)

                    return invoice.invoice_number
        except SQLAlchemyError as e:
            raise DatabaseError(f"installation settlement failed: {e}") from e

    async def suspend_client(self, client_id: UUID, expected_end_date: datetime) -> bool:
        try:
            async with self._write_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Client)
                        .where(
                            and_(
                                Client.id == client_id,
                                Client.status == ClientStatus.ACTIVE,
                                Client.subscription_end_date == expected_end_date,
                            )
                        )
                        .values(status=ClientStatus.SUSPENDED)
                        .returning(Client.id)
                    )
                    return result.first() is not None
        except SQLAlchemyError as e:
            raise DatabaseError(f"suspension failed: {e}") from e

    async def claim_checkpoint(self, key: CheckpointKey, now: datetime) -> bool:
        stmt = (
            pg_insert(CheckpointFiring)
            .values(
                client_id=key.client_id,
                checkpoint=key.checkpoint,
                subscription_end_date=key.subscription_end_date,
                fired_at=now,
            )
            .on_conflict_do_nothing(constraint="uq_checkpoint_firings_natural_key")
            .returning(CheckpointFiring.id)
        )
        try:
            async with self._write_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.first() is not None
        except SQLAlchemyError as e:
            raise DatabaseError(f"checkpoint claim failed: {e}") from e

    async def is_payment_processed(self, external_reference: str) -> bool:
        stmt = select(ProcessedPayment.id).where(
            ProcessedPayment.external_reference == external_reference
        )
        async with self._write_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _consume_reference(
        self, session: AsyncSession, event: PaymentEvent, intent: PaymentIntent
    ) -> None:
        """Insert the idempotency marker; raise if the reference was already consumed."""
        stmt = (
            pg_insert(ProcessedPayment)
            .values(
                external_reference=event.external_reference,
                client_id=event.client_id,
                amount=event.amount,
                payment_method=event.payment_method,
                intent=intent,
            )
            .on_conflict_do_nothing(constraint="uq_processed_payments_reference")
            .returning(ProcessedPayment.id)
        )
        result = await session.execute(stmt)
        if result.first() is None:
            raise DuplicatePaymentError(event.external_reference)

    async def _raise_renewal_conflict(self, session: AsyncSession, write: RenewalWrite) -> None:
        """Explain why a guarded renewal UPDATE matched no row."""
        client = await session.get(Client, write.client_id)
        if client is None:
            raise ClientNotFoundError(write.client_id)
        if client.subscription_end_date != write.expected_end_date:
            logger.warning(
                "renewal_expiry_changed",
                client_id=str(write.client_id),
                expected=(
                    write.expected_end_date.isoformat() if write.expected_end_date else None
                ),
                actual=(
                    client.subscription_end_date.isoformat()
                    if client.subscription_end_date
                    else None
                ),
            )
            raise ConcurrencyError(write.client_id, write.expected_end_date)
        raise InsufficientBalanceError(write.client_id, write.debit_amount)


def _client_to_domain(client: Client) -> ClientSnapshot:
    """Convert ORM client to domain snapshot."""
    return ClientSnapshot(
        client_id=client.id,
        name=client.name,
        wallet_balance=client.wallet_balance,
        monthly_rate=client.monthly_rate,
        subscription_end_date=client.subscription_end_date,
        status=ClientStatus(client.status),
        package_name=client.service_package_name or "Unknown Package",
    )


def _entry_to_domain(entry: WalletTransaction) -> LedgerEntry:
    """Convert ORM ledger row to domain entry."""
    return LedgerEntry(
        transaction_id=entry.id,
        client_id=entry.client_id,
        type=TransactionType(entry.transaction_type),
        amount=entry.amount,
        balance_after=entry.balance_after,
        description=entry.description,
        external_reference=entry.external_reference,
        created_at=entry.created_at,
    )
