"""
Wallet Analyzer - Point-in-time wallet vs. subscription fee evaluation.

NO DICTIONARIES - Returns an immutable WalletAnalysis.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from structlog import get_logger

from renewal_engine.exceptions import ClientNotFoundError
from renewal_engine.models.domain import (
    ClientSnapshot,
    WalletAnalysis,
    days_until,
    to_money,
    utc_now,
)
from renewal_engine.services.wallet_store import WalletStore

logger = get_logger(__name__)


def build_wallet_analysis(snapshot: ClientSnapshot, now: datetime) -> WalletAnalysis:
    """
    Derive the analysis fields from one client record.

    A client without an expiry date (never activated) counts as expiring now.
    """
    balance = to_money(snapshot.wallet_balance)
    required = to_money(snapshot.monthly_rate)
    end_date = snapshot.subscription_end_date

    return WalletAnalysis(
        client_id=snapshot.client_id,
        current_balance=balance,
        required_amount=required,
        shortfall=max(Decimal("0"), required - balance),
        can_afford_renewal=balance >= required,
        days_until_expiry=days_until(end_date, now) if end_date is not None else 0,
        package_name=snapshot.package_name,
        subscription_end_date=end_date,
        analyzed_at=now,
        client_status=snapshot.status,
    )


class WalletAnalyzer:
    """Reads a client once and computes its WalletAnalysis. No side effects."""

    def __init__(
        self, store: WalletStore, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.store = store
        self.clock = clock

    async def analyze(self, client_id: UUID) -> WalletAnalysis:
        """
        Analyze a client's wallet against its monthly rate.

        Raises:
            ClientNotFoundError: Client doesn't exist
        """
        snapshot = await self.store.get_client(client_id)
        if snapshot is None:
            raise ClientNotFoundError(client_id)

        analysis = build_wallet_analysis(snapshot, self.clock())
        logger.debug(
            "wallet_analyzed",
            client_id=str(client_id),
            balance=str(analysis.current_balance),
            required=str(analysis.required_amount),
            days_until_expiry=analysis.days_until_expiry,
        )
        return analysis
