"""
Renewal Decision Engine - Full, prorated partial, or top-up.

Decision policy, first match wins:
1. Balance covers the monthly rate -> full renewal for the renewal period.
2. Balance is positive and buys at least the minimum number of days -> partial
   renewal for floor(balance / rate * period) days, consuming the balance.
3. Otherwise -> ask for a top-up naming the exact shortfall.

A renewal write that the datastore rejects degrades to (3). Decisions are
always taken from a fresh WalletAnalysis, never a cached one.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.exceptions import EngineError, NetworkAutomationError
from renewal_engine.models.api import (
    ClientStatus,
    NotificationData,
    NotificationType,
    RenewalActionType,
)
from renewal_engine.models.domain import (
    NotificationRequest,
    RenewalAction,
    RenewalWrite,
    WalletAnalysis,
    utc_now,
)
from renewal_engine.observability.metrics import metrics
from renewal_engine.observability.tracing import trace_operation
from renewal_engine.services.network import NetworkAutomation
from renewal_engine.services.notifications import NotificationDispatcher
from renewal_engine.services.wallet_analyzer import WalletAnalyzer
from renewal_engine.services.wallet_store import WalletStore

logger = get_logger(__name__)

PARTIAL_AFFORDABILITY_RATIO = Decimal("0.1")

# Statuses a payment may renew; pending and disconnected clients need provisioning first
RENEWABLE_STATUSES = frozenset({ClientStatus.ACTIVE, ClientStatus.SUSPENDED})


def affordable_days(balance: Decimal, rate: Decimal, period_days: int) -> int:
    """Whole days of service the balance covers (floored)."""
    if rate <= 0:
        return period_days
    return int((balance * period_days) // rate)


def extends_expiry(analysis: WalletAnalysis, new_expiry: datetime) -> bool:
    """True when `new_expiry` is later than the current subscription end."""
    end = analysis.subscription_end_date
    return end is None or new_expiry > end


class RenewalDecisionEngine:
    """
    Decides and applies renewals against the wallet store.

    `decide` is pure. `apply` performs the matching mutation and sends the
    outcome notification.
    """

    def __init__(
        self,
        store: WalletStore,
        analyzer: WalletAnalyzer,
        dispatcher: NotificationDispatcher,
        network: NetworkAutomation | None = None,
        clock: Callable[[], datetime] = utc_now,
        renewal_period_days: int | None = None,
        min_partial_days: int | None = None,
        anchor: str | None = None,
        currency: str | None = None,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.network = network
        self.clock = clock
        self.renewal_period_days = (
            renewal_period_days
            if renewal_period_days is not None
            else settings.renewal_period_days
        )
        if self.renewal_period_days <= 0:
            raise ValueError("Renewal period must be positive")
        self.min_partial_days = (
            min_partial_days if min_partial_days is not None else settings.min_partial_renewal_days
        )
        self.anchor = anchor or settings.renewal_anchor
        self.currency = currency or settings.currency

    # ========================================================================
    # Decision
    # ========================================================================

    def decide(self, analysis: WalletAnalysis, allow_partial: bool = True) -> RenewalAction:
        """
        Map a wallet analysis to a renewal action without side effects.

        A partial renewal is only granted when it moves the expiry forward;
        otherwise the client is asked to top up. `allow_partial=False`
        restricts the outcome to a full renewal or a top-up request.
        """
        base = self._renewal_base(analysis, self.clock())

        if analysis.can_afford_renewal:
            return RenewalAction(
                type=RenewalActionType.AUTO_RENEW,
                message="Service renewed successfully",
                amount=analysis.required_amount,
                new_expiry_date=base + timedelta(days=self.renewal_period_days),
            )

        if allow_partial and analysis.current_balance > 0:
            days = affordable_days(
                analysis.current_balance, analysis.required_amount, self.renewal_period_days
            )
            new_expiry = base + timedelta(days=days)
            if days >= self.min_partial_days and extends_expiry(analysis, new_expiry):
                return RenewalAction(
                    type=RenewalActionType.PARTIAL_PAYMENT,
                    message=(
                        f"Partial renewal for {days} days. "
                        f"Top-up {self.currency} {analysis.shortfall} for full month."
                    ),
                    amount=analysis.current_balance,
                    new_expiry_date=new_expiry,
                    affordable_days=days,
                )

        return self.top_up_action(analysis)

    def top_up_action(self, analysis: WalletAnalysis) -> RenewalAction:
        """Top-up request naming the exact shortfall."""
        return RenewalAction(
            type=RenewalActionType.TOP_UP_REQUIRED,
            message=(
                f"Top-up required: {self.currency} {analysis.shortfall} "
                f"for {analysis.package_name}"
            ),
            amount=analysis.shortfall,
        )

    def _renewal_base(self, analysis: WalletAnalysis, now: datetime) -> datetime:
        """Start of the renewed period."""
        end = analysis.subscription_end_date
        if self.anchor == "expiry" and end is not None and end > now:
            return end
        return now

    # ========================================================================
    # Application
    # ========================================================================

    async def process(self, client_id: UUID) -> RenewalAction:
        """
        Analyze, decide and apply for one client.

        Raises:
            ClientNotFoundError: Client doesn't exist
        """
        analysis = await self.analyzer.analyze(client_id)
        return await self.evaluate(analysis)

    async def evaluate(
        self,
        analysis: WalletAnalysis,
        notify_top_up: bool = True,
        idempotency_key: str | None = None,
    ) -> RenewalAction:
        """Decide and apply for an analysis that was just taken."""
        action = self.decide(analysis)
        return await self.apply(
            action, analysis, notify_top_up=notify_top_up, idempotency_key=idempotency_key
        )

    async def apply(
        self,
        action: RenewalAction,
        analysis: WalletAnalysis,
        notify_top_up: bool = True,
        idempotency_key: str | None = None,
    ) -> RenewalAction:
        """
        Perform the mutation for `action` and notify the client.

        Returns the action that actually took effect: a renewal the datastore
        rejects comes back as top_up_required. `notify_top_up=False` lets a
        caller that sends its own top-up copy suppress the default reminder.
        """
        with trace_operation(
            "renewal_apply", client_id=str(analysis.client_id), action=action.type.value
        ):
            if action.type in (RenewalActionType.AUTO_RENEW, RenewalActionType.PARTIAL_PAYMENT):
                return await self._apply_renewal(
                    action, analysis, notify_top_up, idempotency_key
                )

            if action.type is RenewalActionType.SUSPEND_SERVICE:
                await self._suspend(action, analysis, idempotency_key)
                return action

            metrics.record_renewal(action.type.value)
            logger.info(
                "top_up_required",
                client_id=str(analysis.client_id),
                shortfall=str(analysis.shortfall),
            )
            if notify_top_up:
                await self.send_targeted_top_up_reminder(analysis, idempotency_key)
            return action

    async def _apply_renewal(
        self,
        action: RenewalAction,
        analysis: WalletAnalysis,
        notify_top_up: bool,
        idempotency_key: str | None,
    ) -> RenewalAction:
        assert action.amount is not None and action.new_expiry_date is not None

        if action.type is RenewalActionType.PARTIAL_PAYMENT:
            description = f"Partial renewal for {action.affordable_days} days"
        else:
            description = f"Subscription renewal - {analysis.package_name}"

        write = RenewalWrite(
            client_id=analysis.client_id,
            debit_amount=action.amount,
            new_end_date=action.new_expiry_date,
            expected_end_date=analysis.subscription_end_date,
            description=description,
        )

        try:
            entry = await self.store.apply_renewal(write)
        except EngineError as e:
            logger.warning(
                "renewal_mutation_failed",
                client_id=str(analysis.client_id),
                action=action.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_renewal_failure(action.type.value, type(e).__name__)
            fallback = self.top_up_action(analysis)
            metrics.record_renewal(fallback.type.value)
            if notify_top_up:
                await self.send_targeted_top_up_reminder(analysis, idempotency_key)
            return fallback

        metrics.record_renewal(action.type.value)
        logger.info(
            "renewal_applied",
            client_id=str(analysis.client_id),
            action=action.type.value,
            amount=str(action.amount),
            new_expiry_date=action.new_expiry_date.isoformat(),
        )

        if analysis.client_status is ClientStatus.SUSPENDED:
            await self._reactivate(analysis.client_id)

        if action.type is RenewalActionType.AUTO_RENEW:
            remaining = (
                entry.balance_after
                if entry is not None
                else analysis.current_balance - action.amount
            )
            data = NotificationData(
                amount=action.amount,
                remaining_balance=remaining,
                package_name=analysis.package_name,
            )
            notification_type = NotificationType.RENEWAL_SUCCESS
        else:
            data = NotificationData(
                amount=action.amount,
                days_extended=action.affordable_days,
                shortfall=analysis.shortfall,
                package_name=analysis.package_name,
            )
            notification_type = NotificationType.PARTIAL_RENEWAL

        await self.dispatcher.dispatch(
            NotificationRequest(
                client_id=analysis.client_id,
                type=notification_type,
                data=data,
                idempotency_key=idempotency_key,
            )
        )
        return action

    async def _suspend(
        self, action: RenewalAction, analysis: WalletAnalysis, idempotency_key: str | None
    ) -> None:
        """Suspend, disconnect and tell the client, unless the subscription moved."""
        if analysis.subscription_end_date is None:
            logger.warning("suspension_skipped_no_expiry", client_id=str(analysis.client_id))
            return

        suspended = await self.store.suspend_client(
            analysis.client_id, analysis.subscription_end_date
        )
        if not suspended:
            # A payment renewed or changed the subscription since the analysis
            logger.info("suspension_skipped_state_changed", client_id=str(analysis.client_id))
            return

        metrics.record_renewal(action.type.value)
        logger.info("service_suspended", client_id=str(analysis.client_id))

        if self.network is not None:
            try:
                await self.network.disconnect(analysis.client_id)
            except NetworkAutomationError as e:
                logger.error(
                    "network_disconnect_failed", client_id=str(analysis.client_id), error=str(e)
                )
                metrics.record_error("NetworkAutomationError", "disconnect")

        await self.dispatcher.dispatch(
            NotificationRequest(
                client_id=analysis.client_id,
                type=NotificationType.SERVICE_DISCONNECTED,
                data=NotificationData(
                    disconnection_time=self.clock(),
                    reason="Service expiry",
                    action_required=action.message,
                ),
                idempotency_key=idempotency_key,
            )
        )

    async def _reactivate(self, client_id: UUID) -> None:
        """Restore network access for a client renewed out of suspension."""
        if self.network is None:
            return
        try:
            await self.network.provision(client_id)
            await self.network.start_monitoring(client_id)
        except NetworkAutomationError as e:
            logger.error("network_reactivation_failed", client_id=str(client_id), error=str(e))
            metrics.record_error("NetworkAutomationError", "reactivate")
            return
        logger.info("client_reactivated", client_id=str(client_id))

    # ========================================================================
    # Notifications
    # ========================================================================

    async def send_targeted_top_up_reminder(
        self, analysis: WalletAnalysis, idempotency_key: str | None = None
    ) -> bool:
        """Top-up reminder naming the exact shortfall; urgent in the last day."""
        notification_type = (
            NotificationType.URGENT_TOP_UP
            if analysis.days_until_expiry <= 1
            else NotificationType.TOP_UP_REMINDER
        )
        data = NotificationData(
            days_remaining=analysis.days_until_expiry,
            current_balance=analysis.current_balance,
            required_amount=analysis.required_amount,
            shortfall=analysis.shortfall,
            package_name=analysis.package_name,
            can_afford_partial=(
                analysis.current_balance
                > analysis.required_amount * PARTIAL_AFFORDABILITY_RATIO
            ),
        )
        return await self.dispatcher.dispatch(
            NotificationRequest(
                client_id=analysis.client_id,
                type=notification_type,
                data=data,
                idempotency_key=idempotency_key,
            )
        )
