"""
Payment Ingestion Worker - Polls payment channels and reconciles wallets.

Every tick reads a fixed trailing window of confirmed transactions from each
channel, so the same transaction is normally observed on several consecutive
ticks. Each external reference is consumed exactly once: a process-local
seen-set answers repeats cheaply and the datastore's unique reference marker,
written in the same transaction as the credit, is authoritative.
"""

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.exceptions import (
    DuplicatePaymentError,
    InvoiceNotFoundError,
    NetworkAutomationError,
    PaymentGatewayError,
)
from renewal_engine.models.api import PaymentIntent
from renewal_engine.models.domain import PaymentEvent, utc_now
from renewal_engine.observability.logging import log_context
from renewal_engine.observability.metrics import metrics
from renewal_engine.services.gateways import PaymentGateway
from renewal_engine.services.network import NetworkAutomation
from renewal_engine.services.periodic import PeriodicTask
from renewal_engine.services.renewal import (
    RENEWABLE_STATUSES,
    RenewalDecisionEngine,
    extends_expiry,
)
from renewal_engine.services.wallet_store import WalletStore

logger = get_logger(__name__)


def classify_payment(event: PaymentEvent, installation_prefix: str) -> PaymentIntent:
    """
    Installation if the billing reference carries the invoice prefix.

    Anything else is a wallet top-up; an explicit subscription tag is kept for
    reporting but takes the same path.
    """
    if event.billing_reference and event.billing_reference.startswith(installation_prefix):
        return PaymentIntent.INSTALLATION
    if event.intent_tag == PaymentIntent.SUBSCRIPTION.value:
        return PaymentIntent.SUBSCRIPTION
    return PaymentIntent.WALLET_TOPUP


class PaymentIngestionWorker(PeriodicTask):
    """Consumes confirmed gateway payments into wallets and installations."""

    name = "payment_ingestion"

    def __init__(
        self,
        store: WalletStore,
        engine: RenewalDecisionEngine,
        gateways: Sequence[PaymentGateway],
        network: NetworkAutomation | None = None,
        clock: Callable[[], datetime] = utc_now,
        interval_seconds: float | None = None,
        lookback_seconds: int | None = None,
        installation_prefix: str | None = None,
        topup_renewal_max_days: int | None = None,
    ) -> None:
        super().__init__(
            interval_seconds
            if interval_seconds is not None
            else settings.payment_poll_interval_seconds
        )
        self.store = store
        self.engine = engine
        self.gateways = list(gateways)
        self.network = network
        self.clock = clock
        if lookback_seconds is None:
            lookback_seconds = settings.payment_lookback_seconds
        if lookback_seconds <= 0:
            raise ValueError("Payment lookback window must be positive")
        self.lookback = timedelta(seconds=lookback_seconds)
        self.installation_prefix = installation_prefix or settings.installation_reference_prefix
        self.topup_renewal_max_days = (
            topup_renewal_max_days
            if topup_renewal_max_days is not None
            else settings.topup_renewal_max_days_until_expiry
        )
        # external_reference -> when this process first consumed or skipped it
        self._seen: dict[str, datetime] = {}

    async def tick(self) -> None:
        await self.poll()

    async def poll(self) -> int:
        """Poll every channel once. Returns the number of payments consumed."""
        now = self.clock()
        since = now - self.lookback
        consumed = 0

        for gateway in self.gateways:
            try:
                events = await gateway.fetch_confirmed(since)
            except PaymentGatewayError as e:
                # Next tick's window still covers these transactions
                logger.warning("gateway_poll_failed", channel=gateway.channel, error=e.message)
                metrics.record_error("PaymentGatewayError", f"poll_{gateway.channel}")
                continue

            for event in events:
                if await self.ingest(event, gateway.channel):
                    consumed += 1

        self._prune_seen(now)
        if consumed:
            logger.info("payments_ingested", count=consumed)
        return consumed

    async def ingest(self, event: PaymentEvent, channel: str) -> bool:
        """
        Consume one payment. Returns False for duplicates and failures.

        Errors are contained here so one payment cannot abort the tick.
        """
        with log_context(
            client_id=str(event.client_id), external_reference=event.external_reference
        ):
            try:
                return await self._ingest(event, channel)
            except Exception as e:
                logger.exception("payment_ingestion_failed", error=str(e))
                metrics.record_error(type(e).__name__, "payment_ingest")
                return False

    async def _ingest(self, event: PaymentEvent, channel: str) -> bool:
        reference = event.external_reference
        if reference in self._seen:
            metrics.record_duplicate_payment(channel)
            return False
        if await self.store.is_payment_processed(reference):
            self._seen[reference] = self.clock()
            metrics.record_duplicate_payment(channel)
            logger.debug("payment_already_processed")
            return False

        intent = classify_payment(event, self.installation_prefix)
        try:
            if intent is PaymentIntent.INSTALLATION:
                try:
                    await self._settle_installation(event)
                except InvoiceNotFoundError:
                    logger.warning("installation_invoice_missing_crediting_wallet")
                    intent = PaymentIntent.WALLET_TOPUP
                    await self._credit_wallet(event, intent)
            else:
                await self._credit_wallet(event, intent)
        except DuplicatePaymentError:
            # Another worker consumed it between the check and the write
            self._seen[reference] = self.clock()
            metrics.record_duplicate_payment(channel)
            logger.info("payment_duplicate_skipped")
            return False

        self._seen[reference] = self.clock()
        metrics.record_payment(intent.value, channel, float(event.amount))
        return True

    async def _settle_installation(self, event: PaymentEvent) -> None:
        """Mark the installation invoice paid and bring the client online."""
        now = self.clock()
        invoice_number = await self.store.settle_installation(
            event, now, timedelta(days=self.engine.renewal_period_days)
        )
        logger.info(
            "installation_settled",
            invoice_number=invoice_number,
            amount=str(event.amount),
            payment_method=event.payment_method,
        )

        if self.network is None:
            return
        try:
            await self.network.provision(event.client_id)
            await self.network.start_monitoring(event.client_id)
        except NetworkAutomationError as e:
            logger.error("client_activation_network_failed", error=str(e))
            metrics.record_error("NetworkAutomationError", "activate")

    async def _credit_wallet(self, event: PaymentEvent, intent: PaymentIntent) -> None:
        """
        Credit the wallet, then re-run the renewal decision for the client.

        A top-up only ever buys a full renewal; a balance below the rate is
        left for the checkpoints to prorate.
        """
        entry = await self.store.credit_wallet(event, intent)
        logger.info(
            "wallet_credited",
            amount=str(entry.amount),
            balance_after=str(entry.balance_after),
            intent=intent.value,
        )

        # The credit is committed; a failed re-evaluation is retried by the scheduler
        try:
            analysis = await self.engine.analyzer.analyze(event.client_id)
            if analysis.client_status not in RENEWABLE_STATUSES:
                logger.info("renewal_skipped_status", status=analysis.client_status.value)
                return
            if (
                self.topup_renewal_max_days is not None
                and analysis.days_until_expiry > self.topup_renewal_max_days
            ):
                logger.info(
                    "renewal_deferred_not_due", days_until_expiry=analysis.days_until_expiry
                )
                return
            action = self.engine.decide(analysis, allow_partial=False)
            if action.new_expiry_date is not None and not extends_expiry(
                analysis, action.new_expiry_date
            ):
                logger.info(
                    "renewal_deferred_not_extending",
                    days_until_expiry=analysis.days_until_expiry,
                )
                return
            action = await self.engine.apply(action, analysis)
            logger.info("topup_renewal_evaluated", action=action.type.value)
        except Exception as e:
            logger.exception("topup_renewal_failed", error=str(e))
            metrics.record_error(type(e).__name__, "topup_renewal")

    def _prune_seen(self, now: datetime) -> None:
        """Forget references that can no longer appear in the trailing window."""
        horizon = now - 2 * self.lookback
        self._seen = {ref: at for ref, at in self._seen.items() if at >= horizon}
