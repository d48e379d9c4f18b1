"""
Precision Scheduler - Checkpoint detection relative to subscription expiry.

Each tick matches every monitored client against four checkpoints:

    72h     reminder, or targeted top-up reminder when funds are short
    48h     same, more urgent
    24h     full renewal decision; final reminder unless renewed
    expiry  renewal decision; suspension and disconnection if nothing renewed

A checkpoint matches when the expiry lies within the tolerance window around
its offset (expiry itself only matches once the subscription has lapsed).
Firings are claimed in the datastore under (client, checkpoint, expiry) before
the handler runs, so each checkpoint fires at most once per subscription
period however ticks and the window interact.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.models.api import (
    Checkpoint,
    NotificationData,
    NotificationType,
    RenewalActionType,
)
from renewal_engine.models.domain import (
    CheckpointKey,
    CheckpointWindow,
    ClientSnapshot,
    NotificationRequest,
    RenewalAction,
    WalletAnalysis,
    utc_now,
)
from renewal_engine.observability.logging import log_context
from renewal_engine.observability.metrics import metrics
from renewal_engine.services.notifications import NotificationDispatcher
from renewal_engine.services.periodic import PeriodicTask
from renewal_engine.services.renewal import RenewalDecisionEngine
from renewal_engine.services.wallet_store import WalletStore

logger = get_logger(__name__)

CHECKPOINT_ORDER = (
    Checkpoint.HOURS_72,
    Checkpoint.HOURS_48,
    Checkpoint.HOURS_24,
    Checkpoint.EXPIRY,
)

REMINDER_DAYS = {Checkpoint.HOURS_72: 3, Checkpoint.HOURS_48: 2}


def checkpoint_windows(now: datetime, tolerance: timedelta) -> list[CheckpointWindow]:
    """Expiry windows due at `now`, in evaluation order."""
    return [CheckpointWindow.for_tick(cp, now, tolerance) for cp in CHECKPOINT_ORDER]


def match_checkpoint(
    end_date: datetime, now: datetime, tolerance: timedelta
) -> Checkpoint | None:
    """First checkpoint whose window contains `end_date`, if any."""
    for window in checkpoint_windows(now, tolerance):
        if window.contains(end_date):
            return window.checkpoint
    return None


class PrecisionScheduler(PeriodicTask):
    """Fires reminder, renewal and suspension handlers at fixed offsets before expiry."""

    name = "precision_scheduler"

    def __init__(
        self,
        store: WalletStore,
        engine: RenewalDecisionEngine,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utc_now,
        interval_seconds: float | None = None,
        tolerance_seconds: int | None = None,
        bounded_scan: bool | None = None,
    ) -> None:
        super().__init__(
            interval_seconds
            if interval_seconds is not None
            else settings.scheduler_interval_seconds
        )
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.clock = clock
        if tolerance_seconds is None:
            tolerance_seconds = settings.checkpoint_tolerance_seconds
        if tolerance_seconds <= 0:
            raise ValueError("Checkpoint tolerance must be positive")
        self.tolerance = timedelta(seconds=tolerance_seconds)
        self.bounded_scan = (
            settings.scheduler_bounded_scan if bounded_scan is None else bounded_scan
        )
        # Claims already confirmed by this process; the datastore stays authoritative
        self._claimed: set[CheckpointKey] = set()

    async def tick(self) -> None:
        await self.scan()

    async def scan(self) -> int:
        """Evaluate every monitored client once. Returns the number of checkpoints fired."""
        now = self.clock()
        windows = checkpoint_windows(now, self.tolerance) if self.bounded_scan else None
        clients = await self.store.list_monitored_clients(windows)

        fired = 0
        for snapshot in clients:
            if await self.evaluate_client(snapshot, now):
                fired += 1

        self._forget_expired_claims(now)
        logger.info(
            "scheduler_scan_completed",
            clients=len(clients),
            fired=fired,
            bounded=self.bounded_scan,
        )
        return fired

    async def evaluate_client(self, snapshot: ClientSnapshot, now: datetime) -> bool:
        """
        Check one client and run its due checkpoint handler.

        Errors are contained here so one client cannot abort the tick.
        """
        with log_context(client_id=str(snapshot.client_id)):
            try:
                return await self._evaluate_client(snapshot, now)
            except Exception as e:
                logger.exception("client_evaluation_failed", error=str(e))
                metrics.record_error(type(e).__name__, "scheduler_evaluate_client")
                return False

    async def _evaluate_client(self, snapshot: ClientSnapshot, now: datetime) -> bool:
        if snapshot.subscription_end_date is None:
            return False
        if match_checkpoint(snapshot.subscription_end_date, now, self.tolerance) is None:
            return False

        # The scan may come from a replica; decide on a fresh primary read
        analysis = await self.engine.analyzer.analyze(snapshot.client_id)
        if analysis.subscription_end_date is None:
            return False
        checkpoint = match_checkpoint(analysis.subscription_end_date, now, self.tolerance)
        if checkpoint is None:
            logger.info("checkpoint_no_longer_due")
            return False

        key = CheckpointKey(
            client_id=analysis.client_id,
            checkpoint=checkpoint,
            subscription_end_date=analysis.subscription_end_date,
        )
        if not await self._claim(key, now):
            metrics.record_checkpoint(checkpoint.value, fired=False)
            logger.debug("checkpoint_already_fired", checkpoint=checkpoint.value)
            return False

        metrics.record_checkpoint(checkpoint.value, fired=True)
        with log_context(checkpoint=checkpoint.value):
            logger.info("checkpoint_fired", days_until_expiry=analysis.days_until_expiry)
            if checkpoint in REMINDER_DAYS:
                await self._send_reminder(checkpoint, analysis, key)
            elif checkpoint is Checkpoint.HOURS_24:
                await self._handle_final_day(analysis, key)
            else:
                await self._handle_expiry(analysis, key)
        return True

    async def _claim(self, key: CheckpointKey, now: datetime) -> bool:
        if key in self._claimed:
            return False
        claimed = await self.store.claim_checkpoint(key, now)
        self._claimed.add(key)
        return claimed

    def _forget_expired_claims(self, now: datetime) -> None:
        """Drop cached claims whose expiry window has passed."""
        horizon = now - self.tolerance - timedelta(minutes=1)
        self._claimed = {k for k in self._claimed if k.subscription_end_date >= horizon}

    # ========================================================================
    # Checkpoint Handlers
    # ========================================================================

    async def _send_reminder(
        self, checkpoint: Checkpoint, analysis: WalletAnalysis, key: CheckpointKey
    ) -> None:
        """72h/48h: standard reminder if affordable, otherwise targeted top-up reminder."""
        if not analysis.can_afford_renewal:
            await self.engine.send_targeted_top_up_reminder(analysis, key.idempotency_key)
            return

        await self.dispatcher.dispatch(
            NotificationRequest(
                client_id=analysis.client_id,
                type=NotificationType.PAYMENT_REMINDER,
                data=NotificationData(
                    days_remaining=REMINDER_DAYS[checkpoint],
                    package_name=analysis.package_name,
                    amount=analysis.required_amount,
                    sufficient_balance=True,
                ),
                idempotency_key=key.idempotency_key,
            )
        )

    async def _handle_final_day(self, analysis: WalletAnalysis, key: CheckpointKey) -> None:
        """24h: renew now if possible, otherwise a final reminder with the shortfall."""
        action = await self.engine.evaluate(
            analysis, notify_top_up=False, idempotency_key=key.idempotency_key
        )
        if action.type is RenewalActionType.AUTO_RENEW:
            return

        await self.dispatcher.dispatch(
            NotificationRequest(
                client_id=analysis.client_id,
                type=NotificationType.FINAL_REMINDER,
                data=NotificationData(
                    hours_remaining=24,
                    package_name=analysis.package_name,
                    amount=analysis.required_amount,
                    shortfall=analysis.shortfall,
                    action_required=action.message,
                ),
                idempotency_key=key.idempotency_key,
            )
        )

    async def _handle_expiry(self, analysis: WalletAnalysis, key: CheckpointKey) -> None:
        """Expiry: last renewal attempt, then suspension if nothing was renewed."""
        action = await self.engine.evaluate(
            analysis, notify_top_up=False, idempotency_key=key.idempotency_key
        )
        if action.type in (RenewalActionType.AUTO_RENEW, RenewalActionType.PARTIAL_PAYMENT):
            logger.info("renewed_at_expiry", action=action.type.value)
            return

        await self.engine.apply(
            RenewalAction(type=RenewalActionType.SUSPEND_SERVICE, message=action.message),
            analysis,
            idempotency_key=key.idempotency_key,
        )
