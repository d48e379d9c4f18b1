"""
Tests for PrecisionScheduler.

Covers checkpoint matching, each checkpoint handler, at-most-once firing under
tick jitter and restarts, per-client failure isolation and the bounded scan.
"""

import random
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from renewal_engine.models.api import Checkpoint, ClientStatus, NotificationType
from renewal_engine.models.domain import CheckpointWindow
from renewal_engine.services.scheduler import (
    PrecisionScheduler,
    checkpoint_windows,
    match_checkpoint,
)

TOLERANCE = timedelta(seconds=120)


@pytest.fixture
def scheduler(store, engine, dispatcher, clock) -> PrecisionScheduler:
    return PrecisionScheduler(
        store,
        engine,
        dispatcher,
        clock=clock,
        interval_seconds=60,
        tolerance_seconds=120,
        bounded_scan=True,
    )


class TestMatchCheckpoint:
    """Tests for checkpoint window matching."""

    @pytest.mark.parametrize(
        ("until_expiry", "expected"),
        [
            (timedelta(hours=72), Checkpoint.HOURS_72),
            (timedelta(hours=72, seconds=120), Checkpoint.HOURS_72),
            (timedelta(hours=72, seconds=-120), Checkpoint.HOURS_72),
            (timedelta(hours=72, seconds=121), None),
            (timedelta(hours=48, seconds=-60), Checkpoint.HOURS_48),
            (timedelta(hours=24, seconds=90), Checkpoint.HOURS_24),
            (timedelta(hours=36), None),
            (timedelta(seconds=1), None),
            (timedelta(0), Checkpoint.EXPIRY),
            (timedelta(seconds=-120), Checkpoint.EXPIRY),
            (timedelta(seconds=-121), None),
        ],
    )
    def test_windows(self, clock, until_expiry: timedelta, expected: Checkpoint | None) -> None:
        assert match_checkpoint(clock.now + until_expiry, clock.now, TOLERANCE) is expected

    def test_windows_are_in_evaluation_order(self, clock) -> None:
        windows = checkpoint_windows(clock.now, TOLERANCE)

        assert [w.checkpoint for w in windows] == [
            Checkpoint.HOURS_72,
            Checkpoint.HOURS_48,
            Checkpoint.HOURS_24,
            Checkpoint.EXPIRY,
        ]
        assert windows[-1] == CheckpointWindow(
            Checkpoint.EXPIRY, clock.now - TOLERANCE, clock.now
        )


class TestReminderCheckpoints:
    """72h and 48h handlers."""

    async def test_72h_affordable_sends_payment_reminder(
        self, scheduler: PrecisionScheduler, dispatcher, make_client
    ) -> None:
        client = make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72))

        fired = await scheduler.scan()

        assert fired == 1
        notification = dispatcher.last()
        assert notification.type is NotificationType.PAYMENT_REMINDER
        assert notification.data.days_remaining == 3
        assert notification.data.sufficient_balance is True
        assert notification.data.amount == Decimal("1000")
        assert notification.idempotency_key.startswith(f"{client.client_id}:72h:")

    async def test_48h_affordable_sends_payment_reminder(
        self, scheduler: PrecisionScheduler, dispatcher, make_client
    ) -> None:
        make_client(balance="1000", rate="1000", expires_in=timedelta(hours=48, seconds=30))

        await scheduler.scan()

        notification = dispatcher.last()
        assert notification.type is NotificationType.PAYMENT_REMINDER
        assert notification.data.days_remaining == 2

    @pytest.mark.parametrize("hours", [72, 48])
    async def test_insufficient_funds_sends_targeted_top_up(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, hours: int
    ) -> None:
        client = make_client(balance="300", rate="1000", expires_in=timedelta(hours=hours))

        await scheduler.scan()

        assert dispatcher.types == [NotificationType.TOP_UP_REMINDER]
        assert dispatcher.last().data.shortfall == Decimal("700")
        # Reminders never mutate
        assert store.clients[client.client_id] == client


class TestFinalDayCheckpoint:
    """24h handler runs the full decision."""

    async def test_affordable_client_is_renewed(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, clock
    ) -> None:
        client = make_client(balance="1200", rate="1000", expires_in=timedelta(hours=24))

        await scheduler.scan()

        updated = store.clients[client.client_id]
        assert updated.wallet_balance == Decimal("200")
        assert updated.subscription_end_date == clock.now + timedelta(days=30)
        assert dispatcher.types == [NotificationType.RENEWAL_SUCCESS]

    async def test_unaffordable_client_gets_final_reminder(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client
    ) -> None:
        client = make_client(balance="50", rate="1000", expires_in=timedelta(hours=24))

        await scheduler.scan()

        assert dispatcher.types == [NotificationType.FINAL_REMINDER]
        data = dispatcher.last().data
        assert data.hours_remaining == 24
        assert data.shortfall == Decimal("950")
        assert data.action_required == "Top-up required: KES 950.00 for Home 10Mbps"
        assert store.clients[client.client_id] == client

    async def test_partial_renewal_still_gets_final_reminder(
        self, scheduler: PrecisionScheduler, dispatcher, make_client
    ) -> None:
        make_client(balance="400", rate="1000", expires_in=timedelta(hours=24))

        await scheduler.scan()

        assert dispatcher.types == [
            NotificationType.PARTIAL_RENEWAL,
            NotificationType.FINAL_REMINDER,
        ]


class TestExpiryCheckpoint:
    """Expiry handler renews or suspends."""

    async def test_unaffordable_client_is_suspended(
        self, scheduler: PrecisionScheduler, dispatcher, store, network, make_client
    ) -> None:
        client = make_client(balance="0", rate="1000", expires_in=timedelta(seconds=-45))

        await scheduler.scan()

        assert store.clients[client.client_id].status is ClientStatus.SUSPENDED
        network.disconnect.assert_awaited_once_with(client.client_id)
        assert dispatcher.types == [NotificationType.SERVICE_DISCONNECTED]

    async def test_late_top_up_renews_instead_of_suspending(
        self, scheduler: PrecisionScheduler, dispatcher, store, network, make_client
    ) -> None:
        client = make_client(balance="1000", rate="1000", expires_in=timedelta(seconds=-45))

        await scheduler.scan()

        assert store.clients[client.client_id].status is ClientStatus.ACTIVE
        network.disconnect.assert_not_awaited()
        assert dispatcher.types == [NotificationType.RENEWAL_SUCCESS]

    async def test_partial_renewal_at_expiry_is_not_suspended(
        self, scheduler: PrecisionScheduler, store, network, make_client, clock
    ) -> None:
        client = make_client(balance="500", rate="1000", expires_in=timedelta(seconds=-45))

        await scheduler.scan()

        updated = store.clients[client.client_id]
        assert updated.status is ClientStatus.ACTIVE
        assert updated.subscription_end_date == clock.now + timedelta(days=15)
        network.disconnect.assert_not_awaited()


class TestAtMostOnce:
    """Each checkpoint fires at most once per client and expiry timestamp."""

    async def test_repeated_ticks_inside_window_fire_once(
        self, scheduler: PrecisionScheduler, dispatcher, make_client, clock
    ) -> None:
        make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72, seconds=110))

        for _ in range(4):
            await scheduler.scan()
            clock.advance(timedelta(seconds=50))

        assert dispatcher.types == [NotificationType.PAYMENT_REMINDER]

    async def test_restarted_scheduler_does_not_refire(
        self, store, engine, dispatcher, make_client, clock
    ) -> None:
        make_client(balance="1500", rate="1000", expires_in=timedelta(hours=48))

        first = PrecisionScheduler(store, engine, dispatcher, clock=clock, tolerance_seconds=120)
        await first.scan()
        clock.advance(timedelta(seconds=30))
        second = PrecisionScheduler(store, engine, dispatcher, clock=clock, tolerance_seconds=120)
        await second.scan()

        assert dispatcher.types == [NotificationType.PAYMENT_REMINDER]

    async def test_full_monitoring_window_with_jittered_ticks(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, clock
    ) -> None:
        """An unfunded client sees every checkpoint exactly once from T-73h to T+5m."""
        rng = random.Random(20260301)
        client = make_client(balance="0", rate="1000", expires_in=timedelta(hours=73))
        end = client.subscription_end_date

        while clock.now <= end + timedelta(minutes=5):
            await scheduler.scan()
            # Nominal 60s cadence with jitter, including occasional missed ticks
            clock.advance(timedelta(seconds=rng.choice([20, 45, 60, 60, 75, 110])))

        assert dispatcher.types == [
            NotificationType.TOP_UP_REMINDER,
            NotificationType.TOP_UP_REMINDER,
            NotificationType.FINAL_REMINDER,
            NotificationType.SERVICE_DISCONNECTED,
        ]
        assert {k.checkpoint for k in store.claims} == set(Checkpoint)
        assert store.clients[client.client_id].status is ClientStatus.SUSPENDED

    async def test_renewed_subscription_gets_fresh_checkpoints(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, clock
    ) -> None:
        """Checkpoint identity includes the expiry timestamp."""
        client = make_client(balance="2500", rate="1000", expires_in=timedelta(hours=24))
        await scheduler.scan()
        renewed_end = store.clients[client.client_id].subscription_end_date

        clock.now = renewed_end - timedelta(hours=72)
        await scheduler.scan()

        assert dispatcher.types == [
            NotificationType.RENEWAL_SUCCESS,
            NotificationType.PAYMENT_REMINDER,
        ]


class TestScan:
    """Tests for scan-level behavior."""

    async def test_one_failing_client_does_not_abort_tick(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, monkeypatch
    ) -> None:
        broken = make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72))
        healthy = make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72))
        real_get_client = store.get_client

        async def flaky_get_client(client_id):
            if client_id == broken.client_id:
                raise ConnectionError("read timeout")
            return await real_get_client(client_id)

        monkeypatch.setattr(store, "get_client", flaky_get_client)

        fired = await scheduler.scan()

        assert fired == 1
        assert [n.client_id for n in dispatcher.sent] == [healthy.client_id]

    async def test_failed_client_is_retried_next_tick(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, monkeypatch, clock
    ) -> None:
        make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72, seconds=60))
        real_get_client = store.get_client
        calls = {"n": 0}

        async def fail_once(client_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("read timeout")
            return await real_get_client(client_id)

        monkeypatch.setattr(store, "get_client", fail_once)

        await scheduler.scan()
        clock.advance(timedelta(seconds=60))
        await scheduler.scan()

        assert dispatcher.types == [NotificationType.PAYMENT_REMINDER]

    async def test_bounded_scan_requests_checkpoint_windows(
        self, scheduler: PrecisionScheduler, store, make_client, monkeypatch, clock
    ) -> None:
        seen: list = []
        real_list = store.list_monitored_clients

        async def spy(windows=None):
            seen.append(windows)
            return await real_list(windows)

        monkeypatch.setattr(store, "list_monitored_clients", spy)

        await scheduler.scan()

        assert seen == [checkpoint_windows(clock.now, TOLERANCE)]

    async def test_full_scan_mode_matches_same_clients(
        self, store, engine, dispatcher, make_client, clock
    ) -> None:
        make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72))
        make_client(balance="1500", rate="1000", expires_in=timedelta(days=20))
        scheduler = PrecisionScheduler(
            store, engine, dispatcher, clock=clock, tolerance_seconds=120, bounded_scan=False
        )

        fired = await scheduler.scan()

        assert fired == 1

    async def test_inactive_clients_are_ignored(
        self, scheduler: PrecisionScheduler, dispatcher, make_client
    ) -> None:
        make_client(balance="0", expires_in=timedelta(hours=72), status=ClientStatus.SUSPENDED)
        make_client(balance="0", expires_in=timedelta(hours=72), status=ClientStatus.PENDING)

        assert await scheduler.scan() == 0
        assert dispatcher.sent == []

    async def test_stale_snapshot_rechecked_against_fresh_read(
        self, scheduler: PrecisionScheduler, dispatcher, store, make_client, clock
    ) -> None:
        """A client renewed after the scan read is not handled on the old expiry."""
        client = make_client(balance="0", rate="1000", expires_in=timedelta(hours=24))
        store.clients[client.client_id] = replace(
            client, subscription_end_date=client.subscription_end_date + timedelta(days=30)
        )

        fired = await scheduler.evaluate_client(client, clock.now)

        assert fired is False
        assert dispatcher.sent == []
        assert store.claims == set()


class TestLifecycle:
    """Tests for start/stop of the scheduler loop."""

    async def test_start_runs_first_tick_and_stop_cleans_up(
        self, scheduler: PrecisionScheduler, dispatcher, make_client
    ) -> None:
        make_client(balance="1500", rate="1000", expires_in=timedelta(hours=72))

        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler._task is None
        assert dispatcher.types == [NotificationType.PAYMENT_REMINDER]

    @pytest.mark.parametrize(
        "overrides", [{"tolerance_seconds": 0}, {"interval_seconds": 0}]
    )
    def test_explicit_zero_is_rejected_not_defaulted(
        self, store, engine, dispatcher, overrides
    ) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            PrecisionScheduler(store, engine, dispatcher, **overrides)

    def test_explicit_tolerance_is_kept(self, store, engine, dispatcher) -> None:
        scheduler = PrecisionScheduler(store, engine, dispatcher, tolerance_seconds=5)

        assert scheduler.tolerance == timedelta(seconds=5)
