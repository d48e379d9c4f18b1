"""
Automation Orchestrator - Lifecycle of the background loops.

Constructed once by the host process; nothing starts on import.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from renewal_engine.models.api import ClientEvent, ProcessStatus
from renewal_engine.models.domain import RenewalAction, utc_now
from renewal_engine.services.gateways import PaymentGateway, build_gateways
from renewal_engine.services.network import HttpNetworkAutomation, NetworkAutomation
from renewal_engine.services.notifications import (
    HttpNotificationDispatcher,
    NotificationDispatcher,
)
from renewal_engine.services.payment_ingestion import PaymentIngestionWorker
from renewal_engine.services.periodic import PeriodicTask
from renewal_engine.services.renewal import RENEWABLE_STATUSES, RenewalDecisionEngine
from renewal_engine.services.scheduler import PrecisionScheduler
from renewal_engine.services.wallet_analyzer import WalletAnalyzer
from renewal_engine.services.wallet_store import SqlWalletStore, WalletStore

logger = get_logger(__name__)


class AutomationOrchestrator:
    """Starts and stops the scheduler and payment worker, and routes client events."""

    def __init__(
        self,
        store: WalletStore,
        dispatcher: NotificationDispatcher,
        network: NetworkAutomation,
        gateways: list[PaymentGateway],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.network = network
        self.analyzer = WalletAnalyzer(store, clock=clock)
        self.engine = RenewalDecisionEngine(
            store, self.analyzer, dispatcher, network=network, clock=clock
        )
        self.scheduler = PrecisionScheduler(store, self.engine, dispatcher, clock=clock)
        self.payment_worker = PaymentIngestionWorker(
            store, self.engine, gateways, network=network, clock=clock
        )

    @classmethod
    def from_settings(
        cls,
        write_session_factory: async_sessionmaker[AsyncSession],
        read_session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> "AutomationOrchestrator":
        """Wire the production collaborators from configuration."""
        return cls(
            store=SqlWalletStore(write_session_factory, read_session_factory),
            dispatcher=HttpNotificationDispatcher(),
            network=HttpNetworkAutomation(),
            gateways=build_gateways(),
        )

    @property
    def processes(self) -> list[PeriodicTask]:
        return [self.scheduler, self.payment_worker]

    async def start_all(self) -> None:
        """Start every background loop."""
        for process in self.processes:
            await process.start()
        logger.info("automation_started", processes=[p.name for p in self.processes])

    async def stop_all(self) -> None:
        """Stop every loop; returns once no loop task remains."""
        for process in self.processes:
            await process.stop()
        logger.info("automation_stopped")

    def status(self) -> list[ProcessStatus]:
        return [ProcessStatus(name=p.name, status=p.state) for p in self.processes]

    async def route_client_event(
        self, client_id: UUID, event: ClientEvent
    ) -> RenewalAction | None:
        """
        Dispatch a client lifecycle event.

        activate/suspend toggle network monitoring. payment_received re-runs the
        renewal decision for an active or suspended client and returns the
        resulting action; any other status is left to installation.

        Raises:
            ClientNotFoundError: payment_received for an unknown client
            NetworkAutomationError: Monitoring could not be toggled
        """
        logger.info(
            "client_event_received", client_id=str(client_id), client_event=event.value
        )

        if event is ClientEvent.ACTIVATE:
            await self.network.start_monitoring(client_id)
            return None
        if event is ClientEvent.SUSPEND:
            await self.network.stop_monitoring(client_id)
            return None

        analysis = await self.analyzer.analyze(client_id)
        if analysis.client_status not in RENEWABLE_STATUSES:
            logger.info(
                "renewal_skipped_status",
                client_id=str(client_id),
                status=analysis.client_status.value,
            )
            return None
        return await self.engine.evaluate(analysis)
