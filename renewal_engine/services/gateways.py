"""Payment gateway clients for mobile-money and bank confirmations."""

from datetime import datetime
from typing import Protocol

import httpx
from pydantic import ValidationError
from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.exceptions import PaymentGatewayError
from renewal_engine.models.api import GatewayTransaction, GatewayTransactionList
from renewal_engine.models.domain import PaymentEvent

logger = get_logger(__name__)


class PaymentGateway(Protocol):
    """One payment channel that can be polled for confirmed transactions."""

    channel: str

    async def fetch_confirmed(self, since: datetime) -> list[PaymentEvent]:
        """Confirmed transactions created at or after `since`."""
        ...


class HttpPaymentGateway:
    """Queries a gateway's confirmed-transactions endpoint over HTTP."""

    def __init__(
        self,
        channel: str,
        base_url: str,
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.channel = channel
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.gateway_api_key
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds

    async def fetch_confirmed(self, since: datetime) -> list[PaymentEvent]:
        """
        Fetch confirmed transactions since a timestamp.

        Raises:
            PaymentGatewayError: On timeout, HTTP errors, or invalid response
        """
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.get(
                    f"{self.base_url}/transactions",
                    params={"status": "completed", "since": since.isoformat()},
                    headers=headers,
                )
                response.raise_for_status()
                payload = GatewayTransactionList.model_validate(response.json())

            except httpx.TimeoutException as e:
                raise PaymentGatewayError(
                    self.channel, f"timeout after {self.timeout}s"
                ) from e
            except httpx.HTTPStatusError as e:
                raise PaymentGatewayError(
                    self.channel, f"HTTP {e.response.status_code}"
                ) from e
            except httpx.HTTPError as e:
                raise PaymentGatewayError(self.channel, str(e)) from e
            except (ValidationError, ValueError) as e:
                raise PaymentGatewayError(self.channel, f"invalid response: {e}") from e

        events = [
            _to_payment_event(txn)
            for txn in payload.transactions
            if txn.status == "completed" and txn.confirmed_at >= since
        ]
        logger.debug("gateway_polled", channel=self.channel, count=len(events))
        return events


def _to_payment_event(txn: GatewayTransaction) -> PaymentEvent:
    return PaymentEvent(
        external_reference=txn.transaction_id,
        client_id=txn.client_id,
        amount=txn.amount,
        payment_method=txn.payment_method,
        billing_reference=txn.bill_reference,
        intent_tag=txn.intent,
        confirmed_at=txn.confirmed_at,
    )


def build_gateways() -> list[PaymentGateway]:
    """One HTTP gateway per configured channel."""
    return [
        HttpPaymentGateway(channel=channel, base_url=url)
        for channel, url in settings.gateway_channels.items()
    ]
