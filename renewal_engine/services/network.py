"""Network automation client: provisioning, disconnection and monitoring."""

from typing import Protocol
from uuid import UUID

import httpx
from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.exceptions import NetworkAutomationError

logger = get_logger(__name__)


class NetworkAutomation(Protocol):
    """Network-side actions triggered by subscription state changes."""

    async def provision(self, client_id: UUID) -> None: ...

    async def disconnect(self, client_id: UUID) -> None: ...

    async def start_monitoring(self, client_id: UUID) -> None: ...

    async def stop_monitoring(self, client_id: UUID) -> None: ...


class HttpNetworkAutomation:
    """Calls the network automation service over HTTP."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or settings.network_automation_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds

    async def provision(self, client_id: UUID) -> None:
        await self._call("provision", client_id)

    async def disconnect(self, client_id: UUID) -> None:
        await self._call("disconnect", client_id)

    async def start_monitoring(self, client_id: UUID) -> None:
        await self._call("monitoring/start", client_id)

    async def stop_monitoring(self, client_id: UUID) -> None:
        await self._call("monitoring/stop", client_id)

    async def _call(self, action: str, client_id: UUID) -> None:
        """
        POST one action for a client.

        Raises:
            NetworkAutomationError: On timeout, HTTP errors, or missing configuration
        """
        if not self.base_url:
            raise NetworkAutomationError(action, "network automation service not configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}/clients/{client_id}/{action}")
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise NetworkAutomationError(action, f"timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise NetworkAutomationError(action, f"HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise NetworkAutomationError(action, str(e)) from e

        logger.info("network_action_completed", action=action, client_id=str(client_id))
