"""
Notification Dispatch - Outbound client notifications.

Delivery (SMS/email/push) belongs to the notification service; this module only
posts `{client_id, type, data}` requests. A failed dispatch is logged and
counted but never changes a renewal decision.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from renewal_engine.config import settings
from renewal_engine.exceptions import NotificationDispatchError
from renewal_engine.models.api import NotificationPayload
from renewal_engine.models.domain import NotificationRequest
from renewal_engine.observability.metrics import metrics

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Sends notification requests. Returns False when delivery failed."""

    async def dispatch(self, request: NotificationRequest) -> bool: ...


class HttpNotificationDispatcher:
    """Posts notification requests to the notification service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or settings.notification_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds

    async def dispatch(self, request: NotificationRequest) -> bool:
        """Send one notification; failures are logged, never raised."""
        try:
            await self._post(request)
        except NotificationDispatchError as e:
            logger.warning(
                "notification_dispatch_failed",
                client_id=str(request.client_id),
                notification_type=request.type.value,
                error=e.message,
            )
            metrics.record_notification(request.type.value, success=False)
            return False

        logger.info(
            "notification_dispatched",
            client_id=str(request.client_id),
            notification_type=request.type.value,
            idempotency_key=request.idempotency_key,
        )
        metrics.record_notification(request.type.value, success=True)
        return True

    async def _post(self, request: NotificationRequest) -> None:
        """
        Raises:
            NotificationDispatchError: Service unreachable or rejected the request
        """
        if not self.base_url:
            raise NotificationDispatchError(request.type.value, "notification service not configured")

        payload = NotificationPayload(
            client_id=request.client_id, type=request.type, data=request.data
        )
        headers = {}
        if request.idempotency_key:
            # One checkpoint may legitimately produce two notification types
            headers["Idempotency-Key"] = f"{request.idempotency_key}:{request.type.value}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/notifications",
                    content=payload.model_dump_json(exclude_none=True),
                    headers={"Content-Type": "application/json", **headers},
                )
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise NotificationDispatchError(
                    request.type.value, f"timeout after {self.timeout}s"
                ) from e
            except httpx.HTTPStatusError as e:
                raise NotificationDispatchError(
                    request.type.value, f"HTTP {e.response.status_code}"
                ) from e
            except httpx.HTTPError as e:
                raise NotificationDispatchError(request.type.value, str(e)) from e
