"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID


class EngineError(Exception):
    """Base exception for all renewal engine errors."""

    pass


class ClientNotFoundError(EngineError):
    """Raised when a client record doesn't exist."""

    def __init__(self, client_id: UUID) -> None:
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")


class InsufficientBalanceError(EngineError):
    """Raised when the wallet cannot cover a debit at write time."""

    def __init__(self, client_id: UUID, required: Decimal) -> None:
        self.client_id = client_id
        self.required = required
        super().__init__(f"Insufficient wallet balance for client {client_id}. Required: {required}")


class ConcurrencyError(EngineError):
    """Raised when the subscription changed between analysis and write."""

    def __init__(self, client_id: UUID, expected_end_date: datetime | None) -> None:
        self.client_id = client_id
        self.expected_end_date = expected_end_date
        super().__init__(
            f"Concurrent modification detected for client {client_id} "
            f"(expected expiry {expected_end_date})"
        )


class RenewalMutationError(EngineError):
    """Raised when a renewal write is rejected by the datastore."""

    def __init__(self, client_id: UUID, message: str) -> None:
        self.client_id = client_id
        self.message = message
        super().__init__(f"Renewal mutation failed for client {client_id}: {message}")


class DuplicatePaymentError(EngineError):
    """Raised when an external payment reference was already consumed."""

    def __init__(self, external_reference: str) -> None:
        self.external_reference = external_reference
        super().__init__(f"Payment already processed: {external_reference}")


class InvoiceNotFoundError(EngineError):
    """Raised when no pending installation invoice matches a payment."""

    def __init__(self, client_id: UUID) -> None:
        self.client_id = client_id
        super().__init__(f"No pending installation invoice for client {client_id}")


class DatabaseError(EngineError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentGatewayError(EngineError):
    """Raised when a payment gateway query fails."""

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        self.message = message
        super().__init__(f"Payment gateway error ({channel}): {message}")


class NotificationDispatchError(EngineError):
    """Raised when the notification service rejects a request."""

    def __init__(self, notification_type: str, message: str) -> None:
        self.notification_type = notification_type
        self.message = message
        super().__init__(f"Notification dispatch failed ({notification_type}): {message}")


class NetworkAutomationError(EngineError):
    """Raised when network provisioning or monitoring calls fail."""

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        self.message = message
        super().__init__(f"Network automation failed ({action}): {message}")
