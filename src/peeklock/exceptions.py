"""Exceptions raised by peeklock."""

from __future__ import annotations


class MessagingError(Exception):
    """Root exception for every peeklock failure."""


class ConfigurationError(MessagingError):
    """Raised when a connection string, entity path or option is invalid."""


class MessagingConnectionError(MessagingError):
    """Raised when opening or closing a broker connection fails."""


class ConnectionClosedError(MessagingConnectionError):
    """Raised when an operation is attempted on a closed connection."""


class SendError(MessagingError):
    """Raised when a message or batch could not be sent."""


class ReceiveError(MessagingError):
    """Raised when a receive from the broker fails."""


class SettlementError(MessagingError):
    """Raised when complete/abandon/defer/dead-letter/renew-lock fails."""

    def __init__(self, message: str, lock_token: str | None = None) -> None:
        self.lock_token = lock_token
        super().__init__(message)


class MessageAlreadySettledError(SettlementError):
    """Raised when a lock token is settled a second time."""


class MessageLockLostError(SettlementError):
    """Raised when the lock on a message expired before settlement."""


class DuplicateMessageError(MessagingError):
    """Raised when two consecutively received messages share a message id."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class ListenerError(MessagingError):
    """Raised when a listener lifecycle operation fails."""


class DetachError(ListenerError):
    """Raised when a consumer service cannot be detached from a listener."""

    def __init__(self, message: str, service_name: str | None = None) -> None:
        self.service_name = service_name
        super().__init__(message)
