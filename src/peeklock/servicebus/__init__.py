"""Azure Service Bus transport adapter (optional extra: peeklock[servicebus])."""

from __future__ import annotations

from .transport import (
    ServiceBusChannel,
    ServiceBusTransport,
    to_envelope,
    to_sdk_message,
)

__all__ = [
    "ServiceBusChannel",
    "ServiceBusTransport",
    "to_envelope",
    "to_sdk_message",
]
