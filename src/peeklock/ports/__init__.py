"""Ports implemented by transports and consumer services."""

from __future__ import annotations

from .handler import IMessageHandler
from .transport import ChannelRole, ITransport, ReceiveMode

__all__ = [
    "ChannelRole",
    "IMessageHandler",
    "ITransport",
    "ReceiveMode",
]
