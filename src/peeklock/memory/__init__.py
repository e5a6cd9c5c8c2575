"""In-memory broker and transport for testing."""

from __future__ import annotations

from .broker import MAX_DELIVERY_COUNT_EXCEEDED, InMemoryBroker
from .transport import InMemoryTransport, MemoryChannel

__all__ = [
    "MAX_DELIVERY_COUNT_EXCEEDED",
    "InMemoryBroker",
    "InMemoryTransport",
    "MemoryChannel",
]
