from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from ..config import ConnectionConfig
    from ..envelope import MessageEnvelope


class ChannelRole(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class ReceiveMode(str, Enum):
    PEEK_LOCK = "peek_lock"


@runtime_checkable
class ITransport(Protocol):
    """
    Port for the broker wire protocol.

    A transport opens opaque *channels* to one entity and performs the raw
    send / receive / settle primitives on them. Connection negotiation,
    authentication and framing live entirely behind this port; peeklock adds
    lock bookkeeping, error typing and the higher-level receive loops.

    Implementations raise :mod:`peeklock.exceptions` errors where they can
    classify a failure (lock lost, already settled, closed channel); anything
    else is wrapped by the connection layer.
    """

    async def open(
        self,
        config: ConnectionConfig,
        role: ChannelRole,
        *,
        mode: ReceiveMode = ReceiveMode.PEEK_LOCK,
        prefetch_count: int = 0,
    ) -> Any:
        """Negotiate a channel to ``config.entity_path`` and return it."""
        ...

    async def close(self, channel: Any) -> None:
        """Close *channel*; wakes any receive pending on it."""
        ...

    async def send(self, channel: Any, envelope: MessageEnvelope) -> None: ...

    async def send_batch(
        self, channel: Any, envelopes: Sequence[MessageEnvelope]
    ) -> None:
        """Submit *envelopes* atomically."""
        ...

    async def receive(
        self, channel: Any, wait_time: float | None
    ) -> MessageEnvelope | None:
        """
        Wait up to *wait_time* seconds for one locked message.

        ``None`` as *wait_time* means the transport's default wait.
        Returns ``None`` when nothing arrived in time.
        """
        ...

    async def receive_deferred(
        self, channel: Any, sequence_number: int
    ) -> MessageEnvelope | None: ...

    async def complete(self, channel: Any, lock_token: str) -> None: ...

    async def abandon(self, channel: Any, lock_token: str) -> None: ...

    async def defer(self, channel: Any, lock_token: str) -> None: ...

    async def dead_letter(
        self,
        channel: Any,
        lock_token: str,
        *,
        reason: str | None = None,
        description: str | None = None,
    ) -> None: ...

    async def renew_lock(self, channel: Any, lock_token: str) -> datetime | None:
        """Extend the lock and return the new expiry, if the broker reports it."""
        ...

    async def set_prefetch_count(self, channel: Any, count: int) -> None: ...
