"""InMemoryTransport: ITransport over an :class:`InMemoryBroker`."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..exceptions import ConnectionClosedError, MessagingConnectionError
from ..ports.transport import ChannelRole, ReceiveMode
from .broker import Entity, InMemoryBroker, Topic

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from ..config import ConnectionConfig
    from ..envelope import MessageEnvelope

logger = logging.getLogger("peeklock.memory")


@dataclass(eq=False)
class MemoryChannel:
    path: str
    target: Entity | Topic
    role: ChannelRole
    prefetch_count: int = 0
    buffer: deque[MessageEnvelope] = field(default_factory=deque)
    closed: bool = False

    @property
    def entity(self) -> Entity:
        if not isinstance(self.target, Entity) or self.role is not ChannelRole.RECEIVER:
            raise MessagingConnectionError(f"{self.path!r} is not open for receiving")
        return self.target


class InMemoryTransport:
    """Transport for tests: every channel talks to the same broker object.

    Usage::

        broker = InMemoryBroker(lock_duration=5)
        transport = InMemoryTransport(broker)
        sender = await open_sender(conn_str, "orders", transport=transport)
    """

    def __init__(
        self, broker: InMemoryBroker | None = None, *, default_wait_time: float = 0.1
    ) -> None:
        self._broker = broker or InMemoryBroker()
        self._default_wait_time = default_wait_time

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker

    async def open(
        self,
        config: ConnectionConfig,
        role: ChannelRole,
        *,
        mode: ReceiveMode = ReceiveMode.PEEK_LOCK,
        prefetch_count: int = 0,
    ) -> MemoryChannel:
        if mode is not ReceiveMode.PEEK_LOCK:
            raise MessagingConnectionError(f"Unsupported receive mode {mode!r}")
        self._broker.authorize(config.shared_access_key)
        path = config.entity_path
        target: Entity | Topic
        if role is ChannelRole.SENDER:
            target = self._broker.send_target(path)
        else:
            target = self._broker.receive_source(path)
        logger.debug("Opened in-memory %s channel to %s", role.value, path)
        return MemoryChannel(
            path=path, target=target, role=role, prefetch_count=prefetch_count
        )

    async def close(self, channel: MemoryChannel) -> None:
        if channel.closed:
            raise MessagingConnectionError(
                f"Channel to {channel.path!r} already closed"
            )
        channel.closed = True
        if channel.role is ChannelRole.RECEIVER:
            entity = channel.entity
            while channel.buffer:
                envelope = channel.buffer.popleft()
                if envelope.lock_token is not None:
                    await self._broker.release(entity, envelope.lock_token)
            await self._broker.wake(entity)

    def _check(self, channel: MemoryChannel) -> None:
        if channel.closed:
            raise ConnectionClosedError(f"Channel to {channel.path!r} is closed")

    async def send(self, channel: MemoryChannel, envelope: MessageEnvelope) -> None:
        await self.send_batch(channel, [envelope])

    async def send_batch(
        self, channel: MemoryChannel, envelopes: Sequence[MessageEnvelope]
    ) -> None:
        self._check(channel)
        if channel.role is not ChannelRole.SENDER:
            raise MessagingConnectionError(f"{channel.path!r} is not open for sending")
        await self._broker.enqueue(channel.target, envelopes)

    async def receive(
        self, channel: MemoryChannel, wait_time: float | None
    ) -> MessageEnvelope | None:
        self._check(channel)
        if channel.buffer:
            return channel.buffer.popleft()
        entity = channel.entity
        envelope = await self._broker.lock_next(
            entity,
            self._default_wait_time if wait_time is None else wait_time,
            interrupted=lambda: channel.closed,
        )
        if channel.closed:
            if envelope is not None and envelope.lock_token is not None:
                await self._broker.release(entity, envelope.lock_token)
            raise ConnectionClosedError(
                f"Receiver on {channel.path!r} closed while waiting"
            )
        if envelope is None:
            return None
        while len(channel.buffer) < channel.prefetch_count:
            extra = await self._broker.lock_next(entity, 0)
            if extra is None:
                break
            channel.buffer.append(extra)
        return envelope

    async def receive_deferred(
        self, channel: MemoryChannel, sequence_number: int
    ) -> MessageEnvelope | None:
        self._check(channel)
        return await self._broker.lock_deferred(channel.entity, sequence_number)

    async def complete(self, channel: MemoryChannel, lock_token: str) -> None:
        self._check(channel)
        await self._broker.complete(channel.entity, lock_token)

    async def abandon(self, channel: MemoryChannel, lock_token: str) -> None:
        self._check(channel)
        await self._broker.abandon(channel.entity, lock_token)

    async def defer(self, channel: MemoryChannel, lock_token: str) -> None:
        self._check(channel)
        await self._broker.defer(channel.entity, lock_token)

    async def dead_letter(
        self,
        channel: MemoryChannel,
        lock_token: str,
        *,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        self._check(channel)
        await self._broker.dead_letter(
            channel.entity, lock_token, reason=reason, description=description
        )

    async def renew_lock(self, channel: MemoryChannel, lock_token: str) -> datetime:
        self._check(channel)
        return await self._broker.renew_lock(channel.entity, lock_token)

    async def set_prefetch_count(self, channel: MemoryChannel, count: int) -> None:
        self._check(channel)
        channel.prefetch_count = count
