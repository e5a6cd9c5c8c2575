"""Sender and receiver connections: one transport channel to one entity."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import (
    ConfigurationError,
    ConnectionClosedError,
    MessagingConnectionError,
    MessagingError,
    ReceiveError,
    SendError,
    SettlementError,
)
from .ports.transport import ChannelRole, ReceiveMode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from datetime import datetime

    from .config import ConnectionConfig
    from .envelope import MessageEnvelope
    from .ports.transport import ITransport

logger = logging.getLogger("peeklock.connection")

T = TypeVar("T")


async def _open_channel(
    transport: ITransport,
    config: ConnectionConfig,
    role: ChannelRole,
    **kwargs: Any,
) -> Any:
    try:
        channel = await transport.open(config, role, **kwargs)
    except (MessagingConnectionError, ConfigurationError):
        raise
    except Exception as e:
        raise MessagingConnectionError(
            f"{role.value.capitalize()} connection creation failed for "
            f"{config.entity_path!r}: {e}"
        ) from e
    logger.debug("Opened %s connection to %s", role.value, config.entity_path)
    return channel


class _Connection:
    """Shared lifecycle of sender and receiver connections.

    No retries are attempted: every transport failure is re-raised as the
    typed error of the operation, with the transport exception as its cause.
    """

    _role: ChannelRole

    def __init__(
        self,
        transport: ITransport,
        config: ConnectionConfig,
        channel: Any,
    ) -> None:
        self._transport = transport
        self._config = config
        self._channel = channel
        self._closed = False

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def entity_path(self) -> str:
        return self._config.entity_path

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(
                f"{self._role.value.capitalize()} connection to "
                f"{self.entity_path!r} is closed"
            )

    async def _call(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        wrap: Callable[[Exception], MessagingError],
        **kwargs: Any,
    ) -> T:
        self._ensure_open()
        try:
            return await operation(self._channel, *args, **kwargs)
        except MessagingError:
            raise
        except Exception as e:
            raise wrap(e) from e

    async def close(self) -> None:
        """Close the channel.

        Not idempotent: closing twice surfaces the transport's error.
        """
        self._closed = True
        try:
            await self._transport.close(self._channel)
        except MessagingConnectionError:
            raise
        except Exception as e:
            raise MessagingConnectionError(
                f"Connection to {self.entity_path!r} cannot be properly closed: {e}"
            ) from e
        logger.debug("Closed %s connection to %s", self._role.value, self.entity_path)


class SenderConnection(_Connection):
    _role = ChannelRole.SENDER

    @classmethod
    async def open(
        cls, config: ConnectionConfig, transport: ITransport
    ) -> SenderConnection:
        channel = await _open_channel(transport, config, ChannelRole.SENDER)
        return cls(transport, config, channel)

    async def send(self, envelope: MessageEnvelope) -> None:
        await self._call(
            self._transport.send,
            envelope,
            wrap=lambda e: SendError(f"Sending to {self.entity_path!r} failed: {e}"),
        )

    async def send_batch(self, envelopes: Sequence[MessageEnvelope]) -> None:
        await self._call(
            self._transport.send_batch,
            envelopes,
            wrap=lambda e: SendError(
                f"Sending a batch to {self.entity_path!r} failed: {e}"
            ),
        )


class ReceiverConnection(_Connection):
    """Receiver channel in PeekLock mode.

    Every method is a single broker primitive; lock bookkeeping is done by
    :class:`~peeklock.settlement.SettlementEngine`.
    """

    _role = ChannelRole.RECEIVER

    def __init__(
        self,
        transport: ITransport,
        config: ConnectionConfig,
        channel: Any,
        *,
        prefetch_count: int = 0,
    ) -> None:
        super().__init__(transport, config, channel)
        self.mode = ReceiveMode.PEEK_LOCK
        self._prefetch_count = prefetch_count
        self._has_received = False

    @classmethod
    async def open(
        cls,
        config: ConnectionConfig,
        transport: ITransport,
        *,
        prefetch_count: int = 0,
    ) -> ReceiverConnection:
        if prefetch_count < 0:
            raise ConfigurationError("prefetch_count must be >= 0")
        channel = await _open_channel(
            transport,
            config,
            ChannelRole.RECEIVER,
            mode=ReceiveMode.PEEK_LOCK,
            prefetch_count=prefetch_count,
        )
        return cls(transport, config, channel, prefetch_count=prefetch_count)

    @property
    def prefetch_count(self) -> int:
        return self._prefetch_count

    @property
    def has_received(self) -> bool:
        return self._has_received

    def _receive_error(self, e: Exception) -> ReceiveError:
        return ReceiveError(f"Receiving from {self.entity_path!r} failed: {e}")

    async def receive(self, wait_time: float | None = None) -> MessageEnvelope | None:
        envelope = await self._call(
            self._transport.receive, wait_time, wrap=self._receive_error
        )
        self._has_received = True
        return envelope

    async def receive_deferred(self, sequence_number: int) -> MessageEnvelope | None:
        return await self._call(
            self._transport.receive_deferred,
            sequence_number,
            wrap=self._receive_error,
        )

    def _settlement_error(
        self, action: str, lock_token: str
    ) -> Callable[[Exception], SettlementError]:
        return lambda e: SettlementError(
            f"Failed to {action} message with lock token {lock_token}: {e}",
            lock_token=lock_token,
        )

    async def complete(self, lock_token: str) -> None:
        await self._call(
            self._transport.complete,
            lock_token,
            wrap=self._settlement_error("complete", lock_token),
        )

    async def abandon(self, lock_token: str) -> None:
        await self._call(
            self._transport.abandon,
            lock_token,
            wrap=self._settlement_error("abandon", lock_token),
        )

    async def defer(self, lock_token: str) -> None:
        await self._call(
            self._transport.defer,
            lock_token,
            wrap=self._settlement_error("defer", lock_token),
        )

    async def dead_letter(
        self,
        lock_token: str,
        *,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        await self._call(
            self._transport.dead_letter,
            lock_token,
            reason=reason,
            description=description,
            wrap=self._settlement_error("dead-letter", lock_token),
        )

    async def renew_lock(self, lock_token: str) -> datetime | None:
        return await self._call(
            self._transport.renew_lock,
            lock_token,
            wrap=self._settlement_error("renew the lock of", lock_token),
        )

    async def set_prefetch_count(self, count: int) -> None:
        if count < 0:
            raise ConfigurationError("prefetch_count must be >= 0")
        await self._call(
            self._transport.set_prefetch_count,
            count,
            wrap=lambda e: ReceiveError(f"Setting the prefetch value failed: {e}"),
        )
        self._prefetch_count = count
