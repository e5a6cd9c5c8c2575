"""MessageReceiver: pull receives and the settlement surface of a receiver."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .config import ConnectionConfig, ReceiverOptions
from .connection import ReceiverConnection
from .exceptions import DuplicateMessageError
from .instrumentation import get_hook_registry
from .settlement import SettlementEngine

if TYPE_CHECKING:
    from datetime import datetime
    from types import TracebackType

    from .envelope import MessageEnvelope
    from .ports.transport import ITransport
    from .settlement import LockState

logger = logging.getLogger("peeklock.receiver")


class DuplicateGuard:
    """Rejects a message whose id equals the id of the message received just
    before it.

    Only the immediately preceding id is remembered: non-adjacent repeats pass,
    and two distinct messages that happen to share an id are rejected.
    """

    def __init__(self) -> None:
        self._previous: str | None = None

    def check(self, envelope: MessageEnvelope) -> None:
        message_id = envelope.message_id
        if message_id is not None and message_id == self._previous:
            raise DuplicateMessageError(
                f"Received a duplicate message: {message_id}", message_id=message_id
            )
        self._previous = message_id


class MessageReceiver:
    """PeekLock receiver over one queue or subscription.

    With ``auto_settle`` (the default) ``receive_one``, ``receive_many`` and
    ``receive_batch`` complete each envelope before returning it. Without it
    they hand back envelopes with open locks, to be settled through
    :meth:`complete`, :meth:`abandon`, :meth:`defer` or :meth:`dead_letter`.

    ``None`` as a wait time means the broker's default wait.
    """

    def __init__(
        self,
        connection: ReceiverConnection,
        *,
        options: ReceiverOptions | None = None,
        engine: SettlementEngine | None = None,
    ) -> None:
        self._connection = connection
        self._options = options or ReceiverOptions(
            prefetch_count=connection.prefetch_count
        )
        self._engine = engine or SettlementEngine(connection)

    @property
    def connection(self) -> ReceiverConnection:
        return self._connection

    @property
    def engine(self) -> SettlementEngine:
        return self._engine

    @property
    def entity_path(self) -> str:
        return self._connection.entity_path

    @property
    def auto_settle(self) -> bool:
        return self._options.auto_settle

    def lock_state(self, envelope: MessageEnvelope) -> LockState | None:
        return self._engine.state_of(envelope)

    # ── Receiving ────────────────────────────────────────────────────

    async def receive(self, wait_time: float | None = None) -> MessageEnvelope | None:
        """Receive one envelope with its lock left open, or ``None`` on timeout."""
        envelope = await get_hook_registry().execute_all(
            "receiver.receive",
            {"entity_path": self.entity_path, "wait_time": wait_time},
            lambda: self._connection.receive(wait_time),
        )
        if envelope is None:
            return None
        self._engine.track(envelope)
        logger.debug(
            "Received message %s (sequence %s) from %s",
            envelope.message_id,
            envelope.sequence_number,
            self.entity_path,
        )
        return envelope

    def _wait(self, wait_time: float | None) -> float | None:
        return self._options.server_wait_time if wait_time is None else wait_time

    async def _deliver(self, envelope: MessageEnvelope) -> None:
        if self._options.auto_settle:
            await self._engine.complete(envelope)

    async def receive_one(
        self, wait_time: float | None = None
    ) -> MessageEnvelope | None:
        """Wait up to *wait_time* seconds for one message."""
        envelope = await self.receive(self._wait(wait_time))
        if envelope is None:
            logger.debug("No message received from %s", self.entity_path)
            return None
        await self._deliver(envelope)
        return envelope

    async def receive_many(
        self,
        wait_time: float | None = None,
        max_count: int | None = None,
    ) -> list[MessageEnvelope]:
        """Receive until *max_count* messages are collected or one receive
        attempt comes back empty.

        Raises:
            DuplicateMessageError: two consecutive messages share a message id.
        """
        limit = self._options.max_message_count if max_count is None else max_count
        wait = self._wait(wait_time)
        guard = DuplicateGuard()
        received: list[MessageEnvelope] = []
        while len(received) < limit:
            envelope = await self.receive(wait)
            if envelope is None:
                break
            await self._deliver(envelope)
            guard.check(envelope)
            received.append(envelope)
        logger.debug("Received %d messages from %s", len(received), self.entity_path)
        return received

    async def receive_batch(
        self, max_count: int | None = None
    ) -> list[MessageEnvelope]:
        """Make *max_count* receive attempts with the broker default wait.

        Empty attempts are skipped but still use up one attempt.

        Raises:
            DuplicateMessageError: two consecutive messages share a message id.
        """
        limit = self._options.max_message_count if max_count is None else max_count
        guard = DuplicateGuard()
        received: list[MessageEnvelope] = []
        for _ in range(limit):
            envelope = await self.receive(self._options.server_wait_time)
            if envelope is None:
                continue
            await self._deliver(envelope)
            guard.check(envelope)
            received.append(envelope)
        logger.debug("Received %d messages from %s", len(received), self.entity_path)
        return received

    async def receive_deferred_message(
        self, sequence_number: int
    ) -> MessageEnvelope | None:
        """Fetch a deferred message by sequence number; its lock is left open.

        Returns ``None`` if the message no longer exists.
        """
        envelope = await self._connection.receive_deferred(sequence_number)
        if envelope is None:
            logger.debug(
                "No deferred message %d on %s", sequence_number, self.entity_path
            )
            return None
        self._engine.track(envelope)
        return envelope

    # ── Receive-next-then-settle ─────────────────────────────────────

    async def complete_messages(self) -> int:
        """Complete every available message; returns how many.

        Raises:
            DuplicateMessageError: two consecutive messages share a message id.
        """
        guard = DuplicateGuard()
        count = 0
        while True:
            envelope = await self.receive(self._options.server_wait_time)
            if envelope is None:
                break
            await self._engine.complete(envelope)
            count += 1
            guard.check(envelope)
        logger.info("Completed %d messages on %s", count, self.entity_path)
        return count

    async def complete_one_message(self) -> MessageEnvelope | None:
        envelope = await self.receive(self._options.server_wait_time)
        if envelope is None:
            logger.info("No message in %s", self.entity_path)
            return None
        await self._engine.complete(envelope)
        return envelope

    async def abandon_message(self) -> MessageEnvelope | None:
        """Receive the next message and release its lock for redelivery."""
        envelope = await self.receive(self._options.server_wait_time)
        if envelope is None:
            logger.info("No message in %s", self.entity_path)
            return None
        await self._engine.abandon(envelope)
        return envelope

    async def dead_letter_message(
        self,
        reason: str | None = None,
        description: str | None = None,
    ) -> MessageEnvelope | None:
        envelope = await self.receive(self._options.server_wait_time)
        if envelope is None:
            logger.info("No message in %s", self.entity_path)
            return None
        await self._engine.dead_letter(envelope, reason, description)
        return envelope

    async def defer_message(self) -> int:
        """Defer the next message and return its sequence number.

        Returns ``0`` when no message was available; ``0`` is never a real
        sequence number.
        """
        envelope = await self.receive(self._options.server_wait_time)
        if envelope is None:
            logger.info("No message in %s", self.entity_path)
            return 0
        await self._engine.defer(envelope)
        return envelope.sequence_number or 0

    async def renew_lock_on_message(self) -> MessageEnvelope | None:
        """Receive the next message and extend its lock without settling it."""
        envelope = await self.receive(self._options.server_wait_time)
        if envelope is None:
            logger.info("No message in %s", self.entity_path)
            return None
        locked_until = await self._engine.renew_lock(envelope)
        if locked_until is not None:
            envelope = envelope.model_copy(update={"locked_until": locked_until})
        return envelope

    async def set_prefetch_count(self, count: int) -> None:
        """Configure client-side read-ahead; ``0`` disables it."""
        if self._connection.has_received:
            logger.warning(
                "Prefetch count on %s changed after the first receive; "
                "already buffered messages are unaffected",
                self.entity_path,
            )
        await self._connection.set_prefetch_count(count)
        self._options = self._options.model_copy(update={"prefetch_count": count})

    # ── Explicit settlement ──────────────────────────────────────────

    async def complete(self, envelope: MessageEnvelope) -> None:
        await self._engine.complete(envelope)

    async def abandon(self, envelope: MessageEnvelope) -> None:
        await self._engine.abandon(envelope)

    async def defer(self, envelope: MessageEnvelope) -> None:
        await self._engine.defer(envelope)

    async def dead_letter(
        self,
        envelope: MessageEnvelope,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        await self._engine.dead_letter(envelope, reason, description)

    async def renew_lock(self, envelope: MessageEnvelope) -> datetime | None:
        return await self._engine.renew_lock(envelope)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._connection.close()

    async def __aenter__(self) -> MessageReceiver:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._connection.is_closed:
            await self.close()


async def open_receiver(
    connection_string: str | ConnectionConfig,
    entity_path: str = "",
    *,
    transport: ITransport,
    options: ReceiverOptions | None = None,
) -> MessageReceiver:
    """Open a PeekLock receiver connection and wrap it in a :class:`MessageReceiver`."""
    config = (
        connection_string
        if isinstance(connection_string, ConnectionConfig)
        else ConnectionConfig.build(connection_string, entity_path)
    )
    options = options or ReceiverOptions()
    connection = await ReceiverConnection.open(
        config, transport, prefetch_count=options.prefetch_count
    )
    return MessageReceiver(connection, options=options)
