"""SettlementEngine: at-most-once settlement of PeekLock lock tokens.

Every lock token handed out by a receiver is tracked as ``OPEN`` until the
first successful complete / abandon / defer / dead-letter moves it to a
terminal state. The transition is claimed under a lock before the broker
round trip, so of two concurrent settlements of the same token exactly one
reaches the broker; the other fails with :class:`MessageAlreadySettledError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Union

from .exceptions import (
    MessageAlreadySettledError,
    MessageLockLostError,
    SettlementError,
)
from .instrumentation import get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .connection import ReceiverConnection
    from .envelope import MessageEnvelope

logger = logging.getLogger("peeklock.settlement")

DEFAULT_HISTORY_SIZE = 10_000


class LockState(str, Enum):
    OPEN = "open"
    SETTLING = "settling"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    DEFERRED = "deferred"
    DEAD_LETTERED = "dead_lettered"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self not in (LockState.OPEN, LockState.SETTLING)


@dataclass(frozen=True)
class Complete:
    """Remove the message from the entity."""


@dataclass(frozen=True)
class Abandon:
    """Release the lock; the message is immediately redeliverable."""


@dataclass(frozen=True)
class Defer:
    """Set the message aside; retrievable only by sequence number."""


@dataclass(frozen=True)
class DeadLetter:
    """Move the message to the entity's dead-letter sub-queue."""

    reason: str | None = None
    description: str | None = None


SettlementDecision = Union[Complete, Abandon, Defer, DeadLetter]


@dataclass
class _LockRecord:
    lock_token: str
    message_id: str | None
    state: LockState = LockState.OPEN
    locked_until: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SettlementEngine:
    """Lock-token state machine on top of a :class:`ReceiverConnection`.

    Args:
        connection: The receiver the tokens were issued by.
        history_size: How many records to keep before forgetting the oldest
            settled ones. A forgotten token is unknown, so settling it still
            fails.
        clock: Returns the current UTC time; compared with ``locked_until`` to
            fail fast on expired locks.
    """

    def __init__(
        self,
        connection: ReceiverConnection,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._connection = connection
        self._history_size = history_size
        self._clock = clock
        self._records: OrderedDict[str, _LockRecord] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> ReceiverConnection:
        return self._connection

    def track(self, envelope: MessageEnvelope) -> None:
        """Register the lock of a freshly received envelope as open."""
        token = self._token_of(envelope)
        self._records[token] = _LockRecord(
            lock_token=token,
            message_id=envelope.message_id,
            locked_until=_aware(envelope.locked_until),
        )
        self._records.move_to_end(token)
        self._evict()

    def state_of(self, target: MessageEnvelope | str) -> LockState | None:
        token = target if isinstance(target, str) else target.lock_token
        if token is None:
            return None
        record = self._records.get(token)
        return record.state if record is not None else None

    def open_tokens(self) -> list[str]:
        return [
            token
            for token, record in self._records.items()
            if record.state is LockState.OPEN
        ]

    def _evict(self) -> None:
        excess = len(self._records) - self._history_size
        if excess <= 0:
            return
        for token in [t for t, r in self._records.items() if r.state.is_terminal][
            :excess
        ]:
            del self._records[token]

    @staticmethod
    def _token_of(envelope: MessageEnvelope) -> str:
        if envelope.lock_token is None:
            raise SettlementError(
                f"Message {envelope.message_id} carries no lock token; "
                "only PeekLock-received messages can be settled"
            )
        return envelope.lock_token

    def _check_open(self, token: str) -> _LockRecord:
        record = self._records.get(token)
        if record is None:
            raise SettlementError(
                f"Lock token {token} is unknown to this receiver", lock_token=token
            )
        if record.state is LockState.LOST:
            raise MessageLockLostError(
                f"Lock on message {record.message_id} was lost", lock_token=token
            )
        if record.state is not LockState.OPEN:
            raise MessageAlreadySettledError(
                f"Message {record.message_id} is already {record.state.value}",
                lock_token=token,
            )
        if record.locked_until is not None and self._clock() >= record.locked_until:
            record.state = LockState.LOST
            raise MessageLockLostError(
                f"Lock on message {record.message_id} expired at "
                f"{record.locked_until.isoformat()}",
                lock_token=token,
            )
        return record

    async def _settle(
        self,
        envelope: MessageEnvelope,
        action: str,
        final_state: LockState,
        call: Callable[[str], Awaitable[None]],
    ) -> None:
        token = self._token_of(envelope)
        async with self._lock:
            record = self._check_open(token)
            record.state = LockState.SETTLING
        try:
            await get_hook_registry().execute_all(
                f"settlement.{action}",
                {
                    "entity_path": self._connection.entity_path,
                    "message_id": envelope.message_id,
                    "lock_token": token,
                },
                lambda: call(token),
            )
        except asyncio.CancelledError:
            # the broker may already have applied it; the outcome is unknown
            logger.warning(
                "Settlement of message %s cancelled; lock token %s left %s",
                envelope.message_id,
                token,
                LockState.SETTLING.value,
            )
            raise
        except MessageLockLostError:
            record.state = LockState.LOST
            raise
        except Exception:
            record.state = LockState.OPEN
            raise
        record.state = final_state
        logger.debug(
            "Message %s %s on %s",
            envelope.message_id,
            final_state.value,
            self._connection.entity_path,
        )

    async def complete(self, envelope: MessageEnvelope) -> None:
        await self._settle(
            envelope, "complete", LockState.COMPLETED, self._connection.complete
        )

    async def abandon(self, envelope: MessageEnvelope) -> None:
        await self._settle(
            envelope, "abandon", LockState.ABANDONED, self._connection.abandon
        )

    async def defer(self, envelope: MessageEnvelope) -> None:
        await self._settle(
            envelope, "defer", LockState.DEFERRED, self._connection.defer
        )

    async def dead_letter(
        self,
        envelope: MessageEnvelope,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        async def call(token: str) -> None:
            await self._connection.dead_letter(
                token, reason=reason, description=description
            )

        await self._settle(envelope, "dead_letter", LockState.DEAD_LETTERED, call)

    async def renew_lock(self, envelope: MessageEnvelope) -> datetime | None:
        """Extend the lock; the token stays open. Returns the new expiry."""
        token = self._token_of(envelope)
        async with self._lock:
            record = self._check_open(token)
        try:
            locked_until = await get_hook_registry().execute_all(
                "settlement.renew_lock",
                {
                    "entity_path": self._connection.entity_path,
                    "message_id": envelope.message_id,
                    "lock_token": token,
                },
                lambda: self._connection.renew_lock(token),
            )
        except MessageLockLostError:
            async with self._lock:
                # a settlement may have finished while the renewal was in flight
                if record.state is LockState.OPEN:
                    record.state = LockState.LOST
            raise
        locked_until = _aware(locked_until)
        if locked_until is not None:
            record.locked_until = locked_until
        return locked_until

    async def settle(
        self, envelope: MessageEnvelope, decision: SettlementDecision
    ) -> None:
        """Apply a handler's settlement decision."""
        if isinstance(decision, Complete):
            await self.complete(envelope)
        elif isinstance(decision, Abandon):
            await self.abandon(envelope)
        elif isinstance(decision, Defer):
            await self.defer(envelope)
        elif isinstance(decision, DeadLetter):
            await self.dead_letter(envelope, decision.reason, decision.description)
        else:
            raise TypeError(f"Unknown settlement decision: {decision!r}")
