"""In-memory broker with PeekLock semantics, for tests and local runs."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from ..config import EntityPath
from ..envelope import DEAD_LETTER_DESCRIPTION, DEAD_LETTER_REASON
from ..exceptions import (
    MessageAlreadySettledError,
    MessageLockLostError,
    MessagingConnectionError,
    SettlementError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ..envelope import MessageEnvelope

logger = logging.getLogger("peeklock.memory")

MAX_DELIVERY_COUNT_EXCEEDED = "MaxDeliveryCountExceeded"
DEFAULT_SETTLED_HISTORY_SIZE = 10_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _StoredMessage:
    envelope: MessageEnvelope
    sequence_number: int
    enqueued_at: datetime
    expires_at: datetime | None
    delivery_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class _Lock:
    token: str
    message: _StoredMessage
    locked_until: datetime
    deferred: bool = False


@dataclass(eq=False)
class Entity:
    """A queue, a subscription, or the dead-letter sub-queue of either."""

    path: str
    dead_letter: Entity | None = None
    available: list[_StoredMessage] = field(default_factory=list)
    deferred: dict[int, _StoredMessage] = field(default_factory=dict)
    locks: dict[str, _Lock] = field(default_factory=dict)
    settled: OrderedDict[str, None] = field(default_factory=OrderedDict)
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)

    @classmethod
    def with_dead_letter(cls, path: str) -> Entity:
        dead_letter = cls(path=EntityPath.parse(path).dead_letter_path())
        return cls(path=path, dead_letter=dead_letter)


@dataclass(eq=False)
class Topic:
    name: str
    subscriptions: dict[str, Entity] = field(default_factory=dict)


class InMemoryBroker:
    """Queues and topic/subscription pairs held in process memory.

    Messages are locked for ``lock_duration`` seconds on receive. A lock that
    expires, or an abandon, makes the message available again; once its
    delivery count reaches ``max_delivery_count`` it is dead-lettered with
    reason ``MaxDeliveryCountExceeded`` instead. Messages past their
    time-to-live are dropped.

    If ``shared_access_key`` is set, connections must present that key.
    With ``auto_create`` unknown queues and subscriptions are created on
    first use. The last ``settled_history_size`` settled lock tokens of each
    entity are remembered, so settling one of them again reports
    "already settled" rather than a lost lock.
    """

    def __init__(
        self,
        *,
        lock_duration: float = 30.0,
        max_delivery_count: int = 10,
        shared_access_key: str | None = None,
        auto_create: bool = True,
        settled_history_size: int = DEFAULT_SETTLED_HISTORY_SIZE,
    ) -> None:
        self.lock_duration = lock_duration
        self.max_delivery_count = max_delivery_count
        self.shared_access_key = shared_access_key
        self.auto_create = auto_create
        self.settled_history_size = settled_history_size
        self._queues: dict[str, Entity] = {}
        self._topics: dict[str, Topic] = {}
        self._sequence = itertools.count(1)

    # ── Entity management ────────────────────────────────────────────

    def create_queue(self, name: str) -> None:
        key = name.lower()
        if key in self._topics:
            raise ValueError(f"{name!r} is already a topic")
        if key not in self._queues:
            self._queues[key] = Entity.with_dead_letter(name)
            logger.debug("Created queue %s", name)

    def create_topic(self, name: str) -> None:
        key = name.lower()
        if key in self._queues:
            raise ValueError(f"{name!r} is already a queue")
        if key not in self._topics:
            self._topics[key] = Topic(name=name)
            logger.debug("Created topic %s", name)

    def create_subscription(self, topic: str, name: str) -> None:
        self.create_topic(topic)
        subscriptions = self._topics[topic.lower()].subscriptions
        if name.lower() not in subscriptions:
            path = EntityPath(name=topic, subscription=name).base_path
            subscriptions[name.lower()] = Entity.with_dead_letter(path)
            logger.debug("Created subscription %s", path)

    def authorize(self, key: str | None) -> None:
        if self.shared_access_key is not None and key != self.shared_access_key:
            raise MessagingConnectionError("Unauthorized: invalid shared access key")

    def send_target(self, path: str) -> Entity | Topic:
        entity = EntityPath.parse(path)
        if entity.is_subscription or entity.is_dead_letter:
            raise MessagingConnectionError(f"Cannot send to {path!r}")
        topic = self._topics.get(entity.name.lower())
        if topic is not None:
            return topic
        return self._queue(entity.name)

    def receive_source(self, path: str) -> Entity:
        entity = EntityPath.parse(path)
        if entity.subscription is not None:
            source = self._subscription(entity.name, entity.subscription)
        else:
            if entity.name.lower() in self._topics:
                raise MessagingConnectionError(
                    f"Cannot receive from topic {entity.name!r}; use a subscription"
                )
            source = self._queue(entity.name)
        if entity.is_dead_letter:
            assert source.dead_letter is not None
            return source.dead_letter
        return source

    def _queue(self, name: str) -> Entity:
        queue = self._queues.get(name.lower())
        if queue is None:
            if not self.auto_create:
                raise MessagingConnectionError(f"Messaging entity {name!r} not found")
            self.create_queue(name)
            queue = self._queues[name.lower()]
        return queue

    def _subscription(self, topic: str, name: str) -> Entity:
        found = self._topics.get(topic.lower())
        subscription = found.subscriptions.get(name.lower()) if found else None
        if subscription is None:
            if not self.auto_create:
                raise MessagingConnectionError(
                    f"Subscription {topic}/subscriptions/{name} not found"
                )
            self.create_subscription(topic, name)
            subscription = self._topics[topic.lower()].subscriptions[name.lower()]
        return subscription

    # ── Sending ──────────────────────────────────────────────────────

    async def enqueue(
        self, target: Entity | Topic, envelopes: Iterable[MessageEnvelope]
    ) -> list[int]:
        """Store *envelopes* together; returns their sequence numbers."""
        now = _utcnow()
        stored = [
            _StoredMessage(
                envelope=envelope,
                sequence_number=next(self._sequence),
                enqueued_at=now,
                expires_at=now + envelope.time_to_live
                if envelope.time_to_live is not None
                else None,
            )
            for envelope in envelopes
        ]
        entities = (
            list(target.subscriptions.values())
            if isinstance(target, Topic)
            else [target]
        )
        for entity in entities:
            async with entity.condition:
                entity.available.extend(
                    _StoredMessage(
                        envelope=m.envelope,
                        sequence_number=m.sequence_number,
                        enqueued_at=m.enqueued_at,
                        expires_at=m.expires_at,
                    )
                    for m in stored
                )
                entity.condition.notify_all()
        return [m.sequence_number for m in stored]

    # ── Receiving ────────────────────────────────────────────────────

    async def lock_next(
        self,
        entity: Entity,
        wait_time: float,
        *,
        interrupted: Callable[[], bool] = lambda: False,
    ) -> MessageEnvelope | None:
        """Lock the oldest available message, waiting up to *wait_time* seconds.

        Returns ``None`` on timeout or as soon as *interrupted* is true.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_time, 0.0)
        async with entity.condition:
            while not interrupted():
                now = _utcnow()
                self._expire_locks(entity, now)
                message = self._take(entity, now)
                if message is not None:
                    return self._lock(entity, message, now)
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                if entity.locks:
                    next_expiry = min(
                        lock.locked_until for lock in entity.locks.values()
                    )
                    remaining = min(
                        remaining, max((next_expiry - now).total_seconds(), 0.001)
                    )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(entity.condition.wait(), timeout=remaining)
        return None

    async def lock_deferred(
        self, entity: Entity, sequence_number: int
    ) -> MessageEnvelope | None:
        async with entity.condition:
            now = _utcnow()
            self._expire_locks(entity, now)
            message = entity.deferred.pop(sequence_number, None)
            if message is None:
                return None
            if message.is_expired(now):
                logger.debug(
                    "Dropped expired deferred message %d from %s",
                    sequence_number,
                    entity.path,
                )
                return None
            return self._lock(entity, message, now, deferred=True)

    async def wake(self, entity: Entity) -> None:
        async with entity.condition:
            entity.condition.notify_all()

    def _take(self, entity: Entity, now: datetime) -> _StoredMessage | None:
        while entity.available:
            message = entity.available.pop(0)
            if not message.is_expired(now):
                return message
            logger.debug(
                "Dropped expired message %d from %s",
                message.sequence_number,
                entity.path,
            )
        return None

    def _lock(
        self,
        entity: Entity,
        message: _StoredMessage,
        now: datetime,
        *,
        deferred: bool = False,
    ) -> MessageEnvelope:
        message.delivery_count += 1
        lock = _Lock(
            token=str(uuid.uuid4()),
            message=message,
            locked_until=now + timedelta(seconds=self.lock_duration),
            deferred=deferred,
        )
        entity.locks[lock.token] = lock
        return message.envelope.model_copy(
            update={
                "lock_token": lock.token,
                "sequence_number": message.sequence_number,
                "locked_until": lock.locked_until,
                "delivery_count": message.delivery_count,
                "enqueued_at": message.enqueued_at,
            }
        )

    def _expire_locks(self, entity: Entity, now: datetime) -> None:
        expired = [t for t, lock in entity.locks.items() if now >= lock.locked_until]
        for token in expired:
            lock = entity.locks.pop(token)
            logger.debug(
                "Lock on message %d in %s expired",
                lock.message.sequence_number,
                entity.path,
            )
            self._return(entity, lock)

    def _return(self, entity: Entity, lock: _Lock) -> None:
        message = lock.message
        if lock.deferred:
            entity.deferred[message.sequence_number] = message
            return
        if (
            message.delivery_count >= self.max_delivery_count
            and entity.dead_letter is not None
        ):
            self._move_to_dead_letter(
                entity,
                message,
                MAX_DELIVERY_COUNT_EXCEEDED,
                f"Message could not be consumed after {message.delivery_count} "
                "delivery attempts",
            )
            return
        entity.available.append(message)
        entity.available.sort(key=lambda m: m.sequence_number)

    def _move_to_dead_letter(
        self,
        entity: Entity,
        message: _StoredMessage,
        reason: str | None,
        description: str | None,
    ) -> None:
        assert entity.dead_letter is not None
        properties = dict(message.envelope.properties)
        if reason is not None:
            properties[DEAD_LETTER_REASON] = reason
        if description is not None:
            properties[DEAD_LETTER_DESCRIPTION] = description
        entity.dead_letter.available.append(
            _StoredMessage(
                envelope=message.envelope.model_copy(update={"properties": properties}),
                sequence_number=message.sequence_number,
                enqueued_at=message.enqueued_at,
                expires_at=None,
                delivery_count=message.delivery_count,
            )
        )
        logger.info(
            "Dead-lettered message %d from %s: %s",
            message.sequence_number,
            entity.path,
            reason,
        )

    # ── Settlement ───────────────────────────────────────────────────

    def _claim(self, entity: Entity, lock_token: str) -> _Lock:
        self._expire_locks(entity, _utcnow())
        lock = entity.locks.pop(lock_token, None)
        if lock is not None:
            entity.settled[lock_token] = None
            while len(entity.settled) > self.settled_history_size:
                entity.settled.popitem(last=False)
            return lock
        if lock_token in entity.settled:
            raise MessageAlreadySettledError(
                f"Message with lock token {lock_token} was already settled",
                lock_token=lock_token,
            )
        raise MessageLockLostError(
            f"Lock token {lock_token} expired or is unknown to {entity.path}",
            lock_token=lock_token,
        )

    async def complete(self, entity: Entity, lock_token: str) -> None:
        async with entity.condition:
            self._claim(entity, lock_token)

    async def abandon(self, entity: Entity, lock_token: str) -> None:
        async with entity.condition:
            self._return(entity, self._claim(entity, lock_token))
            entity.condition.notify_all()

    async def release(self, entity: Entity, lock_token: str) -> None:
        """Unlock a prefetched message that was never handed out."""
        async with entity.condition:
            lock = entity.locks.pop(lock_token, None)
            if lock is None:
                return
            lock.message.delivery_count -= 1
            self._return(entity, lock)
            entity.condition.notify_all()

    async def defer(self, entity: Entity, lock_token: str) -> None:
        async with entity.condition:
            lock = self._claim(entity, lock_token)
            entity.deferred[lock.message.sequence_number] = lock.message

    async def dead_letter(
        self,
        entity: Entity,
        lock_token: str,
        *,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        if entity.dead_letter is None:
            raise SettlementError(
                f"{entity.path} is a dead-letter queue; its messages cannot be "
                "dead-lettered again",
                lock_token=lock_token,
            )
        async with entity.condition:
            lock = self._claim(entity, lock_token)
            self._move_to_dead_letter(entity, lock.message, reason, description)

    async def renew_lock(self, entity: Entity, lock_token: str) -> datetime:
        async with entity.condition:
            now = _utcnow()
            self._expire_locks(entity, now)
            lock = entity.locks.get(lock_token)
            if lock is None:
                raise MessageLockLostError(
                    f"Lock token {lock_token} expired or is unknown to {entity.path}",
                    lock_token=lock_token,
                )
            lock.locked_until = now + timedelta(seconds=self.lock_duration)
            return lock.locked_until

    # ── Inspection ───────────────────────────────────────────────────

    def _inspect(self, path: str) -> Entity:
        return self.receive_source(path)

    def active_count(self, path: str) -> int:
        """Messages waiting to be received (excluding locked and deferred)."""
        entity = self._inspect(path)
        now = _utcnow()
        return sum(1 for m in entity.available if not m.is_expired(now))

    def locked_count(self, path: str) -> int:
        return len(self._inspect(path).locks)

    def deferred_count(self, path: str) -> int:
        return len(self._inspect(path).deferred)

    def peek(self, path: str) -> list[MessageEnvelope]:
        """Available messages in order, without locking them."""
        now = _utcnow()
        return [
            m.envelope.model_copy(
                update={
                    "sequence_number": m.sequence_number,
                    "delivery_count": m.delivery_count,
                    "enqueued_at": m.enqueued_at,
                }
            )
            for m in self._inspect(path).available
            if not m.is_expired(now)
        ]

    def dead_letters(self, path: str) -> list[MessageEnvelope]:
        """Messages in the dead-letter sub-queue of *path*."""
        return self.peek(EntityPath.parse(path).dead_letter_path())
