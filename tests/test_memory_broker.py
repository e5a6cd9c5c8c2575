"""Tests for the in-memory broker and transport."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta

import pytest

from peeklock.config import ConnectionConfig
from peeklock.connection import ReceiverConnection, SenderConnection
from peeklock.envelope import MessageEnvelope
from peeklock.exceptions import (
    ConnectionClosedError,
    MessageAlreadySettledError,
    MessageLockLostError,
    MessagingConnectionError,
    SettlementError,
)
from peeklock.memory import (
    MAX_DELIVERY_COUNT_EXCEEDED,
    InMemoryBroker,
    InMemoryTransport,
)
from peeklock.ports.transport import ChannelRole, ITransport


def test_transport_satisfies_port() -> None:
    assert isinstance(InMemoryTransport(), ITransport)


def test_queue_and_topic_names_are_exclusive() -> None:
    broker = InMemoryBroker()
    broker.create_queue("orders")
    with pytest.raises(ValueError):
        broker.create_topic("orders")
    broker.create_topic("events")
    with pytest.raises(ValueError):
        broker.create_queue("events")


@pytest.mark.asyncio
async def test_sequence_numbers_are_global_and_increasing() -> None:
    broker = InMemoryBroker()
    first = await broker.enqueue(broker.send_target("a"), [MessageEnvelope()])
    second = await broker.enqueue(
        broker.send_target("b"), [MessageEnvelope(), MessageEnvelope()]
    )
    assert first == [1]
    assert second == [2, 3]


@pytest.mark.asyncio
async def test_topic_fan_out_shares_sequence_number() -> None:
    broker = InMemoryBroker()
    broker.create_subscription("events", "a")
    broker.create_subscription("events", "b")
    await broker.enqueue(broker.send_target("events"), [MessageEnvelope(body=b"e")])
    [a] = broker.peek("events/subscriptions/a")
    [b] = broker.peek("events/subscriptions/b")
    assert a.sequence_number == b.sequence_number == 1


def test_cannot_receive_from_topic() -> None:
    broker = InMemoryBroker()
    broker.create_topic("events")
    with pytest.raises(MessagingConnectionError, match="subscription"):
        broker.receive_source("events")


def test_cannot_send_to_subscription_or_dead_letter_queue() -> None:
    broker = InMemoryBroker()
    with pytest.raises(MessagingConnectionError):
        broker.send_target("events/subscriptions/a")
    with pytest.raises(MessagingConnectionError):
        broker.send_target("orders/$deadletterqueue")


@pytest.mark.asyncio
async def test_expired_lock_redelivers_with_higher_delivery_count() -> None:
    broker = InMemoryBroker(lock_duration=0.05)
    entity = broker.receive_source("orders")
    await broker.enqueue(broker.send_target("orders"), [MessageEnvelope(body=b"x")])

    first = await broker.lock_next(entity, 0.1)
    assert first is not None
    assert first.delivery_count == 1
    # the lock expires while this receive is waiting
    second = await broker.lock_next(entity, 1.0)
    assert second is not None
    assert second.delivery_count == 2
    assert second.lock_token != first.lock_token

    with pytest.raises(MessageLockLostError):
        await broker.complete(entity, first.lock_token or "")
    await broker.complete(entity, second.lock_token or "")
    with pytest.raises(MessageAlreadySettledError):
        await broker.complete(entity, second.lock_token or "")


@pytest.mark.asyncio
async def test_max_delivery_count_dead_letters() -> None:
    broker = InMemoryBroker(max_delivery_count=2)
    entity = broker.receive_source("orders")
    await broker.enqueue(broker.send_target("orders"), [MessageEnvelope(body=b"x")])
    for _ in range(2):
        envelope = await broker.lock_next(entity, 0.1)
        assert envelope is not None
        await broker.abandon(entity, envelope.lock_token or "")
    assert broker.active_count("orders") == 0
    [dead] = broker.dead_letters("orders")
    assert dead.dead_letter_reason == MAX_DELIVERY_COUNT_EXCEEDED
    assert dead.delivery_count == 2


@pytest.mark.asyncio
async def test_time_to_live_expired_messages_are_dropped() -> None:
    broker = InMemoryBroker()
    entity = broker.receive_source("orders")
    await broker.enqueue(
        broker.send_target("orders"),
        [
            MessageEnvelope(body=b"stale", time_to_live=timedelta(milliseconds=10)),
            MessageEnvelope(body=b"fresh"),
        ],
    )
    await asyncio.sleep(0.05)
    assert broker.active_count("orders") == 1
    envelope = await broker.lock_next(entity, 0.1)
    assert envelope is not None
    assert envelope.body == b"fresh"


@pytest.mark.asyncio
async def test_dead_letter_queue_messages_cannot_be_dead_lettered_again() -> None:
    broker = InMemoryBroker()
    source = broker.receive_source("orders")
    await broker.enqueue(broker.send_target("orders"), [MessageEnvelope()])
    envelope = await broker.lock_next(source, 0.1)
    assert envelope is not None
    await broker.dead_letter(source, envelope.lock_token or "", reason="r")

    dlq = broker.receive_source("orders/$deadletterqueue")
    dead = await broker.lock_next(dlq, 0.1)
    assert dead is not None
    with pytest.raises(SettlementError):
        await broker.dead_letter(dlq, dead.lock_token or "")
    await broker.complete(dlq, dead.lock_token or "")
    assert broker.dead_letters("orders") == []


@pytest.mark.asyncio
async def test_send_wakes_waiting_receiver(
    transport: InMemoryTransport,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    receiver = await ReceiverConnection.open(config_for("orders"), transport)
    sender = await SenderConnection.open(config_for("orders"), transport)

    pending = asyncio.create_task(receiver.receive(5.0))
    await asyncio.sleep(0.02)
    await sender.send(MessageEnvelope(body=b"wake"))
    envelope = await asyncio.wait_for(pending, timeout=1.0)
    assert envelope is not None
    assert envelope.body == b"wake"


@pytest.mark.asyncio
async def test_close_wakes_pending_receive(
    transport: InMemoryTransport,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    receiver = await ReceiverConnection.open(config_for("orders"), transport)
    pending = asyncio.create_task(receiver.receive(30.0))
    await asyncio.sleep(0.02)
    await receiver.close()
    with pytest.raises(ConnectionClosedError):
        await asyncio.wait_for(pending, timeout=1.0)


@pytest.mark.asyncio
async def test_prefetch_buffers_and_releases_on_close(
    transport: InMemoryTransport,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    sender = await SenderConnection.open(config_for("orders"), transport)
    for body in (b"a", b"b", b"c", b"d"):
        await sender.send(MessageEnvelope(body=body))
    receiver = await ReceiverConnection.open(
        config_for("orders"), transport, prefetch_count=2
    )

    first = await receiver.receive(0.1)
    assert first is not None
    assert broker.locked_count("orders") == 3
    second = await receiver.receive(0.1)
    assert second is not None
    assert second.body == b"b"

    await receiver.close()
    # "c" was prefetched but never handed out
    assert broker.locked_count("orders") == 2
    assert [e.body for e in broker.peek("orders")] == [b"c", b"d"]
    assert broker.peek("orders")[0].delivery_count == 0


@pytest.mark.asyncio
async def test_channel_roles_are_enforced(
    transport: InMemoryTransport,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    channel = await transport.open(config_for("orders"), ChannelRole.SENDER)
    with pytest.raises(MessagingConnectionError, match="not open for receiving"):
        await transport.receive(channel, 0.01)
    receiving = await transport.open(config_for("orders"), ChannelRole.RECEIVER)
    with pytest.raises(MessagingConnectionError, match="not open for sending"):
        await transport.send(receiving, MessageEnvelope())


@pytest.mark.asyncio
async def test_settled_token_history_is_bounded() -> None:
    broker = InMemoryBroker(settled_history_size=2)
    entity = broker.receive_source("orders")
    await broker.enqueue(
        broker.send_target("orders"),
        [MessageEnvelope(), MessageEnvelope(), MessageEnvelope()],
    )
    tokens: list[str] = []
    for _ in range(3):
        envelope = await broker.lock_next(entity, 0.1)
        assert envelope is not None and envelope.lock_token is not None
        await broker.complete(entity, envelope.lock_token)
        tokens.append(envelope.lock_token)

    assert list(entity.settled) == tokens[1:]
    with pytest.raises(MessageAlreadySettledError):
        await broker.complete(entity, tokens[2])
    # the oldest token has been forgotten
    with pytest.raises(MessageLockLostError):
        await broker.complete(entity, tokens[0])
