"""Tests for the Listener dispatch loop and lifecycle."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from peeklock.config import ConnectionConfig
from peeklock.correlation import get_correlation_id
from peeklock.envelope import MessageEnvelope
from peeklock.exceptions import ConfigurationError, DetachError, ListenerError
from peeklock.instrumentation import HookRegistry, set_hook_registry
from peeklock.listener import ConsumerService, Listener, ListenerState
from peeklock.memory import InMemoryBroker, InMemoryTransport
from peeklock.sender import MessageSender
from peeklock.settlement import DeadLetter, Defer, LockState, SettlementDecision


class RecordingHandler:
    """Collects every envelope and returns a fixed decision."""

    def __init__(self, decision: SettlementDecision | None = None) -> None:
        self.decision = decision
        self.received: list[MessageEnvelope] = []

    async def handle(self, envelope: MessageEnvelope) -> SettlementDecision | None:
        self.received.append(envelope)
        return self.decision


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def listener(transport: InMemoryTransport) -> Listener:
    return Listener(transport, server_wait_time=0.05, shutdown_timeout=1.0)


@pytest.mark.asyncio
async def test_dispatches_each_message_and_completes(
    listener: Listener,
    sender: MessageSender,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    handler = RecordingHandler()
    service = ConsumerService("orders", config_for("orders"), handler)
    await listener.register_service(service)
    assert listener.state is ListenerState.ATTACHED
    await listener.start()
    assert listener.state is ListenerState.STARTED

    for body in (b"m1", b"m2", b"m3"):
        await sender.send(MessageEnvelope(body=body))
    await wait_until(lambda: len(handler.received) == 3)

    receiver = listener.receiver_for("orders")
    assert receiver is not None
    await wait_until(
        lambda: all(
            receiver.lock_state(e) is LockState.COMPLETED for e in handler.received
        )
    )
    assert sorted(e.body for e in handler.received) == [b"m1", b"m2", b"m3"]
    assert broker.active_count("orders") == 0
    assert broker.locked_count("orders") == 0
    await listener.stop()
    assert listener.state is ListenerState.STOPPED


@pytest.mark.asyncio
async def test_function_handler_and_decisions(
    listener: Listener,
    sender: MessageSender,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    async def handle(envelope: MessageEnvelope) -> SettlementDecision:
        if envelope.label == "later":
            return Defer()
        return DeadLetter("Rejected", envelope.text())

    await listener.register_service(
        ConsumerService("orders", config_for("orders"), handle)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"bad", label="reject"))
    await sender.send(MessageEnvelope(body=b"wait", label="later"))

    await wait_until(lambda: broker.deferred_count("orders") == 1)
    await wait_until(lambda: len(broker.dead_letters("orders")) == 1)
    [dead] = broker.dead_letters("orders")
    assert dead.dead_letter_reason == "Rejected"
    assert dead.dead_letter_description == "bad"
    await listener.stop()


@pytest.mark.asyncio
async def test_handler_error_abandons_message(
    transport: InMemoryTransport,
    sender: MessageSender,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    attempts: list[int] = []

    async def flaky(envelope: MessageEnvelope) -> None:
        attempts.append(envelope.delivery_count)
        if len(attempts) == 1:
            raise RuntimeError("transient failure")

    listener = Listener(transport, server_wait_time=0.05)
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), flaky)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"x"))

    await wait_until(lambda: len(attempts) == 2)
    assert attempts == [1, 2]
    await wait_until(lambda: broker.locked_count("orders") == 0)
    assert broker.active_count("orders") == 0
    await listener.stop()


@pytest.mark.asyncio
async def test_invalid_decision_abandons_and_loop_keeps_running(
    transport: InMemoryTransport,
    sender: MessageSender,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    received: list[MessageEnvelope] = []

    async def returns_garbage_once(envelope: MessageEnvelope) -> Any:
        received.append(envelope)
        return "ok" if len(received) == 1 else None

    listener = Listener(transport, server_wait_time=0.05)
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), returns_garbage_once)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"1"))

    await wait_until(lambda: len(received) == 2)
    receiver = listener.receiver_for("orders")
    assert receiver is not None
    assert receiver.lock_state(received[0]) is LockState.ABANDONED
    assert received[1].body == b"1"
    assert received[1].delivery_count == 2

    await sender.send(MessageEnvelope(body=b"2"))
    await wait_until(lambda: any(e.body == b"2" for e in received))
    assert listener.is_running("orders")
    await wait_until(lambda: broker.locked_count("orders") == 0)
    assert broker.active_count("orders") == 0
    await listener.stop()


@pytest.mark.asyncio
async def test_poison_message_is_dead_lettered_after_max_deliveries(
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    broker = InMemoryBroker(max_delivery_count=3)
    transport = InMemoryTransport(broker)
    listener = Listener(transport, server_wait_time=0.05)

    async def always_fails(envelope: MessageEnvelope) -> None:
        raise ValueError("cannot process")

    await listener.register_service(
        ConsumerService("orders", config_for("orders"), always_fails)
    )
    await listener.start()
    await broker.enqueue(broker.send_target("orders"), [MessageEnvelope(body=b"p")])

    await wait_until(lambda: len(broker.dead_letters("orders")) == 1)
    [dead] = broker.dead_letters("orders")
    assert dead.dead_letter_reason == "MaxDeliveryCountExceeded"
    await listener.stop()


@pytest.mark.asyncio
async def test_correlation_id_is_scoped_to_dispatch(
    listener: Listener,
    sender: MessageSender,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    seen: list[str | None] = []

    async def handle(envelope: MessageEnvelope) -> None:
        seen.append(get_correlation_id())

    await listener.register_service(
        ConsumerService("orders", config_for("orders"), handle)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"x", correlation_id="corr-7"))
    await wait_until(lambda: len(seen) == 1)
    assert seen == ["corr-7"]
    assert get_correlation_id() is None
    await listener.stop()


@pytest.mark.asyncio
async def test_dispatch_runs_through_hooks(
    transport: InMemoryTransport,
    sender: MessageSender,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    operations: list[str] = []

    async def hook(
        operation: str, attributes: dict[str, Any], next_handler: Any
    ) -> Any:
        operations.append(operation)
        return await next_handler()

    registry = HookRegistry()
    registry.register(hook, operations=["listener.dispatch.*"])
    set_hook_registry(registry)

    listener = Listener(transport, server_wait_time=0.05)
    handler = RecordingHandler()
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), handler)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"x"))
    await wait_until(lambda: len(handler.received) == 1)
    await listener.stop()
    assert operations == ["listener.dispatch.orders"]


@pytest.mark.asyncio
async def test_register_while_started_starts_loop(
    listener: Listener,
    sender: MessageSender,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    first = ConsumerService("billing", config_for("billing"), RecordingHandler())
    await listener.register_service(first)
    await listener.start()

    handler = RecordingHandler()
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), handler)
    )
    assert listener.is_running("orders")
    await sender.send(MessageEnvelope(body=b"late"))
    await wait_until(lambda: len(handler.received) == 1)
    await listener.stop()


@pytest.mark.asyncio
async def test_register_same_service_twice_is_noop(
    listener: Listener, config_for: Callable[[str], ConnectionConfig]
) -> None:
    service = ConsumerService("orders", config_for("orders"), RecordingHandler())
    await listener.register_service(service)
    receiver = listener.receiver_for("orders")
    await listener.register_service(service)
    assert listener.receiver_for("orders") is receiver
    assert listener.service_names == ["orders"]
    await listener.stop()


@pytest.mark.asyncio
async def test_register_name_clash_fails(
    listener: Listener, config_for: Callable[[str], ConnectionConfig]
) -> None:
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), RecordingHandler())
    )
    with pytest.raises(ListenerError, match="already registered"):
        await listener.register_service(
            ConsumerService("orders", config_for("other"), RecordingHandler())
        )
    await listener.stop()


@pytest.mark.asyncio
async def test_start_twice_launches_one_loop_per_service(
    listener: Listener,
    sender: MessageSender,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    handler = RecordingHandler()
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), handler)
    )
    with patch.object(listener, "_launch", wraps=listener._launch) as launch:
        await listener.start()
        await listener.start()
    assert launch.call_count == 1
    await listener.stop()


@pytest.mark.asyncio
async def test_start_without_services_stays_idle(listener: Listener) -> None:
    await listener.start()
    assert listener.state is ListenerState.IDLE


@pytest.mark.asyncio
async def test_stop_without_services_fails(listener: Listener) -> None:
    with pytest.raises(ListenerError, match="never attached"):
        await listener.stop()
    with pytest.raises(ListenerError):
        await listener.abort()


@pytest.mark.asyncio
async def test_detach_while_receiving_returns_promptly(
    transport: InMemoryTransport,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    # long server wait: only closing the receiver can end the pending receive
    listener = Listener(transport, server_wait_time=30.0, shutdown_timeout=5.0)
    service = ConsumerService("orders", config_for("orders"), RecordingHandler())
    await listener.register_service(service)
    await listener.start()
    await asyncio.sleep(0.05)

    started = time.monotonic()
    await listener.detach(service)
    assert time.monotonic() - started < 1.0
    assert listener.service_names == []
    assert not listener.is_running("orders")


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_handler(
    listener: Listener,
    sender: MessageSender,
    broker: InMemoryBroker,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    started = asyncio.Event()
    finished: list[bytes] = []

    async def slow(envelope: MessageEnvelope) -> None:
        started.set()
        await asyncio.sleep(0.2)
        finished.append(envelope.body)

    await listener.register_service(
        ConsumerService("orders", config_for("orders"), slow)
    )
    await listener.start()
    await sender.send(MessageEnvelope(body=b"work"))
    await asyncio.wait_for(started.wait(), timeout=2.0)

    await listener.stop()
    assert finished == [b"work"]
    assert broker.active_count("orders") == 0
    assert broker.locked_count("orders") == 0


@pytest.mark.asyncio
async def test_detach_unknown_service_fails(
    listener: Listener, config_for: Callable[[str], ConnectionConfig]
) -> None:
    with pytest.raises(DetachError) as exc_info:
        await listener.detach("orders")
    assert exc_info.value.service_name == "orders"

    await listener.register_service(
        ConsumerService("orders", config_for("orders"), RecordingHandler())
    )
    impostor = ConsumerService("orders", config_for("orders"), RecordingHandler())
    with pytest.raises(DetachError):
        await listener.detach(impostor)
    await listener.stop()


@pytest.mark.asyncio
async def test_failed_close_keeps_service_registered(
    listener: Listener,
    transport: InMemoryTransport,
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    service = ConsumerService("orders", config_for("orders"), RecordingHandler())
    await listener.register_service(service)
    with patch.object(
        transport, "close", AsyncMock(side_effect=OSError("link stuck"))
    ):
        with pytest.raises(DetachError, match="link stuck"):
            await listener.detach(service)
    assert listener.service_names == ["orders"]

    await listener.detach(service)
    assert listener.service_names == []


@pytest.mark.asyncio
async def test_stopped_listener_is_terminal(
    listener: Listener, config_for: Callable[[str], ConnectionConfig]
) -> None:
    service = ConsumerService("orders", config_for("orders"), RecordingHandler())
    await listener.register_service(service)
    await listener.stop()
    with pytest.raises(ListenerError, match="stopped"):
        await listener.register_service(service)
    with pytest.raises(ListenerError):
        await listener.start()


@pytest.mark.asyncio
async def test_abort_ends_in_aborted_state(
    listener: Listener, config_for: Callable[[str], ConnectionConfig]
) -> None:
    await listener.register_service(
        ConsumerService("orders", config_for("orders"), RecordingHandler())
    )
    await listener.start()
    await listener.abort()
    assert listener.state is ListenerState.ABORTED
    assert not listener.is_running("orders")


@pytest.mark.asyncio
async def test_context_manager_stops(
    transport: InMemoryTransport, config_for: Callable[[str], ConnectionConfig]
) -> None:
    async with Listener(transport, server_wait_time=0.05) as listener:
        await listener.register_service(
            ConsumerService("orders", config_for("orders"), RecordingHandler())
        )
        await listener.start()
    assert listener.state is ListenerState.STOPPED


def test_consumer_service_validation(
    config_for: Callable[[str], ConnectionConfig],
) -> None:
    with pytest.raises(ConfigurationError):
        ConsumerService("", config_for("orders"), RecordingHandler())
    with pytest.raises(ConfigurationError):
        ConsumerService(
            "orders", config_for("orders"), RecordingHandler(), prefetch_count=-1
        )
