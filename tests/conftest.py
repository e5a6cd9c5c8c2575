from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
import pytest_asyncio

from peeklock.config import ConnectionConfig
from peeklock.connection import ReceiverConnection
from peeklock.memory import InMemoryBroker, InMemoryTransport
from peeklock.receiver import MessageReceiver
from peeklock.sender import MessageSender, open_sender

CONNECTION_STRING = (
    "Endpoint=sb://test-ns.servicebus.windows.net/;"
    "SharedAccessKeyName=RootManageSharedAccessKey;"
    "SharedAccessKey=c2VjcmV0LWtleQ=="
)
SECRET_KEY = "c2VjcmV0LWtleQ=="


@pytest.fixture
def connection_string() -> str:
    return CONNECTION_STRING


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(lock_duration=30.0)


@pytest.fixture
def transport(broker: InMemoryBroker) -> InMemoryTransport:
    return InMemoryTransport(broker, default_wait_time=0.05)


@pytest.fixture
def config_for() -> Callable[[str], ConnectionConfig]:
    def make(entity_path: str) -> ConnectionConfig:
        return ConnectionConfig.build(CONNECTION_STRING, entity_path)

    return make


@pytest_asyncio.fixture
async def sender(transport: InMemoryTransport) -> AsyncIterator[MessageSender]:
    sender = await open_sender(CONNECTION_STRING, "orders", transport=transport)
    yield sender
    if not sender.connection.is_closed:
        await sender.close()


@pytest_asyncio.fixture
async def receiver_connection(
    transport: InMemoryTransport, config_for: Callable[[str], ConnectionConfig]
) -> AsyncIterator[ReceiverConnection]:
    connection = await ReceiverConnection.open(config_for("orders"), transport)
    yield connection
    if not connection.is_closed:
        await connection.close()


@pytest_asyncio.fixture
async def receiver(receiver_connection: ReceiverConnection) -> MessageReceiver:
    return MessageReceiver(receiver_connection)
