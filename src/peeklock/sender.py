"""MessageSender: single, parameterized and batched sends."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from .config import ConnectionConfig, SenderOptions
from .connection import SenderConnection
from .correlation import get_correlation_id
from .envelope import MessageEnvelope, SendParameters, generate_message_id
from .exceptions import SendError
from .instrumentation import get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    from .ports.transport import ITransport

logger = logging.getLogger("peeklock.sender")


class MessageSender:
    """Sends envelopes to one queue or topic.

    Usage::

        sender = await open_sender(conn_str, "orders", transport=transport)
        await sender.send(MessageEnvelope(body=b"hello"))
        await sender.send_batch([b"a", b"b"], {"label": "bulk"})
        await sender.close()
    """

    def __init__(
        self,
        connection: SenderConnection,
        *,
        options: SenderOptions | None = None,
    ) -> None:
        self._connection = connection
        self._options = options or SenderOptions()

    @property
    def connection(self) -> SenderConnection:
        return self._connection

    @property
    def entity_path(self) -> str:
        return self._connection.entity_path

    def _prepare(
        self,
        envelope: MessageEnvelope,
        time_to_live: timedelta | None = None,
    ) -> MessageEnvelope:
        if time_to_live is None:
            time_to_live = envelope.time_to_live
        if time_to_live is None:
            time_to_live = self._options.default_time_to_live
        if time_to_live <= timedelta(0):
            raise SendError(
                f"Time-to-live of message {envelope.message_id} must be positive, "
                f"got {time_to_live}"
            )
        update: dict[str, Any] = {"time_to_live": time_to_live}
        if not envelope.message_id:
            update["message_id"] = generate_message_id()
        if envelope.correlation_id is None:
            correlation_id = get_correlation_id()
            if correlation_id is not None:
                update["correlation_id"] = correlation_id
        return envelope.for_sending().model_copy(update=update)

    async def send(
        self,
        envelope: MessageEnvelope,
        time_to_live: timedelta | None = None,
    ) -> MessageEnvelope:
        """Send one envelope and return it as transmitted (with its message id)."""
        prepared = self._prepare(envelope, time_to_live)
        logger.debug("Sending message %s to %s", prepared.message_id, self.entity_path)
        await get_hook_registry().execute_all(
            "sender.send",
            {
                "entity_path": self.entity_path,
                "message_id": prepared.message_id,
                "correlation_id": prepared.correlation_id,
            },
            lambda: self._connection.send(prepared),
        )
        logger.info("Sent message %s to %s", prepared.message_id, self.entity_path)
        return prepared

    async def send_with_parameters(
        self,
        body: bytes | str,
        parameters: SendParameters | dict[str, Any] | None = None,
        properties: dict[str, Any] | None = None,
    ) -> MessageEnvelope:
        """Send *body* with optional parameters (camelCase or snake_case keys)."""
        params = SendParameters.coerce(parameters)
        return await self.send(params.to_envelope(body, properties))

    async def send_batch(
        self,
        bodies: Sequence[bytes | str],
        parameters: SendParameters | dict[str, Any] | None = None,
        properties: dict[str, Any] | None = None,
        max_count: int | None = None,
    ) -> list[MessageEnvelope]:
        """Build ``max_count`` envelopes from ``bodies[:max_count]`` and send them
        as one atomic batch.

        Every envelope gets a fresh message id unless *parameters* supplies
        one, in which case the whole batch shares it.

        Raises:
            SendError: *bodies* holds fewer than ``max_count`` items (nothing is
                sent), or the broker rejected the batch.
        """
        params = SendParameters.coerce(parameters)
        count = len(bodies) if max_count is None else max_count
        if count < 0:
            raise SendError("max_count must be >= 0")
        if len(bodies) < count:
            raise SendError(
                f"Batch of {count} messages needs {count} bodies, got {len(bodies)}"
            )
        if params.message_id is not None and count > 1:
            logger.warning(
                "All %d messages of the batch to %s share message id %s",
                count,
                self.entity_path,
                params.message_id,
            )
        envelopes = [
            self._prepare(params.to_envelope(bodies[i], properties))
            for i in range(count)
        ]
        if not envelopes:
            return []
        await get_hook_registry().execute_all(
            "sender.send_batch",
            {"entity_path": self.entity_path, "message_count": len(envelopes)},
            lambda: self._connection.send_batch(envelopes),
        )
        logger.info("Sent %d messages to %s", len(envelopes), self.entity_path)
        return envelopes

    async def close(self) -> None:
        await self._connection.close()

    async def __aenter__(self) -> MessageSender:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._connection.is_closed:
            await self.close()


async def open_sender(
    connection_string: str | ConnectionConfig,
    entity_path: str = "",
    *,
    transport: ITransport,
    options: SenderOptions | None = None,
) -> MessageSender:
    """Open a sender connection and wrap it in a :class:`MessageSender`."""
    config = (
        connection_string
        if isinstance(connection_string, ConnectionConfig)
        else ConnectionConfig.build(connection_string, entity_path)
    )
    connection = await SenderConnection.open(config, transport)
    return MessageSender(connection, options=options)
