"""ServiceBusTransport: ITransport over the azure-servicebus async SDK."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from azure.servicebus import (
    ServiceBusMessage,
    ServiceBusReceiveMode,
    ServiceBusSubQueue,
)
from azure.servicebus.aio import ServiceBusClient
from azure.servicebus.exceptions import MessageAlreadySettled
from azure.servicebus.exceptions import MessageLockLostError as SdkMessageLockLostError
from azure.servicebus.exceptions import MessageNotFoundError, ServiceBusError

from ..config import EntityPath
from ..envelope import MessageEnvelope
from ..exceptions import (
    ConnectionClosedError,
    MessageAlreadySettledError,
    MessageLockLostError,
    MessagingConnectionError,
    SendError,
    SettlementError,
)
from ..ports.transport import ChannelRole, ReceiveMode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from datetime import datetime
    from types import TracebackType

    from azure.servicebus import ServiceBusReceivedMessage

    from ..config import ConnectionConfig

logger = logging.getLogger("peeklock.servicebus")


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def _body(message: ServiceBusReceivedMessage) -> bytes:
    body = message.body
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return b"".join(bytes(chunk) for chunk in body)


def to_envelope(message: ServiceBusReceivedMessage) -> MessageEnvelope:
    """Convert a received SDK message; the lock token is kept as a string."""
    properties = {
        _text(key): _text(value)
        for key, value in (message.application_properties or {}).items()
    }
    return MessageEnvelope(
        body=_body(message),
        content_type=message.content_type,
        message_id=message.message_id,
        to=message.to,
        reply_to=message.reply_to,
        reply_to_session_id=message.reply_to_session_id,
        label=message.subject,
        session_id=message.session_id,
        correlation_id=message.correlation_id,
        properties=properties,
        time_to_live=message.time_to_live,
        lock_token=str(message.lock_token) if message.lock_token else None,
        sequence_number=message.sequence_number,
        locked_until=message.locked_until_utc,
        delivery_count=message.delivery_count or 0,
        enqueued_at=message.enqueued_time_utc,
    )


def to_sdk_message(envelope: MessageEnvelope) -> ServiceBusMessage:
    return ServiceBusMessage(
        envelope.body,
        application_properties=dict(envelope.properties) or None,
        session_id=envelope.session_id,
        message_id=envelope.message_id,
        content_type=envelope.content_type,
        correlation_id=envelope.correlation_id,
        subject=envelope.label,
        to=envelope.to,
        reply_to=envelope.reply_to,
        reply_to_session_id=envelope.reply_to_session_id,
        time_to_live=envelope.time_to_live,
    )


@dataclass(eq=False)
class ServiceBusChannel:
    entity: EntityPath
    role: ChannelRole
    client: Any
    link: Any
    prefetch_count: int = 0
    pending: dict[str, Any] = field(default_factory=dict)
    closed: bool = False


class ServiceBusTransport:
    """Azure Service Bus transport (optional extra: ``peeklock[servicebus]``).

    One ``ServiceBusClient`` is shared per namespace connection string; each
    channel owns one sender or PeekLock receiver link on it. Received SDK
    messages are kept per channel by lock token until settled, since the SDK
    settles message objects rather than tokens.

    Args:
        default_wait_time: Receive wait used when the caller passes ``None``.
        client_factory: Builds a client from a connection string; defaults to
            ``ServiceBusClient.from_connection_string``.
    """

    def __init__(
        self,
        *,
        default_wait_time: float = 30.0,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self._default_wait_time = default_wait_time
        self._client_factory = client_factory or ServiceBusClient.from_connection_string
        self._clients: dict[str, Any] = {}

    def _client_for(self, config: ConnectionConfig) -> Any:
        # the entity is chosen per link, so EntityPath is not part of the key
        connection_string = ";".join(
            segment
            for segment in config.connection_string.split(";")
            if segment.strip()
            and not segment.strip().lower().startswith("entitypath=")
        )
        client = self._clients.get(connection_string)
        if client is None:
            client = self._client_factory(connection_string)
            self._clients[connection_string] = client
        return client

    def _receiver_link(
        self, client: Any, entity: EntityPath, prefetch_count: int
    ) -> Any:
        kwargs: dict[str, Any] = {
            "receive_mode": ServiceBusReceiveMode.PEEK_LOCK,
            "prefetch_count": prefetch_count,
        }
        if entity.is_dead_letter:
            kwargs["sub_queue"] = ServiceBusSubQueue.DEAD_LETTER
        if entity.subscription is not None:
            return client.get_subscription_receiver(
                topic_name=entity.name,
                subscription_name=entity.subscription,
                **kwargs,
            )
        return client.get_queue_receiver(queue_name=entity.name, **kwargs)

    async def open(
        self,
        config: ConnectionConfig,
        role: ChannelRole,
        *,
        mode: ReceiveMode = ReceiveMode.PEEK_LOCK,
        prefetch_count: int = 0,
    ) -> ServiceBusChannel:
        if mode is not ReceiveMode.PEEK_LOCK:
            raise MessagingConnectionError(f"Unsupported receive mode {mode!r}")
        entity = config.entity
        if role is ChannelRole.SENDER and (
            entity.is_subscription or entity.is_dead_letter
        ):
            raise MessagingConnectionError(f"Cannot send to {config.entity_path!r}")
        try:
            client = self._client_for(config)
            if role is ChannelRole.SENDER:
                link = client.get_queue_sender(queue_name=entity.name)
            else:
                link = self._receiver_link(client, entity, prefetch_count)
            await link.__aenter__()
        except (ServiceBusError, ValueError) as e:
            raise MessagingConnectionError(str(e)) from e
        logger.debug("Opened Service Bus %s link to %s", role.value, entity)
        return ServiceBusChannel(
            entity=entity,
            role=role,
            client=client,
            link=link,
            prefetch_count=prefetch_count,
        )

    async def close(self, channel: ServiceBusChannel) -> None:
        if channel.closed:
            raise MessagingConnectionError(f"Link to {channel.entity} already closed")
        channel.closed = True
        if channel.pending:
            logger.warning(
                "Closing link to %s with %d unsettled messages",
                channel.entity,
                len(channel.pending),
            )
            channel.pending.clear()
        try:
            await channel.link.close()
        except ServiceBusError as e:
            raise MessagingConnectionError(str(e)) from e

    async def aclose(self) -> None:
        """Close every cached client."""
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()

    async def __aenter__(self) -> ServiceBusTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _check(self, channel: ServiceBusChannel) -> None:
        if channel.closed:
            raise ConnectionClosedError(f"Link to {channel.entity} is closed")

    # ── Sending ──────────────────────────────────────────────────────

    async def send(self, channel: ServiceBusChannel, envelope: MessageEnvelope) -> None:
        self._check(channel)
        await channel.link.send_messages(to_sdk_message(envelope))

    async def send_batch(
        self, channel: ServiceBusChannel, envelopes: Sequence[MessageEnvelope]
    ) -> None:
        self._check(channel)
        batch = await channel.link.create_message_batch()
        for envelope in envelopes:
            try:
                batch.add_message(to_sdk_message(envelope))
            except ValueError as e:
                # the SDK raises a ValueError subclass once the batch is full
                raise SendError(
                    f"Batch of {len(envelopes)} messages exceeds the size limit "
                    f"of {channel.entity}: {e}"
                ) from e
        await channel.link.send_messages(batch)

    # ── Receiving ────────────────────────────────────────────────────

    def _track(
        self, channel: ServiceBusChannel, message: ServiceBusReceivedMessage
    ) -> MessageEnvelope:
        envelope = to_envelope(message)
        if envelope.lock_token is not None:
            channel.pending[envelope.lock_token] = message
        return envelope

    async def receive(
        self, channel: ServiceBusChannel, wait_time: float | None
    ) -> MessageEnvelope | None:
        self._check(channel)
        if wait_time is None:
            wait_time = self._default_wait_time
        try:
            messages = await channel.link.receive_messages(
                max_message_count=1, max_wait_time=wait_time
            )
        except ServiceBusError as e:
            if channel.closed:
                raise ConnectionClosedError(
                    f"Receiver on {channel.entity} closed while waiting"
                ) from e
            raise
        if channel.closed:
            raise ConnectionClosedError(
                f"Receiver on {channel.entity} closed while waiting"
            )
        if not messages:
            return None
        return self._track(channel, messages[0])

    async def receive_deferred(
        self, channel: ServiceBusChannel, sequence_number: int
    ) -> MessageEnvelope | None:
        self._check(channel)
        try:
            messages = await channel.link.receive_deferred_messages(
                sequence_numbers=[sequence_number]
            )
        except MessageNotFoundError:
            return None
        if not messages:
            return None
        return self._track(channel, messages[0])

    # ── Settlement ───────────────────────────────────────────────────

    async def _settle(
        self,
        channel: ServiceBusChannel,
        lock_token: str,
        action: Callable[[Any], Awaitable[Any]],
        *,
        keep: bool = False,
    ) -> Any:
        self._check(channel)
        message = channel.pending.get(lock_token)
        if message is None:
            raise SettlementError(
                f"No unsettled message with lock token {lock_token} "
                f"on {channel.entity}",
                lock_token=lock_token,
            )
        try:
            result = await action(message)
        except SdkMessageLockLostError as e:
            channel.pending.pop(lock_token, None)
            raise MessageLockLostError(str(e), lock_token=lock_token) from e
        except MessageAlreadySettled as e:
            channel.pending.pop(lock_token, None)
            raise MessageAlreadySettledError(str(e), lock_token=lock_token) from e
        if not keep:
            channel.pending.pop(lock_token, None)
        return result

    async def complete(self, channel: ServiceBusChannel, lock_token: str) -> None:
        await self._settle(channel, lock_token, channel.link.complete_message)

    async def abandon(self, channel: ServiceBusChannel, lock_token: str) -> None:
        await self._settle(channel, lock_token, channel.link.abandon_message)

    async def defer(self, channel: ServiceBusChannel, lock_token: str) -> None:
        await self._settle(channel, lock_token, channel.link.defer_message)

    async def dead_letter(
        self,
        channel: ServiceBusChannel,
        lock_token: str,
        *,
        reason: str | None = None,
        description: str | None = None,
    ) -> None:
        async def action(message: Any) -> None:
            await channel.link.dead_letter_message(
                message, reason=reason, error_description=description
            )

        await self._settle(channel, lock_token, action)

    async def renew_lock(
        self, channel: ServiceBusChannel, lock_token: str
    ) -> datetime | None:
        return await self._settle(
            channel, lock_token, channel.link.renew_message_lock, keep=True
        )

    async def set_prefetch_count(self, channel: ServiceBusChannel, count: int) -> None:
        """Recreate the receiver link; the SDK fixes prefetch per link."""
        self._check(channel)
        if channel.pending:
            logger.warning(
                "Recreating receiver link to %s drops %d unsettled messages",
                channel.entity,
                len(channel.pending),
            )
            channel.pending.clear()
        await channel.link.close()
        link = self._receiver_link(channel.client, channel.entity, count)
        try:
            await link.__aenter__()
        except ServiceBusError as e:
            raise MessagingConnectionError(str(e)) from e
        channel.link = link
        channel.prefetch_count = count
