"""Listener: push-style dispatch of received messages to consumer services.

Each registered :class:`ConsumerService` gets its own receiver connection and,
once the listener is started, one asyncio task running the dispatch loop::

    listener = Listener(transport, server_wait_time=5)
    await listener.register_service(ConsumerService("orders", config, handler))
    await listener.start()
    ...
    await listener.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .config import ReceiverOptions
from .connection import ReceiverConnection
from .correlation import correlation_scope
from .exceptions import (
    ConfigurationError,
    ConnectionClosedError,
    DetachError,
    ListenerError,
    MessagingError,
)
from .instrumentation import get_hook_registry
from .ports.handler import IMessageHandler
from .receiver import MessageReceiver
from .settlement import Abandon, Complete, DeadLetter, Defer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    from .config import ConnectionConfig
    from .envelope import MessageEnvelope
    from .ports.transport import ITransport
    from .settlement import SettlementDecision

logger = logging.getLogger("peeklock.listener")


class ListenerState(str, Enum):
    IDLE = "idle"
    ATTACHED = "attached"
    STARTED = "started"
    STOPPED = "stopped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (ListenerState.STOPPED, ListenerState.ABORTED)


@dataclass(frozen=True, eq=False)
class ConsumerService:
    """A named handler bound to one queue or subscription.

    ``handler`` is either an :class:`IMessageHandler` or a coroutine function
    taking the envelope. Services compare by identity.
    """

    name: str
    config: ConnectionConfig
    handler: (
        IMessageHandler
        | Callable[[MessageEnvelope], Awaitable[SettlementDecision | None]]
    )
    prefetch_count: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Consumer service name must not be empty")
        if self.prefetch_count < 0:
            raise ConfigurationError("prefetch_count must be >= 0")

    async def invoke(self, envelope: MessageEnvelope) -> SettlementDecision | None:
        if isinstance(self.handler, IMessageHandler):
            return await self.handler.handle(envelope)
        return await self.handler(envelope)


@dataclass(eq=False)
class _Registration:
    service: ConsumerService
    receiver: MessageReceiver
    task: asyncio.Task[None] | None = None
    stopping: bool = False
    idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.idle.set()


class Listener:
    """Runs one dispatch loop per registered consumer service.

    Args:
        transport: Transport used to open every service's receiver.
        server_wait_time: Wait of each receive in the loop; ``None`` uses the
            transport default.
        shutdown_timeout: How long stop/detach wait for an in-flight handler,
            and then for the loop task, before cancelling it.
        error_backoff: Pause after a failed receive before the next attempt.
    """

    def __init__(
        self,
        transport: ITransport,
        *,
        server_wait_time: float | None = None,
        shutdown_timeout: float = 5.0,
        error_backoff: float = 1.0,
    ) -> None:
        self._transport = transport
        self._server_wait_time = server_wait_time
        self._shutdown_timeout = shutdown_timeout
        self._error_backoff = error_backoff
        self._registry: dict[str, _Registration] = {}
        self._lock = asyncio.Lock()
        self._state = ListenerState.IDLE
        self._ever_attached = False

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def service_names(self) -> list[str]:
        return list(self._registry)

    def receiver_for(self, name: str) -> MessageReceiver | None:
        registration = self._registry.get(name)
        return registration.receiver if registration is not None else None

    def is_running(self, name: str) -> bool:
        registration = self._registry.get(name)
        return (
            registration is not None
            and registration.task is not None
            and not registration.task.done()
        )

    def _ensure_usable(self) -> None:
        if self._state.is_terminal:
            raise ListenerError(f"Listener is {self._state.value}")

    # ── Lifecycle ────────────────────────────────────────────────────

    async def register_service(self, service: ConsumerService) -> None:
        """Attach *service*; its loop starts right away if the listener runs.

        Raises:
            ListenerError: the listener is stopped, or another service is
                registered under the same name.
            MessagingConnectionError: the receiver connection cannot be opened.
        """
        async with self._lock:
            self._ensure_usable()
            existing = self._registry.get(service.name)
            if existing is not None:
                if existing.service is service:
                    logger.debug("Service %s is already attached", service.name)
                    return
                raise ListenerError(
                    f"Another service is already registered as {service.name!r}"
                )
            connection = await ReceiverConnection.open(
                service.config,
                self._transport,
                prefetch_count=service.prefetch_count,
            )
            receiver = MessageReceiver(
                connection,
                options=ReceiverOptions(
                    prefetch_count=service.prefetch_count,
                    server_wait_time=self._server_wait_time,
                    auto_settle=False,
                ),
            )
            registration = _Registration(service=service, receiver=receiver)
            self._registry[service.name] = registration
            self._ever_attached = True
            logger.info(
                "Attached service %s to %s", service.name, connection.entity_path
            )
            if self._state is ListenerState.STARTED:
                self._launch(registration)
            else:
                self._state = ListenerState.ATTACHED

    async def start(self) -> None:
        """Start a loop for every attached service not yet running."""
        async with self._lock:
            self._ensure_usable()
            if not self._registry:
                logger.info("Listener has no services to start")
                return
            for registration in self._registry.values():
                if registration.task is None:
                    self._launch(registration)
            self._state = ListenerState.STARTED

    async def detach(self, service: ConsumerService | str) -> None:
        """Stop the service's loop, close its receiver and remove it.

        Raises:
            DetachError: the service is not attached, or its receiver could not
                be closed (it then stays registered).
        """
        name = service if isinstance(service, str) else service.name
        async with self._lock:
            registration = self._registry.get(name)
            if registration is None or (
                isinstance(service, ConsumerService)
                and registration.service is not service
            ):
                raise DetachError(
                    f"Service {name!r} is not attached", service_name=name
                )
            try:
                await self._shutdown(registration)
            except MessagingError as e:
                raise DetachError(
                    f"Failed to detach service {name!r}: {e}", service_name=name
                ) from e
            del self._registry[name]
            logger.info("Detached service %s", name)

    async def stop(self) -> None:
        """Graceful shutdown: finish in-flight handlers, then close every receiver."""
        await self._shutdown_all(ListenerState.STOPPED)

    async def abort(self) -> None:
        await self._shutdown_all(ListenerState.ABORTED)

    async def __aenter__(self) -> Listener:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._ever_attached and not self._state.is_terminal:
            await self.stop()

    async def _shutdown_all(self, final_state: ListenerState) -> None:
        async with self._lock:
            if not self._ever_attached:
                raise ListenerError("No consumer service was ever attached")
            failures: list[tuple[str, MessagingError]] = []
            for name, registration in list(self._registry.items()):
                try:
                    await self._shutdown(registration)
                except MessagingError as e:
                    logger.error("Failed to close receiver of service %s: %s", name, e)
                    failures.append((name, e))
            self._registry.clear()
            self._state = final_state
            logger.info("Listener %s", final_state.value)
        if failures:
            names = ", ".join(name for name, _ in failures)
            raise ListenerError(
                f"Failed to close receivers of: {names}"
            ) from failures[0][1]

    def _launch(self, registration: _Registration) -> None:
        name = registration.service.name
        registration.task = asyncio.create_task(
            self._run(registration), name=f"peeklock-listener-{name}"
        )
        logger.debug("Started dispatch loop for %s", name)

    async def _shutdown(self, registration: _Registration) -> None:
        registration.stopping = True
        task = registration.task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(
                    registration.idle.wait(), timeout=self._shutdown_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Handler of service %s still running after %.1fs",
                    registration.service.name,
                    self._shutdown_timeout,
                )
        close_error: MessagingError | None = None
        if not registration.receiver.connection.is_closed:
            try:
                await registration.receiver.close()
            except MessagingError as e:
                close_error = e
        if task is not None:
            await self._join(task)
        if close_error is not None:
            raise close_error

    async def _join(self, task: asyncio.Task[None]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch loop %s ended with an error", task.get_name())

    # ── Dispatch loop ────────────────────────────────────────────────

    async def _run(self, registration: _Registration) -> None:
        name = registration.service.name
        receiver = registration.receiver
        while not registration.stopping:
            try:
                envelope = await receiver.receive(self._server_wait_time)
            except ConnectionClosedError:
                break
            except Exception as e:  # noqa: BLE001
                if registration.stopping:
                    break
                logger.warning(
                    "Receive for service %s failed: %s; retrying in %.1fs",
                    name,
                    e,
                    self._error_backoff,
                )
                await asyncio.sleep(self._error_backoff)
                continue
            if envelope is None:
                continue
            if registration.stopping:
                # delivered after shutdown began; hand it back to the broker
                with contextlib.suppress(MessagingError):
                    await receiver.abandon(envelope)
                break
            registration.idle.clear()
            try:
                await self._dispatch(registration, envelope)
            finally:
                registration.idle.set()
        logger.debug("Dispatch loop for %s exited", name)

    async def _dispatch(
        self, registration: _Registration, envelope: MessageEnvelope
    ) -> None:
        service = registration.service
        decision: SettlementDecision | None
        try:
            with correlation_scope(envelope.correlation_id):
                decision = await get_hook_registry().execute_all(
                    f"listener.dispatch.{service.name}",
                    {
                        "service": service.name,
                        "entity_path": registration.receiver.entity_path,
                        "message_id": envelope.message_id,
                        "delivery_count": envelope.delivery_count,
                    },
                    lambda: service.invoke(envelope),
                )
            if decision is not None and not isinstance(
                decision, (Complete, Abandon, Defer, DeadLetter)
            ):
                raise TypeError(
                    f"Handler returned {decision!r}, not a settlement decision"
                )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Handler of service %s failed on message %s; abandoning",
                service.name,
                envelope.message_id,
            )
            decision = Abandon()
        try:
            await registration.receiver.engine.settle(envelope, decision or Complete())
        except MessagingError as e:
            logger.error(
                "Failed to settle message %s for service %s: %s",
                envelope.message_id,
                service.name,
                e,
            )
