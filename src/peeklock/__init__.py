"""peeklock: PeekLock message-broker client.

Senders, pull receivers and a push-style listener over queues and
topic/subscription pairs, with at-most-once settlement of every lock token.
The broker protocol is an injected :class:`ITransport`; ``peeklock.memory``
ships an in-memory broker and ``peeklock.servicebus`` an Azure Service Bus
adapter (optional extra).
"""

from __future__ import annotations

# ── Configuration ────────────────────────────────────────────────
from .config import (
    DEFAULT_MAX_MESSAGE_COUNT,
    DEFAULT_PREFETCH_COUNT,
    DEFAULT_SERVER_WAIT_TIME,
    DEFAULT_TIME_TO_LIVE,
    ConnectionConfig,
    EntityPath,
    ReceiverOptions,
    SenderOptions,
)
from .connection import ReceiverConnection, SenderConnection
from .correlation import correlation_scope, get_correlation_id, set_correlation_id

# ── Messages ─────────────────────────────────────────────────────
from .envelope import MessageEnvelope, SendParameters
from .exceptions import (
    ConfigurationError,
    ConnectionClosedError,
    DetachError,
    DuplicateMessageError,
    ListenerError,
    MessageAlreadySettledError,
    MessageLockLostError,
    MessagingConnectionError,
    MessagingError,
    ReceiveError,
    SendError,
    SettlementError,
)
from .instrumentation import (
    HookRegistry,
    InstrumentationHook,
    get_hook_registry,
    set_hook_registry,
)

# ── Consumers ────────────────────────────────────────────────────
from .listener import ConsumerService, Listener, ListenerState
from .ports import ChannelRole, IMessageHandler, ITransport, ReceiveMode
from .receiver import MessageReceiver, open_receiver
from .sender import MessageSender, open_sender
from .settlement import (
    Abandon,
    Complete,
    DeadLetter,
    Defer,
    LockState,
    SettlementDecision,
    SettlementEngine,
)

__all__ = [
    "DEFAULT_MAX_MESSAGE_COUNT",
    "DEFAULT_PREFETCH_COUNT",
    "DEFAULT_SERVER_WAIT_TIME",
    "DEFAULT_TIME_TO_LIVE",
    "Abandon",
    "ChannelRole",
    "Complete",
    "ConfigurationError",
    "ConnectionClosedError",
    "ConnectionConfig",
    "ConsumerService",
    "DeadLetter",
    "Defer",
    "DetachError",
    "DuplicateMessageError",
    "EntityPath",
    "HookRegistry",
    "IMessageHandler",
    "ITransport",
    "InstrumentationHook",
    "Listener",
    "ListenerError",
    "ListenerState",
    "LockState",
    "MessageAlreadySettledError",
    "MessageEnvelope",
    "MessageLockLostError",
    "MessageReceiver",
    "MessageSender",
    "MessagingConnectionError",
    "MessagingError",
    "ReceiveError",
    "ReceiveMode",
    "ReceiverConnection",
    "ReceiverOptions",
    "SendError",
    "SendParameters",
    "SenderConnection",
    "SenderOptions",
    "SettlementDecision",
    "SettlementEngine",
    "SettlementError",
    "correlation_scope",
    "get_correlation_id",
    "get_hook_registry",
    "open_receiver",
    "open_sender",
    "set_correlation_id",
    "set_hook_registry",
]
