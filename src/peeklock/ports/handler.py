from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..envelope import MessageEnvelope
    from ..settlement import SettlementDecision


@runtime_checkable
class IMessageHandler(Protocol):
    """
    Port for listener consumer services.

    ``handle`` returns how the delivered message must be settled; returning
    ``None`` means :class:`~peeklock.settlement.Complete`. Raising abandons the
    message so it is redelivered.
    """

    async def handle(self, envelope: MessageEnvelope) -> SettlementDecision | None:
        ...
