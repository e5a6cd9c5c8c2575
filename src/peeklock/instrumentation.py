"""Instrumentation hooks around send, receive, settlement and dispatch.

Hooks are async middlewares ``hook(operation, attributes, next_handler)``.
Operation names used by peeklock:

* ``sender.send`` / ``sender.send_batch``
* ``receiver.receive``
* ``settlement.complete`` / ``.abandon`` / ``.defer`` / ``.dead_letter`` /
  ``.renew_lock``
* ``listener.dispatch.<service name>``
"""

from __future__ import annotations

import fnmatch
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


@runtime_checkable
class InstrumentationHook(Protocol):
    """Protocol for instrumentation hooks (tracing, metrics, etc.)."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Wrap an operation with instrumentation."""
        ...


class HookRegistration:
    """A registered hook with its operation filter and priority."""

    def __init__(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.hook = hook
        self.priority = priority
        self.operations = operations or []
        self.enabled = enabled

    def matches(self, operation: str) -> bool:
        if not self.enabled:
            return False
        if not self.operations:
            return True
        return any(fnmatch.fnmatch(operation, pattern) for pattern in self.operations)


class HookRegistry:
    """Ordered set of hooks; lower priority runs outermost."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
    ) -> HookRegistration:
        registration = HookRegistration(hook, priority=priority, operations=operations)
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* wrapped by every hook matching *operation*."""
        matching = [r for r in self._registrations if r.matches(operation)]
        if not matching:
            return await next_handler()

        async def pipeline(index: int = 0) -> Any:
            if index >= len(matching):
                return await next_handler()
            return await matching[index].hook(
                operation,
                attributes,
                lambda: pipeline(index + 1),
            )

        return await pipeline()

    def clear(self) -> None:
        self._registrations.clear()


_hook_registry_var: ContextVar[HookRegistry | None] = ContextVar(
    "peeklock_hook_registry", default=None
)


def get_hook_registry() -> HookRegistry:
    """Get the hook registry for the current context, creating it on first use."""
    registry = _hook_registry_var.get()
    if registry is None:
        registry = HookRegistry()
        _hook_registry_var.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    """Set a custom hook registry in the current context."""
    _hook_registry_var.set(registry)
