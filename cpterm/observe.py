"""Wait for a condition over a watched part of the page to become true.

A *watch root* is anything with ``async watch(scope, callback)`` returning a
subscription with an async ``close()``. The callback is invoked (with no
arguments) once per batch of changes under the root.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .config import OBSERVE_TIMEOUT
from .errors import ObservationTimeout

Predicate = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ChangeScope:
    """Which changes under a root count as a notification.

    Mirrors the options of a DOM ``MutationObserver``.
    """

    child_list: bool = True
    subtree: bool = True
    attributes: bool = False
    attribute_filter: tuple[str, ...] | None = None

    def to_observer_options(self) -> dict:
        options = {"childList": self.child_list, "subtree": self.subtree}
        if self.attributes:
            options["attributes"] = True
            if self.attribute_filter:
                options["attributeFilter"] = list(self.attribute_filter)
        return options


SUBTREE = ChangeScope()


def attribute_scope(*names: str) -> ChangeScope:
    """Subtree structure changes plus changes to the named attributes."""
    return ChangeScope(attributes=True, attribute_filter=tuple(names) or None)


def is_positive(value) -> bool:
    return value is not None and value is not False


async def _call_maybe_async(fn):
    result = fn()
    if inspect.isawaitable(result):
        await result


async def observe_until(
    root,
    predicate: Predicate,
    scope: ChangeScope = SUBTREE,
    on_start: Callable | None = None,
    timeout: float | None = None,
):
    """Return the first positive value of *predicate*.

    The predicate is evaluated once up front; if that is already positive
    nothing is watched and *on_start* is not called. Otherwise the root is
    watched, *on_start* runs (typically a click that causes the awaited
    change), and the predicate is re-evaluated immediately and after every
    change batch. Raises :class:`ObservationTimeout` after *timeout*
    seconds. The watch is always released, including on cancellation.
    """
    if timeout is None:
        timeout = OBSERVE_TIMEOUT

    value = await predicate()
    if is_positive(value):
        return value

    changed = asyncio.Event()
    subscription = await root.watch(scope, changed.set)
    try:
        return await asyncio.wait_for(_poll(predicate, changed, on_start), timeout=timeout)
    except asyncio.TimeoutError:
        raise ObservationTimeout(f"Condition not met within {timeout:g}s") from None
    finally:
        await subscription.close()


async def _poll(predicate: Predicate, changed: asyncio.Event, on_start):
    if on_start is not None:
        await _call_maybe_async(on_start)
    while True:
        # clear before evaluating so a change during evaluation is not lost
        changed.clear()
        value = await predicate()
        if is_positive(value):
            return value
        await changed.wait()


async def wait_until_true(
    root,
    condition: Predicate,
    scope: ChangeScope = SUBTREE,
    on_start: Callable | None = None,
    timeout: float | None = None,
) -> None:
    """Boolean form of :func:`observe_until`."""

    async def _check():
        return True if await condition() else None

    await observe_until(root, _check, scope, on_start, timeout)
