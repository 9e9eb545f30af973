"""Subscription handle shared by every change feed transport."""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

from ..models import ChangeEvent

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None] | None]
ReadyCallback = Callable[[], None]


async def deliver(handler: ChangeHandler, event: ChangeEvent) -> None:
    """Hand one event to the handler and wait for it to finish."""
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            f"Change handler failed on {event.operation.value} "
            f"{event.entity_type}/{event.entity_id}: {e}"
        )


class Subscription:
    """A live change feed. ``unsubscribe()`` tears it down."""

    def __init__(self, task: asyncio.Task, name: str = "feed"):
        self._task = task
        self._name = name
        self._closed = False
        self._close_callbacks: list[Callable[[], None]] = []

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    @property
    def active(self) -> bool:
        return not self._closed and not self._task.done()

    def unsubscribe(self) -> None:
        """Stop delivering events. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._task.cancel()

        for callback in self._close_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Close callback failed for {self._name}: {e}")

        logger.info(f"Unsubscribed from {self._name}")

    async def wait(self) -> None:
        """Wait until the feed stops delivering events."""
        await asyncio.wait({self._task})
