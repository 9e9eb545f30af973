"""A change feed that replays a fixed, ordered list of events.

Used to drive the patch applier with an exact event sequence, from tests
or from a JSON file on the command line.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable

from ..errors import DecodeError
from ..models import ChangeEvent
from .subscription import ChangeHandler, ReadyCallback, Subscription, deliver

logger = logging.getLogger(__name__)


class ReplayFeed:
    """Delivers the given events once, in order, then stops."""

    def __init__(self, events: Iterable[ChangeEvent | dict[str, Any]]):
        """Initialize the replay feed.

        Args:
            events: ChangeEvent objects or their dict form, in delivery order.

        Raises:
            DecodeError: If any dict cannot be decoded.
        """
        self.events = [
            e if isinstance(e, ChangeEvent) else ChangeEvent.from_dict(e)
            for e in events
        ]
        self.delivered = 0

    @classmethod
    def from_file(cls, path: str | Path) -> "ReplayFeed":
        """Load events from a JSON file holding an array of change events."""
        with open(Path(path).expanduser()) as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise DecodeError(f"{path} must contain a JSON array of events")
        return cls(data)

    async def _replay(self, handler: ChangeHandler) -> None:
        for event in self.events:
            await deliver(handler, event)
            self.delivered += 1
        logger.info(f"Replayed {self.delivered} events")

    async def subscribe_to_changes(
        self,
        handler: ChangeHandler,
        on_ready: ReadyCallback | None = None,
    ) -> Subscription:
        if on_ready:
            on_ready()
        task = asyncio.create_task(self._replay(handler))
        return Subscription(task, name="replay")
