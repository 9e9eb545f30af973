"""Applies realtime change events to the cache and the working view.

Precondition: events are handed over by a single consumer, one at a
time, in delivery order. The applier never reorders or batches events,
because a later event may depend on an earlier one for the same id.
"""

import logging
from enum import Enum
from typing import Any, Iterable

from ..cache.local_store import LocalStore
from ..errors import DecodeError, FeedStateError
from ..models import ENTITY_TYPES, ChangeEvent, ChangeOperation, LocalVersionRecord
from ..view import WorkingSet
from .version import FetchVersion

logger = logging.getLogger(__name__)


class FeedState(Enum):
    """Lifecycle of one change feed subscription."""

    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"


class ChangeFeedPatchApplier:
    """Folds insert/update/delete events into the LocalStore and WorkingSet.

    Each event is applied to the store and then to the view with no
    suspension point in between, so readers on the event loop never see
    one updated without the other.
    """

    def __init__(
        self,
        store: LocalStore,
        view: WorkingSet,
        fetch_remote_version: FetchVersion | None = None,
    ):
        """Initialize the patch applier.

        Args:
            store: Durable cache shared with the orchestrator.
            view: Working copy shared with the orchestrator.
            fetch_remote_version: Used to refresh the stored version record
                after each event. None disables the refresh.
        """
        self.store = store
        self.view = view
        self._fetch_remote_version = fetch_remote_version
        self._state = FeedState.SUBSCRIBING
        self.events_applied = 0
        self.events_ignored = 0
        self.write_failures = 0
        self.version_refresh_failures = 0

    # ==================== Lifecycle ====================

    @property
    def state(self) -> FeedState:
        return self._state

    def activate(self) -> None:
        """Mark the subscription as live. Only valid while subscribing."""
        if self._state is not FeedState.SUBSCRIBING:
            raise FeedStateError(f"Cannot activate feed in state {self._state.value}")
        self._state = FeedState.ACTIVE
        logger.info("Change feed active")

    def unsubscribe(self) -> None:
        """End the subscription. Safe to call more than once."""
        if self._state is not FeedState.UNSUBSCRIBED:
            self._state = FeedState.UNSUBSCRIBED
            logger.info(
                f"Change feed unsubscribed after {self.events_applied} events"
            )

    # ==================== Event Application ====================

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one event regardless of subscription state.

        The store is written first and the view follows only once that
        write has committed, so both hold the same entities afterwards.

        Returns:
            True if the event changed the cache, False if it was ignored
            or could not be stored.
        """
        entity_cls = ENTITY_TYPES.get(event.entity_type)
        if entity_cls is None:
            logger.warning(f"Ignoring change for unknown entity type {event.entity_type}")
            self.events_ignored += 1
            return False

        collection = event.entity_type

        if event.operation is ChangeOperation.DELETE:
            if not self.store.delete_one(collection, event.entity_id):
                return self._write_failed(event)
            if not self.view.remove(collection, event.entity_id):
                logger.debug(f"Delete for unknown {collection} id {event.entity_id}")

        else:
            try:
                entity = entity_cls.from_dict(event.payload)
            except DecodeError as e:
                logger.warning(f"Ignoring malformed {event.operation.value} event: {e}")
                self.events_ignored += 1
                return False

            if not self.store.upsert_one(collection, entity):
                return self._write_failed(event)
            replaced = self.view.upsert(collection, entity)

            if event.operation is ChangeOperation.INSERT and replaced:
                logger.debug(f"Duplicate insert for {entity.id}, applied as update")
            elif event.operation is ChangeOperation.UPDATE and not replaced:
                logger.debug(f"Update for unknown id {entity.id}, applied as insert")

        self.events_applied += 1
        return True

    def _write_failed(self, event: ChangeEvent) -> bool:
        # Next smart sync brings both copies back to the remote state
        self.write_failures += 1
        logger.warning(
            f"Cache write failed for {event.operation.value} "
            f"{event.entity_type}/{event.entity_id}, change not applied"
        )
        return False

    def on_event(self, event: ChangeEvent) -> None:
        """Apply an event delivered by an active subscription.

        Events arriving after unsubscribe are dropped.

        Raises:
            FeedStateError: If the subscription is not active yet.
        """
        if self._state is FeedState.UNSUBSCRIBED:
            logger.debug(f"Dropping {event.operation.value} event after unsubscribe")
            return
        if self._state is not FeedState.ACTIVE:
            raise FeedStateError("Received event before the feed was active")

        self.apply(event)

    def apply_all(self, events: Iterable[ChangeEvent]) -> int:
        """Apply a fixed sequence of events in order.

        Returns:
            Number of events that changed the cache.
        """
        return sum(1 for event in events if self.apply(event))

    async def handle_event(self, event: ChangeEvent) -> None:
        """Transport entry point: apply the event, then refresh the version."""
        self.on_event(event)
        if self._state is FeedState.ACTIVE:
            await self.refresh_version()

    async def refresh_version(self) -> bool:
        """Re-fetch the remote descriptor and store it with a new last_sync.

        Best effort: failures are logged and the applied data change stays.
        Only an existing record is refreshed, so deltas alone never mark a
        cache that was not fully synced as current.

        Returns:
            True if the version record was updated.
        """
        if self._fetch_remote_version is None:
            return False

        if self.store.get_version() is None:
            logger.debug("No local version record yet, skipping refresh")
            return False

        try:
            remote = await self._fetch_remote_version()
        except Exception as e:
            self.version_refresh_failures += 1
            logger.warning(f"Failed to refresh version after change: {e}")
            return False

        return self.store.set_version(LocalVersionRecord.from_descriptor(remote))

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "events_applied": self.events_applied,
            "events_ignored": self.events_ignored,
            "write_failures": self.write_failures,
            "version_refresh_failures": self.version_refresh_failures,
        }
