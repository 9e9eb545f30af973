"""Cache-first smart sync.

Serves the cached collections immediately, then asks the remote for its
version descriptor and only refetches the full dataset when the tokens
differ. Freshly fetched data replaces the cache in a single transaction.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..cache.local_store import LocalStore
from ..errors import CacheLoadError, DecodeError
from ..models import (
    ENTITY_TYPES,
    LocalVersionRecord,
    VersionDescriptor,
    decode_collection,
    utcnow,
)
from ..view import WorkingSet
from .version import FetchVersion, SyncAction, VersionComparator

logger = logging.getLogger(__name__)

FetchDataset = Callable[[], Awaitable[dict[str, list]]]


@dataclass
class SmartSyncResult:
    """Result of a smart sync.

    ``from_cache`` is the provenance flag: True when the collections are the
    ones that were already cached, False when they were just fetched.
    ``error`` is set when a network step failed and cached data was served
    instead.
    """

    collections: dict[str, list] = field(default_factory=dict)
    action: SyncAction = SyncAction.NO_CHANGE
    from_cache: bool = True
    error: str | None = None
    remote_version: VersionDescriptor | None = None
    refresh_task: "asyncio.Task[SmartSyncResult] | None" = None

    @property
    def categories(self) -> list:
        return self.collections.get("categories", [])

    @property
    def businesses(self) -> list:
        return self.collections.get("businesses", [])

    @property
    def stale(self) -> bool:
        """True when the data may be out of date because a fetch failed."""
        return self.error is not None

    def summary(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "from_cache": self.from_cache,
            "error": self.error,
            "version_token": self.remote_version.version_token if self.remote_version else None,
            **{name: len(entities) for name, entities in self.collections.items()},
        }


def _normalize_dataset(dataset: Any) -> dict[str, list]:
    """Validate a fetched dataset, decoding raw dicts if needed."""
    if not isinstance(dataset, dict):
        raise DecodeError("Full dataset must be a mapping of collections")

    collections = {}
    for name, entity_cls in ENTITY_TYPES.items():
        items = dataset.get(name)
        if items is None:
            raise DecodeError(f"Full dataset is missing {name}")
        if all(isinstance(item, entity_cls) for item in items):
            collections[name] = list(items)
        else:
            collections[name] = decode_collection(name, items)
    return collections


class SmartSyncOrchestrator:
    """Keeps the LocalStore and the WorkingSet in step with the remote store."""

    def __init__(self, store: LocalStore, view: WorkingSet):
        """Initialize the orchestrator.

        Args:
            store: Durable cache shared with the patch applier.
            view: Working copy shared with the patch applier.
        """
        self.store = store
        self.view = view
        self._last_result: SmartSyncResult | None = None

    def read_cache(self) -> dict[str, list]:
        """Read every cached collection without touching the network."""
        return {name: self.store.get(name) for name in ENTITY_TYPES}

    async def smart_sync(
        self,
        fetch_remote_version: FetchVersion,
        fetch_full_dataset: FetchDataset,
        prefer_cache: bool = False,
    ) -> SmartSyncResult:
        """Run one cache-first sync.

        Args:
            fetch_remote_version: Coroutine function returning the remote descriptor.
            fetch_full_dataset: Coroutine function returning every collection.
            prefer_cache: When the cache is stale, return it now and refresh
                in a background task instead of waiting for the fetch.

        Returns:
            SmartSyncResult with collections, action and provenance.

        Raises:
            CacheLoadError: If nothing is cached and the remote cannot be read.
        """
        snapshot = {name: self.store.read_collection(name) for name in ENTITY_TYPES}
        cached = {name: entities or [] for name, entities in snapshot.items()}
        has_cache = any(cached.values())
        complete = all(entities is not None for entities in snapshot.values())

        # The version record only vouches for a cache it can fully back
        local = self.store.get_version() if has_cache and complete else None
        if has_cache and not complete:
            missing = sorted(name for name, entities in snapshot.items() if entities is None)
            logger.info(f"Cached {', '.join(missing)} absent or unreadable, forcing full sync")

        if has_cache:
            # Fast path: cached data is shown before any network call
            self.view.load(cached)
            logger.info(
                "Serving cached data: "
                + ", ".join(f"{len(v)} {k}" for k, v in cached.items())
            )

        comparator = VersionComparator(fetch_remote_version)
        check = await comparator.check(local, has_cache, prefer_cache=prefer_cache)

        if check.action is SyncAction.NO_CHANGE:
            # Re-read: deltas may have landed while the check was in flight
            result = SmartSyncResult(
                collections=self.read_cache(),
                action=SyncAction.NO_CHANGE,
                from_cache=True,
                error=check.error,
                remote_version=check.remote,
            )

        elif check.action is SyncAction.USE_CACHE_THEN_BACKGROUND_REFRESH:
            logger.info("Cache is stale, refreshing in background")
            task = asyncio.create_task(
                self._full_sync(fetch_full_dataset, check.remote, has_cache)
            )
            result = SmartSyncResult(
                collections=self.read_cache(),
                action=SyncAction.USE_CACHE_THEN_BACKGROUND_REFRESH,
                from_cache=True,
                remote_version=check.remote,
                refresh_task=task,
            )

        else:
            result = await self._full_sync(fetch_full_dataset, check.remote, has_cache)

        self._last_result = result
        return result

    def _degraded(self, remote: VersionDescriptor, error: str) -> SmartSyncResult:
        """Serve what the store holds now, flagged with ``error``."""
        collections = self.read_cache()
        self.view.load(collections)
        return SmartSyncResult(
            collections=collections,
            action=SyncAction.NO_CHANGE,
            from_cache=True,
            error=error,
            remote_version=remote,
        )

    async def _full_sync(
        self,
        fetch_full_dataset: FetchDataset,
        remote: VersionDescriptor,
        has_cache: bool,
    ) -> SmartSyncResult:
        """Fetch everything and overwrite the cache.

        The store is not touched until the whole dataset has been fetched
        and decoded, so a failure leaves the previous snapshot intact. The
        view only takes the new snapshot once the store has committed it.
        """
        writes_before = self.store.write_count

        try:
            dataset = _normalize_dataset(await fetch_full_dataset())
        except Exception as e:
            if not has_cache:
                raise CacheLoadError(f"No cached data and full fetch failed: {e}") from e
            logger.warning(f"Full sync failed, keeping cached data: {e}")
            return self._degraded(remote, str(e))

        interleaved = self.store.write_count - writes_before
        if interleaved:
            # Deltas applied while the fetch was in flight are overwritten
            logger.warning(
                f"{interleaved} cache write(s) happened during full sync "
                f"and are superseded by version {remote.version_token}"
            )

        record = LocalVersionRecord.from_descriptor(remote, last_sync=utcnow())
        if not self.store.replace_snapshot(dataset, record):
            if not has_cache:
                raise CacheLoadError(
                    f"Fetched version {remote.version_token} could not be stored"
                )
            logger.warning(
                f"Fetched version {remote.version_token} could not be stored, "
                "keeping cached data"
            )
            return self._degraded(remote, "Fetched data could not be stored")

        self.view.load(dataset)
        logger.info(
            f"Synced from server at version {remote.version_token}: "
            + ", ".join(f"{len(v)} {k}" for k, v in dataset.items())
        )

        return SmartSyncResult(
            collections=dataset,
            action=SyncAction.FULL_SYNC,
            from_cache=False,
            remote_version=remote,
        )

    @property
    def last_result(self) -> SmartSyncResult | None:
        return self._last_result
