"""Application-facing entry point for the business directory cache."""

import logging
from typing import Any

from .cache.local_store import LocalStore
from .config import Config
from .feed.subscription import Subscription
from .models import (
    Business,
    ChangeEvent,
    ChangeOperation,
    LocalVersionRecord,
    VersionDescriptor,
)
from .sync.orchestrator import FetchDataset, SmartSyncOrchestrator, SmartSyncResult
from .sync.patch_applier import ChangeFeedPatchApplier
from .sync.remote import RemoteDataSource
from .sync.version import FetchVersion
from .view import WorkingSet

logger = logging.getLogger(__name__)


def _sort_categories(categories: list) -> list:
    return sorted(categories, key=lambda c: c.name.casefold())


class CacheService:
    """Cache, smart sync and change feed wiring for one application instance.

    Construct one per application and pass it to whatever needs the data;
    the store, the working view and every applier share the same objects.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteDataSource | None = None,
        prefer_cache: bool = False,
    ):
        """Initialize the service.

        Args:
            store: Durable cache for this instance.
            remote: Default remote used when smart_sync is called without fetchers.
            prefer_cache: Default for smart_sync's background refresh mode.
        """
        self.store = store
        self.remote = remote
        self.prefer_cache = prefer_cache
        self.view = WorkingSet()
        self.orchestrator = SmartSyncOrchestrator(store, self.view)

        fetch_version = remote.fetch_remote_version if remote else None
        # Patches coming from the UI's own change wiring
        self._direct = ChangeFeedPatchApplier(store, self.view, fetch_version)
        self._feeds: list[tuple[ChangeFeedPatchApplier, Subscription]] = []

    @classmethod
    def from_config(cls, config: Config) -> "CacheService":
        store = LocalStore(config.cache.db_path)
        store.connect()

        remote = None
        if config.remote.base_url:
            remote = RemoteDataSource(
                base_url=config.remote.base_url,
                max_retries=config.remote.max_retries,
                timeout=config.remote.timeout_seconds,
                version_path=config.remote.version_path,
                categories_path=config.remote.categories_path,
                businesses_path=config.remote.businesses_path,
                headers=config.remote.headers,
            )

        return cls(store, remote, prefer_cache=config.cache.prefer_cache)

    # ==================== Reads ====================

    def get_cached_businesses(self) -> list[Business]:
        """Cached businesses, straight from the store. No network."""
        return self.store.get("businesses")

    def get_cached_categories(self) -> list:
        """Cached categories sorted by name. No network."""
        return _sort_categories(self.store.get("categories"))

    def find_business(self, business_id: str) -> Business | None:
        """Look a business up in the working view (shared links)."""
        return self.view.find("businesses", business_id)

    # ==================== Sync ====================

    async def smart_sync(
        self,
        fetch_remote_version: FetchVersion | None = None,
        fetch_full_dataset: FetchDataset | None = None,
        prefer_cache: bool | None = None,
    ) -> SmartSyncResult:
        """Cache-first sync against the remote store.

        Fetchers default to the configured RemoteDataSource.

        Raises:
            ValueError: If no fetchers are given and no remote is configured.
            CacheLoadError: If nothing is cached and the remote is unreachable.
        """
        if fetch_remote_version is None or fetch_full_dataset is None:
            if self.remote is None:
                raise ValueError("No remote configured and no fetchers given")
            fetch_remote_version = fetch_remote_version or self.remote.fetch_remote_version
            fetch_full_dataset = fetch_full_dataset or self.remote.fetch_full_dataset

        result = await self.orchestrator.smart_sync(
            fetch_remote_version,
            fetch_full_dataset,
            prefer_cache=self.prefer_cache if prefer_cache is None else prefer_cache,
        )
        result.collections["categories"] = _sort_categories(result.categories)

        if result.stale:
            logger.warning(f"Data may be stale: {result.error}")
        return result

    # ==================== Patches ====================

    def update_cached_business(self, business: Business | dict[str, Any]) -> bool:
        """Insert or replace one business in the cache and the view."""
        if isinstance(business, dict):
            business = Business.from_dict(business)
        return self._direct.apply(
            ChangeEvent(
                operation=ChangeOperation.UPDATE,
                entity_type="businesses",
                entity_id=business.id,
                payload=business.to_dict(),
            )
        )

    def delete_cached_business(self, business_id: str) -> bool:
        """Remove one business from the cache and the view."""
        return self._direct.apply(
            ChangeEvent(
                operation=ChangeOperation.DELETE,
                entity_type="businesses",
                entity_id=business_id,
            )
        )

    def set_local_version(self, descriptor: VersionDescriptor) -> bool:
        """Record ``descriptor`` as the locally synced version, stamped now."""
        return self.store.set_version(LocalVersionRecord.from_descriptor(descriptor))

    async def refresh_local_version(self) -> bool:
        """Best-effort re-fetch of the remote version after a patch."""
        return await self._direct.refresh_version()

    # ==================== Change Feed ====================

    async def start_change_feed(self, feed: Any) -> Subscription:
        """Subscribe ``feed`` and route its events through a new patch applier.

        Args:
            feed: Any transport with ``subscribe_to_changes(handler, on_ready)``.

        Returns:
            The live Subscription; ``unsubscribe()`` also retires the applier.
        """
        fetch_version = self.remote.fetch_remote_version if self.remote else None
        applier = ChangeFeedPatchApplier(self.store, self.view, fetch_version)

        subscription = await feed.subscribe_to_changes(
            applier.handle_event, on_ready=applier.activate
        )
        subscription.add_close_callback(applier.unsubscribe)
        self._feeds.append((applier, subscription))
        return subscription

    def stop_change_feeds(self) -> None:
        for _, subscription in self._feeds:
            subscription.unsubscribe()
        self._feeds.clear()

    # ==================== Status ====================

    def get_status(self) -> dict[str, Any]:
        last = self.orchestrator.last_result
        return {
            "store": self.store.get_stats(),
            "view": self.view.counts(),
            "last_sync": last.summary() if last else None,
            "remote": self.remote.get_status() if self.remote else None,
            "feeds": [applier.get_stats() for applier, _ in self._feeds],
        }

    def close(self) -> None:
        self.stop_change_feeds()
        self.store.close()
