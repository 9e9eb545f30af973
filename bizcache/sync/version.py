"""Decides whether the local cache is stale by comparing version descriptors."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from ..errors import CacheLoadError
from ..models import LocalVersionRecord, VersionDescriptor

logger = logging.getLogger(__name__)

FetchVersion = Callable[[], Awaitable[VersionDescriptor]]


class SyncAction(Enum):
    """What the orchestrator should do after a version check."""

    NO_CHANGE = "no_change"
    USE_CACHE_THEN_BACKGROUND_REFRESH = "use_cache_then_background_refresh"
    FULL_SYNC = "full_sync"


@dataclass
class VersionCheck:
    """Outcome of a version check."""

    action: SyncAction
    remote: VersionDescriptor | None = None
    error: str | None = None


class VersionComparator:
    """Compares the stored version record with the remote descriptor."""

    def __init__(self, fetch_remote_version: FetchVersion):
        """Initialize the comparator.

        Args:
            fetch_remote_version: Coroutine function returning the current
                remote descriptor. May raise on network failure.
        """
        self._fetch_remote_version = fetch_remote_version

    async def fetch_remote_version(self) -> VersionDescriptor:
        return await self._fetch_remote_version()

    @staticmethod
    def decide(
        local: LocalVersionRecord | None,
        remote: VersionDescriptor,
        *,
        has_cache: bool = False,
        prefer_cache: bool = False,
    ) -> SyncAction:
        """Pick the sync action for a local/remote pair.

        Args:
            local: Stored version record, None on cold start.
            remote: Freshly fetched remote descriptor.
            has_cache: Whether cached collections are available to show.
            prefer_cache: Serve a stale cache first and refresh in the background.

        Returns:
            The sync action to take.
        """
        if local is None:
            return SyncAction.FULL_SYNC

        if local.version_token == remote.version_token:
            return SyncAction.NO_CHANGE

        if prefer_cache and has_cache:
            return SyncAction.USE_CACHE_THEN_BACKGROUND_REFRESH

        return SyncAction.FULL_SYNC

    async def check(
        self,
        local: LocalVersionRecord | None,
        has_cache: bool,
        prefer_cache: bool = False,
    ) -> VersionCheck:
        """Fetch the remote descriptor and decide.

        A failed fetch falls back to the cache when there is one.

        Raises:
            CacheLoadError: If the fetch failed and there is nothing cached.
        """
        try:
            remote = await self.fetch_remote_version()
        except Exception as e:
            if has_cache:
                logger.warning(f"Version check failed, serving cached data: {e}")
                return VersionCheck(action=SyncAction.NO_CHANGE, error=str(e))
            raise CacheLoadError(f"No cached data and version check failed: {e}") from e

        action = self.decide(
            local, remote, has_cache=has_cache, prefer_cache=prefer_cache
        )
        logger.debug(
            f"Version check: local={local.version_token if local else None} "
            f"remote={remote.version_token} -> {action.value}"
        )
        return VersionCheck(action=action, remote=remote)
