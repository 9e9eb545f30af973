"""Sync infrastructure for the business directory cache.

Provides version-token based smart sync against the remote store and
incremental patching from its realtime change feed.
"""

from .orchestrator import SmartSyncOrchestrator, SmartSyncResult
from .patch_applier import ChangeFeedPatchApplier, FeedState
from .remote import RemoteDataSource
from .version import SyncAction, VersionCheck, VersionComparator

__all__ = [
    "ChangeFeedPatchApplier",
    "FeedState",
    "RemoteDataSource",
    "SmartSyncOrchestrator",
    "SmartSyncResult",
    "SyncAction",
    "VersionCheck",
    "VersionComparator",
]
