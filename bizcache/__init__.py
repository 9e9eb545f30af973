"""bizcache - cache-first smart sync for a business directory."""

from .cache import LocalStore
from .config import Config, load_config
from .errors import (
    BizCacheError,
    CacheLoadError,
    DecodeError,
    FeedStateError,
    RemoteUnavailableError,
)
from .models import (
    Business,
    Category,
    ChangeEvent,
    ChangeOperation,
    LocalVersionRecord,
    VersionDescriptor,
)
from .service import CacheService
from .sync import (
    ChangeFeedPatchApplier,
    SmartSyncOrchestrator,
    SmartSyncResult,
    SyncAction,
    VersionComparator,
)
from .view import WorkingSet

__version__ = "0.1.0"

__all__ = [
    "BizCacheError",
    "Business",
    "CacheLoadError",
    "CacheService",
    "Category",
    "ChangeEvent",
    "ChangeFeedPatchApplier",
    "ChangeOperation",
    "Config",
    "DecodeError",
    "FeedStateError",
    "LocalStore",
    "LocalVersionRecord",
    "RemoteUnavailableError",
    "SmartSyncOrchestrator",
    "SmartSyncResult",
    "SyncAction",
    "VersionComparator",
    "VersionDescriptor",
    "WorkingSet",
    "load_config",
]
