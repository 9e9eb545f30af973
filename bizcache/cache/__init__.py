"""Client-resident cache for the business directory.

Provides durable storage for:
- Entity collections (categories, businesses)
- The local version record used to decide when to resync
"""

from .local_store import LocalStore

__all__ = ["LocalStore"]
