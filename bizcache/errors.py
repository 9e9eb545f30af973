"""Exceptions raised by the bizcache sync engine."""


class BizCacheError(Exception):
    """Base class for all bizcache errors."""


class DecodeError(BizCacheError, ValueError):
    """A cached or remote record does not have the expected shape."""


class RemoteUnavailableError(BizCacheError):
    """The remote data source could not be reached or returned an error."""


class CacheLoadError(BizCacheError):
    """No data can be shown: the cache is empty and the remote is unreachable."""


class FeedStateError(BizCacheError):
    """A change feed subscription was driven through an illegal transition."""
