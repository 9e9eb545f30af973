"""Transports for the remote store's realtime change feed."""

from .mqtt_feed import MQTTChangeFeed
from .replay import ReplayFeed
from .subscription import ChangeHandler, Subscription

__all__ = ["ChangeHandler", "MQTTChangeFeed", "ReplayFeed", "Subscription"]
