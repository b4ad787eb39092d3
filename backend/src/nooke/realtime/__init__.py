"""Change feeds and the presence mirror built on top of them."""

from .presence import (  # noqa: F401
    PARTICIPANTS_CHANGED,
    ROOMS_CHANGED,
    FeedBinding,
    PresenceSync,
)
from .transport import (  # noqa: F401
    BrokerConfig,
    ChangeFeed,
    LocalChangeFeed,
    RedisChangeFeed,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "BrokerConfig",
    "ChangeFeed",
    "FeedBinding",
    "LocalChangeFeed",
    "PARTICIPANTS_CHANGED",
    "PresenceSync",
    "ROOMS_CHANGED",
    "RedisChangeFeed",
    "Subscription",
    "TransportUnavailableError",
]
