"""Audio session control: state machine, silence watchdog and transports."""

from .controller import AudioSessionController  # noqa: F401
from .protocols import AudioConnection, TokenIssuer, TransportCredentials  # noqa: F401
from .signaling import AudioConnectionState  # noqa: F401
from .watchdog import SilenceWatchdog  # noqa: F401

__all__ = [
    "AudioConnection",
    "AudioConnectionState",
    "AudioSessionController",
    "SilenceWatchdog",
    "TokenIssuer",
    "TransportCredentials",
]
