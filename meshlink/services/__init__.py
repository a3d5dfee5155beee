"""Service layer for the meshlink daemon."""

from .discovery import NodeDiscoveryProjection
from .radio import RadioClient
from .reconnect import ConnectionLostError, JitteredBackoff, ReconnectManager, ReconnectPolicy

__all__ = [
    "ConnectionLostError",
    "JitteredBackoff",
    "NodeDiscoveryProjection",
    "RadioClient",
    "ReconnectManager",
    "ReconnectPolicy",
]
