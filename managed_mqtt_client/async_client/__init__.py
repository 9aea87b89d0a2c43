"""
Asyncio managed MQTT client implementation using aiomqtt.
"""
from .client import AsyncManagedClient
from .connection import AsyncConnectionManager
from .compatibility import ensure_compatible_event_loop, event_loop_factory, run

__all__ = [
    "AsyncManagedClient",
    "AsyncConnectionManager",
    "ensure_compatible_event_loop",
    "event_loop_factory",
    "run",
]
