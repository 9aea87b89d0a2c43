"""
Managed MQTT client: a long-lived broker session with automatic reconnect,
topic-pattern dispatch to application handlers and mutual-TLS broker
authentication. Available as a threaded (paho-mqtt) and an asyncio (aiomqtt)
client.
"""
from .core import *  # noqa: F401,F403
from .core import __all__ as _core_all
from .sync_client import ManagedClient
from .async_client import AsyncManagedClient

__all__ = [*_core_all, "ManagedClient", "AsyncManagedClient"]
