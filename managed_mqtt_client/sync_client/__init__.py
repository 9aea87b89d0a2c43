"""
Threaded managed MQTT client implementation using paho-mqtt.
No async/await - a background thread owns the session.
"""
from .client import ManagedClient
from .connection import ConnectionManager

__all__ = [
    "ManagedClient",
    "ConnectionManager",
]
