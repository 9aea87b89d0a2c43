"""
Asyncio Event Loop Compatibility Layer for Windows.

aiomqtt drives paho-mqtt's socket through ``loop.add_reader``/``add_writer``.
The default Windows event loop (ProactorEventLoop) does not implement them and
fails with errors like "NotImplementedError" or "no attribute 'add_reader'".

Key Functions:
    - event_loop_factory(): Loop factory suitable for asyncio.Runner / asyncio.run
    - run(): Run a coroutine on a compatible event loop
    - ensure_compatible_event_loop(): Check the running loop and warn if incompatible

Environment Variables:
    - SUPPRESS_ASYNCIO_WARNINGS=True: Suppress compatibility warnings

Usage:
    >>> from managed_mqtt_client.async_client.compatibility import run
    >>> run(main())

See Also:
    - https://docs.python.org/3/library/asyncio-platforms.html#windows
    - https://github.com/eclipse/paho.mqtt.python/issues/558
"""
import asyncio
import logging
import os
import sys
import warnings
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)


def requires_selector_loop() -> bool:
    """True on platforms whose default event loop lacks add_reader support."""
    return sys.platform.startswith("win")


def event_loop_factory() -> Optional[Callable[[], asyncio.AbstractEventLoop]]:
    """
    Return a loop factory producing a loop that aiomqtt can drive.

    Returns:
        asyncio.SelectorEventLoop on Windows, None (the platform default) elsewhere
    """
    if requires_selector_loop():
        return asyncio.SelectorEventLoop
    return None


def run(main: Coroutine[Any, Any, Any], *, debug: Optional[bool] = None) -> Any:
    """
    Run a coroutine to completion on a compatible event loop.

    Drop-in replacement for asyncio.run() in host programs.
    """
    with asyncio.Runner(debug=debug, loop_factory=event_loop_factory()) as runner:
        return runner.run(main)


def ensure_compatible_event_loop(loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
    """
    Check whether an event loop supports the reader/writer callbacks aiomqtt needs.

    Does not change anything; emits a RuntimeWarning (unless
    SUPPRESS_ASYNCIO_WARNINGS=True) when the loop is incompatible.

    Args:
        loop: Loop to check (default: the running loop)

    Returns:
        True if the loop is compatible
    """
    loop = loop or asyncio.get_running_loop()
    proactor_cls = getattr(asyncio, "ProactorEventLoop", None)

    if proactor_cls is None or not isinstance(loop, proactor_cls):
        logger.debug(f"Event loop {type(loop).__name__} supports add_reader")
        return True

    suppress_warnings = os.getenv("SUPPRESS_ASYNCIO_WARNINGS", "False").lower() == "true"
    logger.warning(f"Event loop {type(loop).__name__} does not support add_reader")
    if not suppress_warnings:
        warnings.warn(
            "Detected a ProactorEventLoop. aiomqtt requires add_reader support; run the "
            "program with managed_mqtt_client.async_client.compatibility.run() or pass "
            "loop_factory=asyncio.SelectorEventLoop to asyncio.run(). "
            "To suppress this warning, set SUPPRESS_ASYNCIO_WARNINGS=True.",
            RuntimeWarning,
            stacklevel=2,
        )
    return False


__all__ = [
    "requires_selector_loop",
    "event_loop_factory",
    "run",
    "ensure_compatible_event_loop",
]
