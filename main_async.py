import asyncio
import logging

from managed_mqtt_client import (
    AsyncManagedClient,
    ConfigurationError,
    Message,
    configure_logging,
    configure_logging_from_settings,
    load_settings,
)
from managed_mqtt_client.async_client import run


logger = logging.getLogger("main_async")

# Publishes a heartbeat so the broker side can see the device is alive.
HEARTBEAT_TOPIC = "devices/{client_id}/heartbeat"
HEARTBEAT_INTERVAL = 30


def on_button_changed(message: Message):
    logger.info(f"Topic has changed: {message.topic} = '{message.payload_text()}'.")


async def main():
    try:
        settings = load_settings("appsettings.json")
    except ConfigurationError as e:
        configure_logging(logging.INFO)
        logger.critical(f"Failed: {e}")
        return

    configure_logging_from_settings(settings.logging)
    client = AsyncManagedClient.from_settings(settings)
    await client.subscribe("inputs/#", on_button_changed, label="on_button_changed")

    async with client:
        topic = HEARTBEAT_TOPIC.format(client_id=client.identifier)
        while True:
            if client.is_connected:
                await client.publish(topic, "alive", content_type="text/plain")
            await asyncio.sleep(HEARTBEAT_INTERVAL)


if __name__ == "__main__":
    try:
        run(main())
    except KeyboardInterrupt:
        logger.info("Exiting...")
