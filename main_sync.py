import re
import time
import logging
from functools import partial

from managed_mqtt_client import (
    ConfigurationError,
    ManagedClient,
    Message,
    configure_logging,
    configure_logging_from_settings,
    load_settings,
)


logger = logging.getLogger("main_sync")

BUTTON_TOPIC = re.compile(r"inputs/button(\d+)/isPressed", re.IGNORECASE)


def get_button_index(topic: str) -> int:
    """Return the button index of a topic like "inputs/button1/isPressed", -1 if none."""
    match = BUTTON_TOPIC.fullmatch(topic)
    return int(match.group(1)) if match else -1


# Drives the LED assigned to a button. GPIO access is left to the host; this example only logs.
def on_button_state_changed(led_pins: list[int], message: Message):
    index = get_button_index(message.topic)
    if not 0 <= index < len(led_pins):
        logger.warning(f"No LED configured for {message.topic}")
        return
    value = "HIGH" if message.payload_text().lower() == "true" else "LOW"
    logger.info(f"LED pin {led_pins[index]} -> {value}")


def on_button_changed(message: Message):
    logger.info(f"Topic has changed: {message.topic} = '{message.payload_text()}'.")


def main():
    try:
        settings = load_settings("appsettings.json")
    except ConfigurationError as e:
        configure_logging(logging.INFO)
        logger.critical(f"Failed: {e}")
        return

    configure_logging_from_settings(settings.logging)
    logger.info("Application starting ...")
    client = ManagedClient.from_settings(settings)
    client.subscribe(
        "inputs/+/isPressed",
        partial(on_button_state_changed, list(settings.outputs.led_pins)),
        label="on_button_state_changed",
    )
    client.subscribe("inputs/#", on_button_changed, label="on_button_changed")

    try:
        with client:
            while True:
                time.sleep(1)
    except ConfigurationError as e:
        logger.critical(f"Failed: {e}")
    except KeyboardInterrupt:
        logger.info("Exiting...")


if __name__ == "__main__":
    main()
