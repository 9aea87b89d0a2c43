"""
Configuration Loading.

Reads the application settings file (``appsettings.json`` by default), overlays
environment variables and returns a validated, immutable Settings value that is
passed explicitly to the managed client.

File layout (keys are matched case-insensitively):

    {
        "mqtt": {"clientId": "raspi-01", "brokerHost": "broker.local", ...},
        "certificates": {"serverCertificateThumbprint": "ab12...", ...},
        "outputs": {"ledPins": [17, 27]},
        "logging": {"level": "INFO", "levels": {"managed_mqtt_client.core": "DEBUG"}}
    }

Environment overrides use ``SECTION__KEY`` names, e.g. ``MQTT__BROKERHOST`` or
``CERTIFICATES__CLIENTCERTIFICATEPASSWORD``. Values from a ``.env`` file are
read with python-dotenv and lose against real environment variables.
"""
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import orjson
from dotenv import dotenv_values, find_dotenv
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from .exceptions import ConfigurationError
from .models import ProtocolVersion

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "appsettings.json"
SECTIONS = ("mqtt", "certificates", "outputs", "logging")


def _flat_alias(name: str) -> str:
    # "broker_host" -> "brokerhost", matching lower-cased camelCase keys
    return name.replace("_", "")


class _SettingsSection(BaseModel):
    model_config = ConfigDict(
        alias_generator=_flat_alias,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class MqttSettings(_SettingsSection):
    """The ``mqtt`` section: broker endpoint, identity and session timing."""
    client_id: str = ""
    use_secure_connection: bool = True
    use_client_certificate: bool = True
    broker_host: str = "localhost"
    broker_port: int = Field(
        default=1883,
        validation_alias=AliasChoices("brokerport", "brockerport", "broker_port"),
    )
    broker_secure_port: int = Field(
        default=8883,
        validation_alias=AliasChoices("brokersecureport", "brockersecureport", "broker_secure_port"),
    )
    username: str = ""
    password: SecretStr = SecretStr("")
    auto_reconnect_delay: float = Field(default=5, ge=0)
    keep_alive_period: int = Field(default=15, gt=0)
    protocol_version: ProtocolVersion = ProtocolVersion.V311

    @field_validator("protocol_version", mode="before")
    @classmethod
    def parse_protocol_version(cls, value: Any) -> Any:
        """Accept names such as "V5" or "v311" alongside numeric values."""
        if isinstance(value, str) and not value.isdigit():
            try:
                return ProtocolVersion[value.upper()]
            except KeyError:
                valid = ", ".join(v.name for v in ProtocolVersion)
                raise ValueError(f"Invalid protocol version '{value}'. Valid versions are: {valid}")
        return value


class CertificateSettings(_SettingsSection):
    """The ``certificates`` section: pinned broker fingerprint and certificate files."""
    server_certificate_thumbprint: str = ""
    ca_certificate_file_path: str = "ca.crt"
    client_certificate_file_path: str = "client.pfx"
    client_key_file_path: str = ""
    client_certificate_password: SecretStr = SecretStr("password")


class OutputSettings(_SettingsSection):
    """The ``outputs`` section, consumed by host applications only."""
    led_pins: list[int] = Field(default_factory=list)


def _level_name(value: str) -> str:
    name = str(value).strip().upper()
    if not isinstance(logging.getLevelName(name), int):
        raise ValueError(f"Unknown log level '{value}'")
    return name


class LoggingSettings(_SettingsSection):
    """
    The ``logging`` section.

    ``level`` and ``levels`` (logger name to level) configure the default
    ClientFormatter handler. A ``config`` mapping is passed to
    logging.config.dictConfig instead and takes over handler set-up entirely.
    """
    level: str = "INFO"
    log_format: str = Field(default="", validation_alias=AliasChoices("format", "logformat", "log_format"))
    levels: dict[str, str] = Field(default_factory=dict)
    config: Optional[dict[str, Any]] = None

    @field_validator("level")
    @classmethod
    def parse_level(cls, value: str) -> str:
        return _level_name(value)

    @field_validator("levels")
    @classmethod
    def parse_levels(cls, value: dict[str, str]) -> dict[str, str]:
        return {name: _level_name(level) for name, level in value.items()}


class Settings(_SettingsSection):
    """Complete application settings."""
    mqtt: MqttSettings
    certificates: CertificateSettings = Field(default_factory=CertificateSettings)
    outputs: OutputSettings = Field(default_factory=OutputSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def resolve_path(path: str | Path, base_dir: Optional[Path] = None) -> Path:
    """
    Resolve a configured file path.

    Absolute paths are returned unchanged; relative paths are taken relative to
    ``base_dir`` or, by default, the current working directory.
    """
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return (base_dir or Path.cwd()) / candidate


def _lower_keys(value: Any, depth: int = 2) -> Any:
    # section and setting names only; logger names below keep their case
    if depth and isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v, depth - 1) for k, v in value.items()}
    return value


def _parse_env_value(value: str) -> Any:
    stripped = value.strip()
    if stripped.startswith("["):
        try:
            return orjson.loads(stripped)
        except orjson.JSONDecodeError:
            return value
    return value


def apply_environment_overrides(data: dict[str, Any], environ: Mapping[str, Optional[str]]) -> dict[str, Any]:
    """
    Overlay ``SECTION__KEY`` environment variables onto lower-cased settings data.

    Args:
        data: Settings dictionary with lower-cased keys (modified in place)
        environ: Environment mapping to read overrides from

    Returns:
        The updated settings dictionary
    """
    for name, value in environ.items():
        if value is None or "__" not in name:
            continue
        section, _, key = name.lower().partition("__")
        if section not in SECTIONS or not key:
            continue
        key = key.replace("_", "")
        section_data = data.setdefault(section, {})
        if not isinstance(section_data, dict):
            continue
        section_data[key] = _parse_env_value(value)
        logger.debug(f"Configuration override from environment: {section}.{key}")
    return data


def load_settings(
    path: str | Path = DEFAULT_SETTINGS_FILE,
    environ: Optional[Mapping[str, Optional[str]]] = None,
    env_file: Optional[str | Path] = None,
) -> Settings:
    """
    Load, override and validate the application settings.

    Args:
        path: Settings file path, relative to the working directory unless absolute
        environ: Environment mapping (defaults to ``.env`` values overlaid by os.environ)
        env_file: Explicit ``.env`` file; searched from the working directory if None

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If the file is missing, unparsable or fails validation
    """
    settings_path = resolve_path(path)
    logger.debug(f"Reading configuration from {settings_path}")

    try:
        raw = orjson.loads(settings_path.read_bytes())
    except FileNotFoundError:
        logger.critical(f"Configuration file not found: {settings_path}")
        raise ConfigurationError(f"Configuration file not found: {settings_path}", source="config")
    except (OSError, orjson.JSONDecodeError) as e:
        logger.critical(f"Error while reading {settings_path}: {e}")
        raise ConfigurationError(f"Failed to read configuration: {e}", source="config") from e

    if not isinstance(raw, dict):
        logger.critical(f"Configuration root in {settings_path} must be an object")
        raise ConfigurationError("Configuration root must be a JSON object", source="config")

    if environ is None:
        dotenv_path = str(env_file) if env_file else find_dotenv(usecwd=True)
        environ = {**(dotenv_values(dotenv_path) if dotenv_path else {}), **os.environ}

    data = apply_environment_overrides(_lower_keys(raw), environ)

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        logger.critical(f"Invalid configuration in {settings_path}: {e}")
        raise ConfigurationError(f"Invalid configuration: {e.error_count()} error(s)", source="config") from e

    logger.info(f"Configuration initialized from {settings_path}")
    return settings


__all__ = [
    "DEFAULT_SETTINGS_FILE",
    "MqttSettings",
    "CertificateSettings",
    "OutputSettings",
    "LoggingSettings",
    "Settings",
    "resolve_path",
    "apply_environment_overrides",
    "load_settings",
]
