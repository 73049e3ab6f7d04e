"""
Configuration Loader.

Responsible for reading and writing the config.yaml file and for turning
its `mqtt` section into a validated BrokerDescriptor.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from air_monitor.worker.errors import ConfigError
from air_monitor.worker.models import DEFAULT_CLIENT_ID, BrokerDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def load_config(config_path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return config


def save_config(config_path: Union[str, Path], config: Dict[str, Any]) -> None:
    """
    Writes the configuration, readable by the owner only.
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    # O_CREAT only applies the mode to new files
    os.chmod(path, 0o600)
    with os.fdopen(fd, 'w') as f:
        yaml.safe_dump(config, f, sort_keys=False)
    logger.info(f"Saved configuration to {path}")


def descriptor_from_config(config: Dict[str, Any]) -> BrokerDescriptor:
    """
    Builds the BrokerDescriptor from the `mqtt` section, with defaults.
    """
    mqtt_conf = config.get('mqtt') or {}
    if not isinstance(mqtt_conf, dict):
        raise ConfigError("'mqtt' section must be a mapping")

    try:
        ca_path = mqtt_conf.get('ca_path')
        descriptor = BrokerDescriptor(
            host=str(mqtt_conf.get('host', 'localhost')),
            port=int(mqtt_conf.get('port', 1883)), # Must be int
            tls=_flag(mqtt_conf, 'tls'),
            ca_path=Path(ca_path).expanduser() if ca_path else None,
            username=mqtt_conf.get('username') or None,
            client_id=mqtt_conf.get('client_id') or DEFAULT_CLIENT_ID,
            keepalive_secs=int(mqtt_conf.get('keepalive_secs', 30)),
            topic_prefix=mqtt_conf.get('topic_prefix') or None,
            qos=int(mqtt_conf.get('qos', 0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid mqtt settings: {e}") from e
    return descriptor.validate()


def remember_password(config: Dict[str, Any]) -> bool:
    return _flag(config.get('mqtt') or {}, 'remember_password')


def set_remember_password(config: Dict[str, Any], value: bool) -> Dict[str, Any]:
    """Returns a copy of `config` with `mqtt.remember_password` set."""
    updated = dict(config)
    updated['mqtt'] = {**(config.get('mqtt') or {}), 'remember_password': value}
    return updated


def _flag(section: Dict[str, Any], key: str) -> bool:
    # yaml gives real booleans for true/false; a quoted "false" must not turn into True
    value = section.get(key, False)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    return value
