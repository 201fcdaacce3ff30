"""
Configuration Management
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from vrf_lottery.utils.logger import get_logger

logger = get_logger(__name__)

CONFIG_FILE_ENV = "LOTTERY_CONFIG_FILE"

DEFAULT_CONFIG: Dict[str, Any] = {
    "lottery": {
        "entrance_fee": "0.01",  # ETH
        "interval": 30,  # seconds
        "address": None,  # holding address, derived when missing
    },
    "vrf": {
        "private_key": None,
        "key_hash": None,
        "subscription_id": 1,
        "callback_gas_limit": 500000,
        "request_confirmations": 3,
        "block_time": 2.0,  # seconds per simulated block
    },
    "automation": {
        "enabled": True,
        "check_interval": 10.0,  # seconds
    },
    "event_manager": {
        "live_feed_max_entries": 100,
        "round_history_max": 20,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 6080,
    },
}

# environment prefix -> config section
ENV_SECTIONS = {
    "LOTTERY_": "lottery",
    "VRF_": "vrf",
    "AUTOMATION_": "automation",
    "SERVER_": "server",
}


def default_config_path() -> Path:
    return Path(__file__).resolve().parents[3] / "config" / "lottery.conf"


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from defaults, a JSON file and environment variables"""
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_file or os.getenv(CONFIG_FILE_ENV) or default_config_path())
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            raise
        _merge(config, file_config)
        logger.info(f"Loaded configuration from {path}")
    else:
        logger.warning(f"Config file {path} not found. Using defaults and environment variables.")

    # Override with environment variables, defined in .env
    config = _apply_env_overrides(config)

    logger.debug(f"Configuration after applying environment overrides: {json.dumps(_redacted(config), indent=2)}")
    return config


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for section, values in override.items():
        if isinstance(values, dict) and isinstance(base.get(section), dict):
            base[section].update(values)
        else:
            base[section] = values


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        if key == CONFIG_FILE_ENV:
            continue
        for prefix, section in ENV_SECTIONS.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def _redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    shown = copy.deepcopy(config)
    vrf = shown.get("vrf")
    if isinstance(vrf, dict) and vrf.get("private_key"):
        vrf["private_key"] = "***"
    return shown


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def as_bool(value: Any) -> bool:
    """Interpret config values that may arrive as strings from the environment."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
