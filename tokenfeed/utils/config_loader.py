import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


DEFAULT_SETTINGS: Dict[str, Any] = {
    "provider": {
        "mobula": {
            "base_url": "https://api.mobula.io/api/1",
            "list_limit": 400,
            "list_orders": ["market_cap", "circulating_supply", "volume"],
        },
        "coingecko": {
            "enabled": True,
            "base_url": "https://api.coingecko.com/api/v3",
            "per_page": 100,
            "vs_currency": "usd",
            "page_delay_seconds": 3.0,
            "max_pages": 3,
        },
    },
    "fetcher": {
        "timeout_seconds": 12,
        "max_attempts": 4,
        "initial_delay_seconds": 2.0,
        "pool_size": 20,
    },
    "batching": {
        "max_chunk_size": 50,
        "inter_chunk_delay_seconds": 0.3,
    },
    "resolver": {
        "acceptance_ratio": 250 / 300,
    },
    "cache": {
        "ephemeral_ttl_seconds": 300,
        "ephemeral_max_entries": 256,
        "durable_ttl_seconds": 7200,
        "durable_enabled": True,
        "durable_path": "data/cache/tokenfeed.db",
    },
    "refresh": {
        "default_limit": 300,
        "price_update_top_n": 75,
    },
    "scheduler": {
        "enabled": True,
        "price_refresh_seconds": 10,
        "full_listing_seconds": 300,
    },
    "logging": {
        "log_dir": "logs/",
        "log_file": "tokenfeed.log",
        "level": "INFO",
    },
}


class ConfigLoader:

    @staticmethod
    def _get_logger():
        from .logger import get_logger
        return get_logger("ConfigLoader")

    @staticmethod
    def _log_metric(name: str, value: Any, tags: Dict[str, Any]):
        from .logger import log_metric
        log_metric(name, value, tags)

    @staticmethod
    def _failure(path: Path, reason: str, message: str) -> str:
        ConfigLoader._get_logger().error(message)
        ConfigLoader._log_metric("config_load_failure", 0, {"path": str(path), "reason": reason})
        return message

    @staticmethod
    def load(path: str) -> Dict[str, Any]:
        """Read a JSON settings file. Missing files, bad JSON and non-object roots raise."""
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(ConfigLoader._failure(path, "file_not_found", f"Config file not found: {path}"))

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            ConfigLoader._failure(path, "json_decode_error", f"JSON decode error in {path}: {e}")
            raise

        if not isinstance(data, dict):
            raise ValueError(
                ConfigLoader._failure(path, "not_an_object", f"Config root must be an object: {path}")
            )

        ConfigLoader._get_logger().info(f"Loaded config file: {path}")
        ConfigLoader._log_metric("config_load_success", 1, {"path": str(path)})
        return data

    @staticmethod
    def load_config(path: str) -> Optional[Dict[str, Any]]:
        """Lenient variant of load(): returns None instead of raising.

        Used by the logging manager, which must come up even when the
        settings file is missing or broken.
        """
        path = Path(path)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
            return config if isinstance(config, dict) else None
        except (OSError, ValueError):
            return None

    @staticmethod
    def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(base)
        for key, value in (override or {}).items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = ConfigLoader.merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    @staticmethod
    def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
        """Return DEFAULT_SETTINGS overlaid with the file at ``path`` and the environment.

        A missing file is not an error here: the defaults are complete. The
        provider credential only ever comes from the environment (or a .env
        file), never from the settings file.
        """
        load_dotenv()
        settings = copy.deepcopy(DEFAULT_SETTINGS)

        if path and Path(path).exists():
            settings = ConfigLoader.merge(settings, ConfigLoader.load(path))
        elif path:
            ConfigLoader._get_logger().warning(f"Settings file {path} not found, using defaults")

        api_key = os.environ.get("MOBULA_API_KEY")
        settings["provider"]["mobula"]["api_key"] = api_key.strip() if api_key else None

        level = os.environ.get("TOKENFEED_LOG_LEVEL")
        if level:
            settings["logging"]["level"] = level.upper()

        ConfigLoader._log_metric(
            "settings_loaded",
            1,
            {"path": str(path), "has_api_key": bool(settings["provider"]["mobula"]["api_key"])}
        )
        return settings
