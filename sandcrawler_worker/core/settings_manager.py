"""
Settings Manager for the sandcrawler worker.

All configuration comes from environment variables (optionally loaded from
a .env file by the runner). Orders can override page settings per job.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Project root directory - used to resolve relative bundle paths
PROJECT_ROOT = Path(__file__).parent.parent.parent.resolve()


class SettingsManager:
    """Manages worker configuration via environment variables."""

    DEFAULTS = {
        "runner_name": "sandcrawler-worker",
        "max_pages": 4,
        "headless": True,
        "default_timeout_ms": 5000,
        "default_user_agent": "",
        "jquery_path": "https://code.jquery.com/jquery-2.1.3.min.js",
        "artoo_path": "https://medialab.github.io/artoo/public/dist/artoo-latest.min.js",
        "supabase_url": "",
        "supabase_realtime_key": "",
        "order_channel": "sandcrawler-orders",
        "callback_url": "",
        "callback_api_key": "",
        "http_host": "0.0.0.0",
        "http_port": 8001,
    }

    ENV_MAPPINGS = {
        "runner_name": "RUNNER_NAME",
        "max_pages": "MAX_PAGES",
        "headless": "HEADLESS",
        "default_timeout_ms": "DEFAULT_TIMEOUT_MS",
        "default_user_agent": "DEFAULT_USER_AGENT",
        "jquery_path": "JQUERY_PATH",
        "artoo_path": "ARTOO_PATH",
        "supabase_url": "SUPABASE_URL",
        "supabase_realtime_key": "SUPABASE_REALTIME_KEY",
        "order_channel": "ORDER_CHANNEL",
        "callback_url": "CALLBACK_URL",
        "callback_api_key": "CALLBACK_API_KEY",
        "http_host": "HTTP_HOST",
        "http_port": "HTTP_PORT",
    }

    def __init__(self) -> None:
        self._cache: dict = {}
        self._load_from_env()

    def _load_from_env(self) -> None:
        for setting_key, env_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value:
                self.set(setting_key, env_value)

    def get(self, key: str, default=None):
        if default is None:
            default = self.DEFAULTS.get(key, "")

        value = self._cache.get(key, default)

        if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")

        if isinstance(value, str) and value.isdigit():
            return int(value)

        return value

    def set(self, key: str, value):
        self._cache[key] = value

    def get_all(self) -> dict:
        all_settings = {}
        for key in self.DEFAULTS.keys():
            all_settings[key] = self.get(key)
        return all_settings

    def reload(self) -> None:
        self._load_from_env()

    @property
    def max_pages(self) -> int:
        return max(1, int(self.get("max_pages")))

    @property
    def default_page_settings(self) -> dict[str, Any]:
        """Page settings every order starts from before its own overrides."""
        page_settings: dict[str, Any] = {
            "javascriptEnabled": True,
            "loadImages": True,
        }
        user_agent = self.get("default_user_agent")
        if user_agent:
            page_settings["userAgent"] = user_agent
        return page_settings

    @property
    def injection_bundles(self) -> dict[str, str]:
        """Locations of the in-page helper bundles, as URLs or file paths."""
        bundles = {}
        for name in ("jquery_path", "artoo_path"):
            location = str(self.get(name) or "")
            if location and not location.startswith(("http://", "https://")):
                path = Path(location)
                if not path.is_absolute():
                    path = PROJECT_ROOT / path
                location = str(path)
            bundles[name] = location
        return bundles


settings = SettingsManager()
