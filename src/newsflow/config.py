from __future__ import annotations

import copy
import json
import logging
import os
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

# --- Configuration ---
DEFAULT_API_URL = "http://localhost:5001"
HTTP_TIMEOUT = 15
RETRY_ATTEMPTS = 0
POLL_INTERVAL = 180
REFRESH_DEBOUNCE = 5

CONFIG_PATH = os.path.expanduser("~/.config/newsflow/config.json")
PREFERENCES_FILE = os.path.expanduser("~/.config/newsflow/preferences.json")

REQUEST_HEADERS = {
    "User-Agent": "newsflow-client/0.1",
    "Accept": "application/json",
}

# Backend endpoints
ENDPOINTS = {
    "health": "/health",
    "fetch_news": "/api/news/fetch",
    "process_news": "/api/news/process",
    "bookmarks": "/api/bookmarks",
    "summarize": "/summarize",
    "story_tracking": "/api/story_tracking",
    "user_profile": "/api/user/profile",
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": DEFAULT_API_URL,
        "timeout": HTTP_TIMEOUT,
        "retries": RETRY_ATTEMPTS,
    },
    "supabase": {
        "url": "",
        "anon_key": "",
    },
    "story_tracking": {
        "poll_interval": POLL_INTERVAL,
        "refresh_debounce": REFRESH_DEBOUNCE,
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "NEWSFLOW_API_URL": ("api", "base_url"),
    "SUPABASE_URL": ("supabase", "url"),
    "SUPABASE_ANON_KEY": ("supabase", "anon_key"),
}

SESSION_ID_KEY = "news_session_id"
USER_ID_KEY = "user_id"
ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"

# --- Logging ---
logger = logging.getLogger("newsflow")


def setup_logging(debug: bool = False) -> Optional[str]:
    """Configure logging."""
    if not debug:
        logging.basicConfig(level=logging.CRITICAL, handlers=[logging.NullHandler()])
        return None

    ts = datetime.now().strftime("%Y%m%dT%H%M%S")
    pid = os.getpid()
    debug_path = f"/tmp/newsflow_debug_{ts}_{pid}.log"

    logging.basicConfig(
        level=logging.DEBUG,
        filename=debug_path,
        filemode="a",
        format="%(asctime)s - %(levelname)s - %(name)s - %(threadName)s - %(message)s",
    )

    logger.debug("Debug logging enabled to %s", debug_path)
    return debug_path


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of config with environment variables applied on top."""
    config = copy.deepcopy(config)
    for var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            config.setdefault(section, {})[key] = value
    return config


def ensure_config_file_exists(path: Optional[str] = None) -> None:
    """Write the default config file if the user's config file is not found."""
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        logger.info("Config file not found at %s, creating default.", path)
        save_config(DEFAULT_CONFIG, path)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the main configuration file, merged over the defaults."""
    path = path or CONFIG_PATH
    ensure_config_file_exists(path)
    try:
        with open(path, "r") as f:
            config = json.load(f)
            logger.info("Loaded config from %s", path)
    except (IOError, json.JSONDecodeError) as e:
        logger.error("Failed to load config from %s: %s", path, e)
        config = {}
    if not isinstance(config, dict):
        logger.error("Ignoring config at %s: top level is not an object", path)
        config = {}
    return apply_env_overrides(_merge(DEFAULT_CONFIG, config))


def save_config(config: Dict[str, Any], path: Optional[str] = None) -> None:
    """Save the main configuration file."""
    path = path or CONFIG_PATH
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            json.dump(config, f, indent=2)
        logger.info("Saved config to %s", path)
    except IOError as e:
        logger.error("Failed to save config to %s: %s", path, e)


def preferences_path(config_path: Optional[str] = None) -> str:
    """Preferences live beside the config file in use."""
    if not config_path:
        return PREFERENCES_FILE
    return os.path.join(os.path.dirname(os.path.abspath(config_path)), os.path.basename(PREFERENCES_FILE))


class Preferences:
    """Small persistent key-value store for client state."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or PREFERENCES_FILE
        self._values: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                values = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            logger.warning("Failed to read preferences from %s: %s", self.path, e)
            return {}
        return values if isinstance(values, dict) else {}

    def _save(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._values, f)
        except IOError as e:
            logger.warning("Failed to write preferences to %s: %s", self.path, e)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self._save()

    def remove(self, *keys: str) -> None:
        changed = False
        for key in keys:
            if key in self._values:
                del self._values[key]
                changed = True
        if changed:
            self._save()

    def session_id(self) -> str:
        """Return the persisted news session id, creating one on first use."""
        existing = self.get(SESSION_ID_KEY)
        if existing:
            return existing
        new_session = str(uuid.uuid4())
        self.set(SESSION_ID_KEY, new_session)
        return new_session
