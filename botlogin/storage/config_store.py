# Config Store - Persisted Operator Settings
# Two persisted values: bot token and gateway intents

"""
Config Store Module

Responsibilities:
- Key-value get/set for operator settings
- Persist to a YAML file when a path is given
- Store the bot token bare (no "Bot " prefix)
- Coerce intents to a positive integer
- Thread-safe (the control API thread writes, the event loop reads)
"""

import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Optional

import yaml

from ..connection.errors import ConfigError
from ..utils.helpers import strip_token_prefix
from ..utils.logger import setup_logger

# All common intents bitmask
DEFAULT_INTENTS = 3276799

DEFAULTS = {
    "bot_token": "",
    "intents": DEFAULT_INTENTS,
}

def coerce_intents(value: Any) -> int:
    """
    Parse an intents value, falling back to DEFAULT_INTENTS

    Args:
        value: int, numeric string, or anything else

    Returns:
        Positive intents bitmask
    """
    try:
        intents = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_INTENTS
    return intents if intents > 0 else DEFAULT_INTENTS

class ConfigStore:
    """
    Operator settings store

    Reads are served from memory; every set() is written through to the
    YAML file if one is configured.
    """

    def __init__(self, path: Optional[str] = None, initial: Optional[dict] = None):
        """
        Initialize config store

        Args:
            path: Optional YAML file for persistence
            initial: Values used when the file doesn't exist yet
        """
        self.path = Path(path) if path else None
        self.logger = setup_logger("ConfigStore", "INFO")
        self._lock = threading.Lock()
        self._values = deepcopy(DEFAULTS)

        if initial:
            for key, value in initial.items():
                self._values[key] = self._normalize(key, value)

        if self.path and self.path.exists():
            self._load()

    @property
    def bot_token(self) -> str:
        return self.get("bot_token", "")

    @property
    def intents(self) -> int:
        return self.get("intents", DEFAULT_INTENTS)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value (default if missing)"""
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any):
        """Set a value and persist"""
        value = self._normalize(key, value)
        with self._lock:
            self._values[key] = value
            self._save()

    def update(self, **values):
        """Set several values with a single write"""
        normalized = {key: self._normalize(key, value) for key, value in values.items()}
        with self._lock:
            self._values.update(normalized)
            self._save()

    def snapshot(self) -> dict:
        """Copy of all values"""
        with self._lock:
            return deepcopy(self._values)

    def _normalize(self, key: str, value: Any) -> Any:
        if key == "bot_token":
            return strip_token_prefix(value or "")
        if key == "intents":
            return coerce_intents(value)
        return value

    def _load(self):
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read settings from {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {self.path} must contain a mapping")

        for key, value in data.items():
            self._values[key] = self._normalize(key, value)
        self.logger.info(f"Loaded settings from {self.path}")

    def _save(self):
        # Caller holds the lock
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self._values, f, default_flow_style=False)
        self.logger.debug(f"Settings saved to {self.path}")
