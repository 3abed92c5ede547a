"""
Configuration for the balancer process.

Values are layered, later layers winning:
1. config/default.yaml
2. an explicit YAML file
3. environment variables: LOG_LEVEL, LOG_FORMAT, and BALANCER_<KEY> for
   any key of the "balancer" section (BALANCER_MAX_CONCURRENT_ADDS=4)
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tabletbalancer.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "default.yaml"

ENV_PREFIX = "BALANCER_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce(raw: str, like: Any, name: str) -> Any:
    """Convert an environment string to the type of the value it replaces."""
    if isinstance(like, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigurationError(f"{name}: expected a boolean, got {raw!r}")

    if isinstance(like, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"{name}: expected an integer, got {raw!r}") from None

    return raw


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """
    Layered YAML configuration with dot-notation access.
    """

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration.

        Args:
            config_file: YAML file merged over the defaults
            environ: Environment to read overrides from (default os.environ)
        """
        self._config: Dict[str, Any] = {}

        if DEFAULT_CONFIG_PATH.exists():
            self.merge_file(DEFAULT_CONFIG_PATH)

        if config_file:
            self.merge_file(config_file)

        self._apply_env(os.environ if environ is None else environ)

    def merge_file(self, path) -> None:
        """Merge a YAML file into the current values."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")

        self._config = _deep_merge(self._config, data)

    def _apply_env(self, environ) -> None:
        if "LOG_LEVEL" in environ:
            self.set("logging.level", environ["LOG_LEVEL"])
        if "LOG_FORMAT" in environ:
            self.set("logging.format", environ["LOG_FORMAT"])

        section = self.get("balancer", {}) or {}
        for key, current in list(section.items()):
            name = ENV_PREFIX + key.upper()
            if name in environ:
                section[key] = _coerce(environ[name], current, name)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value by dotted key ("balancer.max_concurrent_adds").

        Returns:
            The value, or default when any part of the path is missing
        """
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted key, creating sections as needed."""
        *parents, leaf = key.split(".")
        node = self._config
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._config)
