"""
Node configuration — TOML file overlaid on built-in defaults.

Default location: ~/.netadapter/node.toml

    host = "0.0.0.0"
    ports = [9000, 9001]
    backlog = 1000
    max_frame_size = 2097152
    connect_timeout = 10.0
    echo = true
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from netadapter import (
    CONNECT_TIMEOUT, DEFAULT_HOST, DEFAULT_PORT, LISTEN_BACKLOG, MAX_FRAME_SIZE,
)

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".netadapter" / "node.toml"

DEFAULT_CONFIG: dict[str, Any] = {
    "host": DEFAULT_HOST,
    "ports": [DEFAULT_PORT],
    "backlog": LISTEN_BACKLOG,
    "max_frame_size": MAX_FRAME_SIZE,
    "connect_timeout": CONNECT_TIMEOUT,
    "echo": True,  # reply to waiting senders with their own payload
}


def _valid(key: str, value: Any) -> bool:
    """Check a config value against the type of its default."""
    if key == "ports":
        return (
            isinstance(value, list)
            and all(isinstance(p, int) and not isinstance(p, bool) and 0 <= p <= 65535 for p in value)
        )
    if key == "connect_timeout":
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
    if key in ("backlog", "max_frame_size"):
        return isinstance(value, int) and not isinstance(value, bool) and value > 0
    return isinstance(value, type(DEFAULT_CONFIG[key]))


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load node config from TOML file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)
    config["ports"] = list(DEFAULT_CONFIG["ports"])

    path = config_path or DEFAULT_CONFIG_PATH
    if not path.is_file():
        return config

    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib
        except ImportError:
            log.warning("tomllib/tomli not available, using default config")
            return config

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except Exception as e:
        log.warning("Failed to load config from %s: %s", path, e)
        return config

    for key, value in file_config.items():
        if key not in DEFAULT_CONFIG:
            log.warning("Ignoring unknown config key %r in %s", key, path)
            continue
        if not _valid(key, value):
            log.warning("Invalid value for %r in %s, using default", key, path)
            continue
        config[key] = value

    return config
