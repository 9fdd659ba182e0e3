"""
Settings loader shared by the sync service and the HTTP API.

Configuration lives in a TOML file (default
``/etc/adchannels/settings.toml``, overridable via ``ADCHANNELS_CONFIG``).
Secrets never go in this file; see :mod:`shared.secrets`.
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

import toml

DEFAULT_CONFIG_PATH = Path(
    os.environ.get("ADCHANNELS_CONFIG", "/etc/adchannels/settings.toml")
)
DEFAULT_AUDIT_LOG_PATH = Path("/var/log/adchannels/audit.log")

_REQUIRED: Tuple[Tuple[str, ...], ...] = (("database",), ("database", "database"))


def load_config(
    path: Path = DEFAULT_CONFIG_PATH,
    required: Iterable[Tuple[str, ...]] = _REQUIRED,
) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    for keys in required:
        obj = config
        for k in keys:
            if not isinstance(obj, dict) or k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def staleness_window(config: Dict[str, Any]) -> timedelta:
    """``permsync.staleness_hours`` as a timedelta (default 24h)."""
    hours = config.get("permsync", {}).get("staleness_hours", 24)
    try:
        hours = float(hours)
    except (TypeError, ValueError):
        hours = 24.0
    return timedelta(hours=max(0.0, hours))


def audit_log_path(config: Dict[str, Any]) -> Path:
    """``audit.log_path`` as a Path (default ``/var/log/adchannels/audit.log``)."""
    return Path(config.get("audit", {}).get("log_path", DEFAULT_AUDIT_LOG_PATH))
