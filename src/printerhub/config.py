"""Configuration for printerhub.

Settings and named printers live in ``~/.printerhub/config.yaml``::

    active_printer: voron
    settings:
      http_timeout: 10
      mqtt_connect_timeout: 10
      verify_tls: false
    printers:
      voron:
        type: klipper
        host: 192.168.1.50
      x1c:
        type: bambu
        host: 192.168.1.60
        api_key: "01S00A000000001:12345678"

Precedence (highest first):
    1. CLI flags (``--host``, ``--type``, ...)
    2. Environment variables (``PRINTERHUB_*``)
    3. Config file
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_ENV_PREFIX = "PRINTERHUB_"
_TRUE_STRINGS = {"1", "true", "yes", "on"}


def get_config_path() -> Path:
    """Return the default config file path (``~/.printerhub/config.yaml``)."""
    return Path.home() / ".printerhub" / "config.yaml"


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_STRINGS


@dataclass
class Settings:
    """Process-wide transport and logging settings."""

    http_timeout: float = 10.0
    mqtt_connect_timeout: float = 10.0
    mqtt_reconnect_period: float = 5.0
    mqtt_keepalive: int = 60
    publish_timeout: float = 10.0
    status_wait: float = 2.0
    verify_tls: bool = False
    ca_file: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[str] = None


# Converter per settings field, used for both YAML and env values.
_CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "http_timeout": float,
    "mqtt_connect_timeout": float,
    "mqtt_reconnect_period": float,
    "mqtt_keepalive": int,
    "publish_timeout": float,
    "status_wait": float,
    "verify_tls": _to_bool,
    "ca_file": str,
    "log_level": str,
    "log_dir": str,
}


def _check_file_permissions(path: Path) -> None:
    """Warn when a config file that may hold API keys is group/world readable."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        logger.warning(
            "Config file %s is readable by other users and may contain API keys. "
            "Run: chmod 600 %s",
            path,
            path,
        )


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Build :class:`Settings` from the ``settings:`` section and env vars.

    Unknown keys and values that fail conversion are logged and ignored.
    """
    raw = _read_config_file(config_path or get_config_path())
    section = raw.get("settings", {})
    if not isinstance(section, dict):
        section = {}

    values: Dict[str, Any] = {}
    for key, value in section.items():
        if key not in _CONVERTERS:
            logger.warning("Ignoring unknown setting %r", key)
            continue
        values[key] = value

    for key in _CONVERTERS:
        env_value = os.environ.get(f"{_ENV_PREFIX}{key.upper()}")
        if env_value:
            values[key] = env_value

    settings = Settings()
    for key, value in values.items():
        if value is None:
            continue
        try:
            setattr(settings, key, _CONVERTERS[key](value))
        except (TypeError, ValueError):
            logger.warning("Invalid value %r for setting %r; using default", value, key)
    return settings


def load_printer_config(
    printer_name: Optional[str] = None,
    *,
    config_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """Resolve the connection details of one printer.

    If ``PRINTERHUB_PRINTER_HOST`` is set the printer is built from the
    environment alone.  Otherwise *printer_name* (or ``active_printer``, or
    the only configured printer) is looked up in the config file.

    Returns a dict with ``type``, ``host``, ``port`` and ``api_key`` keys.

    Raises:
        ValueError: If no usable printer is configured.
    """
    env_host = os.environ.get(f"{_ENV_PREFIX}PRINTER_HOST", "")
    if env_host:
        return {
            "type": os.environ.get(f"{_ENV_PREFIX}PRINTER_TYPE", "octoprint"),
            "host": env_host.strip(),
            "port": os.environ.get(f"{_ENV_PREFIX}PRINTER_PORT") or None,
            "api_key": os.environ.get(f"{_ENV_PREFIX}PRINTER_API_KEY", ""),
        }

    raw = _read_config_file(config_path or get_config_path())
    printers = raw.get("printers", {})
    if not isinstance(printers, dict):
        printers = {}

    name = printer_name or raw.get("active_printer")
    if not name:
        if len(printers) == 1:
            name = next(iter(printers))
        elif not printers:
            raise ValueError(
                "No printers configured. Add one under 'printers:' in "
                f"{config_path or get_config_path()} or pass --type and --host."
            )
        else:
            raise ValueError(
                "Multiple printers configured but no active printer set. "
                "Set 'active_printer' in the config file or pass --printer."
            )

    if name not in printers or not isinstance(printers[name], dict):
        raise ValueError(
            f"Printer {name!r} not found in config. "
            f"Available: {', '.join(printers.keys()) or '(none)'}."
        )

    entry = printers[name]
    host = str(entry.get("host", "")).strip()
    if not host:
        raise ValueError(f"Printer {name!r} has no host configured.")
    return {
        "type": str(entry.get("type", "octoprint")),
        "host": host,
        "port": entry.get("port"),
        "api_key": str(entry.get("api_key", "") or ""),
    }
