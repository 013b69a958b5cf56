"""Log rotation and secret scrubbing for printerhub.

Provides a logging filter that redacts API keys, access codes and
passwords from log output, and a helper that installs a rotating file
handler with the filter attached.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".printerhub", "logs")

_REDACTED = "***REDACTED***"

_KEY_VALUE = r'["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)'

# Patterns that match sensitive values in log messages.
_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'(api_key' + _KEY_VALUE, re.IGNORECASE), r'\1' + _REDACTED),
    (re.compile(r'(apikey' + _KEY_VALUE, re.IGNORECASE), r'\1' + _REDACTED),
    (re.compile(r'(token' + _KEY_VALUE, re.IGNORECASE), r'\1' + _REDACTED),
    (re.compile(r'(password' + _KEY_VALUE, re.IGNORECASE), r'\1' + _REDACTED),
    (re.compile(r'(access_code' + _KEY_VALUE, re.IGNORECASE), r'\1' + _REDACTED),
    (re.compile(r'(X-Api-Key["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     r'\1' + _REDACTED),
    (re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)(\S+)', re.IGNORECASE), r'\1' + _REDACTED),
    # Bambu credentials blobs: "<serial>:<access code>".
    (re.compile(r'\b([0-9A-Z]{12,16}:)([0-9A-Za-z]{6,})\b'), r'\1' + _REDACTED),
]


class ScrubFilter(logging.Filter):
    """Logging filter that redacts secrets from the rendered message.

    The message is formatted with its arguments before scrubbing, so a
    ``"api_key=%s"`` template is caught as well as a literal secret.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # Leave broken records for logging's own error reporting.
            return True
        record.msg = scrub(message)
        record.args = None
        return True


def scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
) -> None:
    """Configure logging with rotation and secret scrubbing.

    :param log_dir: Directory for log files.  Reads ``PRINTERHUB_LOG_DIR``,
        then falls back to ``~/.printerhub/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 10 MB).
    :param backup_count: Number of rotated log files to keep (default 5).
    :param level: Log level name.  Reads ``PRINTERHUB_LOG_LEVEL``, then
        falls back to ``"INFO"``.
    """
    log_dir = log_dir or os.environ.get("PRINTERHUB_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("PRINTERHUB_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "printerhub.log")
    log_level = getattr(logging, level.upper(), logging.INFO)
    scrub_filter = ScrubFilter()

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)

    # paho's own logger is noisy at DEBUG.
    logging.getLogger("paho").setLevel(max(log_level, logging.INFO))

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)
