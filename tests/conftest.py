"""Shared fixtures for the printerhub test suite.

Provides the shared HTTP session the REST adapters are built around, a
temporary G-code file for upload tests, and environment isolation so no
test reads the developer's real ``~/.printerhub`` directory.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import pytest

from printerhub.log_config import ScrubFilter
from printerhub.transport import create_http_client


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Strip PRINTERHUB_* variables and point HOME and the log dir at tmp."""
    for name in list(os.environ):
        if name.startswith("PRINTERHUB_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("PRINTERHUB_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture()
def http_client():
    """Shared session with a short timeout, as the registry builds it."""
    session = create_http_client(2)
    yield session
    session.close()


@pytest.fixture()
def gcode_file(tmp_path):
    """A small local G-code file to upload."""
    path = tmp_path / "benchy.gcode"
    path.write_text("G28\nG1 X10 Y10\n")
    return str(path)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo handlers and filters that configure_logging installs on the root logger."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler) and handler not in handlers:
            root.removeHandler(handler)
            handler.close()
        for f in list(handler.filters):
            if isinstance(f, ScrubFilter):
                handler.removeFilter(f)
    root.setLevel(level)
