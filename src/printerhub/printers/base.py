"""Printer adapter contract for printerhub.

Every firmware backend (OctoPrint, Klipper/Moonraker, Duet, Repetier,
PrusaLink, Creality, Bambu) subclasses :class:`PrinterAdapter` and implements
the same seven operations.  Adapters are long-lived and stateless with
respect to any single printer: the target is named on every call by a
``host`` / ``port`` / ``api_key`` triple, so one adapter instance serves any
number of printers of its kind.
"""

from __future__ import annotations

import enum
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PrinterError(Exception):
    """Base exception for every failure raised by an adapter.

    The optional *cause* keeps the underlying library exception around for
    callers that want to distinguish, say, a timeout from an HTTP 401.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class PrinterConfigError(PrinterError):
    """Invalid caller-supplied configuration.  Raised before any network I/O."""


class UnsupportedPrinterTypeError(PrinterConfigError):
    """No adapter is registered under the requested printer type."""

    def __init__(self, printer_type: str) -> None:
        super().__init__(f"Unsupported printer type: {printer_type}")
        self.printer_type = printer_type


class InvalidCredentialsError(PrinterConfigError):
    """A credentials string could not be parsed."""


class TransportError(PrinterError):
    """An HTTP, FTP or MQTT exchange with the printer failed.

    *status_code* is set when the printer answered with a non-2xx HTTP
    status.
    """

    def __init__(
        self,
        message: str,
        *,
        cause: Exception | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code


class UnsupportedOperationError(PrinterError):
    """The adapter has no way to perform the requested operation."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PrinterStatus(enum.Enum):
    """High-level operational state of a printer."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    ERROR = "error"
    OFFLINE = "offline"
    BUSY = "busy"
    CANCELLING = "cancelling"
    UNKNOWN = "unknown"


# Accepted spellings of each heater, keyed by the canonical name.
HEATER_ALIASES: dict[str, str] = {
    "tool": "tool",
    "tool0": "tool",
    "extruder": "tool",
    "nozzle": "tool",
    "hotend": "tool",
    "bed": "bed",
    "heater_bed": "bed",
    "chamber": "chamber",
}


def local_file(file_path: str) -> str:
    """Return the absolute path of an existing local file.

    Raises:
        FileNotFoundError: If *file_path* is not a regular file.
    """
    abs_path = os.path.abspath(file_path)
    if not os.path.isfile(abs_path):
        raise FileNotFoundError(f"Local file not found: {abs_path}")
    return abs_path


# ---------------------------------------------------------------------------
# Dataclasses -- structured return types
# ---------------------------------------------------------------------------


@dataclass
class JobProgress:
    """Progress information for the active (or most recent) job."""

    file_name: str | None = None
    completion: float | None = None  # 0.0 -- 100.0
    print_time_seconds: int | None = None
    print_time_left_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrinterState:
    """Best-effort snapshot of a printer's state, temperatures and job."""

    connected: bool
    state: PrinterStatus
    tool_temp_actual: float | None = None
    tool_temp_target: float | None = None
    bed_temp_actual: float | None = None
    bed_temp_target: float | None = None
    chamber_temp_actual: float | None = None
    chamber_temp_target: float | None = None
    job: JobProgress | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary.

        The :attr:`state` enum is flattened to its string value.
        """
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class PrinterFile:
    """A file stored on the printer or its print server."""

    name: str
    path: str
    size_bytes: int | None = None
    date: int | None = None  # Unix timestamp

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UploadResult:
    """Outcome of a file upload."""

    success: bool
    file_name: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrintResult:
    """Outcome of a command sent to the printer (start, cancel, heat, ...)."""

    success: bool
    message: str
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------


class PrinterAdapter(ABC):
    """Capability contract shared by every printer backend.

    Each operation receives the printer's ``host``, ``port`` (``None`` or
    empty selects the vendor default) and ``api_key``.  The meaning of
    ``api_key`` is vendor specific: an API key for OctoPrint, a password for
    Duet, ``"<serial>:<token>"`` for Bambu, and so on.

    Adapters may offer extra vendor-specific operations; callers detect them
    with ``isinstance`` or by checking :attr:`name`.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key for this adapter (e.g. ``"octoprint"``)."""

    # -- state queries --------------------------------------------------

    @abstractmethod
    def get_status(self, host: str, port: str | int | None, api_key: str) -> PrinterState:
        """Return the printer's current state, temperatures and job progress.

        Raises:
            PrinterError: If communication with the printer fails.
        """

    @abstractmethod
    def get_files(self, host: str, port: str | int | None, api_key: str) -> list[PrinterFile]:
        """List the printable files stored on the printer."""

    @abstractmethod
    def get_file(self, host: str, port: str | int | None, api_key: str, filename: str) -> PrinterFile:
        """Return metadata for one file.

        Raises:
            PrinterError: If the file does not exist or the lookup fails.
        """

    # -- file management ------------------------------------------------

    @abstractmethod
    def upload_file(
        self,
        host: str,
        port: str | int | None,
        api_key: str,
        file_path: str,
        filename: str,
        print_after: bool = False,
    ) -> UploadResult:
        """Upload the local *file_path* to the printer as *filename*.

        When *print_after* is true the printer starts the file once stored.

        Raises:
            FileNotFoundError: If *file_path* does not exist locally.
            PrinterError: If the upload fails.
        """

    # -- print control --------------------------------------------------

    @abstractmethod
    def start_job(self, host: str, port: str | int | None, api_key: str, filename: str) -> PrintResult:
        """Start printing a file that already exists on the printer."""

    @abstractmethod
    def cancel_job(self, host: str, port: str | int | None, api_key: str) -> PrintResult:
        """Cancel the running job."""

    # -- temperature control --------------------------------------------

    @abstractmethod
    def set_temperature(
        self,
        host: str,
        port: str | int | None,
        api_key: str,
        component: str,
        temperature: float,
    ) -> PrintResult:
        """Set the target temperature of *component* (``tool``, ``bed``, ...).

        Raises:
            UnsupportedOperationError: If the firmware offers no way to do it.
            PrinterError: For unknown components or transport failures.
        """

    # -- lifecycle ------------------------------------------------------

    def disconnect(self) -> None:
        """Release persistent connections.  Adapters without any do nothing."""

    # -- helpers ----------------------------------------------------------

    def _heater(self, component: str, temperature: float) -> str:
        """Validate a heater request and return its canonical name.

        Raises:
            PrinterError: If *component* is unknown or *temperature* negative.
        """
        heater = HEATER_ALIASES.get(component.strip().lower())
        if heater is None:
            raise PrinterError(
                f"Unknown temperature component {component!r} for {self.name}. "
                f"Use one of: tool, bed, chamber."
            )
        if temperature < 0:
            raise PrinterError(f"{component} temperature {temperature}°C is negative -- must be >= 0.")
        return heater

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{type(self).__name__} name={self.name!r}>"
