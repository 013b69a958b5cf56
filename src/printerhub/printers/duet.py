"""Duet adapter for RepRapFirmware's HTTP interface.

RepRapFirmware exposes the ``rr_*`` request family on the board's web
server.  Every operation opens a session with ``rr_connect`` (the
``api_key`` is the board password), performs its requests and closes the
session with ``rr_disconnect``.  Printer control is plain G-code sent through
``rr_gcode``.
"""

from __future__ import annotations

import contextlib
import datetime
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from printerhub.printers.base import (
    JobProgress,
    PrinterError,
    PrinterFile,
    PrinterState,
    PrinterStatus,
    PrintResult,
    TransportError,
    UploadResult,
    local_file,
)
from printerhub.printers.http import HttpPrinterAdapter, _safe_get

logger = logging.getLogger(__name__)

_GCODES_DIR = "0:/gcodes"
_DEFAULT_PASSWORD = "reprap"

# Single-letter ``status`` codes from ``rr_status``.
_STATE_MAP: Dict[str, PrinterStatus] = {
    "I": PrinterStatus.IDLE,
    "P": PrinterStatus.PRINTING,
    "M": PrinterStatus.PRINTING,
    "S": PrinterStatus.PAUSED,
    "A": PrinterStatus.PAUSED,
    "D": PrinterStatus.PAUSED,
    "R": PrinterStatus.BUSY,
    "B": PrinterStatus.BUSY,
    "T": PrinterStatus.BUSY,
    "C": PrinterStatus.BUSY,
    "F": PrinterStatus.BUSY,
    "H": PrinterStatus.ERROR,
    "O": PrinterStatus.OFFLINE,
}

_CONNECT_ERRORS: Dict[int, str] = {
    1: "the board rejected the password",
    2: "the board has no free sessions",
}


def _timestamp(value: Any) -> Optional[int]:
    """Convert RRF's ``YYYY-MM-DDTHH:MM:SS`` dates to a Unix timestamp."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return int(datetime.datetime.fromisoformat(value).timestamp())
    except (ValueError, OSError):
        return None


def _first(values: Any, default: Any = None) -> Any:
    """Return ``values[0]`` (recursing into nested lists) or *default*."""
    while isinstance(values, list):
        if not values:
            return default
        values = values[0]
    return values if values is not None else default


class DuetAdapter(HttpPrinterAdapter):
    """Duet/RepRapFirmware backend (REST + session auth, G-code over HTTP)."""

    default_port = 80
    display_name = "Duet"

    @property
    def name(self) -> str:
        return "duet"

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _session(self, host: str, port: Any, password: str) -> Iterator[Tuple[str, Dict[str, str]]]:
        """Open an ``rr_connect`` session and yield ``(base_url, headers)``.

        RRF 3 hands out a session key that must accompany later requests;
        older firmware binds the session to the client address instead.
        """
        base = self._base_url(host, port)
        now = datetime.datetime.now().strftime("%Y-%m-%dT%H:%M:%S")
        reply = self._get_json(
            base,
            "/rr_connect",
            params={"password": password or _DEFAULT_PASSWORD, "time": now},
        )
        err = reply.get("err", 0) if isinstance(reply, dict) else 0
        if err:
            reason = _CONNECT_ERRORS.get(err, f"error code {err}")
            raise TransportError(f"Could not open Duet session at {base}: {reason}")

        headers: Dict[str, str] = {}
        session_key = reply.get("sessionKey") if isinstance(reply, dict) else None
        if session_key is not None:
            headers["X-Session-Key"] = str(session_key)
        try:
            yield base, headers
        finally:
            try:
                self._request("GET", base, "/rr_disconnect", headers=headers)
            except PrinterError as exc:
                logger.debug("rr_disconnect failed for %s: %s", base, exc)

    def _send_gcode(self, base: str, headers: Dict[str, str], gcode: str) -> None:
        self._request("GET", base, "/rr_gcode", headers=headers, params={"gcode": gcode})

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """``rr_status?type=3``, plus ``rr_fileinfo`` while a job runs."""
        with self._session(host, port, api_key) as (base, headers):
            status = self._get_json(base, "/rr_status", headers=headers, params={"type": 3})
            letter = str(_safe_get(status, "status", default="")).upper()
            state = _STATE_MAP.get(letter, PrinterStatus.UNKNOWN)

            file_name: Optional[str] = None
            if state in (PrinterStatus.PRINTING, PrinterStatus.PAUSED):
                info = self._get_json(base, "/rr_fileinfo", headers=headers)
                file_name = _safe_get(info, "fileName")

        temps = _safe_get(status, "temps", default={})
        if not isinstance(temps, dict):
            temps = {}
        current = temps.get("current") or []
        bed = temps.get("bed") or {}
        chamber = temps.get("chamber") or {}

        fraction = _safe_get(status, "fractionPrinted")
        duration = _safe_get(status, "printDuration")
        time_left = _safe_get(status, "timesLeft", "file")

        job = JobProgress(
            file_name=file_name.rsplit("/", 1)[-1] if file_name else None,
            completion=float(fraction) if fraction is not None else None,
            print_time_seconds=int(duration) if duration is not None else None,
            print_time_left_seconds=int(time_left) if time_left else None,
        )

        return PrinterState(
            connected=True,
            state=state,
            tool_temp_actual=current[1] if len(current) > 1 else None,
            tool_temp_target=_first(_safe_get(temps, "tools", "active")),
            bed_temp_actual=bed.get("current"),
            bed_temp_target=bed.get("active"),
            chamber_temp_actual=chamber.get("current"),
            chamber_temp_target=chamber.get("active"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """``rr_filelist`` on ``0:/gcodes``, following pagination."""
        files: List[PrinterFile] = []
        with self._session(host, port, api_key) as (base, headers):
            first = 0
            while True:
                listing = self._get_json(
                    base,
                    "/rr_filelist",
                    headers=headers,
                    params={"dir": _GCODES_DIR, "first": first},
                )
                if not isinstance(listing, dict) or listing.get("err"):
                    raise PrinterError(f"Duet could not list {_GCODES_DIR}")
                for entry in listing.get("files", []):
                    if not isinstance(entry, dict) or entry.get("type") != "f":
                        continue
                    name = entry.get("name", "")
                    files.append(PrinterFile(
                        name=name,
                        path=f"{_GCODES_DIR}/{name}",
                        size_bytes=entry.get("size"),
                        date=_timestamp(entry.get("date")),
                    ))
                first = listing.get("next") or 0
                if not first:
                    break
        return files

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        """``rr_fileinfo?name=0:/gcodes/<filename>``."""
        path = f"{_GCODES_DIR}/{filename}"
        with self._session(host, port, api_key) as (base, headers):
            info = self._get_json(base, "/rr_fileinfo", headers=headers, params={"name": path})
        if not isinstance(info, dict) or info.get("err"):
            raise PrinterError(f"File not found: {filename}")
        return PrinterFile(
            name=filename,
            path=path,
            size_bytes=info.get("size"),
            date=_timestamp(info.get("lastModified")),
        )

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """Raw-body ``POST rr_upload``; ``M32`` afterwards when printing."""
        abs_path = local_file(file_path)
        path = f"{_GCODES_DIR}/{filename}"
        with self._session(host, port, api_key) as (base, headers):
            try:
                with open(abs_path, "rb") as fh:
                    response = self._request(
                        "POST",
                        base,
                        "/rr_upload",
                        headers={**headers, "Content-Type": "application/octet-stream"},
                        params={"name": path},
                        data=fh,
                    )
            except PermissionError as exc:
                raise PrinterError(f"Permission denied reading file: {abs_path}", cause=exc) from exc

            reply = self._json(response, "/rr_upload")
            if isinstance(reply, dict) and reply.get("err"):
                raise TransportError(f"Duet rejected the upload of {filename} (err={reply['err']})")
            if print_after:
                self._send_gcode(base, headers, f'M32 "{path}"')

        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to Duet{suffix}.",
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """``M32`` selects and starts the file."""
        with self._session(host, port, api_key) as (base, headers):
            self._send_gcode(base, headers, f'M32 "{_GCODES_DIR}/{filename}"')
        return PrintResult(success=True, message=f"Started printing {filename}.")

    def cancel_job(self, host, port, api_key) -> PrintResult:
        """Pause (``M25``) then cancel (``M0``); RRF only cancels a paused job."""
        with self._session(host, port, api_key) as (base, headers):
            self._send_gcode(base, headers, "M25")
            self._send_gcode(base, headers, "M0")
        return PrintResult(success=True, message="Print cancelled.")

    # ------------------------------------------------------------------
    # Temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        """``G10 P0 S..`` for the tool, ``M140``/``M141`` for bed/chamber."""
        heater = self._heater(component, temperature)
        target = int(temperature)
        gcode = {
            "tool": f"G10 P0 S{target}",
            "bed": f"M140 S{target}",
            "chamber": f"M141 S{target}",
        }[heater]
        with self._session(host, port, api_key) as (base, headers):
            self._send_gcode(base, headers, gcode)
        return PrintResult(success=True, message=f"Set {heater} temperature to {target}°C.")
