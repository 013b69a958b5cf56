"""Klipper adapter, via the Moonraker HTTP API.

Moonraker (https://moonraker.readthedocs.io/en/latest/web_api/) fronts
Klipper with a REST interface.  Authentication is optional; when an
``api_key`` is given it is sent as ``X-Api-Key``.  Temperatures are set by
sending Klipper G-code through ``/printer/gcode/script``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

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

# ``print_stats.state`` values reported by Klipper.
_STATE_MAP: Dict[str, PrinterStatus] = {
    "standby": PrinterStatus.IDLE,
    "complete": PrinterStatus.IDLE,
    "cancelled": PrinterStatus.IDLE,
    "printing": PrinterStatus.PRINTING,
    "paused": PrinterStatus.PAUSED,
    "error": PrinterStatus.ERROR,
}

# Klipper heater object per canonical heater name.
_HEATER_OBJECTS: Dict[str, str] = {
    "tool": "extruder",
    "bed": "heater_bed",
    "chamber": "chamber",
}

_STATUS_QUERY = "print_stats&virtual_sdcard&extruder&heater_bed"


class KlipperAdapter(HttpPrinterAdapter):
    """Klipper/Moonraker backend (REST, optional API key)."""

    default_port = 7125
    display_name = "Moonraker"

    @property
    def name(self) -> str:
        return "klipper"

    @staticmethod
    def _headers(api_key: Optional[str]) -> Dict[str, str]:
        return {"X-Api-Key": api_key} if api_key else {}

    def _gcode(self, base: str, api_key: Optional[str], script: str) -> None:
        self._request(
            "POST",
            base,
            "/printer/gcode/script",
            headers=self._headers(api_key),
            params={"script": script},
        )

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """Query print_stats, heaters and SD progress in one request.

        When Klippy itself is not ready Moonraker answers 503 for object
        queries; that maps to OFFLINE.
        """
        base = self._base_url(host, port)
        try:
            payload = self._get_json(
                base,
                f"/printer/objects/query?{_STATUS_QUERY}",
                headers=self._headers(api_key),
            )
        except TransportError as exc:
            if exc.status_code == 503:
                return PrinterState(connected=False, state=PrinterStatus.OFFLINE)
            raise

        status = _safe_get(payload, "result", "status", default={})
        if not isinstance(status, dict):
            status = {}
        print_stats = status.get("print_stats") or {}
        extruder = status.get("extruder") or {}
        heater_bed = status.get("heater_bed") or {}
        sdcard = status.get("virtual_sdcard") or {}

        state_str = str(print_stats.get("state", "")).lower()
        progress = sdcard.get("progress")
        duration = print_stats.get("print_duration")

        time_left: Optional[int] = None
        if progress and duration and 0 < progress < 1:
            time_left = int(duration / progress - duration)

        job = JobProgress(
            file_name=print_stats.get("filename") or None,
            completion=round(progress * 100, 2) if progress is not None else None,
            print_time_seconds=int(duration) if duration is not None else None,
            print_time_left_seconds=time_left,
        )

        return PrinterState(
            connected=True,
            state=_STATE_MAP.get(state_str, PrinterStatus.UNKNOWN),
            tool_temp_actual=extruder.get("temperature"),
            tool_temp_target=extruder.get("target"),
            bed_temp_actual=heater_bed.get("temperature"),
            bed_temp_target=heater_bed.get("target"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """``GET /server/files/list?root=gcodes``."""
        payload = self._get_json(
            self._base_url(host, port),
            "/server/files/list",
            headers=self._headers(api_key),
            params={"root": "gcodes"},
        )
        entries = _safe_get(payload, "result", default=[])
        if not isinstance(entries, list):
            entries = []

        files: List[PrinterFile] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            path = entry.get("path") or entry.get("filename") or ""
            modified = entry.get("modified")
            files.append(PrinterFile(
                name=path.rsplit("/", 1)[-1],
                path=path,
                size_bytes=entry.get("size"),
                date=int(modified) if modified is not None else None,
            ))
        return files

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        """``GET /server/files/metadata?filename=...``."""
        try:
            payload = self._get_json(
                self._base_url(host, port),
                "/server/files/metadata",
                headers=self._headers(api_key),
                params={"filename": filename},
            )
        except TransportError as exc:
            if exc.status_code == 404:
                raise PrinterError(f"File not found: {filename}", cause=exc) from exc
            raise

        meta = _safe_get(payload, "result", default={})
        if not isinstance(meta, dict):
            meta = {}
        path = meta.get("filename") or filename
        modified = meta.get("modified")
        return PrinterFile(
            name=path.rsplit("/", 1)[-1],
            path=path,
            size_bytes=meta.get("size"),
            date=int(modified) if modified is not None else None,
        )

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """Multipart ``POST /server/files/upload`` into the gcodes root."""
        abs_path = local_file(file_path)
        try:
            with open(abs_path, "rb") as fh:
                response = self._request(
                    "POST",
                    self._base_url(host, port),
                    "/server/files/upload",
                    headers=self._headers(api_key),
                    files={"file": (filename, fh, "application/octet-stream")},
                    data={"root": "gcodes", "print": "true" if print_after else "false"},
                )
        except PermissionError as exc:
            raise PrinterError(f"Permission denied reading file: {abs_path}", cause=exc) from exc

        try:
            body: Any = response.json()
        except ValueError:
            body = {}
        stored = _safe_get(body, "item", "path", default=filename)
        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=stored,
            message=f"Uploaded {stored} to {self.display_name}{suffix}.",
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """``POST /printer/print/start?filename=...``."""
        self._request(
            "POST",
            self._base_url(host, port),
            "/printer/print/start",
            headers=self._headers(api_key),
            params={"filename": filename},
        )
        return PrintResult(success=True, message=f"Started printing {filename}.")

    def cancel_job(self, host, port, api_key) -> PrintResult:
        """``POST /printer/print/cancel``."""
        self._request(
            "POST",
            self._base_url(host, port),
            "/printer/print/cancel",
            headers=self._headers(api_key),
        )
        return PrintResult(success=True, message="Print cancelled.")

    # ------------------------------------------------------------------
    # Temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        """``SET_HEATER_TEMPERATURE`` through the G-code script endpoint."""
        heater = self._heater(component, temperature)
        target = int(temperature)
        self._gcode(
            self._base_url(host, port),
            api_key,
            f"SET_HEATER_TEMPERATURE HEATER={_HEATER_OBJECTS[heater]} TARGET={target}",
        )
        return PrintResult(success=True, message=f"Set {heater} temperature to {target}°C.")
