"""OctoPrint adapter.

Talks to the `OctoPrint REST API <https://docs.octoprint.org/en/master/api/>`_
with the key passed as ``api_key`` sent in the ``X-Api-Key`` header.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import quote

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


def _map_flags_to_status(flags: Dict[str, Any]) -> PrinterStatus:
    """Translate OctoPrint's ``state.flags`` booleans to a :class:`PrinterStatus`.

    Flags are checked in priority order; the first match wins.
    """
    if flags.get("cancelling"):
        return PrinterStatus.CANCELLING
    if flags.get("printing"):
        return PrinterStatus.PRINTING
    if flags.get("paused") or flags.get("pausing"):
        return PrinterStatus.PAUSED
    if flags.get("error") or flags.get("closedOrError"):
        return PrinterStatus.ERROR
    if flags.get("ready") and flags.get("operational"):
        return PrinterStatus.IDLE
    if flags.get("operational"):
        return PrinterStatus.BUSY
    return PrinterStatus.UNKNOWN


def _flatten_files(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Recursively flatten OctoPrint's nested file/folder listing."""
    flat: List[Dict[str, Any]] = []
    for entry in entries:
        if entry.get("type") == "folder":
            flat.extend(_flatten_files(entry.get("children", [])))
        else:
            flat.append(entry)
    return flat


def _to_file(entry: Dict[str, Any]) -> PrinterFile:
    return PrinterFile(
        name=entry.get("name", ""),
        path=entry.get("path", entry.get("name", "")),
        size_bytes=entry.get("size"),
        date=entry.get("date"),
    )


class OctoPrintAdapter(HttpPrinterAdapter):
    """OctoPrint backend (REST + API key)."""

    default_port = 80
    display_name = "OctoPrint"

    @property
    def name(self) -> str:
        return "octoprint"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {"X-Api-Key": api_key}

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """Combine ``GET /api/printer`` and ``GET /api/job``.

        OctoPrint answers 409 on ``/api/printer`` while it is not connected
        to the printer; that is reported as OFFLINE rather than an error.
        """
        base = self._base_url(host, port)
        headers = self._headers(api_key)

        try:
            payload = self._get_json(base, "/api/printer", headers=headers)
        except TransportError as exc:
            if exc.status_code == 409:
                return PrinterState(connected=False, state=PrinterStatus.OFFLINE)
            raise

        temps = _safe_get(payload, "temperature", default={})
        if not isinstance(temps, dict):
            temps = {}
        tool = temps.get("tool0") or {}
        bed = temps.get("bed") or {}
        chamber = temps.get("chamber") or {}

        flags = _safe_get(payload, "state", "flags", default={})
        status = _map_flags_to_status(flags if isinstance(flags, dict) else {})

        job_payload = self._get_json(base, "/api/job", headers=headers)
        completion = _safe_get(job_payload, "progress", "completion")
        print_time = _safe_get(job_payload, "progress", "printTime")
        print_time_left = _safe_get(job_payload, "progress", "printTimeLeft")
        job = JobProgress(
            file_name=_safe_get(job_payload, "job", "file", "name"),
            completion=round(completion, 2) if completion is not None else None,
            print_time_seconds=int(print_time) if print_time is not None else None,
            print_time_left_seconds=int(print_time_left) if print_time_left is not None else None,
        )

        return PrinterState(
            connected=True,
            state=status,
            tool_temp_actual=tool.get("actual"),
            tool_temp_target=tool.get("target"),
            bed_temp_actual=bed.get("actual"),
            bed_temp_target=bed.get("target"),
            chamber_temp_actual=chamber.get("actual"),
            chamber_temp_target=chamber.get("target"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """``GET /api/files/local?recursive=true``, flattened."""
        payload = self._get_json(
            self._base_url(host, port),
            "/api/files/local",
            headers=self._headers(api_key),
            params={"recursive": "true"},
        )
        raw_files = payload.get("files", []) if isinstance(payload, dict) else []
        if not isinstance(raw_files, list):
            raw_files = []
        return [_to_file(entry) for entry in _flatten_files(raw_files)]

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        """``GET /api/files/local/{filename}``."""
        try:
            payload = self._get_json(
                self._base_url(host, port),
                f"/api/files/local/{quote(filename, safe='/')}",
                headers=self._headers(api_key),
            )
        except TransportError as exc:
            if exc.status_code == 404:
                raise PrinterError(f"File not found: {filename}", cause=exc) from exc
            raise
        return _to_file(payload)

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """Multipart ``POST /api/files/local``; ``print`` starts the job."""
        abs_path = local_file(file_path)
        form = {
            "select": "true" if print_after else "false",
            "print": "true" if print_after else "false",
        }
        try:
            with open(abs_path, "rb") as fh:
                response = self._request(
                    "POST",
                    self._base_url(host, port),
                    "/api/files/local",
                    headers=self._headers(api_key),
                    files={"file": (filename, fh, "application/octet-stream")},
                    data=form,
                )
        except PermissionError as exc:
            raise PrinterError(f"Permission denied reading file: {abs_path}", cause=exc) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        uploaded = _safe_get(body, "files", "local", "name", default=filename)
        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=uploaded,
            message=f"Uploaded {uploaded} to OctoPrint{suffix}.",
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """Select and print with ``POST /api/files/local/{filename}``."""
        self._request(
            "POST",
            self._base_url(host, port),
            f"/api/files/local/{quote(filename, safe='/')}",
            headers=self._headers(api_key),
            json={"command": "select", "print": True},
        )
        return PrintResult(success=True, message=f"Started printing {filename}.")

    def cancel_job(self, host, port, api_key) -> PrintResult:
        """``POST /api/job`` with ``{"command": "cancel"}``."""
        self._request(
            "POST",
            self._base_url(host, port),
            "/api/job",
            headers=self._headers(api_key),
            json={"command": "cancel"},
        )
        return PrintResult(success=True, message="Print cancelled.")

    # ------------------------------------------------------------------
    # Temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        """Set a heater target through the tool/bed/chamber endpoints."""
        heater = self._heater(component, temperature)
        target = int(temperature)
        if heater == "tool":
            path = "/api/printer/tool"
            body: Dict[str, Any] = {"command": "target", "targets": {"tool0": target}}
        else:
            path = f"/api/printer/{heater}"
            body = {"command": "target", "target": target}

        self._request(
            "POST",
            self._base_url(host, port),
            path,
            headers=self._headers(api_key),
            json=body,
        )
        return PrintResult(success=True, message=f"Set {heater} temperature to {target}°C.")
