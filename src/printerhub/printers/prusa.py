"""PrusaLink adapter.

Talks to the `PrusaLink v1 API <https://github.com/prusa3d/Prusa-Link-Web>`_
running on Prusa printers (MK4, XL, MINI+).  The ``api_key`` is sent in the
``X-Api-Key`` header.  Files live on the ``usb`` storage root.

PrusaLink has no temperature or raw G-code endpoint, so
:meth:`PrusaAdapter.set_temperature` always raises
:class:`~printerhub.printers.base.UnsupportedOperationError`.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from printerhub.printers.base import (
    JobProgress,
    PrinterError,
    PrinterFile,
    PrinterState,
    PrinterStatus,
    PrintResult,
    TransportError,
    UnsupportedOperationError,
    UploadResult,
    local_file,
)
from printerhub.printers.http import HttpPrinterAdapter, _safe_get

logger = logging.getLogger(__name__)

_STORAGE = "usb"

# PrusaLink printer states -> PrinterStatus
_STATE_MAP: Dict[str, PrinterStatus] = {
    "IDLE": PrinterStatus.IDLE,
    "READY": PrinterStatus.IDLE,
    "FINISHED": PrinterStatus.IDLE,
    "STOPPED": PrinterStatus.IDLE,
    "BUSY": PrinterStatus.BUSY,
    "PRINTING": PrinterStatus.PRINTING,
    "PAUSED": PrinterStatus.PAUSED,
    "ERROR": PrinterStatus.ERROR,
    "ATTENTION": PrinterStatus.ERROR,
}


def _collect_files(entries: List[Any], results: List[PrinterFile], prefix: str = "") -> None:
    """Recursively collect files from a PrusaLink directory listing."""
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        api_name = str(entry.get("name") or "")
        display_name = str(entry.get("display_name") or api_name)
        api_path = f"{prefix}{api_name}"

        if entry.get("type") == "FOLDER":
            children = entry.get("children", [])
            if isinstance(children, list):
                _collect_files(children, results, prefix=f"{api_path}/")
        elif api_name:
            results.append(PrinterFile(
                name=display_name,
                path=api_path,
                size_bytes=entry.get("size"),
                date=entry.get("m_timestamp"),
            ))


class PrusaAdapter(HttpPrinterAdapter):
    """PrusaLink backend (REST, ``X-Api-Key``)."""

    default_port = 80
    display_name = "PrusaLink"

    @property
    def name(self) -> str:
        return "prusa"

    @staticmethod
    def _headers(api_key: Optional[str]) -> Dict[str, str]:
        return {"X-Api-Key": api_key} if api_key else {}

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """``GET /api/v1/status``, plus ``/api/v1/job`` for the file name.

        The status call already carries temperatures and job progress; the
        job endpoint is only consulted while a job exists.
        """
        base = self._base_url(host, port)
        headers = self._headers(api_key)
        data = self._get_json(base, "/api/v1/status", headers=headers)

        printer = _safe_get(data, "printer", default={})
        if not isinstance(printer, dict):
            printer = {}
        job_data = _safe_get(data, "job", default={})
        if not isinstance(job_data, dict):
            job_data = {}

        job: Optional[JobProgress] = None
        if job_data.get("id") is not None:
            file_name: Optional[str] = None
            response = self._request("GET", base, "/api/v1/job", headers=headers)
            if response.status_code != 204:
                details = self._json(response, "/api/v1/job")
                file_name = _safe_get(details, "file", "display_name") or _safe_get(details, "file", "name")

            progress = job_data.get("progress")
            printing = job_data.get("time_printing")
            remaining = job_data.get("time_remaining")
            job = JobProgress(
                file_name=file_name,
                completion=round(float(progress), 2) if progress is not None else None,
                print_time_seconds=int(printing) if printing is not None else None,
                print_time_left_seconds=int(remaining) if remaining is not None else None,
            )

        return PrinterState(
            connected=True,
            state=_STATE_MAP.get(str(printer.get("state", "")).upper(), PrinterStatus.UNKNOWN),
            tool_temp_actual=printer.get("temp_nozzle"),
            tool_temp_target=printer.get("target_nozzle"),
            bed_temp_actual=printer.get("temp_bed"),
            bed_temp_target=printer.get("target_bed"),
            chamber_temp_actual=printer.get("temp_chamber"),
            chamber_temp_target=printer.get("target_chamber"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """``GET /api/v1/files/usb/`` flattened across folders."""
        data = self._get_json(
            self._base_url(host, port),
            f"/api/v1/files/{_STORAGE}/",
            headers=self._headers(api_key),
        )
        results: List[PrinterFile] = []
        children = _safe_get(data, "children", default=[])
        if isinstance(children, list):
            _collect_files(children, results)
        return results

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        """``GET /api/v1/files/usb/<filename>``."""
        try:
            data = self._get_json(
                self._base_url(host, port),
                f"/api/v1/files/{_STORAGE}/{quote(filename, safe='/')}",
                headers=self._headers(api_key),
            )
        except TransportError as exc:
            if exc.status_code == 404:
                raise PrinterError(f"File not found: {filename}", cause=exc) from exc
            raise

        if not isinstance(data, dict):
            data = {}
        return PrinterFile(
            name=str(data.get("display_name") or data.get("name") or filename),
            path=filename,
            size_bytes=data.get("size"),
            date=data.get("m_timestamp"),
        )

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """``PUT /api/v1/files/usb/<filename>`` with the raw file as body."""
        abs_path = local_file(file_path)
        headers = {
            **self._headers(api_key),
            "Content-Type": "application/octet-stream",
            "Content-Length": str(os.path.getsize(abs_path)),
            "Print-After-Upload": "?1" if print_after else "?0",
            "Overwrite": "?1",
        }
        try:
            with open(abs_path, "rb") as fh:
                self._request(
                    "PUT",
                    self._base_url(host, port),
                    f"/api/v1/files/{_STORAGE}/{quote(filename, safe='')}",
                    headers=headers,
                    data=fh,
                )
        except PermissionError as exc:
            raise PrinterError(f"Permission denied reading file: {abs_path}", cause=exc) from exc

        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to PrusaLink{suffix}.",
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """``POST /api/v1/files/usb/<filename>``."""
        self._request(
            "POST",
            self._base_url(host, port),
            f"/api/v1/files/{_STORAGE}/{quote(filename, safe='/')}",
            headers=self._headers(api_key),
        )
        return PrintResult(success=True, message=f"Started printing {filename}.")

    def cancel_job(self, host, port, api_key) -> PrintResult:
        """``DELETE /api/v1/job/<id>`` for the job reported by status."""
        base = self._base_url(host, port)
        headers = self._headers(api_key)
        data = self._get_json(base, "/api/v1/status", headers=headers)
        job_id = _safe_get(data, "job", "id")
        if job_id is None:
            raise PrinterError("No active job to cancel.")

        self._request("DELETE", base, f"/api/v1/job/{job_id}", headers=headers)
        return PrintResult(success=True, message="Print cancelled.", job_id=str(job_id))

    # ------------------------------------------------------------------
    # Temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        raise UnsupportedOperationError(
            "PrusaLink does not expose temperature control. "
            "Set temperatures from the printer's display or in the G-code file."
        )
