"""Repetier-Server adapter.

Repetier-Server exposes an action-style API: every call is
``/printer/api/<slug>?a=<action>&apikey=<key>`` with action arguments passed
as a JSON document in the ``data`` query parameter.  A server may drive
several printers; the adapter targets the first one reported by
``listPrinter``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from printerhub.printers.base import (
    JobProgress,
    PrinterError,
    PrinterFile,
    PrinterState,
    PrinterStatus,
    PrintResult,
    UploadResult,
    local_file,
)
from printerhub.printers.http import HttpPrinterAdapter, _safe_get

logger = logging.getLogger(__name__)

# Action and argument key per canonical heater name.
_HEATER_ACTIONS: Dict[str, tuple[str, str]] = {
    "tool": ("setExtruderTemperature", "extruder"),
    "bed": ("setBedTemperature", "bedId"),
    "chamber": ("setChamberTemperature", "chamberId"),
}


def _first_heater(entries: Any) -> Dict[str, Any]:
    if isinstance(entries, list) and entries and isinstance(entries[0], dict):
        return entries[0]
    return {}


def _model_date(model: Dict[str, Any]) -> Optional[int]:
    """Repetier reports ``created`` in milliseconds."""
    created = model.get("created")
    if created is None:
        return None
    try:
        return int(created) // 1000
    except (TypeError, ValueError):
        return None


class RepetierAdapter(HttpPrinterAdapter):
    """Repetier-Server backend (REST, ``apikey`` query parameter)."""

    default_port = 3344
    display_name = "Repetier-Server"

    @property
    def name(self) -> str:
        return "repetier"

    def _action(
        self,
        base: str,
        api_key: str,
        action: str,
        *,
        slug: str = "",
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Run one ``/printer/api`` action and return its JSON reply."""
        params: Dict[str, Any] = {"a": action, "apikey": api_key}
        if data is not None:
            params["data"] = json.dumps(data)
        return self._get_json(base, f"/printer/api/{quote(slug, safe='')}", params=params)

    def _printer(self, base: str, api_key: str) -> Dict[str, Any]:
        """Return the ``listPrinter`` entry of the first configured printer."""
        printers = self._action(base, api_key, "listPrinter")
        if isinstance(printers, dict):
            printers = printers.get("data", [])
        if not isinstance(printers, list) or not printers or not isinstance(printers[0], dict):
            raise PrinterError(f"Repetier-Server at {base} reports no printers")
        return printers[0]

    def _slug(self, base: str, api_key: str) -> str:
        slug = self._printer(base, api_key).get("slug")
        if not slug:
            raise PrinterError(f"Repetier-Server at {base} returned a printer without a slug")
        return str(slug)

    def _models(self, base: str, api_key: str, slug: str) -> List[Dict[str, Any]]:
        reply = self._action(base, api_key, "listModels", slug=slug)
        models = _safe_get(reply, "data", default=[])
        return [m for m in models if isinstance(m, dict)] if isinstance(models, list) else []

    def _find_model(self, base: str, api_key: str, slug: str, filename: str) -> Dict[str, Any]:
        """Return the newest stored model named *filename*."""
        matches = [m for m in self._models(base, api_key, slug) if m.get("name") == filename]
        if not matches:
            raise PrinterError(f"File not found: {filename}")
        return max(matches, key=lambda m: m.get("id", 0))

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """Job info from ``listPrinter`` plus heaters from ``stateList``."""
        base = self._base_url(host, port)
        printer = self._printer(base, api_key)
        slug = str(printer.get("slug", ""))

        if not printer.get("online"):
            return PrinterState(connected=False, state=PrinterStatus.OFFLINE)

        states = self._action(base, api_key, "stateList", slug=slug)
        state = _safe_get(states, slug, default={})
        if not isinstance(state, dict):
            state = {}
        extruder = _first_heater(state.get("extruder"))
        bed = _first_heater(state.get("heatedBeds"))
        chamber = _first_heater(state.get("heatedChambers"))

        job_name = printer.get("job")
        active = bool(job_name) and job_name != "none"
        if printer.get("paused"):
            status = PrinterStatus.PAUSED
        elif active:
            status = PrinterStatus.PRINTING
        else:
            status = PrinterStatus.IDLE

        job: Optional[JobProgress] = None
        if active:
            done = printer.get("done")
            elapsed = printer.get("printTime")
            total = printer.get("printedTimeComp")
            left: Optional[int] = None
            if elapsed is not None and total is not None and total > elapsed:
                left = int(total - elapsed)
            job = JobProgress(
                file_name=job_name,
                completion=round(float(done), 2) if done is not None else None,
                print_time_seconds=int(elapsed) if elapsed is not None else None,
                print_time_left_seconds=left,
            )

        return PrinterState(
            connected=True,
            state=status,
            tool_temp_actual=extruder.get("tempRead"),
            tool_temp_target=extruder.get("tempSet"),
            bed_temp_actual=bed.get("tempRead"),
            bed_temp_target=bed.get("tempSet"),
            chamber_temp_actual=chamber.get("tempRead"),
            chamber_temp_target=chamber.get("tempSet"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """Stored models from ``listModels``."""
        base = self._base_url(host, port)
        slug = self._slug(base, api_key)
        return [
            PrinterFile(
                name=str(model.get("name", "")),
                path=str(model.get("id", "")),
                size_bytes=model.get("length"),
                date=_model_date(model),
            )
            for model in self._models(base, api_key, slug)
        ]

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        base = self._base_url(host, port)
        model = self._find_model(base, api_key, self._slug(base, api_key), filename)
        return PrinterFile(
            name=filename,
            path=str(model.get("id", "")),
            size_bytes=model.get("length"),
            date=_model_date(model),
        )

    # ------------------------------------------------------------------
    # File management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """Multipart ``POST /printer/model/<slug>?a=upload``."""
        abs_path = local_file(file_path)
        base = self._base_url(host, port)
        slug = self._slug(base, api_key)
        try:
            with open(abs_path, "rb") as fh:
                self._request(
                    "POST",
                    base,
                    f"/printer/model/{quote(slug, safe='')}",
                    params={"a": "upload", "apikey": api_key},
                    files={"filename": (filename, fh, "application/octet-stream")},
                    data={"name": filename},
                )
        except PermissionError as exc:
            raise PrinterError(f"Permission denied reading file: {abs_path}", cause=exc) from exc

        if print_after:
            model = self._find_model(base, api_key, slug, filename)
            self._action(base, api_key, "copyModel", slug=slug, data={"id": model.get("id")})

        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=filename,
            message=f"Uploaded {filename} to Repetier-Server{suffix}.",
        )

    # ------------------------------------------------------------------
    # Print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """``copyModel`` queues a stored model and starts it."""
        base = self._base_url(host, port)
        slug = self._slug(base, api_key)
        model = self._find_model(base, api_key, slug, filename)
        self._action(base, api_key, "copyModel", slug=slug, data={"id": model.get("id")})
        return PrintResult(success=True, message=f"Started printing {filename}.")

    def cancel_job(self, host, port, api_key) -> PrintResult:
        base = self._base_url(host, port)
        self._action(base, api_key, "stopJob", slug=self._slug(base, api_key))
        return PrintResult(success=True, message="Print cancelled.")

    # ------------------------------------------------------------------
    # Temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        heater = self._heater(component, temperature)
        action, index_key = _HEATER_ACTIONS[heater]
        target = int(temperature)
        base = self._base_url(host, port)
        self._action(
            base,
            api_key,
            action,
            slug=self._slug(base, api_key),
            data={"temperature": target, index_key: 0},
        )
        return PrintResult(success=True, message=f"Set {heater} temperature to {target}°C.")
