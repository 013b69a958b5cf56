"""Bambu Lab adapter (LAN mode).

Bambu printers (X1C, P1S, P1P, A1, A1 mini) are driven over two channels:

* **MQTT** on port 8883 (TLS) for commands and telemetry, managed by
  :class:`~printerhub.printers.bambu_mqtt.MqttConnectionManager`.
* **FTPS** on port 990 (implicit TLS) for the SD card, through the injected
  :class:`~printerhub.printers.bambu_ftp.BambuFtpStore`.

The ``api_key`` of every operation is the credentials blob
``"<serial>:<token>"`` where *token* is the LAN access code shown on the
printer's display.  ``port`` is ignored: both channels use fixed ports.

Printing a sliced project goes through :meth:`BambuAdapter.print_3mf`, which
uploads the ``.3mf`` to ``gcodes/`` and publishes a ``project_file`` command.
The command is fire-and-forget: success means the broker acknowledged the
publish, not that the printer started.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

from printerhub.printers.bambu_ftp import BambuFtpSession, BambuFtpStore
from printerhub.printers.bambu_mqtt import MqttConnectionManager, request_topic
from printerhub.printers.base import (
    InvalidCredentialsError,
    JobProgress,
    PrinterAdapter,
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

logger = logging.getLogger(__name__)

_GCODES_DIR = "gcodes"

# Mapping from Bambu ``gcode_state`` strings to :class:`PrinterStatus`.
_STATE_MAP: Dict[str, PrinterStatus] = {
    "idle": PrinterStatus.IDLE,
    "finish": PrinterStatus.IDLE,
    "running": PrinterStatus.PRINTING,
    "prepare": PrinterStatus.BUSY,
    "slicing": PrinterStatus.BUSY,
    "init": PrinterStatus.BUSY,
    "pause": PrinterStatus.PAUSED,
    "failed": PrinterStatus.ERROR,
    "cancelling": PrinterStatus.CANCELLING,
    "offline": PrinterStatus.OFFLINE,
    "unknown": PrinterStatus.UNKNOWN,
}


def split_credentials(api_key: str) -> Tuple[str, str]:
    """Split ``"<serial>:<token>"`` into its two parts.

    Raises:
        InvalidCredentialsError: Unless the blob has exactly two non-empty
            fields.  The token is never included in the message.
    """
    parts = (api_key or "").split(":")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise InvalidCredentialsError(
            "Invalid Bambu credentials: expected '<serial>:<access code>' "
            f"with exactly two non-empty fields, got {len(parts)} field(s)."
        )
    return parts[0].strip(), parts[1].strip()


def remote_path_for(file_path: str) -> str:
    """Return the SD-card path a local file is uploaded to.

    Windows-style separators are normalised first so that
    ``C:\\models\\part.3mf`` lands at ``gcodes/part.3mf``.
    """
    basename = os.path.basename(file_path.replace("\\", "/"))
    return f"{_GCODES_DIR}/{basename}".replace("\\", "/")


@dataclass
class BambuPrintOptions:
    """Caller options for :meth:`BambuAdapter.print_3mf`.

    Unset optional fields (``md5``, an empty ``ams_mapping``) are left out of
    the published command rather than sent as null.
    """

    file_path: str
    project_name: Optional[str] = None
    plate_index: int = 0
    use_ams: bool = False
    ams_mapping: List[int] = field(default_factory=list)
    bed_leveling: bool = True
    flow_calibration: bool = False
    vibration_calibration: bool = False
    layer_inspect: bool = False
    timelapse: bool = False
    md5: Optional[str] = None


def build_print_payload(options: BambuPrintOptions, remote_path: str, sequence_id: str) -> Dict[str, Any]:
    """Build the ``project_file`` command body for a 3MF on the SD card."""
    basename = remote_path.rsplit("/", 1)[-1]
    project_name = options.project_name or os.path.splitext(basename)[0]
    payload: Dict[str, Any] = {
        "sequence_id": sequence_id,
        "command": "project_file",
        "param": remote_path,
        "url": f"file:///sdcard/{remote_path}",
        "project_name": project_name,
        "subtask_name": project_name,
        "project_id": "0",
        "profile_id": "0",
        "task_id": "0",
        "subtask_id": "0",
        "bed_type": "auto",
        "plate_idx": options.plate_index,
        "bed_levelling": options.bed_leveling,
        "flow_cali": options.flow_calibration,
        "vibration_cali": options.vibration_calibration,
        "layer_inspect": options.layer_inspect,
        "timelapse": options.timelapse,
        "use_ams": options.use_ams,
    }
    if options.ams_mapping:
        payload["ams_mapping"] = list(options.ams_mapping)
        payload["use_ams"] = True
    else:
        if options.use_ams:
            logger.warning("use_ams requested without an AMS mapping; printing from the external spool")
        payload["use_ams"] = False
    if options.md5:
        payload["md5"] = options.md5
    return payload


class BambuAdapter(PrinterAdapter):
    """Bambu Lab backend (MQTT + FTPS + TLS).

    Args:
        ftp_store: Source of FTPS sessions keyed by ``(host, serial)``.
        mqtt_manager: Connection manager shared by every operation.
        publish_timeout: Seconds to wait for the broker's PUBACK.
        status_wait: Seconds :meth:`get_status` waits for the first
            telemetry push after connecting.
    """

    def __init__(
        self,
        ftp_store: BambuFtpStore,
        mqtt_manager: MqttConnectionManager,
        *,
        publish_timeout: float = 10.0,
        status_wait: float = 2.0,
    ) -> None:
        self._ftp_store = ftp_store
        self._mqtt = mqtt_manager
        self._publish_timeout = publish_timeout
        self._status_wait = status_wait
        self._seq_lock = threading.Lock()
        self._sequence_id = 0

    @property
    def name(self) -> str:
        return "bambu"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _next_seq(self) -> str:
        with self._seq_lock:
            self._sequence_id += 1
            return str(self._sequence_id)

    def _publish(self, client: mqtt.Client, serial: str, family: str, body: Dict[str, Any]) -> None:
        """Publish ``{family: body}`` with QoS 1 and wait for the PUBACK.

        Raises:
            TransportError: If the publish is rejected or not acknowledged.
        """
        try:
            info = client.publish(request_topic(serial), json.dumps({family: body}), qos=1)
            info.wait_for_publish(timeout=self._publish_timeout)
        except (RuntimeError, ValueError, OSError) as exc:
            raise TransportError(f"Failed to publish MQTT command: {exc}", cause=exc) from exc
        if not info.is_published():
            raise TransportError(
                f"MQTT command {body.get('command')!r} to {serial} was not acknowledged "
                f"within {self._publish_timeout}s"
            )
        logger.debug("Published %s command %r to %s", family, body.get("command"), serial)

    def _ftp_session(self, host: str, serial: str, token: str) -> BambuFtpSession:
        session = self._ftp_store.get(host, serial, token)
        if not session.is_connected:
            session.connect()
        return session

    # ------------------------------------------------------------------
    # Print pipeline
    # ------------------------------------------------------------------

    def print_3mf(self, host: str, serial: str, token: str, options: BambuPrintOptions) -> PrintResult:
        """Upload a sliced 3MF project and tell the printer to print it.

        The file is stored at ``gcodes/<basename>``; re-running overwrites
        it.  Nothing is rolled back if the publish fails after the upload.

        Raises:
            InvalidCredentialsError: If *serial* or *token* is empty or
                holds a colon.  Raised before any I/O.
            FileNotFoundError: If the local file does not exist.
            TransportError: If the upload, connection or publish fails.
        """
        serial, token = split_credentials(f"{serial}:{token}")
        abs_path = local_file(options.file_path)
        remote_path = remote_path_for(options.file_path)

        try:
            session = self._ftp_session(host, serial, token)
            session.send_file(abs_path, remote_path)
        except PrinterError as exc:
            raise TransportError(f"Failed to upload 3MF file via FTP: {exc}", cause=exc) from exc

        client = self._mqtt.get_client(host, serial, token)
        payload = build_print_payload(options, remote_path, self._next_seq())
        self._publish(client, serial, "print", payload)
        return PrintResult(
            success=True,
            message=f"Print command for {remote_path} sent to {serial}.",
            job_id=payload["sequence_id"],
        )

    # ------------------------------------------------------------------
    # PrinterAdapter -- state queries
    # ------------------------------------------------------------------

    def get_status(self, host, port, api_key) -> PrinterState:
        """Map the cached ``push_status`` telemetry to a :class:`PrinterState`.

        Connects on first use and waits up to ``status_wait`` seconds for
        the printer's first report.  Until one arrives the state is UNKNOWN.
        """
        serial, token = split_credentials(api_key)
        self._mqtt.get_client(host, serial, token)
        self._mqtt.wait_for_telemetry(host, serial, self._status_wait)
        report = self._mqtt.get_telemetry(host, serial)
        if not report:
            return PrinterState(connected=True, state=PrinterStatus.UNKNOWN)

        gcode_state = str(report.get("gcode_state", "unknown")).lower()
        percent = report.get("mc_percent")
        remaining = report.get("mc_remaining_time")  # minutes
        file_name = report.get("subtask_name") or report.get("gcode_file") or None

        job = JobProgress(
            file_name=file_name,
            completion=float(percent) if percent is not None else None,
            print_time_left_seconds=int(remaining) * 60 if remaining is not None else None,
        )
        return PrinterState(
            connected=True,
            state=_STATE_MAP.get(gcode_state, PrinterStatus.UNKNOWN),
            tool_temp_actual=report.get("nozzle_temper"),
            tool_temp_target=report.get("nozzle_target_temper"),
            bed_temp_actual=report.get("bed_temper"),
            bed_temp_target=report.get("bed_target_temper"),
            chamber_temp_actual=report.get("chamber_temper"),
            job=job,
        )

    def get_files(self, host, port, api_key) -> List[PrinterFile]:
        """List ``gcodes/`` over FTPS."""
        serial, token = split_credentials(api_key)
        return self._ftp_session(host, serial, token).list_dir(_GCODES_DIR)

    def get_file(self, host, port, api_key, filename) -> PrinterFile:
        for entry in self.get_files(host, port, api_key):
            if entry.name == filename:
                return entry
        raise PrinterError(f"File not found: {filename}")

    # ------------------------------------------------------------------
    # PrinterAdapter -- file management
    # ------------------------------------------------------------------

    def upload_file(self, host, port, api_key, file_path, filename, print_after=False) -> UploadResult:
        """Upload to ``gcodes/<filename>``; start it afterwards if asked."""
        serial, token = split_credentials(api_key)
        abs_path = local_file(file_path)
        remote_path = remote_path_for(filename)

        self._ftp_session(host, serial, token).send_file(abs_path, remote_path)
        if print_after:
            self.start_job(host, port, api_key, filename)

        suffix = " and started printing" if print_after else ""
        return UploadResult(
            success=True,
            file_name=remote_path.rsplit("/", 1)[-1],
            message=f"Uploaded {remote_path} to Bambu printer {serial}{suffix}.",
        )

    # ------------------------------------------------------------------
    # PrinterAdapter -- print control
    # ------------------------------------------------------------------

    def start_job(self, host, port, api_key, filename) -> PrintResult:
        """Print a file already in ``gcodes/``.

        ``.3mf`` projects use the ``project_file`` command with default
        options; anything else is started as plain G-code.
        """
        serial, token = split_credentials(api_key)
        remote_path = remote_path_for(filename)
        client = self._mqtt.get_client(host, serial, token)

        if remote_path.lower().endswith(".3mf"):
            body = build_print_payload(BambuPrintOptions(file_path=filename), remote_path, self._next_seq())
        else:
            body = {
                "sequence_id": self._next_seq(),
                "command": "gcode_file",
                "param": f"/sdcard/{remote_path}",
            }
        self._publish(client, serial, "print", body)
        return PrintResult(
            success=True,
            message=f"Started printing {remote_path}.",
            job_id=body["sequence_id"],
        )

    def cancel_job(self, host, port, api_key) -> PrintResult:
        serial, token = split_credentials(api_key)
        client = self._mqtt.get_client(host, serial, token)
        self._publish(client, serial, "print", {"sequence_id": self._next_seq(), "command": "stop"})
        return PrintResult(success=True, message="Print cancelled.")

    # ------------------------------------------------------------------
    # PrinterAdapter -- temperature control
    # ------------------------------------------------------------------

    def set_temperature(self, host, port, api_key, component, temperature) -> PrintResult:
        raise UnsupportedOperationError(
            "Setting temperatures directly is not supported for Bambu printers. "
            "Temperatures come from the sliced project."
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        """Close every MQTT client and FTPS session this adapter opened."""
        try:
            self._mqtt.disconnect_all()
        finally:
            self._ftp_store.close_all()
