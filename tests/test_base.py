"""Tests for printerhub.printers.base -- dataclasses, errors and helpers."""

from __future__ import annotations

import pytest

from printerhub.printers.base import (
    HEATER_ALIASES,
    InvalidCredentialsError,
    JobProgress,
    PrinterAdapter,
    PrinterConfigError,
    PrinterError,
    PrinterFile,
    PrinterState,
    PrinterStatus,
    PrintResult,
    TransportError,
    UnsupportedOperationError,
    UnsupportedPrinterTypeError,
    UploadResult,
    local_file,
)
from printerhub.printers.klipper import KlipperAdapter


class TestErrorHierarchy:
    def test_config_errors_are_printer_errors(self):
        assert issubclass(PrinterConfigError, PrinterError)
        assert issubclass(UnsupportedPrinterTypeError, PrinterConfigError)
        assert issubclass(InvalidCredentialsError, PrinterConfigError)

    def test_transport_and_unsupported_are_printer_errors(self):
        assert issubclass(TransportError, PrinterError)
        assert issubclass(UnsupportedOperationError, PrinterError)

    def test_unsupported_type_keeps_original_spelling(self):
        exc = UnsupportedPrinterTypeError("MakerBot")
        assert exc.printer_type == "MakerBot"
        assert str(exc) == "Unsupported printer type: MakerBot"

    def test_cause_is_kept(self):
        root = OSError("boom")
        exc = TransportError("wrapped", cause=root, status_code=502)
        assert exc.cause is root
        assert exc.status_code == 502

    def test_status_code_defaults_to_none(self):
        assert TransportError("x").status_code is None


class TestPrinterState:
    def test_to_dict_flattens_enum(self):
        state = PrinterState(connected=True, state=PrinterStatus.PRINTING, tool_temp_actual=210.0)
        data = state.to_dict()
        assert data["state"] == "printing"
        assert data["tool_temp_actual"] == 210.0
        assert data["job"] is None

    def test_to_dict_includes_job(self):
        state = PrinterState(
            connected=True,
            state=PrinterStatus.PRINTING,
            job=JobProgress(file_name="cube.gcode", completion=42.5),
        )
        job = state.to_dict()["job"]
        assert job["file_name"] == "cube.gcode"
        assert job["completion"] == 42.5
        assert job["print_time_left_seconds"] is None

    def test_defaults_are_none(self):
        state = PrinterState(connected=False, state=PrinterStatus.OFFLINE)
        assert state.bed_temp_actual is None
        assert state.chamber_temp_target is None


class TestResultTypes:
    def test_printer_file_to_dict(self):
        f = PrinterFile(name="a.gcode", path="sub/a.gcode", size_bytes=10, date=1700000000)
        assert f.to_dict() == {"name": "a.gcode", "path": "sub/a.gcode", "size_bytes": 10, "date": 1700000000}

    def test_upload_result_to_dict(self):
        r = UploadResult(success=True, file_name="a.gcode", message="ok")
        assert r.to_dict()["file_name"] == "a.gcode"

    def test_print_result_job_id_optional(self):
        assert PrintResult(success=True, message="ok").job_id is None


class TestLocalFile:
    def test_returns_absolute_path(self, gcode_file):
        assert local_file(gcode_file) == gcode_file

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Local file not found"):
            local_file(str(tmp_path / "missing.gcode"))

    def test_directory_is_not_a_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            local_file(str(tmp_path))


class TestHeaterValidation:
    """``_heater`` is shared by every adapter that sets temperatures."""

    def _adapter(self, http_client) -> PrinterAdapter:
        return KlipperAdapter(http_client)

    @pytest.mark.parametrize("alias", sorted(HEATER_ALIASES))
    def test_aliases_resolve(self, http_client, alias):
        assert self._adapter(http_client)._heater(alias, 50) == HEATER_ALIASES[alias]

    def test_case_and_whitespace_ignored(self, http_client):
        assert self._adapter(http_client)._heater("  Bed ", 60) == "bed"

    def test_unknown_component(self, http_client):
        with pytest.raises(PrinterError, match="Unknown temperature component"):
            self._adapter(http_client)._heater("laser", 50)

    def test_negative_temperature(self, http_client):
        with pytest.raises(PrinterError, match="negative"):
            self._adapter(http_client)._heater("tool", -5)

    def test_zero_turns_heater_off(self, http_client):
        assert self._adapter(http_client)._heater("tool", 0) == "tool"
