"""Tests for printerhub.printers.octoprint -- OctoPrintAdapter with mocked HTTP.

Uses the ``responses`` library to intercept all outgoing HTTP requests.
"""

from __future__ import annotations

import json

import pytest
import responses

from printerhub.printers.base import PrinterError, PrinterStatus, TransportError
from printerhub.printers.octoprint import OctoPrintAdapter, _flatten_files, _map_flags_to_status

HOST = "octopi.local"
BASE = "http://octopi.local:80"
API_KEY = "TESTAPIKEY123"


@pytest.fixture()
def adapter(http_client):
    return OctoPrintAdapter(http_client)


def _printer_payload(**flags):
    base_flags = {"operational": True, "ready": True, "printing": False, "paused": False, "error": False}
    base_flags.update(flags)
    return {
        "temperature": {
            "tool0": {"actual": 214.8, "target": 215.0},
            "bed": {"actual": 59.9, "target": 60.0},
        },
        "state": {"text": "Operational", "flags": base_flags},
    }


JOB_PAYLOAD = {
    "job": {"file": {"name": "benchy.gcode"}},
    "progress": {"completion": 42.123, "printTime": 600.4, "printTimeLeft": 900},
}


class TestMapFlags:
    @pytest.mark.parametrize(
        ("flags", "expected"),
        [
            ({"cancelling": True, "printing": True}, PrinterStatus.CANCELLING),
            ({"printing": True}, PrinterStatus.PRINTING),
            ({"pausing": True}, PrinterStatus.PAUSED),
            ({"closedOrError": True}, PrinterStatus.ERROR),
            ({"ready": True, "operational": True}, PrinterStatus.IDLE),
            ({"operational": True}, PrinterStatus.BUSY),
            ({}, PrinterStatus.UNKNOWN),
        ],
    )
    def test_priority(self, flags, expected):
        assert _map_flags_to_status(flags) is expected


class TestFlattenFiles:
    def test_nested_folders(self):
        entries = [
            {"name": "a.gcode", "type": "machinecode"},
            {"name": "dir", "type": "folder", "children": [{"name": "b.gcode", "type": "machinecode"}]},
        ]
        assert [e["name"] for e in _flatten_files(entries)] == ["a.gcode", "b.gcode"]


class TestGetStatus:
    @responses.activate
    def test_printing(self, adapter):
        responses.add(responses.GET, f"{BASE}/api/printer", json=_printer_payload(printing=True, ready=False))
        responses.add(responses.GET, f"{BASE}/api/job", json=JOB_PAYLOAD)

        state = adapter.get_status(HOST, None, API_KEY)

        assert state.connected is True
        assert state.state is PrinterStatus.PRINTING
        assert state.tool_temp_actual == 214.8
        assert state.bed_temp_target == 60.0
        assert state.job.file_name == "benchy.gcode"
        assert state.job.completion == 42.12
        assert state.job.print_time_seconds == 600
        assert state.job.print_time_left_seconds == 900
        assert responses.calls[0].request.headers["X-Api-Key"] == API_KEY

    @responses.activate
    def test_idle(self, adapter):
        responses.add(responses.GET, f"{BASE}/api/printer", json=_printer_payload())
        responses.add(responses.GET, f"{BASE}/api/job", json={"job": {"file": {}}, "progress": {}})

        state = adapter.get_status(HOST, None, API_KEY)

        assert state.state is PrinterStatus.IDLE
        assert state.job.file_name is None
        assert state.job.completion is None

    @responses.activate
    def test_409_means_offline(self, adapter):
        responses.add(responses.GET, f"{BASE}/api/printer", body="Printer is not operational", status=409)

        state = adapter.get_status(HOST, None, API_KEY)

        assert state.connected is False
        assert state.state is PrinterStatus.OFFLINE

    @responses.activate
    def test_other_errors_raise(self, adapter):
        responses.add(responses.GET, f"{BASE}/api/printer", status=401)
        with pytest.raises(TransportError) as excinfo:
            adapter.get_status(HOST, None, API_KEY)
        assert excinfo.value.status_code == 401

    @responses.activate
    def test_custom_port(self, adapter):
        responses.add(responses.GET, "http://octopi.local:5000/api/printer", json=_printer_payload())
        responses.add(responses.GET, "http://octopi.local:5000/api/job", json=JOB_PAYLOAD)
        assert adapter.get_status(HOST, 5000, API_KEY).state is PrinterStatus.IDLE


class TestFiles:
    @responses.activate
    def test_get_files_flattens(self, adapter):
        responses.add(
            responses.GET,
            f"{BASE}/api/files/local",
            json={
                "files": [
                    {"name": "a.gcode", "path": "a.gcode", "type": "machinecode", "size": 100, "date": 1700000000},
                    {
                        "name": "parts",
                        "type": "folder",
                        "children": [{"name": "b.gcode", "path": "parts/b.gcode", "type": "machinecode"}],
                    },
                ]
            },
        )

        files = adapter.get_files(HOST, None, API_KEY)

        assert [f.path for f in files] == ["a.gcode", "parts/b.gcode"]
        assert files[0].size_bytes == 100
        assert "recursive=true" in responses.calls[0].request.url

    @responses.activate
    def test_get_file(self, adapter):
        responses.add(
            responses.GET,
            f"{BASE}/api/files/local/a.gcode",
            json={"name": "a.gcode", "path": "a.gcode", "size": 5, "date": 1},
        )
        info = adapter.get_file(HOST, None, API_KEY, "a.gcode")
        assert info.name == "a.gcode"
        assert info.size_bytes == 5

    @responses.activate
    def test_get_file_missing(self, adapter):
        responses.add(responses.GET, f"{BASE}/api/files/local/nope.gcode", status=404)
        with pytest.raises(PrinterError, match="File not found: nope.gcode"):
            adapter.get_file(HOST, None, API_KEY, "nope.gcode")


class TestUpload:
    @responses.activate
    def test_upload(self, adapter, gcode_file):
        responses.add(
            responses.POST,
            f"{BASE}/api/files/local",
            json={"done": True, "files": {"local": {"name": "benchy.gcode"}}},
            status=201,
        )

        result = adapter.upload_file(HOST, None, API_KEY, gcode_file, "benchy.gcode")

        assert result.success is True
        assert result.file_name == "benchy.gcode"
        body = responses.calls[0].request.body
        assert b'name="print"\r\n\r\nfalse' in body

    @responses.activate
    def test_upload_and_print(self, adapter, gcode_file):
        responses.add(responses.POST, f"{BASE}/api/files/local", json={}, status=201)

        result = adapter.upload_file(HOST, None, API_KEY, gcode_file, "benchy.gcode", print_after=True)

        assert "started printing" in result.message
        assert b'name="print"\r\n\r\ntrue' in responses.calls[0].request.body

    def test_missing_local_file(self, adapter, tmp_path):
        with pytest.raises(FileNotFoundError):
            adapter.upload_file(HOST, None, API_KEY, str(tmp_path / "nope.gcode"), "nope.gcode")


class TestControl:
    @responses.activate
    def test_start_job(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/files/local/benchy.gcode", status=204)
        result = adapter.start_job(HOST, None, API_KEY, "benchy.gcode")
        assert result.success is True
        assert json.loads(responses.calls[0].request.body) == {"command": "select", "print": True}

    @responses.activate
    def test_cancel_job(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/job", status=204)
        result = adapter.cancel_job(HOST, None, API_KEY)
        assert result.message == "Print cancelled."
        assert json.loads(responses.calls[0].request.body) == {"command": "cancel"}

    @responses.activate
    def test_cancel_conflict_raises(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/job", status=409)
        with pytest.raises(TransportError) as excinfo:
            adapter.cancel_job(HOST, None, API_KEY)
        assert excinfo.value.status_code == 409


class TestTemperature:
    @responses.activate
    def test_tool(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/printer/tool", status=204)
        result = adapter.set_temperature(HOST, None, API_KEY, "tool", 210)
        assert json.loads(responses.calls[0].request.body) == {"command": "target", "targets": {"tool0": 210}}
        assert result.message == "Set tool temperature to 210°C."

    @responses.activate
    def test_bed(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/printer/bed", status=204)
        adapter.set_temperature(HOST, None, API_KEY, "heater_bed", 60)
        assert json.loads(responses.calls[0].request.body) == {"command": "target", "target": 60}

    @responses.activate
    def test_chamber(self, adapter):
        responses.add(responses.POST, f"{BASE}/api/printer/chamber", status=204)
        adapter.set_temperature(HOST, None, API_KEY, "chamber", 40)
        assert responses.calls[0].request.url.endswith("/api/printer/chamber")

    def test_unknown_heater_no_io(self, adapter):
        with responses.RequestsMock(assert_all_requests_are_fired=False):
            with pytest.raises(PrinterError, match="Unknown temperature component"):
                adapter.set_temperature(HOST, None, API_KEY, "laser", 10)
