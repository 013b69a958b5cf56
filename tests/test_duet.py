"""Tests for printerhub.printers.duet -- DuetAdapter against mocked rr_* endpoints."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
import responses

from printerhub.printers.base import PrinterError, PrinterStatus, TransportError
from printerhub.printers.duet import DuetAdapter, _first, _timestamp

HOST = "duet.local"
BASE = "http://duet.local:80"


@pytest.fixture()
def adapter(http_client):
    return DuetAdapter(http_client)


def _query(call) -> dict:
    return parse_qs(urlparse(call.request.url).query)


def _paths() -> list:
    return [urlparse(c.request.url).path for c in responses.calls]


def _session(session_key=None, err=0):
    reply = {"err": err}
    if session_key is not None:
        reply["sessionKey"] = session_key
    responses.add(responses.GET, f"{BASE}/rr_connect", json=reply)
    responses.add(responses.GET, f"{BASE}/rr_disconnect", json={"err": 0})


STATUS_PRINTING = {
    "status": "P",
    "temps": {
        "current": [60.1, 214.9, 2000],
        "bed": {"current": 60.1, "active": 60.0},
        "chamber": {"current": 35.0, "active": 40.0},
        "tools": {"active": [[215.0]]},
    },
    "fractionPrinted": 37.5,
    "printDuration": 1200.7,
    "timesLeft": {"file": 2000.2},
}


class TestHelpers:
    def test_first_nested(self):
        assert _first([[215.0]]) == 215.0
        assert _first([]) is None
        assert _first(None, default=0) == 0

    def test_timestamp(self):
        assert isinstance(_timestamp("2024-05-01T12:00:00"), int)
        assert _timestamp("not a date") is None
        assert _timestamp(None) is None


class TestSession:
    @responses.activate
    def test_password_defaults_to_reprap(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_gcode", json={"buff": 200})

        adapter.cancel_job(HOST, None, "")

        assert _query(responses.calls[0])["password"] == ["reprap"]
        assert _paths()[-1] == "/rr_disconnect"

    @responses.activate
    def test_session_key_forwarded(self, adapter):
        _session(session_key=12345)
        responses.add(responses.GET, f"{BASE}/rr_gcode", json={"buff": 200})

        adapter.start_job(HOST, None, "secret", "cube.gcode")

        assert _query(responses.calls[0])["password"] == ["secret"]
        assert responses.calls[1].request.headers["X-Session-Key"] == "12345"
        assert responses.calls[2].request.headers["X-Session-Key"] == "12345"

    @responses.activate
    def test_wrong_password(self, adapter):
        responses.add(responses.GET, f"{BASE}/rr_connect", json={"err": 1})
        with pytest.raises(TransportError, match="rejected the password"):
            adapter.get_status(HOST, None, "wrong")

    @responses.activate
    def test_no_free_sessions(self, adapter):
        responses.add(responses.GET, f"{BASE}/rr_connect", json={"err": 2})
        with pytest.raises(TransportError, match="no free sessions"):
            adapter.get_status(HOST, None, "")

    @responses.activate
    def test_disconnect_runs_after_failure(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_status", status=500)

        with pytest.raises(TransportError):
            adapter.get_status(HOST, None, "")

        assert _paths()[-1] == "/rr_disconnect"


class TestGetStatus:
    @responses.activate
    def test_printing(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_status", json=STATUS_PRINTING)
        responses.add(responses.GET, f"{BASE}/rr_fileinfo", json={"err": 0, "fileName": "0:/gcodes/cube.gcode"})

        state = adapter.get_status(HOST, None, "")

        assert state.state is PrinterStatus.PRINTING
        assert state.tool_temp_actual == 214.9
        assert state.tool_temp_target == 215.0
        assert state.bed_temp_actual == 60.1
        assert state.chamber_temp_target == 40.0
        assert state.job.file_name == "cube.gcode"
        assert state.job.completion == 37.5
        assert state.job.print_time_seconds == 1200
        assert state.job.print_time_left_seconds == 2000
        assert _query(responses.calls[1]) == {"type": ["3"]}

    @responses.activate
    def test_idle_skips_fileinfo(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_status", json={"status": "I", "temps": {}})

        state = adapter.get_status(HOST, None, "")

        assert state.state is PrinterStatus.IDLE
        assert "/rr_fileinfo" not in _paths()
        assert state.tool_temp_actual is None

    @pytest.mark.parametrize(
        ("letter", "expected"),
        [("S", PrinterStatus.PAUSED), ("H", PrinterStatus.ERROR), ("B", PrinterStatus.BUSY), ("Z", PrinterStatus.UNKNOWN)],
    )
    @responses.activate
    def test_state_letters(self, adapter, letter, expected):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_status", json={"status": letter})
        responses.add(responses.GET, f"{BASE}/rr_fileinfo", json={"err": 0})
        assert adapter.get_status(HOST, None, "").state is expected


class TestFiles:
    @responses.activate
    def test_get_files_paginates(self, adapter):
        _session()
        responses.add(
            responses.GET,
            f"{BASE}/rr_filelist",
            json={"dir": "0:/gcodes", "first": 0, "files": [
                {"type": "f", "name": "a.gcode", "size": 10, "date": "2024-01-01T00:00:00"},
                {"type": "d", "name": "macros"},
            ], "next": 2},
        )
        responses.add(
            responses.GET,
            f"{BASE}/rr_filelist",
            json={"dir": "0:/gcodes", "first": 2, "files": [{"type": "f", "name": "b.gcode", "size": 20}], "next": 0},
        )

        files = adapter.get_files(HOST, None, "")

        assert [f.name for f in files] == ["a.gcode", "b.gcode"]
        assert files[0].path == "0:/gcodes/a.gcode"
        assert files[1].date is None
        listing_calls = [c for c in responses.calls if "/rr_filelist" in c.request.url]
        assert [_query(c)["first"] for c in listing_calls] == [["0"], ["2"]]

    @responses.activate
    def test_get_files_error(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_filelist", json={"err": 1})
        with pytest.raises(PrinterError, match="could not list"):
            adapter.get_files(HOST, None, "")

    @responses.activate
    def test_get_file(self, adapter):
        _session()
        responses.add(
            responses.GET,
            f"{BASE}/rr_fileinfo",
            json={"err": 0, "size": 4096, "lastModified": "2024-05-01T12:00:00"},
        )

        info = adapter.get_file(HOST, None, "", "cube.gcode")

        assert info.path == "0:/gcodes/cube.gcode"
        assert info.size_bytes == 4096
        assert _query(responses.calls[1]) == {"name": ["0:/gcodes/cube.gcode"]}

    @responses.activate
    def test_get_file_missing(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_fileinfo", json={"err": 1})
        with pytest.raises(PrinterError, match="File not found: ghost.gcode"):
            adapter.get_file(HOST, None, "", "ghost.gcode")


class TestUpload:
    @responses.activate
    def test_upload_raw_body(self, adapter, gcode_file):
        _session()
        responses.add(responses.POST, f"{BASE}/rr_upload", json={"err": 0})

        result = adapter.upload_file(HOST, None, "", gcode_file, "benchy.gcode")

        upload = responses.calls[1].request
        assert upload.headers["Content-Type"] == "application/octet-stream"
        assert _query(responses.calls[1]) == {"name": ["0:/gcodes/benchy.gcode"]}
        assert result.message == "Uploaded benchy.gcode to Duet."

    @responses.activate
    def test_upload_and_print(self, adapter, gcode_file):
        _session()
        responses.add(responses.POST, f"{BASE}/rr_upload", json={"err": 0})
        responses.add(responses.GET, f"{BASE}/rr_gcode", json={"buff": 200})

        adapter.upload_file(HOST, None, "", gcode_file, "benchy.gcode", print_after=True)

        assert _query(responses.calls[2]) == {"gcode": ['M32 "0:/gcodes/benchy.gcode"']}

    @responses.activate
    def test_upload_rejected(self, adapter, gcode_file):
        _session()
        responses.add(responses.POST, f"{BASE}/rr_upload", json={"err": 1})
        with pytest.raises(TransportError, match="rejected the upload"):
            adapter.upload_file(HOST, None, "", gcode_file, "benchy.gcode")


class TestControl:
    @responses.activate
    def test_cancel_pauses_then_stops(self, adapter):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_gcode", json={"buff": 200})

        adapter.cancel_job(HOST, None, "")

        gcodes = [_query(c)["gcode"][0] for c in responses.calls if "/rr_gcode" in c.request.url]
        assert gcodes == ["M25", "M0"]

    @pytest.mark.parametrize(
        ("component", "gcode"),
        [("tool", "G10 P0 S210"), ("bed", "M140 S210"), ("chamber", "M141 S210")],
    )
    @responses.activate
    def test_set_temperature(self, adapter, component, gcode):
        _session()
        responses.add(responses.GET, f"{BASE}/rr_gcode", json={"buff": 200})

        result = adapter.set_temperature(HOST, None, "", component, 210)

        assert _query(responses.calls[1]) == {"gcode": [gcode]}
        assert result.success is True
