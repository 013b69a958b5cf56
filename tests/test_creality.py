"""Tests for printerhub.printers.creality -- Moonraker protocol on Creality OS."""

from __future__ import annotations

import pytest
import responses

from printerhub.printers.base import PrinterStatus, TransportError
from printerhub.printers.creality import CrealityAdapter
from printerhub.printers.klipper import KlipperAdapter


class TestCrealityAdapter:
    def test_identity(self, http_client):
        adapter = CrealityAdapter(http_client)
        assert adapter.name == "creality"
        assert isinstance(adapter, KlipperAdapter)
        assert adapter.default_port == 7125

    @responses.activate
    def test_status_uses_moonraker_endpoints(self, http_client):
        responses.add(
            responses.GET,
            "http://k1.local:7125/printer/objects/query",
            json={"result": {"status": {
                "print_stats": {"state": "paused", "filename": "vase.gcode", "print_duration": 10},
                "virtual_sdcard": {"progress": 0.5},
                "extruder": {"temperature": 200.0, "target": 0},
                "heater_bed": {"temperature": 55.0, "target": 0},
            }}},
        )

        state = CrealityAdapter(http_client).get_status("k1.local", None, "")

        assert state.state is PrinterStatus.PAUSED
        assert state.job.file_name == "vase.gcode"

    @responses.activate
    def test_error_messages_name_creality(self, http_client):
        responses.add(responses.POST, "http://k1.local:4408/printer/print/cancel", status=500)
        with pytest.raises(TransportError, match="Creality returned HTTP 500"):
            CrealityAdapter(http_client).cancel_job("k1.local", 4408, "")
