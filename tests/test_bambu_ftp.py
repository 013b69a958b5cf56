"""Tests for printerhub.printers.bambu_ftp -- FTPS sessions with a mocked FTP_TLS."""

from __future__ import annotations

import ftplib
from unittest import mock

import pytest

from printerhub.printers.bambu_ftp import (
    FTPS_PORT,
    FTPS_USERNAME,
    BambuFtpSession,
    BambuFtpStore,
    _mlsd_date,
)
from printerhub.printers.base import TransportError

HOST = "192.168.1.100"
TOKEN = "12345678"


@pytest.fixture()
def mock_ftp_class():
    with mock.patch("printerhub.printers.bambu_ftp._ImplicitFTP_TLS") as cls:
        cls.return_value.mlsd.return_value = []
        yield cls


class TestMlsdDate:
    def test_parses(self):
        assert isinstance(_mlsd_date("20240101120000"), int)

    def test_fractional_seconds_ignored(self):
        assert _mlsd_date("20240101120000.123") == _mlsd_date("20240101120000")

    def test_bad_values(self):
        assert _mlsd_date(None) is None
        assert _mlsd_date("yesterday") is None


class TestSessionConnect:
    def test_connect_logs_in_and_protects(self, mock_ftp_class):
        session = BambuFtpSession(HOST, TOKEN, timeout=4)
        session.connect()

        ftp = mock_ftp_class.return_value
        ftp.connect.assert_called_once_with(HOST, FTPS_PORT, timeout=4)
        ftp.login.assert_called_once_with(FTPS_USERNAME, TOKEN)
        ftp.prot_p.assert_called_once()
        assert session.is_connected is True

    def test_connect_is_idempotent(self, mock_ftp_class):
        session = BambuFtpSession(HOST, TOKEN)
        session.connect()
        session.connect()
        assert mock_ftp_class.call_count == 1

    def test_login_failure(self, mock_ftp_class):
        ftp = mock_ftp_class.return_value
        ftp.login.side_effect = ftplib.error_perm("530 Login incorrect.")
        session = BambuFtpSession(HOST, TOKEN)

        with pytest.raises(TransportError, match="FTPS connection to 192.168.1.100:990 failed"):
            session.connect()

        ftp.close.assert_called_once()
        assert session.is_connected is False

    def test_socket_failure(self, mock_ftp_class):
        mock_ftp_class.return_value.connect.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(TransportError) as excinfo:
            BambuFtpSession(HOST, TOKEN).connect()
        assert isinstance(excinfo.value.cause, ConnectionRefusedError)


class TestSendFile:
    def test_stor(self, mock_ftp_class, tmp_path):
        local = tmp_path / "part.3mf"
        local.write_bytes(b"PK\x03\x04")
        session = BambuFtpSession(HOST, TOKEN)

        session.send_file(str(local), "gcodes/part.3mf")

        ftp = mock_ftp_class.return_value
        assert ftp.storbinary.call_args.args[0] == "STOR gcodes/part.3mf"

    def test_failure_drops_connection(self, mock_ftp_class, tmp_path):
        local = tmp_path / "part.3mf"
        local.write_bytes(b"data")
        ftp = mock_ftp_class.return_value
        ftp.storbinary.side_effect = ftplib.error_temp("451 Disk full")
        session = BambuFtpSession(HOST, TOKEN)

        with pytest.raises(TransportError, match="upload of gcodes/part.3mf failed"):
            session.send_file(str(local), "gcodes/part.3mf")

        assert session.is_connected is False


class TestListDir:
    def test_mlsd(self, mock_ftp_class):
        mock_ftp_class.return_value.mlsd.return_value = [
            (".", {"type": "cdir"}),
            ("part.3mf", {"type": "file", "size": "2048", "modify": "20240101120000"}),
            ("timelapse", {"type": "dir"}),
        ]

        entries = BambuFtpSession(HOST, TOKEN).list_dir("gcodes")

        assert len(entries) == 1
        assert entries[0].name == "part.3mf"
        assert entries[0].path == "gcodes/part.3mf"
        assert entries[0].size_bytes == 2048
        assert entries[0].date is not None

    def test_nlst_fallback_on_502(self, mock_ftp_class):
        ftp = mock_ftp_class.return_value
        ftp.mlsd.side_effect = ftplib.error_perm("502 Command not implemented.")
        ftp.nlst.return_value = ["gcodes/a.3mf", "b.gcode"]

        entries = BambuFtpSession(HOST, TOKEN).list_dir("gcodes")

        assert [(e.name, e.path) for e in entries] == [("a.3mf", "gcodes/a.3mf"), ("b.gcode", "gcodes/b.gcode")]
        assert entries[0].size_bytes is None

    def test_other_permanent_error_raises(self, mock_ftp_class):
        mock_ftp_class.return_value.mlsd.side_effect = ftplib.error_perm("550 No such directory")
        session = BambuFtpSession(HOST, TOKEN)
        with pytest.raises(TransportError, match="listing of gcodes failed"):
            session.list_dir("gcodes")
        assert session.is_connected is False


class TestClose:
    def test_quit_failure_still_closes(self, mock_ftp_class):
        ftp = mock_ftp_class.return_value
        ftp.quit.side_effect = EOFError()
        session = BambuFtpSession(HOST, TOKEN)
        session.connect()

        session.close()

        ftp.close.assert_called_once()
        assert session.is_connected is False

    def test_close_when_never_connected(self, mock_ftp_class):
        BambuFtpSession(HOST, TOKEN).close()
        mock_ftp_class.assert_not_called()


class TestStore:
    def test_same_printer_same_session(self):
        store = BambuFtpStore()
        assert store.get(HOST, "SERIAL", TOKEN) is store.get(HOST, "SERIAL", TOKEN)

    def test_sessions_keyed_by_serial(self):
        store = BambuFtpStore()
        assert store.get(HOST, "A", TOKEN) is not store.get(HOST, "B", TOKEN)

    def test_new_token_replaces_session(self, mock_ftp_class):
        store = BambuFtpStore()
        old = store.get(HOST, "SERIAL", TOKEN)
        old.connect()

        new = store.get(HOST, "SERIAL", "87654321")

        assert new is not old
        assert old.is_connected is False

    def test_close_all(self, mock_ftp_class):
        store = BambuFtpStore(timeout=3)
        first = store.get(HOST, "A", TOKEN)
        second = store.get(HOST, "B", TOKEN)
        first.connect()
        second.connect()

        store.close_all()

        assert not first.is_connected and not second.is_connected
        assert store.get(HOST, "A", TOKEN) is not first
