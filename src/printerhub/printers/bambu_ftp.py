"""FTPS file transfer for Bambu Lab printers.

Bambu printers serve their SD card over implicit-TLS FTP on port 990.  The
username is always ``bblp`` and the password is the LAN access code (the
token half of the credentials blob).

:class:`BambuFtpStore` is the collaborator the registry injects into the
Bambu adapter: it hands out one :class:`BambuFtpSession` per
``(host, serial)`` and keeps it open between operations.
"""

from __future__ import annotations

import datetime
import ftplib
import logging
import socket
import ssl
import threading
from typing import Any, Dict, List, Optional, Tuple

from printerhub.printers.base import PrinterFile, TransportError

logger = logging.getLogger(__name__)

FTPS_PORT = 990
FTPS_USERNAME = "bblp"


class _ImplicitFTP_TLS(ftplib.FTP_TLS):
    """FTP_TLS for implicit TLS.

    :class:`ftplib.FTP_TLS` only does explicit ``AUTH TLS``.  Bambu printers
    expect the socket to be wrapped immediately, and reject data channels
    that do not reuse the control channel's TLS session.
    """

    def connect(
        self,
        host: str = "",
        port: int = 0,
        timeout: float = -999,
        source_address: Any = None,
    ) -> str:
        if host:
            self.host = host
        if port:
            self.port = port
        if timeout != -999:
            self.timeout = timeout
        if source_address is not None:
            self.source_address = source_address

        self.sock = socket.create_connection(
            (self.host, self.port),
            self.timeout,
            source_address=self.source_address,
        )
        self.af = self.sock.family
        self.sock = self.context.wrap_socket(self.sock, server_hostname=self.host)
        self.file = self.sock.makefile("r", encoding=self.encoding)
        self.welcome = self.getresp()
        return self.welcome

    def ntransfercmd(self, cmd: str, rest: Any = None) -> Any:
        conn, size = ftplib.FTP.ntransfercmd(self, cmd, rest)
        if self._prot_p:  # type: ignore[attr-defined]
            conn = self.context.wrap_socket(
                conn,
                server_hostname=self.host,
                session=self.sock.session,  # type: ignore[union-attr]
            )
        return conn, size


def _mlsd_date(modify: Optional[str]) -> Optional[int]:
    if not modify:
        return None
    try:
        return int(datetime.datetime.strptime(modify[:14], "%Y%m%d%H%M%S").timestamp())
    except (ValueError, OSError):
        return None


class BambuFtpSession:
    """One FTPS connection to a Bambu printer.

    Operations are serialised with a lock because :mod:`ftplib` connections
    are not safe to share between threads.  A failed operation drops the
    connection so the next call starts from a fresh login.

    Args:
        host: Printer address.
        token: LAN access code.
        timeout: Socket timeout in seconds.
        verify_tls: Verify the printer certificate.
        ca_file: Optional CA bundle for verification.
    """

    def __init__(
        self,
        host: str,
        token: str,
        *,
        timeout: float = 10.0,
        verify_tls: bool = False,
        ca_file: Optional[str] = None,
    ) -> None:
        self.host = host
        self._token = token
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._ca_file = ca_file
        self._ftp: Optional[ftplib.FTP_TLS] = None
        self._lock = threading.RLock()

    @property
    def is_connected(self) -> bool:
        return self._ftp is not None

    def _context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context(cafile=self._ca_file)
        if not self._verify_tls:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def connect(self) -> None:
        """Open and authenticate the FTPS connection if not already open.

        Raises:
            TransportError: If the connection or login fails.
        """
        with self._lock:
            if self._ftp is not None:
                return
            ftp = _ImplicitFTP_TLS(context=self._context())
            try:
                ftp.connect(self.host, FTPS_PORT, timeout=self._timeout)
                ftp.login(FTPS_USERNAME, self._token)
                ftp.prot_p()
            except ftplib.all_errors as exc:
                ftp.close()
                raise TransportError(
                    f"FTPS connection to {self.host}:{FTPS_PORT} failed: {exc}",
                    cause=exc,
                ) from exc
            self._ftp = ftp
            logger.debug("FTPS session open to %s", self.host)

    def _drop(self) -> None:
        if self._ftp is not None:
            self._ftp.close()
            self._ftp = None

    def send_file(self, local_path: str, remote_path: str) -> None:
        """Upload *local_path* to *remote_path* (relative to the SD card root).

        Raises:
            TransportError: On any FTP failure.
        """
        with self._lock:
            self.connect()
            assert self._ftp is not None
            try:
                with open(local_path, "rb") as fh:
                    self._ftp.storbinary(f"STOR {remote_path}", fh)
            except ftplib.all_errors as exc:
                self._drop()
                raise TransportError(f"FTPS upload of {remote_path} failed: {exc}", cause=exc) from exc
        logger.info("Uploaded %s to %s:%s", local_path, self.host, remote_path)

    def list_dir(self, directory: str) -> List[PrinterFile]:
        """List the regular files in *directory*.

        MLSD is tried first for sizes and dates; printers whose FTP server
        answers 502 fall back to NLST (names only).
        """
        with self._lock:
            self.connect()
            assert self._ftp is not None
            try:
                try:
                    return self._list_via_mlsd(directory)
                except ftplib.error_perm as exc:
                    if not str(exc).startswith("502"):
                        raise
                    logger.info("MLSD not supported on %s, falling back to NLST", self.host)
                return self._list_via_nlst(directory)
            except ftplib.all_errors as exc:
                self._drop()
                raise TransportError(f"FTPS listing of {directory} failed: {exc}", cause=exc) from exc

    def _list_via_mlsd(self, directory: str) -> List[PrinterFile]:
        assert self._ftp is not None
        entries: List[PrinterFile] = []
        for name, facts in self._ftp.mlsd(directory):
            if name in (".", "..") or facts.get("type") in ("dir", "cdir", "pdir"):
                continue
            size = facts.get("size")
            entries.append(PrinterFile(
                name=name,
                path=f"{directory}/{name}",
                size_bytes=int(size) if size else None,
                date=_mlsd_date(facts.get("modify")),
            ))
        return entries

    def _list_via_nlst(self, directory: str) -> List[PrinterFile]:
        assert self._ftp is not None
        entries: List[PrinterFile] = []
        for raw_name in self._ftp.nlst(directory):
            name = raw_name.rsplit("/", 1)[-1]
            if name in (".", "..", ""):
                continue
            entries.append(PrinterFile(name=name, path=f"{directory}/{name}"))
        return entries

    def close(self) -> None:
        """Send QUIT and close the socket.  A failing QUIT still closes."""
        with self._lock:
            if self._ftp is None:
                return
            try:
                self._ftp.quit()
            except ftplib.all_errors as exc:
                logger.debug("FTPS QUIT to %s failed: %s", self.host, exc)
            finally:
                self._drop()


class BambuFtpStore:
    """Hands out one :class:`BambuFtpSession` per ``(host, serial)``.

    A session is replaced when the caller presents a different token for
    the same printer.
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        verify_tls: bool = False,
        ca_file: Optional[str] = None,
    ) -> None:
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._ca_file = ca_file
        self._sessions: Dict[Tuple[str, str], Tuple[str, BambuFtpSession]] = {}
        self._lock = threading.Lock()

    def get(self, host: str, serial: str, token: str) -> BambuFtpSession:
        stale: Optional[BambuFtpSession] = None
        with self._lock:
            entry = self._sessions.get((host, serial))
            if entry is not None and entry[0] == token:
                return entry[1]
            if entry is not None:
                stale = entry[1]
            session = BambuFtpSession(
                host,
                token,
                timeout=self._timeout,
                verify_tls=self._verify_tls,
                ca_file=self._ca_file,
            )
            self._sessions[(host, serial)] = (token, session)
        if stale is not None:
            stale.close()
        return session

    def close_all(self) -> None:
        """Close every session; failures are logged and the rest still close."""
        with self._lock:
            sessions = [session for _, session in self._sessions.values()]
            self._sessions.clear()
        for session in sessions:
            try:
                session.close()
            except OSError as exc:
                logger.warning("Error closing FTPS session to %s: %s", session.host, exc)
