"""HTTP plumbing shared by the REST-based adapters.

The OctoPrint, Klipper, Duet, Repetier, Prusa and Creality adapters all talk
to the printer through the registry's shared :class:`requests.Session`.
This module holds the URL building and error wrapping they have in common.
Requests are never retried here: a failure surfaces to the caller.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout

from printerhub.printers.base import PrinterAdapter, PrinterError, TransportError

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_PORT_RE = re.compile(r":\d+$")


def _safe_get(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested dicts safely, returning *default* on any miss or type error."""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return default
        current = current.get(key, default)
    return current


def build_base_url(host: str, port: str | int | None, default_port: int) -> str:
    """Combine *host* and *port* into ``scheme://host:port``.

    *host* may already carry a scheme and/or a port; an explicit *port*
    argument wins over a port embedded in *host*.
    """
    host = (host or "").strip().rstrip("/")
    if not host:
        raise PrinterError("host must not be empty")

    scheme = "http://"
    match = _SCHEME_RE.match(host)
    if match:
        scheme = match.group(0).lower()
        host = host[match.end():]

    port_str = str(port).strip() if port is not None else ""
    if port_str:
        host = _PORT_RE.sub("", host)
        return f"{scheme}{host}:{port_str}"
    if _PORT_RE.search(host):
        return f"{scheme}{host}"
    return f"{scheme}{host}:{default_port}"


class HttpPrinterAdapter(PrinterAdapter):
    """Base for adapters that speak HTTP to the printer.

    Args:
        http_client: Shared session, normally
            :class:`~printerhub.transport.TimeoutSession`.
    """

    #: Port used when the caller passes none.
    default_port: int = 80

    #: Product name used in error messages.
    display_name: str = "printer"

    def __init__(self, http_client: requests.Session) -> None:
        self._http = http_client

    def _base_url(self, host: str, port: str | int | None) -> str:
        return build_base_url(host, port, self.default_port)

    def _request(
        self,
        method: str,
        base_url: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """Execute one HTTP request and return the 2xx response.

        Raises:
            TransportError: On connection failures, timeouts and non-2xx
                replies.  The message names the method and path.
        """
        url = f"{base_url}{path}"
        try:
            response = self._http.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                data=data,
                files=files,
            )
        except Timeout as exc:
            raise TransportError(
                f"Request to {self.display_name} at {base_url} timed out ({method} {path})",
                cause=exc,
            ) from exc
        except ReqConnectionError as exc:
            raise TransportError(
                f"Could not connect to {self.display_name} at {base_url}",
                cause=exc,
            ) from exc
        except RequestException as exc:
            raise TransportError(
                f"Request error for {method} {path}: {exc}",
                cause=exc,
            ) from exc

        if not response.ok:
            if response.status_code in (401, 403):
                raise TransportError(
                    f"{self.display_name} at {base_url} rejected the credentials "
                    f"(HTTP {response.status_code}) for {method} {path}",
                    status_code=response.status_code,
                )
            raise TransportError(
                f"{self.display_name} returned HTTP {response.status_code} "
                f"for {method} {path}: {response.text[:300]}",
                status_code=response.status_code,
            )
        logger.debug("%s %s -> %d", method, url, response.status_code)
        return response

    def _json(self, response: requests.Response, path: str) -> Any:
        """Parse a JSON body, raising :class:`TransportError` on garbage."""
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(
                f"Invalid JSON in response from {self.display_name} for {path}",
                cause=exc,
            ) from exc

    def _get_json(self, base_url: str, path: str, **kwargs: Any) -> Any:
        """Shorthand: GET *path* and return the parsed JSON body."""
        return self._json(self._request("GET", base_url, path, **kwargs), path)
