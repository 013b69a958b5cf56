"""Shared transport clients used by the printer adapters.

* :class:`TimeoutSession` -- one pooled :class:`requests.Session` shared by
  every HTTP adapter, with a client-wide timeout applied to each request.
* :class:`MqttClientFactory` -- builds TLS-secured paho-mqtt clients for the
  Bambu LAN protocol.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Optional

import paho.mqtt.client as mqtt
import requests

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 10.0


class TimeoutSession(requests.Session):
    """:class:`requests.Session` that applies a default timeout.

    Requests made through the session use *timeout* unless the call passes
    its own.

    Args:
        timeout: Seconds to wait for connect and read.
        verify_tls: Verify HTTPS certificates.
    """

    def __init__(self, timeout: float = DEFAULT_HTTP_TIMEOUT, verify_tls: bool = True) -> None:
        super().__init__()
        self.timeout = timeout
        self.verify = verify_tls
        if not verify_tls:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def request(self, method: str | bytes, url: str | bytes, *args: Any, **kwargs: Any) -> requests.Response:  # type: ignore[override]
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, *args, **kwargs)


def create_http_client(timeout: float = DEFAULT_HTTP_TIMEOUT, *, verify_tls: bool = True) -> TimeoutSession:
    """Return the shared HTTP client for the adapter registry."""
    return TimeoutSession(timeout=timeout, verify_tls=verify_tls)


class MqttClientFactory:
    """Creates TLS-enabled MQTT clients.

    Args:
        connect_timeout: Seconds allowed for the TCP/TLS handshake and the
            CONNACK.
        reconnect_period: Fixed delay between automatic reconnect attempts
            made by the client's network loop.
        keepalive: MQTT keepalive interval in seconds.
        verify_tls: Verify the broker certificate.  Bambu printers ship a
            self-signed certificate, so this is off unless a CA is supplied.
        ca_file: Optional CA bundle used when *verify_tls* is on.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 10.0,
        reconnect_period: float = 5.0,
        keepalive: int = 60,
        verify_tls: bool = False,
        ca_file: Optional[str] = None,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.reconnect_period = reconnect_period
        self.keepalive = keepalive
        self.verify_tls = verify_tls
        self.ca_file = ca_file

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_file)
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def create(self, client_id: str, username: str, password: str) -> mqtt.Client:
        """Return a configured, not yet connected, MQTT client."""
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(username, password)
        client.tls_set_context(self._tls_context())
        client.connect_timeout = self.connect_timeout
        delay = max(1, int(self.reconnect_period))
        client.reconnect_delay_set(min_delay=delay, max_delay=delay)
        logger.debug("Created MQTT client %s (verify_tls=%s)", client_id, self.verify_tls)
        return client
