"""MQTT session management for Bambu Lab printers.

Bambu printers in LAN mode run an MQTT broker on port 8883 (TLS).  Commands
go to ``device/<serial>/request`` and the printer pushes telemetry on
``device/<serial>/report``.

:class:`MqttConnectionManager` keeps at most one authenticated client per
``(host, serial)``.  Callers asking for a client while a connection attempt
for the same key is in flight wait on that attempt instead of opening a
second one.  paho-mqtt delivers callbacks on its network thread, so the
client, pending-attempt and telemetry tables are all guarded by one lock,
and every attempt's future is completed under that lock exactly once.

When an established connection drops, the client is purged from the cache
but its network loop keeps running, so paho reconnects on its own after the
factory's reconnect period.  A reconnected client is cached again.  A caller
that needs a client before that happens starts a fresh attempt, and the
dropped client is retired so the key never has two live sessions.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import paho.mqtt.client as mqtt

from printerhub.printers.base import TransportError
from printerhub.transport import MqttClientFactory

logger = logging.getLogger(__name__)

MQTT_PORT = 8883
MQTT_USERNAME = "bblp"


def report_topic(serial: str) -> str:
    return f"device/{serial}/report"


def request_topic(serial: str) -> str:
    return f"device/{serial}/request"


class ConnectionKey(NamedTuple):
    """Identifies one logical MQTT session."""

    host: str
    serial: str


class _Attempt(NamedTuple):
    client: mqtt.Client
    future: Future


class MqttConnectionManager:
    """Owns the MQTT clients of one Bambu adapter.

    Args:
        client_factory: Builds configured (TLS, timeouts, reconnect delay)
            paho clients.
        end_timeout: Seconds :meth:`disconnect_all` waits for each client's
            disconnect to be acknowledged.
    """

    def __init__(self, client_factory: MqttClientFactory, *, end_timeout: float = 5.0) -> None:
        self._factory = client_factory
        self._end_timeout = end_timeout
        self._lock = threading.Lock()
        self._clients: Dict[ConnectionKey, mqtt.Client] = {}
        self._pending: Dict[ConnectionKey, _Attempt] = {}
        # Dropped clients whose network loop is reconnecting.
        self._dropped: Dict[ConnectionKey, mqtt.Client] = {}
        self._closing: Dict[ConnectionKey, Tuple[mqtt.Client, threading.Event]] = {}
        self._telemetry: Dict[ConnectionKey, Dict[str, Any]] = {}
        self._telemetry_ready: Dict[ConnectionKey, threading.Event] = {}

    # ------------------------------------------------------------------
    # Client lookup
    # ------------------------------------------------------------------

    def get_client(self, host: str, serial: str, token: str) -> mqtt.Client:
        """Return a connected client for ``(host, serial)``.

        A live cached client is returned without any network action.  If an
        attempt is already in flight the caller waits for its outcome;
        otherwise the caller starts a new attempt.

        Raises:
            TransportError: If the attempt fails, is refused or times out.
        """
        key = ConnectionKey(host, serial)
        stale: List[mqtt.Client] = []
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None and cached.is_connected():
                return cached
            attempt = self._pending.get(key)
            owner = attempt is None
            if owner:
                if cached is not None:
                    stale.append(self._clients.pop(key))
                if key in self._dropped:
                    stale.append(self._dropped.pop(key))
                client_id = f"printerhub_{serial}_{int(time.time() * 1000)}"
                attempt = _Attempt(
                    self._factory.create(client_id, MQTT_USERNAME, token),
                    Future(),
                )
                self._pending[key] = attempt

        assert attempt is not None
        deadline = time.monotonic() + self._factory.connect_timeout
        for client in stale:
            logger.debug("Retiring disconnected MQTT client for %s", serial)
            self._retire(client)
        if owner:
            logger.info("Opening MQTT connection to %s for %s", host, serial)
            self._start(key, attempt)
        else:
            logger.debug("Waiting for in-flight MQTT connection to %s for %s", host, serial)
        return self._wait(key, attempt, deadline)

    def _start(self, key: ConnectionKey, attempt: _Attempt) -> None:
        client = attempt.client
        client.user_data_set(key)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        try:
            # The TCP and TLS handshake run on the network thread, so they
            # count against the shared connect deadline.
            client.connect_async(key.host, MQTT_PORT, keepalive=self._factory.keepalive)
        except (OSError, ValueError) as exc:
            self._fail(key, attempt, TransportError(
                f"MQTT connection to {key.host}:{MQTT_PORT} failed: {exc}",
                cause=exc,
            ))
            return
        with self._lock:
            # A waiter may have timed the attempt out already.
            if self._pending.get(key) is not attempt:
                logger.debug("MQTT attempt for %s ended before its network loop started", key.serial)
                return
            client.loop_start()

    def _wait(self, key: ConnectionKey, attempt: _Attempt, deadline: float) -> mqtt.Client:
        remaining = max(0.0, deadline - time.monotonic())
        try:
            return attempt.future.result(timeout=remaining)
        except FutureTimeoutError:
            self._fail(key, attempt, TransportError(
                f"MQTT connection to {key.host}:{MQTT_PORT} timed out after "
                f"{self._factory.connect_timeout}s. Check that the printer is on, "
                f"LAN mode is enabled and the access code is correct."
            ))
            # Either our failure or a success that won the race.
            return attempt.future.result(timeout=0)

    def _fail(self, key: ConnectionKey, attempt: _Attempt, error: TransportError) -> bool:
        """Complete *attempt* with *error* unless it is already complete.

        Returns True when this call completed the attempt; the attempt's
        client is then retired.
        """
        with self._lock:
            if self._pending.get(key) is attempt:
                del self._pending[key]
            if self._clients.get(key) is attempt.client:
                del self._clients[key]
            if attempt.future.done():
                return False
            attempt.future.set_exception(error)
        logger.warning("%s", error)
        self._retire(attempt.client)
        return True

    @staticmethod
    def _retire(client: mqtt.Client) -> None:
        """Stop the client's network loop, then close any open session.

        Stopping the loop first means no automatic reconnect can race the
        disconnect.  The client must no longer be tracked by the manager.
        """
        client.loop_stop()
        client.disconnect()

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _attempt_for(self, key: ConnectionKey, client: mqtt.Client) -> Optional[_Attempt]:
        attempt = self._pending.get(key)
        if attempt is not None and attempt.client is client:
            return attempt
        return None

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        key: ConnectionKey = userdata
        with self._lock:
            attempt = self._attempt_for(key, client)
            dropped = self._dropped.get(key) is client
        if attempt is None:
            if dropped:
                self._on_reconnect(key, client, reason_code)
            else:
                logger.debug("Ignoring CONNACK from untracked MQTT client for %s", key.serial)
            return

        if reason_code.is_failure:
            self._fail(key, attempt, TransportError(
                f"MQTT broker at {key.host} refused the connection for {key.serial}: {reason_code}"
            ))
            return

        self._request_reports(key, client)
        with self._lock:
            if self._pending.get(key) is not attempt or attempt.future.done():
                return
            del self._pending[key]
            self._clients[key] = client
            attempt.future.set_result(client)
        logger.info("MQTT connected to %s for %s", key.host, key.serial)

    @staticmethod
    def _request_reports(key: ConnectionKey, client: mqtt.Client) -> None:
        """Subscribe to the report topic and ask for a full status push."""
        client.subscribe(report_topic(key.serial))
        client.publish(
            request_topic(key.serial),
            json.dumps({"pushing": {"sequence_id": "0", "command": "pushall"}}),
        )

    def _on_reconnect(self, key: ConnectionKey, client: mqtt.Client, reason_code) -> None:
        """Cache a dropped client again once paho has reconnected it."""
        if reason_code.is_failure:
            with self._lock:
                if self._dropped.get(key) is not client:
                    return
                del self._dropped[key]
            logger.warning(
                "MQTT broker at %s refused the reconnect for %s: %s", key.host, key.serial, reason_code,
            )
            self._retire(client)
            return

        self._request_reports(key, client)
        with self._lock:
            if self._dropped.get(key) is not client:
                return
            del self._dropped[key]
            self._clients[key] = client
        logger.info("MQTT reconnected to %s for %s", key.host, key.serial)

    def _on_connect_fail(self, client, userdata) -> None:
        key: ConnectionKey = userdata
        with self._lock:
            attempt = self._attempt_for(key, client)
        if attempt is not None:
            self._fail(key, attempt, TransportError(
                f"MQTT connection to {key.host}:{MQTT_PORT} failed for {key.serial}"
            ))

    def _on_disconnect(self, client, userdata, disconnect_flags=None, reason_code=None, properties=None) -> None:
        key: ConnectionKey = userdata
        with self._lock:
            attempt = self._attempt_for(key, client)
            closing = self._closing.get(key)
            intentional = closing is not None and closing[0] is client
            dropped = False
            if self._clients.get(key) is client:
                del self._clients[key]
                self._telemetry.pop(key, None)
                self._telemetry_ready.pop(key, None)
                if not intentional:
                    self._dropped[key] = client
                    dropped = True
        if attempt is not None:
            self._fail(key, attempt, TransportError(
                f"MQTT connection to {key.host} closed during connect: {reason_code}"
            ))
            return
        if intentional:
            assert closing is not None
            closing[1].set()
            return
        if dropped:
            logger.info(
                "MQTT connection to %s for %s closed (%s); reconnecting in %ss",
                key.host, key.serial, reason_code, self._factory.reconnect_period,
            )

    def _on_message(self, client, userdata, msg) -> None:
        """Merge ``push_status`` reports into the telemetry cache."""
        key: ConnectionKey = userdata
        try:
            payload = json.loads(msg.payload)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("Discarding malformed report from %s on %s: %s", key.serial, msg.topic, exc)
            return
        if not isinstance(payload, dict):
            return

        # A1/A1 mini send the command as "PUSH_STATUS".
        print_data = payload.get("print")
        if not isinstance(print_data, dict):
            return
        if str(print_data.get("command", "")).lower() != "push_status":
            return
        with self._lock:
            self._telemetry.setdefault(key, {}).update(print_data)
            ready = self._telemetry_ready.setdefault(key, threading.Event())
        ready.set()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def get_telemetry(self, host: str, serial: str) -> Dict[str, Any]:
        """Return a copy of the merged ``push_status`` fields for a printer."""
        with self._lock:
            return dict(self._telemetry.get(ConnectionKey(host, serial), {}))

    def wait_for_telemetry(self, host: str, serial: str, timeout: float) -> bool:
        """Block until the first report for a printer arrives, or *timeout*."""
        key = ConnectionKey(host, serial)
        with self._lock:
            ready = self._telemetry_ready.setdefault(key, threading.Event())
        return ready.wait(timeout)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def connected_keys(self) -> List[ConnectionKey]:
        with self._lock:
            return list(self._clients)

    def disconnect_all(self) -> None:
        """Cleanly disconnect every cached client, then clear all tables.

        Each disconnect waits (bounded) for paho to report the connection
        closed.  A failure for one client is logged and the remaining
        clients are still disconnected.  In-flight attempts are failed and
        dropped clients waiting to reconnect are retired.
        """
        with self._lock:
            clients = list(self._clients.items())
            attempts = list(self._pending.items())
            dropped = list(self._dropped.items())
            self._dropped.clear()

        for key, client in clients:
            done = threading.Event()
            with self._lock:
                self._closing[key] = (client, done)
            try:
                client.disconnect()
                if not done.wait(self._end_timeout):
                    logger.warning(
                        "No disconnect acknowledgment from %s (%s) within %.1fs",
                        key.host, key.serial, self._end_timeout,
                    )
                client.loop_stop()
                logger.info("MQTT client for %s disconnected", key.serial)
            except Exception as exc:
                logger.warning("Error disconnecting MQTT client for %s: %s", key.serial, exc)

        for key, client in dropped:
            try:
                self._retire(client)
            except Exception as exc:
                logger.warning("Error retiring MQTT client for %s: %s", key.serial, exc)

        for key, attempt in attempts:
            self._fail(key, attempt, TransportError(
                f"MQTT connection to {key.host} abandoned: connection manager shut down"
            ))

        with self._lock:
            self._clients.clear()
            self._pending.clear()
            self._closing.clear()
            self._telemetry.clear()
            self._telemetry_ready.clear()
