"""Adapter registry: one adapter instance per supported printer type.

The registry is built once per process from two injected collaborators,
a shared HTTP session and a Bambu FTPS session store, and maps each
printer type key to a long-lived adapter::

    registry = AdapterRegistry.from_settings(load_settings())
    adapter = registry.resolve("OctoPrint")
    state = adapter.get_status("192.168.1.40", None, "API_KEY")
    ...
    registry.teardown_all()
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests

from printerhub.config import Settings
from printerhub.printers.bambu import BambuAdapter
from printerhub.printers.bambu_ftp import BambuFtpStore
from printerhub.printers.bambu_mqtt import MqttConnectionManager
from printerhub.printers.base import PrinterAdapter, UnsupportedPrinterTypeError
from printerhub.printers.creality import CrealityAdapter
from printerhub.printers.duet import DuetAdapter
from printerhub.printers.klipper import KlipperAdapter
from printerhub.printers.octoprint import OctoPrintAdapter
from printerhub.printers.prusa import PrusaAdapter
from printerhub.printers.repetier import RepetierAdapter
from printerhub.transport import MqttClientFactory, create_http_client

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Maps printer type keys to adapter instances.

    Args:
        http_client: Session shared by every REST adapter.
        ftp_store: FTPS session store for the Bambu adapter.
        mqtt_factory: Builds Bambu MQTT clients.  Defaults to a factory
            configured from *settings*.
        settings: Timeouts and TLS options.  Defaults to :class:`Settings`.
    """

    def __init__(
        self,
        http_client: requests.Session,
        ftp_store: BambuFtpStore,
        *,
        mqtt_factory: Optional[MqttClientFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or Settings()
        if mqtt_factory is None:
            mqtt_factory = MqttClientFactory(
                connect_timeout=settings.mqtt_connect_timeout,
                reconnect_period=settings.mqtt_reconnect_period,
                keepalive=settings.mqtt_keepalive,
                verify_tls=settings.verify_tls,
                ca_file=settings.ca_file,
            )

        adapters: List[PrinterAdapter] = [
            OctoPrintAdapter(http_client),
            KlipperAdapter(http_client),
            DuetAdapter(http_client),
            RepetierAdapter(http_client),
            BambuAdapter(
                ftp_store,
                MqttConnectionManager(mqtt_factory),
                publish_timeout=settings.publish_timeout,
                status_wait=settings.status_wait,
            ),
            PrusaAdapter(http_client),
            CrealityAdapter(http_client),
        ]
        self._adapters: Dict[str, PrinterAdapter] = {a.name: a for a in adapters}

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdapterRegistry":
        """Build the registry and its collaborators from *settings*."""
        return cls(
            create_http_client(settings.http_timeout, verify_tls=settings.verify_tls),
            BambuFtpStore(
                timeout=settings.http_timeout,
                verify_tls=settings.verify_tls,
                ca_file=settings.ca_file,
            ),
            settings=settings,
        )

    @property
    def types(self) -> List[str]:
        """Sorted list of the supported printer type keys."""
        return sorted(self._adapters)

    def __contains__(self, printer_type: object) -> bool:
        return isinstance(printer_type, str) and printer_type.strip().lower() in self._adapters

    def resolve(self, printer_type: str) -> PrinterAdapter:
        """Return the adapter for *printer_type* (case-insensitive).

        Raises:
            UnsupportedPrinterTypeError: If no adapter handles the type.  The
                message carries the caller's original spelling.
        """
        adapter = self._adapters.get((printer_type or "").strip().lower())
        if adapter is None:
            raise UnsupportedPrinterTypeError(printer_type)
        return adapter

    def teardown_all(self) -> None:
        """Call ``disconnect()`` on every adapter.

        A failing adapter is logged and skipped so its siblings are still
        torn down.
        """
        for name, adapter in self._adapters.items():
            try:
                adapter.disconnect()
            except Exception as exc:
                logger.error("Error disconnecting %s adapter: %s", name, exc)
        logger.debug("All adapters torn down")
