"""Creality adapter.

Creality's networked printers (K1, K1 Max, K1C, Ender-3 V3 with the
Creality OS firmware) run Klipper with a bundled Moonraker instance, so the
wire protocol is the Moonraker one.  The differences are the default port
(Creality OS serves Moonraker on 7125 and Fluidd/Mainsail on 4408) and the
absence of API-key auth on stock firmware; a key, if given, is still sent.
"""

from __future__ import annotations

from printerhub.printers.klipper import KlipperAdapter


class CrealityAdapter(KlipperAdapter):
    """Creality OS backend (Moonraker-compatible REST)."""

    default_port = 7125
    display_name = "Creality"

    @property
    def name(self) -> str:
        return "creality"
