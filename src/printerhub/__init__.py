"""printerhub: a uniform adapter layer over 3D printer firmware APIs.

Each supported firmware (OctoPrint, Klipper/Moonraker, Duet, Repetier,
PrusaLink, Creality and Bambu Lab) is wrapped by an adapter exposing the
same set of operations.  Adapters are looked up by printer type through
:class:`printerhub.registry.AdapterRegistry`.
"""

__version__ = "0.1.0"
