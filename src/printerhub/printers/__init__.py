"""Printer adapter package.

Re-exports the public API so consumers can write::

    from printerhub.printers import PrinterAdapter, PrinterState, ...
"""

from __future__ import annotations

from printerhub.printers.bambu import BambuAdapter, BambuPrintOptions
from printerhub.printers.base import (
    InvalidCredentialsError,
    JobProgress,
    PrinterAdapter,
    PrinterConfigError,
    PrinterError,
    PrinterFile,
    PrinterState,
    PrinterStatus,
    PrintResult,
    TransportError,
    UnsupportedOperationError,
    UnsupportedPrinterTypeError,
    UploadResult,
)
from printerhub.printers.creality import CrealityAdapter
from printerhub.printers.duet import DuetAdapter
from printerhub.printers.klipper import KlipperAdapter
from printerhub.printers.octoprint import OctoPrintAdapter
from printerhub.printers.prusa import PrusaAdapter
from printerhub.printers.repetier import RepetierAdapter

__all__ = [
    "BambuAdapter",
    "BambuPrintOptions",
    "CrealityAdapter",
    "DuetAdapter",
    "InvalidCredentialsError",
    "JobProgress",
    "KlipperAdapter",
    "OctoPrintAdapter",
    "PrinterAdapter",
    "PrinterConfigError",
    "PrinterError",
    "PrinterFile",
    "PrinterState",
    "PrinterStatus",
    "PrintResult",
    "PrusaAdapter",
    "RepetierAdapter",
    "TransportError",
    "UnsupportedOperationError",
    "UnsupportedPrinterTypeError",
    "UploadResult",
]
