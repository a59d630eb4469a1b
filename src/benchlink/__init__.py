"""benchlink

Serialized command scheduling and transports for SCPI bench instruments
(multimeters, electronic loads, oscilloscopes) over serial or VISA.

Entry point: `benchlink-diag` (console script) or `python -m benchlink.tools.scpi_diag`.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("benchlink")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
