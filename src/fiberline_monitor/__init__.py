"""Fiberline Monitor - real-time telemetry fan-out for a carbon-fiber line."""

__version__ = "1.0.0"

from .config import Config
from .simulator import Simulator

__all__ = ["Simulator", "Config", "__version__"]
