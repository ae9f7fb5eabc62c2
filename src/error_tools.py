"""
Exception taxonomy for the weathering simulation.

Geometry and synthesis problems are local: they are raised by the component
that detects them, caught by its caller, and recorded as `Issue` entries so a
run can still complete with flagged gaps. Configuration problems are fatal and
stop the driver before any simulation work starts.
"""

from dataclasses import dataclass


class WeatheringError(Exception):
    """Base class for all errors raised by the weathering tools."""


class GeometryError(WeatheringError, ValueError):
    """A triangle or surface query could not be resolved."""

    def __init__(self, message: str, triangle: int | None = None):
        super().__init__(message)
        self.triangle = triangle


class DegenerateGeometry(GeometryError):
    """Triangle with (near) zero area; skipped when building the surface index."""


class OutOfBoundsQuery(GeometryError):
    """Query position could not be projected onto any triangle within tolerance."""

    def __init__(self, message: str, distance: float = float("inf")):
        super().__init__(message)
        self.distance = distance


class ConfigurationError(WeatheringError, ValueError):
    """Invalid simulation configuration; rejected before the run starts."""


class SynthesisError(WeatheringError):
    """Texture synthesis could not map part of the surface."""

    def __init__(self, message: str, triangle: int | None = None):
        super().__init__(message)
        self.triangle = triangle


class UnmappableIsland(SynthesisError):
    """Triangle without usable UV coordinates."""


class SimulationStateError(WeatheringError, RuntimeError):
    """Illegal transition of the simulation state machine."""


@dataclass(frozen=True)
class Issue:
    """
    Absorbed, non-fatal problem recorded during a run.

    Attributes
    ----------
    kind : str
        Name of the error class that was absorbed (e.g. "DegenerateGeometry").
    message : str
        Human readable description.
    triangle : int | None
        Offending triangle index, when known.
    """
    kind: str
    message: str
    triangle: int | None = None

    @classmethod
    def from_error(cls, error: Exception) -> "Issue":
        return cls(type(error).__name__, str(error), getattr(error, "triangle", None))
