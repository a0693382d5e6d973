"""Exception and status types shared across sfx_reduce."""

from __future__ import annotations

from enum import Enum, IntEnum


class SfxReduceError(Exception):
    """Base class for errors raised by sfx_reduce."""


class GeometryError(SfxReduceError, ValueError):
    """Invalid detector description or degenerate projection."""


class CellError(SfxReduceError, ValueError):
    """A unit cell would become left-handed or lose its volume."""


class ScalingError(SfxReduceError):
    """Raised by callers that require a scale factor to be found."""


class ConfigError(SfxReduceError, TypeError):
    """Malformed configuration payload."""


class RefinementStatus(Enum):
    OK = "ok"
    TOO_FEW_PAIRS = "too few paired peaks"
    NO_POSITIVE_INTENSITY = "no paired peak has positive intensity"
    SOLVE_FAILED = "normal equations could not be solved"
    ERROR = "refinement raised an error"

    @property
    def ok(self) -> bool:
        return self is RefinementStatus.OK


class CrystalFlag(IntEnum):
    """Reason a crystal was excluded from scaling and merging."""

    OK = 0
    FEW_REFLECTIONS = 1
    SOLVE_FAILED = 2

    def describe(self) -> str:
        return _FLAG_TEXT[self]


_FLAG_TEXT = {
    CrystalFlag.OK: "OK",
    CrystalFlag.FEW_REFLECTIONS: "not enough reflections",
    CrystalFlag.SOLVE_FAILED: "solve failed",
}


class IntegrationStatus(IntEnum):
    """Result code of a single aperture integration."""

    OK = 0
    OFF_PANEL = 1
    BAD_REGION = 2
    NO_BACKGROUND = 3
    NO_SIGNAL = 4
    NEGATIVE_VARIANCE = 5
    MASKED = 6
    SATURATED = 7

    @property
    def ok(self) -> bool:
        return self is IntegrationStatus.OK
