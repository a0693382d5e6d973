"""Detector image with its beam description and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from sfx_reduce.errors import GeometryError

from .crystal import Crystal
from .detector import Detector
from .reflections import FeatureList


@dataclass(eq=False)
class Image:
    """Pixel data for every panel of *detector*.

    ``data[i]`` and the optional ``flags[i]`` have shape ``(h, w)`` of panel
    ``i`` and are indexed ``[ss, fs]``. A non-zero flag marks a bad pixel.
    """

    detector: Detector
    data: Sequence[np.ndarray]
    wavelength: float
    bandwidth: float = 1.0e-5
    flags: Sequence[np.ndarray] | None = None
    features: FeatureList = field(default_factory=FeatureList)
    crystals: list[Crystal] = field(default_factory=list)
    n_saturated: int = 0
    filename: str | None = None

    def __post_init__(self) -> None:
        self.data = [np.asarray(d, dtype=np.float64) for d in self.data]
        if len(self.data) != len(self.detector):
            raise GeometryError(
                f"image has {len(self.data)} panels, detector has {len(self.detector)}"
            )
        for panel, arr in zip(self.detector, self.data):
            if arr.shape != (panel.h, panel.w):
                raise GeometryError(
                    f"data for panel {panel.name!r} has shape {arr.shape}, "
                    f"expected {(panel.h, panel.w)}"
                )
        if self.flags is not None:
            self.flags = [np.asarray(f) for f in self.flags]
        self._bad = [
            self._combine_bad(i) for i in range(len(self.detector))
        ]

    def _combine_bad(self, panel_number: int) -> np.ndarray:
        bad = self.detector.bad[panel_number].copy()
        if self.flags is not None:
            bad |= self.flags[panel_number] != 0
        bad |= ~np.isfinite(self.data[panel_number])
        return bad

    def bad(self, panel_number: int) -> np.ndarray:
        """Combined detector mask and per-image flags for one panel."""
        return self._bad[panel_number]

    def add_crystal(self, crystal: Crystal) -> Crystal:
        crystal.image = self
        self.crystals.append(crystal)
        return crystal
