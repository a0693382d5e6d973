"""Default merge step producing the full-intensity reference list."""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np

from sfx_reduce.errors import CrystalFlag
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.reflections import ReflectionList

logger = logging.getLogger(__name__)


def full_intensity(crystal: Crystal, refl) -> float:
    """Measured intensity of *refl* corrected to a full, unscaled value."""
    s = crystal.cell.resolution(refl.h, refl.k, refl.l)
    return (
        refl.intensity * crystal.osf * refl.lorentz
        * math.exp(crystal.bfac * s * s) / refl.partiality
    )


def merge_intensities(
    crystals: Sequence[Crystal],
    min_measurements: int = 2,
) -> ReflectionList:
    """Average the corrected intensities of all unflagged crystals.

    Only measured reflections (redundancy at least one, positive partiality,
    finite intensity) contribute. Reflections seen fewer than
    *min_measurements* times are left out of the result. The esd is the
    standard error of the mean.
    """
    sums: dict[tuple[int, int, int], list[float]] = {}
    for crystal in crystals:
        if crystal.flag != CrystalFlag.OK or crystal.reflections is None:
            continue
        for refl in crystal.reflections:
            if refl.redundancy < 1 or refl.partiality <= 0.0:
                continue
            if not math.isfinite(refl.intensity):
                continue
            value = full_intensity(crystal, refl)
            if not math.isfinite(value):
                continue
            sums.setdefault(refl.indices, []).append(value)

    merged = ReflectionList()
    for (h, k, l), values in sums.items():
        if len(values) < min_measurements:
            continue
        arr = np.asarray(values)
        refl = merged.new(h, k, l)
        refl.intensity = float(arr.mean())
        refl.esd = float(arr.std(ddof=1) / math.sqrt(len(arr))) if len(arr) > 1 else 0.0
        refl.redundancy = len(arr)

    logger.debug("Merged %d unique reflections from %d crystals", len(merged), len(crystals))
    return merged
