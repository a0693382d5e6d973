"""Agreement between found peaks and a candidate lattice."""

from __future__ import annotations

import numpy as np

from sfx_reduce.model.cell import UnitCell
from sfx_reduce.model.image import Image

MIN_DIST = 0.25


def fractional_indices(image: Image, cell: UnitCell, det_shift=(0.0, 0.0)) -> np.ndarray:
    """Fractional Miller indices of every feature, shape ``(n, 3)``."""
    direct = cell.direct()
    rows = []
    for feature in image.features:
        q = image.detector.transform_coords(
            feature.panel, feature.fs, feature.ss, image.wavelength, *det_shift
        )
        rows.append(direct @ q)
    if not rows:
        return np.zeros((0, 3))
    return np.array(rows)


def peak_lattice_agreement(image: Image, cell: UnitCell) -> tuple[float, float]:
    """Return the fraction of peaks near a lattice point and a closeness sum.

    A peak counts when each of its fractional indices is within 0.25 of an
    integer. The second value sums ``1 - |hkl - round(hkl)|^2`` over those
    peaks.
    """
    frac = fractional_indices(image, cell)
    if frac.shape[0] == 0:
        return 0.0, 0.0
    deviation = frac - np.rint(frac)
    sane = np.all(np.abs(deviation) < MIN_DIST, axis=1)
    stot = float(np.sum(1.0 - np.sum(deviation[sane] ** 2, axis=1)))
    return float(np.count_nonzero(sane)) / frac.shape[0], stot


def peak_sanity_check(image: Image, cell: UnitCell) -> bool:
    """``True`` when at least half of the peaks agree with *cell*."""
    fraction, _ = peak_lattice_agreement(image, cell)
    return fraction >= 0.5
