"""Association of observed peaks with predicted reflections."""

from __future__ import annotations

import logging

import numpy as np

from sfx_reduce.config.settings import RefinementSettings
from sfx_reduce.geometry.prediction import update_predictions
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.image import Image
from sfx_reduce.model.reflections import Reflection, ReflPeak

logger = logging.getLogger(__name__)

# Excitation-error floor of the outlier trend line, m^-1
OUTLIER_OFFSET = 0.001e9


def check_outlier_transition(pairs: list[ReflPeak]) -> int:
    """Sort *pairs* by excitation error and return how many to keep.

    Walking the sorted errors, the first position ``i`` beyond which every
    later error stays above the line ``OUTLIER_OFFSET + (|e_i|/i) * j`` marks
    the start of the outliers. Without such a knee all pairs are kept.
    """
    n = len(pairs)
    if n < 3:
        return n

    pairs.sort(key=lambda rp: abs(rp.refl.exerr))
    errors = np.array([abs(rp.refl.exerr) for rp in pairs])

    for i in range(1, n - 1):
        grad = errors[i] / i
        j = np.arange(i + 1, n)
        if np.all(errors[i + 1 :] >= OUTLIER_OFFSET + grad * j):
            logger.debug("Outlier transition found at %d / %d", i, n)
            return i
    return n


def pair_peaks(
    image: Image,
    crystal: Crystal,
    reject_outliers: bool = True,
    settings: RefinementSettings | None = None,
) -> list[ReflPeak]:
    """Pair every feature of *image* with the nearest reflection of *crystal*.

    Indices come from rounding the fractional indices of each peak, so no
    full prediction is needed. A pairing survives when the predicted and
    observed positions, both taken to reciprocal space, lie closer than a
    third of the shortest reciprocal lattice vector.
    """
    settings = settings or RefinementSettings()
    direct = crystal.cell.direct()
    dx, dy = crystal.det_shift
    detector = image.detector

    candidates: list[ReflPeak] = []
    n_origin = 0
    n_large = 0
    for i, feature in enumerate(image.features):
        q = detector.transform_coords(
            feature.panel, feature.fs, feature.ss, image.wavelength, dx, dy
        )
        h, k, l = (int(v) for v in np.rint(direct @ q))

        if h == 0 and k == 0 and l == 0:
            n_origin += 1
            continue
        if max(abs(h), abs(k), abs(l)) >= settings.max_index:
            n_large += 1
            logger.warning(
                "Peak %d (panel %s at %.2f,%.2f) has indices too large for "
                "pairing (%d %d %d)",
                i, detector[feature.panel].name, feature.fs, feature.ss, h, k, l,
            )
            continue

        # The prediction need not land on this panel, only its distance
        # from the peak matters
        refl = Reflection(h, k, l, panel=feature.panel)
        candidates.append(ReflPeak(refl=refl, peak=feature, panel=feature.panel))

    if not candidates:
        return []

    update_predictions(crystal, [rp.refl for rp in candidates], image=image)
    limit = crystal.cell.lowest_reflection() / 3.0

    accepted: list[ReflPeak] = []
    for rp in candidates:
        refl_r = detector.transform_coords(
            rp.panel, rp.refl.fs, rp.refl.ss, image.wavelength, dx, dy
        )
        peak_r = detector.transform_coords(
            rp.panel, rp.peak.fs, rp.peak.ss, image.wavelength, dx, dy
        )
        if np.linalg.norm(refl_r - peak_r) > limit:
            continue
        accepted.append(rp)

    n_final = check_outlier_transition(accepted) if reject_outliers else len(accepted)
    logger.debug(
        "Paired %d of %d peaks (%d origin, %d too large, %d too far, %d outliers)",
        n_final,
        len(image.features),
        n_origin,
        n_large,
        len(candidates) - len(accepted),
        len(accepted) - n_final,
    )
    return accepted[:n_final]
