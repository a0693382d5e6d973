"""Gradient-seeded local-maximum peak search."""

from __future__ import annotations

import logging
import math

import numpy as np
from numba import njit

from sfx_reduce.config.settings import PeakSearchSettings
from sfx_reduce.model.image import Image
from sfx_reduce.model.reflections import FeatureList, ImageFeature

from .integration import _NO_MASK, _OK, _integrate, integrate_peak

logger = logging.getLogger(__name__)

# Indices into the rejection counters returned by the kernel
_REJ_DRIFT = 0
_REJ_INTEGRATION = 1
_REJ_OFF_PANEL = 2
_REJ_SNR = 3
_REJ_PROXIMITY = 4
_REJECTION_NAMES = ("drift", "integration", "off_panel", "snr", "proximity")


@njit(nogil=True)
def _search_panel(data, bad, threshold, min_gradient, min_snr,
                  ir_inn, ir_mid, ir_out, gain, max_adu):
    h, w = data.shape
    r_inn = int(ir_inn)
    prox_sq = (2.0 * ir_inn) ** 2

    cap = 256
    found = np.empty((cap, 4), np.float64)
    n = 0
    rejected = np.zeros(5, np.int64)

    for ss in range(1, h - 1):
        for fs in range(1, w - 1):

            val = data[ss, fs]
            if val < threshold:
                continue
            if val > max_adu:
                continue

            dx1 = val - data[ss, fs + 1]
            dx2 = data[ss, fs - 1] - val
            dy1 = val - data[ss + 1, fs]
            dy2 = data[ss - 1, fs] - val
            grad = (dx1 * dx1 + dx2 * dx2) / 2.0 + (dy1 * dy1 + dy2 * dy2) / 2.0
            if grad < min_gradient:
                continue

            # Climb to the local maximum
            mfs = fs
            mss = ss
            drifted = False
            while True:
                best = data[mss, mfs]
                moved = False
                for s_ss in range(max(mss - r_inn, 0), min(mss + r_inn, h - 1) + 1):
                    for s_fs in range(max(mfs - r_inn, 0), min(mfs + r_inn, w - 1) + 1):
                        if data[s_ss, s_fs] > best:
                            best = data[s_ss, s_fs]
                            mfs = s_fs
                            mss = s_ss
                            moved = True
                if (mfs - fs) ** 2 + (mss - ss) ** 2 > ir_inn * ir_inn:
                    drifted = True
                    break
                if not moved:
                    break
            if drifted:
                rejected[_REJ_DRIFT] += 1
                continue

            status, pfs, pss, intensity, sigma, _, _, _ = _integrate(
                data, bad, _NO_MASK, mfs, mss, ir_inn, ir_mid, ir_out,
                gain, False, max_adu,
            )
            if status != _OK:
                rejected[_REJ_INTEGRATION] += 1
                continue

            if pfs < 0.0 or pfs > w or pss < 0.0 or pss > h:
                rejected[_REJ_OFF_PANEL] += 1
                continue

            if sigma > 0.0:
                snr = abs(intensity) / sigma
            else:
                snr = np.inf
            if snr < min_snr:
                rejected[_REJ_SNR] += 1
                continue

            close = False
            for i in range(n):
                if (found[i, 0] - pfs) ** 2 + (found[i, 1] - pss) ** 2 < prox_sq:
                    close = True
                    break
            if close:
                rejected[_REJ_PROXIMITY] += 1
                continue

            if n == cap:
                cap *= 2
                grown = np.empty((cap, 4), np.float64)
                grown[:n] = found[:n]
                found = grown
            found[n, 0] = pfs
            found[n, 1] = pss
            found[n, 2] = intensity
            found[n, 3] = sigma
            n += 1

    return found[:n].copy(), rejected


def search_peaks(image: Image, settings: PeakSearchSettings | None = None) -> FeatureList:
    """Replace the feature list of *image* with freshly found peaks."""
    settings = settings or PeakSearchSettings()
    features = FeatureList()
    totals = np.zeros(len(_REJECTION_NAMES), dtype=np.int64)

    for pn, panel in enumerate(image.detector):
        if panel.no_index:
            continue
        found, rejected = _search_panel(
            image.data[pn],
            image.bad(pn),
            float(settings.threshold),
            float(settings.min_gradient),
            float(settings.min_snr),
            float(settings.ir_inn),
            float(settings.ir_mid),
            float(settings.ir_out),
            float(panel.adu_per_photon),
            math.inf if settings.use_saturated else float(panel.max_adu),
        )
        totals += rejected
        for fs, ss, intensity, sigma in found:
            features.add(ImageFeature(pn, float(fs), float(ss), float(intensity), float(sigma)))

    image.features = features
    n_culled = cull_peaks(image)
    if n_culled:
        logger.warning(
            "%d peaks were removed by bad-row culling; this is rarely wanted", n_culled
        )
    logger.debug(
        "%d peaks accepted; rejected %s",
        len(image.features),
        dict(zip(_REJECTION_NAMES, totals.tolist())),
    )
    return image.features


def _cull_panel(features: list[ImageFeature], direction: str) -> set[int]:
    # Along "fs" the artefact is a row, so peaks share ss, and vice versa
    coords = [f.ss if direction == "fs" else f.fs for f in features]
    doomed: set[int] = set()
    for i, ci in enumerate(coords):
        if i in doomed:
            continue
        members = [j for j, cj in enumerate(coords) if abs(ci - cj) < 2.0]
        if len(members) >= 4:
            doomed.update(members)
    return doomed


def cull_peaks(image: Image) -> int:
    """Remove lines of peaks on panels that declare a bad-row direction."""
    n_removed = 0
    keep: list[ImageFeature] = []
    for pn, panel in enumerate(image.detector):
        on_panel = [f for f in image.features if f.panel == pn]
        if panel.badrow is None:
            keep.extend(on_panel)
            continue
        doomed = _cull_panel(on_panel, panel.badrow)
        n_removed += len(doomed)
        keep.extend(f for i, f in enumerate(on_panel) if i not in doomed)
    if n_removed:
        image.features = FeatureList(keep)
    return n_removed


def validate_peaks(
    image: Image,
    min_snr: float,
    ir_inn: float,
    ir_mid: float,
    ir_out: float,
) -> FeatureList:
    """Re-integrate externally supplied peaks against the current geometry.

    Peaks that fail integration, drift off their panel, fall below
    *min_snr* or crowd an earlier peak are dropped. The image's feature list
    is replaced by the survivors.
    """
    validated = FeatureList()
    rejected = dict.fromkeys(("panel", "integration", "off_panel", "snr", "proximity"), 0)

    for feature in image.features:
        if not 0 <= feature.panel < len(image.detector):
            rejected["panel"] += 1
            continue
        panel = image.detector[feature.panel]
        if not panel.contains(feature.fs, feature.ss):
            rejected["panel"] += 1
            continue

        result = integrate_peak(
            image, feature.panel, feature.fs, feature.ss, ir_inn, ir_mid, ir_out
        )
        if not result.ok:
            rejected["integration"] += 1
            continue
        if not panel.contains(result.fs, result.ss):
            rejected["off_panel"] += 1
            continue
        if result.sigma > 0.0 and abs(result.intensity) / result.sigma < min_snr:
            rejected["snr"] += 1
            continue

        _, distance = validated.closest(result.fs, result.ss, feature.panel)
        if distance < 2.0 * ir_inn:
            rejected["proximity"] += 1
            continue

        validated.add(
            ImageFeature(
                feature.panel, result.fs, result.ss, result.intensity,
                result.sigma, feature.name,
            )
        )

    logger.debug(
        "%d peaks, %d validated, rejected %s", len(image.features), len(validated), rejected
    )
    image.features = validated
    return validated
