"""Aperture photometry of peaks and predicted reflections.

Three concentric circles around a pixel define the measurement: the signal
is summed inside ``ir_inn`` and the background is estimated from the annulus
between ``ir_mid`` and ``ir_out``. Panel coordinates follow the pixel-centre
convention, so pixel ``i`` spans ``[i, i+1)`` and the returned centroid is
offset by half a pixel from the raw index average.
"""

from __future__ import annotations

import logging
import math
from typing import NamedTuple

import numpy as np
from numba import njit

from sfx_reduce.config.settings import IntegrationSettings
from sfx_reduce.errors import IntegrationStatus
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.image import Image

logger = logging.getLogger(__name__)

# Codes returned by the kernel, mirrored by IntegrationStatus
_OK = 0
_OFF_PANEL = 1
_BAD_REGION = 2
_NO_BACKGROUND = 3
_NO_SIGNAL = 4
_NEGATIVE_VARIANCE = 5

_NO_MASK = np.zeros((0, 0), dtype=np.bool_)


class PeakMeasurement(NamedTuple):
    status: IntegrationStatus
    fs: float
    ss: float
    intensity: float
    sigma: float
    saturated: bool
    peak: float = 0.0
    mean_bg: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is IntegrationStatus.OK


@njit(nogil=True)
def _integrate(data, bad, bg_mask, cfs, css, ir_inn, ir_mid, ir_out,
               gain, use_max_adu, max_adu):
    h, w = data.shape
    has_mask = bg_mask.shape[0] > 0
    saturated = False

    lim_sq = ir_inn * ir_inn
    mid_lim_sq = ir_mid * ir_mid
    out_lim_sq = ir_out * ir_out

    r_out = int(ir_out)
    bg_tot = 0.0
    bg_tot_sq = 0.0
    bg_counts = 0
    for dfs in range(-r_out, r_out + 1):
        for dss in range(-r_out, r_out + 1):
            d_sq = dfs * dfs + dss * dss
            if d_sq > out_lim_sq or d_sq < mid_lim_sq:
                continue
            fs = cfs + dfs
            ss = css + dss
            if fs < 0 or ss < 0 or fs >= w or ss >= h:
                return _OFF_PANEL, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0
            if bad[ss, fs]:
                return _BAD_REGION, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0
            if has_mask and bg_mask[ss, fs]:
                continue
            val = data[ss, fs]
            if use_max_adu and val > max_adu:
                saturated = True
            bg_tot += val
            bg_tot_sq += val * val
            bg_counts += 1

    if bg_counts == 0:
        return _NO_BACKGROUND, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0
    bg_mean = bg_tot / bg_counts
    bg_var = bg_tot_sq / bg_counts - bg_mean * bg_mean

    r_inn = int(ir_inn)
    pk_total = 0.0
    pk_counts = 0
    pk_max = -np.inf
    fsct = 0.0
    ssct = 0.0
    for dfs in range(-r_inn, r_inn + 1):
        for dss in range(-r_inn, r_inn + 1):
            if dfs * dfs + dss * dss > lim_sq:
                continue
            fs = cfs + dfs
            ss = css + dss
            if fs < 0 or ss < 0 or fs >= w or ss >= h:
                return _OFF_PANEL, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0
            if bad[ss, fs]:
                return _BAD_REGION, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0
            val = data[ss, fs] - bg_mean
            if use_max_adu and val > max_adu:
                saturated = True
            if val > pk_max:
                pk_max = val
            pk_counts += 1
            pk_total += val
            fsct += val * fs
            ssct += val * ss

    if pk_counts == 0 or pk_total == 0.0:
        return _NO_SIGNAL, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0

    var = pk_counts * bg_var + gain * pk_total
    if var < 0.0:
        return _NEGATIVE_VARIANCE, 0.0, 0.0, 0.0, 0.0, saturated, 0.0, 0.0

    return (_OK, fsct / pk_total + 0.5, ssct / pk_total + 0.5,
            pk_total, math.sqrt(var), saturated, pk_max, bg_mean)


def integrate_peak(
    image: Image,
    panel_number: int,
    fs: float,
    ss: float,
    ir_inn: float,
    ir_mid: float,
    ir_out: float,
    *,
    use_max_adu: bool = False,
    bg_mask: np.ndarray | None = None,
) -> PeakMeasurement:
    """Integrate around the pixel containing ``(fs, ss)`` on one panel.

    A veto is reported through ``status``; nothing is raised for peaks that
    cannot be measured. ``bg_mask`` marks pixels excluded from the background
    estimate, typically the peak regions of other reflections.
    """
    panel = image.detector[panel_number]
    if panel.no_index:
        return PeakMeasurement(IntegrationStatus.MASKED, fs, ss, 0.0, 0.0, False)
    mask = _NO_MASK if bg_mask is None else np.asarray(bg_mask, dtype=np.bool_)
    status, cfs, css, intensity, sigma, saturated, peak, mean_bg = _integrate(
        image.data[panel_number],
        image.bad(panel_number),
        mask,
        int(math.floor(fs)),
        int(math.floor(ss)),
        float(ir_inn),
        float(ir_mid),
        float(ir_out),
        float(panel.adu_per_photon),
        bool(use_max_adu),
        float(panel.max_adu),
    )
    return PeakMeasurement(
        IntegrationStatus(status), cfs, css, intensity, sigma, bool(saturated),
        peak, mean_bg,
    )


def make_background_mask(
    image: Image, panel_number: int, reflections, ir_inn: float
) -> np.ndarray:
    """Mark the peak regions of *reflections* predicted on one panel."""
    panel = image.detector[panel_number]
    mask = np.zeros((panel.h, panel.w), dtype=np.bool_)
    r = int(ir_inn)
    lim_sq = ir_inn * ir_inn
    offsets = [
        (dfs, dss)
        for dfs in range(-r, r + 1)
        for dss in range(-r, r + 1)
        if dfs * dfs + dss * dss <= lim_sq
    ]
    for refl in reflections:
        if refl.panel != panel_number or not panel.contains(refl.fs, refl.ss):
            continue
        cfs = int(refl.fs)
        css = int(refl.ss)
        for dfs, dss in offsets:
            fs = cfs + dfs
            ss = css + dss
            if 0 <= fs < panel.w and 0 <= ss < panel.h:
                mask[ss, fs] = True
    return mask


def integrate_reflections(
    image: Image,
    crystal: Crystal,
    settings: IntegrationSettings | None = None,
) -> int:
    """Measure every predicted reflection of *crystal* on *image*.

    Reflections are handled from low to high resolution. A successful
    measurement sets intensity, esd and a redundancy of one; anything else
    leaves the reflection with redundancy zero. Returns the number of
    reflections measured.
    """
    settings = settings or IntegrationSettings()
    if crystal.reflections is None:
        return 0

    reflections = sorted(
        crystal.reflections,
        key=lambda r: crystal.cell.resolution(r.h, r.k, r.l),
    )
    masks = [
        make_background_mask(image, i, reflections, settings.ir_inn)
        for i in range(len(image.detector))
    ]

    n_ok = 0
    n_saturated = 0
    rejected: dict[str, int] = {}
    for refl in reflections:
        pfs, pss = refl.fs, refl.ss

        if settings.use_closer:
            feature, distance = image.features.closest(pfs, pss, refl.panel)
            if feature is not None and distance < settings.closer_distance:
                pfs, pss = feature.fs, feature.ss
                refl.fs, refl.ss = pfs, pss

        refl.redundancy = 0
        if refl.panel < 0 or not image.detector[refl.panel].contains(pfs, pss):
            rejected["off_panel"] = rejected.get("off_panel", 0) + 1
            continue

        result = integrate_peak(
            image,
            refl.panel,
            pfs,
            pss,
            settings.ir_inn,
            settings.ir_mid,
            settings.ir_out,
            use_max_adu=True,
            bg_mask=masks[refl.panel],
        )
        status = result.status
        if result.saturated:
            n_saturated += 1
            if not settings.integrate_saturated and status.ok:
                status = IntegrationStatus.SATURATED
        if status.ok and result.sigma > 0.0:
            if result.intensity / result.sigma < settings.min_snr:
                rejected["snr"] = rejected.get("snr", 0) + 1
                continue
        if not status.ok:
            key = status.name.lower()
            rejected[key] = rejected.get(key, 0) + 1
            continue

        refl.intensity = result.intensity
        refl.esd = result.sigma
        refl.peak = result.peak
        refl.mean_bg = result.mean_bg
        refl.redundancy = 1
        n_ok += 1

    image.n_saturated += n_saturated
    logger.debug(
        "Integrated %d of %d reflections (%d saturated), rejections: %s",
        n_ok, len(reflections), n_saturated, rejected,
    )
    return n_ok
