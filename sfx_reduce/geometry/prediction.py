"""Ewald-shell spot prediction.

A reciprocal lattice point ``q`` is tested against two Ewald spheres bounding
the spectral bandwidth. With wavenumbers ``klow = 1/(lambda - lambda*bw/2)``
and ``khigh = 1/(lambda + lambda*bw/2)`` the signed excitation errors are::

    rlow  = klow  - |q + klow  z|
    rhigh = khigh - |q + khigh z|

The point is predicted when it lies between the spheres (the errors differ
in sign) or when either error is smaller than the profile cutoff. The
diffracted ray ``kout = q + kcen z`` is then intersected with every panel
plane and the reflection is kept only when exactly one panel is hit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from numba import njit

from sfx_reduce.config.settings import PredictionSettings
from sfx_reduce.errors import GeometryError
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.detector import Detector
from sfx_reduce.model.reflections import Reflection, ReflectionList

logger = logging.getLogger(__name__)

_DEFAULT_SETTINGS = PredictionSettings()


def ewald_wavenumbers(wavelength: float, bandwidth: float) -> tuple[float, float, float]:
    """Return ``(klow, kcen, khigh)`` for the given beam.

    ``klow`` belongs to the short-wavelength edge of the spectrum and is the
    larger wavenumber.
    """
    klow = 1.0 / (wavelength - wavelength * bandwidth / 2.0)
    kcen = 1.0 / wavelength
    khigh = 1.0 / (wavelength + wavelength * bandwidth / 2.0)
    return klow, kcen, khigh


def panel_arrays(detector: Detector, det_shift=(0.0, 0.0)):
    """Stack panel planes as ``(origins, us, vs, widths, heights)`` arrays."""
    dx, dy = det_shift
    origins = np.empty((len(detector), 3))
    us = np.empty((len(detector), 3))
    vs = np.empty((len(detector), 3))
    widths = np.empty(len(detector))
    heights = np.empty(len(detector))
    for i, panel in enumerate(detector):
        origins[i], us[i], vs[i] = panel.plane(dx, dy)
        widths[i] = panel.w
        heights[i] = panel.h
    return origins, us, vs, widths, heights


@njit(nogil=True)
def _triple(ax, ay, az, bx, by, bz, cx, cy, cz):
    # a . (b x c), the determinant of the matrix with columns a, b, c
    return ax * (by * cz - bz * cy) + ay * (bz * cx - bx * cz) + az * (bx * cy - by * cx)


@njit(nogil=True)
def _locate(kx, ky, kz, origins, us, vs, widths, heights):
    found = -1
    nfound = 0
    best_fs = 0.0
    best_ss = 0.0
    for p in range(origins.shape[0]):
        ux, uy, uz = us[p, 0], us[p, 1], us[p, 2]
        vx, vy, vz = vs[p, 0], vs[p, 1], vs[p, 2]
        cx, cy, cz = origins[p, 0], origins[p, 1], origins[p, 2]

        # fs*u + ss*v - t*kout = -origin
        det = _triple(ux, uy, uz, vx, vy, vz, -kx, -ky, -kz)
        if det == 0.0:
            continue
        fs = _triple(-cx, -cy, -cz, vx, vy, vz, -kx, -ky, -kz) / det
        ss = _triple(ux, uy, uz, -cx, -cy, -cz, -kx, -ky, -kz) / det
        t = _triple(ux, uy, uz, vx, vy, vz, -cx, -cy, -cz) / det
        if t <= 0.0:
            continue
        if fs < 0.0 or fs > widths[p] or ss < 0.0 or ss > heights[p]:
            continue
        nfound += 1
        found = p
        best_fs = fs
        best_ss = ss

    if nfound != 1:
        return -1, 0.0, 0.0
    return found, best_fs, best_ss


@njit(nogil=True)
def _enumerate_reflections(recip, origins, us, vs, widths, heights,
                           klow, kcen, khigh, mres, cutoff):
    asx, asy, asz = recip[0, 0], recip[0, 1], recip[0, 2]
    bsx, bsy, bsz = recip[1, 0], recip[1, 1], recip[1, 2]
    csx, csy, csz = recip[2, 0], recip[2, 1], recip[2, 2]

    hmax = int(mres / math.sqrt(asx * asx + asy * asy + asz * asz))
    kmax = int(mres / math.sqrt(bsx * bsx + bsy * bsy + bsz * bsz))
    lmax = int(mres / math.sqrt(csx * csx + csy * csy + csz * csz))

    cap = 1024
    hkl = np.empty((cap, 3), np.int64)
    panels = np.empty(cap, np.int64)
    vals = np.empty((cap, 4), np.float64)
    n = 0

    for h in range(-hmax, hmax + 1):
        for k in range(-kmax, kmax + 1):
            for l in range(-lmax, lmax + 1):

                if h == 0 and k == 0 and l == 0:
                    continue

                xl = h * asx + k * bsx + l * csx
                yl = h * asy + k * bsy + l * csy
                zl = h * asz + k * bsz + l * csz

                # Forward hemisphere is unreachable
                if zl > cutoff:
                    continue
                if xl * xl + yl * yl + zl * zl > mres * mres:
                    continue

                rlow = klow - math.sqrt(xl * xl + yl * yl + (zl + klow) ** 2)
                rhigh = khigh - math.sqrt(xl * xl + yl * yl + (zl + khigh) ** 2)

                inside = rlow * rhigh < 0.0
                close = abs(rlow) < cutoff or abs(rhigh) < cutoff
                if not inside and not close:
                    continue

                p, fs, ss = _locate(xl, yl, zl + kcen, origins, us, vs,
                                    widths, heights)
                if p < 0:
                    continue

                if n == cap:
                    cap *= 2
                    new_hkl = np.empty((cap, 3), np.int64)
                    new_panels = np.empty(cap, np.int64)
                    new_vals = np.empty((cap, 4), np.float64)
                    new_hkl[:n] = hkl[:n]
                    new_panels[:n] = panels[:n]
                    new_vals[:n] = vals[:n]
                    hkl = new_hkl
                    panels = new_panels
                    vals = new_vals

                hkl[n, 0] = h
                hkl[n, 1] = k
                hkl[n, 2] = l
                panels[n] = p
                vals[n, 0] = fs
                vals[n, 1] = ss
                vals[n, 2] = rlow
                vals[n, 3] = rhigh
                n += 1

    return hkl[:n].copy(), panels[:n].copy(), vals[:n].copy()


def excitation_terms(rlow, rhigh, cutoff: float):
    """Clamp the shell errors and form the residual excitation error.

    Returns ``(clamp_low, clamp_high, exerr)`` where the clamp arrays hold
    ``-1``, ``0`` or ``+1`` for errors below, within or above ``cutoff``.
    """
    rlow = np.asarray(rlow, dtype=np.float64)
    rhigh = np.asarray(rhigh, dtype=np.float64)
    clamp_low = np.where(rlow > cutoff, 1, np.where(rlow < -cutoff, -1, 0))
    clamp_high = np.where(rhigh > cutoff, 1, np.where(rhigh < -cutoff, -1, 0))
    exerr = 0.5 * (np.clip(rlow, -cutoff, cutoff) + np.clip(rhigh, -cutoff, cutoff))
    return clamp_low, clamp_high, exerr


def _sphere_fraction(r, radius):
    q = (np.clip(r, -radius, radius) + radius) / (2.0 * radius)
    return 3.0 * q * q - 2.0 * q * q * q


def sphere_partiality(rlow, rhigh, radius: float):
    """Fraction of a spherical reflection volume between the two spheres."""
    rlow = np.asarray(rlow, dtype=np.float64)
    rhigh = np.asarray(rhigh, dtype=np.float64)
    if radius <= 0.0:
        return np.where(rlow * rhigh <= 0.0, 1.0, 0.0)
    return _sphere_fraction(rlow, radius) - _sphere_fraction(rhigh, radius)


def _sphere_fraction_slope(r, radius):
    inside = np.abs(r) < radius
    q = (np.clip(r, -radius, radius) + radius) / (2.0 * radius)
    return np.where(inside, 6.0 * q * (1.0 - q) / (2.0 * radius), 0.0)


def sphere_partiality_gradient(rlow, rhigh, radius: float):
    """Return ``(dp/drlow, dp/drhigh)`` of :func:`sphere_partiality`."""
    rlow = np.asarray(rlow, dtype=np.float64)
    rhigh = np.asarray(rhigh, dtype=np.float64)
    if radius <= 0.0:
        return np.zeros_like(rlow), np.zeros_like(rhigh)
    return _sphere_fraction_slope(rlow, radius), -_sphere_fraction_slope(rhigh, radius)


@dataclass
class PredictionBatch:
    """Vectorised predictions for a fixed set of Miller indices.

    ``ainv`` holds, per reflection, the inverse of the projection matrix
    ``[u v -kout]`` and ``t`` the ray parameter at the panel plane. Both are
    what the positional gradients need.
    """

    hkl: np.ndarray
    panel: np.ndarray
    q: np.ndarray
    fs: np.ndarray
    ss: np.ndarray
    t: np.ndarray
    ainv: np.ndarray
    klow: float
    khigh: float
    rlow: np.ndarray
    rhigh: np.ndarray
    clamp_low: np.ndarray
    clamp_high: np.ndarray
    exerr: np.ndarray

    def __len__(self) -> int:
        return int(self.hkl.shape[0])

    def positions(self, detector: Detector):
        """Laboratory ``(x, y)`` in metres of each prediction, without shift."""
        x = np.empty(len(self))
        y = np.empty(len(self))
        for i in range(len(self)):
            x[i], y[i] = detector[int(self.panel[i])].twod_mapping(self.fs[i], self.ss[i])
        return x, y


def project_reflections(
    reciprocal: np.ndarray,
    detector: Detector,
    hkl,
    panels,
    wavelength: float,
    bandwidth: float,
    det_shift=(0.0, 0.0),
    cutoff: float = _DEFAULT_SETTINGS.profile_cutoff,
) -> PredictionBatch:
    """Project fixed Miller indices onto the given panel planes.

    No bounds check is made, so a reflection keeps its panel even when its
    prediction has moved off the edge.
    """
    hkl = np.asarray(hkl, dtype=np.int64).reshape(-1, 3)
    panels = np.asarray(panels, dtype=np.int64).reshape(-1)
    klow, kcen, khigh = ewald_wavenumbers(wavelength, bandwidth)

    q = hkl.astype(np.float64) @ np.asarray(reciprocal, dtype=np.float64)
    kout = q.copy()
    kout[:, 2] += kcen

    origins, us, vs, _, _ = panel_arrays(detector, det_shift)
    a = np.empty((hkl.shape[0], 3, 3))
    a[:, :, 0] = us[panels]
    a[:, :, 1] = vs[panels]
    a[:, :, 2] = -kout
    try:
        ainv = np.linalg.inv(a) if hkl.shape[0] else np.empty((0, 3, 3))
    except np.linalg.LinAlgError as exc:
        raise GeometryError("diffracted ray is parallel to its panel") from exc
    z = np.einsum("nij,nj->ni", ainv, -origins[panels])

    qlow = q.copy()
    qlow[:, 2] += klow
    qhigh = q.copy()
    qhigh[:, 2] += khigh
    rlow = klow - np.linalg.norm(qlow, axis=1)
    rhigh = khigh - np.linalg.norm(qhigh, axis=1)
    clamp_low, clamp_high, exerr = excitation_terms(rlow, rhigh, cutoff)

    return PredictionBatch(
        hkl=hkl,
        panel=panels,
        q=q,
        fs=z[:, 0],
        ss=z[:, 1],
        t=z[:, 2],
        ainv=ainv,
        klow=klow,
        khigh=khigh,
        rlow=rlow,
        rhigh=rhigh,
        clamp_low=clamp_low,
        clamp_high=clamp_high,
        exerr=exerr,
    )


def _require_image(crystal: Crystal):
    if crystal.image is None:
        raise GeometryError("crystal is not attached to an image")
    return crystal.image


def _store(refl: Reflection, batch: PredictionBatch, i: int, partiality: float) -> None:
    refl.panel = int(batch.panel[i])
    refl.fs = float(batch.fs[i])
    refl.ss = float(batch.ss[i])
    refl.rlow = float(batch.rlow[i])
    refl.rhigh = float(batch.rhigh[i])
    refl.clamp_low = int(batch.clamp_low[i])
    refl.clamp_high = int(batch.clamp_high[i])
    refl.exerr = float(batch.exerr[i])
    refl.partiality = partiality
    refl.lorentz = 1.0


def predict_to_res(
    crystal: Crystal,
    max_res: float | None = None,
    settings: PredictionSettings | None = None,
) -> ReflectionList:
    """Predict every reflection of *crystal* out to ``|q| <= max_res``.

    Without *max_res* the highest resolution reachable on the detector is
    used.
    """
    settings = settings or _DEFAULT_SETTINGS
    image = _require_image(crystal)
    detector = image.detector
    if max_res is None:
        max_res = detector.max_resolution(image.wavelength) or settings.max_resolution

    klow, kcen, khigh = ewald_wavenumbers(image.wavelength, image.bandwidth)
    origins, us, vs, widths, heights = panel_arrays(detector, crystal.det_shift)
    hkl, panels, vals = _enumerate_reflections(
        np.array(crystal.cell.reciprocal, dtype=np.float64),
        origins, us, vs, widths, heights,
        klow, kcen, khigh, float(max_res), float(settings.profile_cutoff),
    )

    clamp_low, clamp_high, exerr = excitation_terms(
        vals[:, 2], vals[:, 3], settings.profile_cutoff
    )
    partiality = sphere_partiality(vals[:, 2], vals[:, 3], crystal.profile_radius)

    reflections = ReflectionList()
    for i in range(hkl.shape[0]):
        refl = reflections.new(hkl[i, 0], hkl[i, 1], hkl[i, 2])
        refl.panel = int(panels[i])
        refl.fs = float(vals[i, 0])
        refl.ss = float(vals[i, 1])
        refl.rlow = float(vals[i, 2])
        refl.rhigh = float(vals[i, 3])
        refl.clamp_low = int(clamp_low[i])
        refl.clamp_high = int(clamp_high[i])
        refl.exerr = float(exerr[i])
        refl.partiality = float(partiality[i])
        refl.lorentz = 1.0

    logger.debug(
        "Predicted %d reflections to %.3e m^-1", len(reflections), max_res
    )
    return reflections


def update_predictions(
    crystal: Crystal,
    reflections=None,
    settings: PredictionSettings | None = None,
    image=None,
) -> PredictionBatch:
    """Recompute positions and excitation errors of existing reflections.

    Works on *reflections* (any iterable of :class:`Reflection`) or on the
    crystal's own list. Each reflection keeps its current panel. *image*
    defaults to the crystal's parent image.
    """
    settings = settings or _DEFAULT_SETTINGS
    if image is None:
        image = _require_image(crystal)
    if reflections is None:
        reflections = crystal.reflections if crystal.reflections is not None else ()
    reflections = list(reflections)

    hkl = np.array([r.indices for r in reflections], dtype=np.int64).reshape(-1, 3)
    panels = np.array([r.panel for r in reflections], dtype=np.int64)
    batch = project_reflections(
        crystal.cell.reciprocal,
        image.detector,
        hkl,
        panels,
        image.wavelength,
        image.bandwidth,
        crystal.det_shift,
        settings.profile_cutoff,
    )
    partiality = sphere_partiality(batch.rlow, batch.rhigh, crystal.profile_radius)
    for i, refl in enumerate(reflections):
        _store(refl, batch, i, float(partiality[i]))
    return batch
