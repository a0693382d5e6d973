"""Per-crystal scale factor and B-factor refinement against a merged reference.

The model for a partial measurement is::

    log(I_partial) = -log(G) + log(p) - log(L) - B s^2 + log(I_full)

with ``s = 1/2d``. Each crystal is fitted against a reference list that is
rebuilt by the merge step between outer iterations; crystals are fitted in
parallel because they share nothing but the read-only reference.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from sfx_reduce.config.settings import ScalingSettings
from sfx_reduce.errors import CrystalFlag, ScalingError
from sfx_reduce.geometry.gradients import SCALING_PARAMETERS, ScaleState
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.reflections import ReflectionList
from sfx_reduce.parallel import Task, run_threads

from .linalg import NormalEquations
from .merging import merge_intensities

logger = logging.getLogger(__name__)


@dataclass
class ScalingReport:
    n_iterations: int
    residual: float
    converged: bool
    n_reflections: int = 0


def _log_terms(
    crystal: Crystal,
    full: ReflectionList,
    *,
    free: bool,
    skip_free: bool,
    min_redundancy: int,
):
    """Return ``(s, delta)`` arrays for the usable reflections of *crystal*.

    ``delta`` is the observed minus the modelled log intensity.
    """
    s_vals = []
    deltas = []
    if crystal.reflections is None:
        return np.zeros(0), np.zeros(0)

    log_g = math.log(crystal.osf)
    for refl in crystal.reflections:
        if free and not refl.free:
            continue
        if skip_free and refl.free:
            continue
        match = full.find(refl.h, refl.k, refl.l)
        if match is None:
            continue

        i_partial = refl.intensity
        i_full = match.intensity
        p = refl.partiality

        # Strong reflections only, and every log argument must be positive
        if i_partial <= 3.0 * refl.esd:
            continue
        if match.redundancy < min_redundancy:
            continue
        if i_full <= 0.0:
            continue
        if p <= 0.0:
            continue

        s = crystal.cell.resolution(refl.h, refl.k, refl.l)
        fx = -log_g + math.log(p) - math.log(refl.lorentz) - crystal.bfac * s * s + math.log(i_full)
        s_vals.append(s)
        deltas.append(math.log(i_partial) - fx)
    return np.asarray(s_vals), np.asarray(deltas)


def log_residual(
    crystal: Crystal,
    full: ReflectionList,
    free: bool = False,
    settings: ScalingSettings | None = None,
) -> float:
    """Sum of squared log-intensity residuals of *crystal* against *full*.

    With ``free=True`` only held-out reflections are used, which gives the
    cross-validation residual.
    """
    settings = settings or ScalingSettings()
    _, delta = _log_terms(
        crystal, full, free=free, skip_free=False, min_redundancy=settings.min_redundancy
    )
    return float(np.sum(delta * delta))


def scale_iterate(
    crystal: Crystal,
    full: ReflectionList,
    settings: ScalingSettings | None = None,
) -> tuple[float, int]:
    """One least-squares cycle for G and B. Returns ``(max_shift, n_used)``."""
    settings = settings or ScalingSettings()
    s, delta = _log_terms(
        crystal, full, free=False, skip_free=True, min_redundancy=settings.min_redundancy
    )
    nref = len(delta)
    if nref < len(SCALING_PARAMETERS):
        crystal.flag = CrystalFlag.FEW_REFLECTIONS
        return 0.0, nref

    gradients = np.column_stack([p.gradient(s) for p in SCALING_PARAMETERS])
    equations = NormalEquations(len(SCALING_PARAMETERS))
    # delta is observation minus model, the negative of the residual
    equations.add_many(gradients, -delta)

    shifts = equations.solve()
    if shifts is None:
        crystal.flag = CrystalFlag.SOLVE_FAILED
        return 0.0, nref

    state = ScaleState.from_crystal(crystal)
    for param, shift in zip(SCALING_PARAMETERS, shifts):
        param.apply_shift(state, float(shift))
    state.commit(crystal)
    return float(np.max(np.abs(shifts))), nref


def _converged(old: float, new: float, tolerance: float) -> bool:
    return math.isfinite(old) and abs(new - old) <= tolerance * old


def scale_crystal(
    crystal: Crystal,
    full: ReflectionList,
    settings: ScalingSettings | None = None,
) -> int:
    """Iterate G and B of one crystal until the residual settles.

    Returns the number of reflections used in the last cycle.
    """
    settings = settings or ScalingSettings()
    old_dev = log_residual(crystal, full, settings=settings)
    nref = 0
    for _ in range(settings.max_cycles):
        _, nref = scale_iterate(crystal, full, settings)
        dev = log_residual(crystal, full, settings=settings)
        if abs(dev - old_dev) <= settings.convergence * dev:
            break
        old_dev = dev
    return nref


def total_log_r(
    crystals: Sequence[Crystal],
    full: ReflectionList,
    settings: ScalingSettings | None = None,
) -> tuple[float, int]:
    """Summed residual over unflagged crystals and the number included."""
    total = 0.0
    n = 0
    for crystal in crystals:
        if crystal.flag != CrystalFlag.OK:
            continue
        r = log_residual(crystal, full, settings=settings)
        if math.isnan(r):
            continue
        total += r
        n += 1
    return total, n


def scale_all(
    crystals: Sequence[Crystal],
    n_threads: int | None = None,
    merge: Callable[[Sequence[Crystal]], ReflectionList] = merge_intensities,
    settings: ScalingSettings | None = None,
) -> ScalingReport:
    """Scale every crystal, re-merging the reference between iterations.

    Stops when the global residual changes by less than the configured
    fraction or after the iteration cap, which is logged but not an error.
    """
    settings = settings or ScalingSettings()
    if n_threads is None:
        n_threads = settings.n_threads
    new_res = math.inf
    niter = 0
    converged = False
    n_total = 0

    while True:
        full = merge(crystals)
        old_res = new_res
        bef_res, _ = total_log_r(crystals, full, settings)

        progress = {"done": 0, "reflections": 0}

        def work(crystal: Crystal) -> int:
            return scale_crystal(crystal, full, settings)

        def done(task: Task) -> None:
            progress["done"] += 1
            if task.failed:
                task.item.flag = CrystalFlag.SOLVE_FAILED
                return
            progress["reflections"] += task.result

        run_threads(n_threads, work, crystals, done, label="scale")
        n_total = progress["reflections"]
        logger.info("%d reflections went into the scaling", n_total)

        new_res, ninc = total_log_r(crystals, full, settings)
        logger.info(
            "Log residual went from %e to %e, %d crystals", bef_res, new_res, ninc
        )
        if crystals:
            mean_b = sum(c.bfac for c in crystals) / len(crystals)
            logger.info("Mean B = %e", mean_b)

        niter += 1
        if _converged(old_res, new_res, settings.convergence):
            converged = True
            break
        if niter >= settings.max_outer_cycles:
            logger.warning("Too many scaling iterations, giving up after %d", niter)
            break

    return ScalingReport(niter, new_res, converged, n_total)


def linear_scale(list1: ReflectionList, list2: ReflectionList) -> float | None:
    """Factor ``G`` by which *list2* should be multiplied to fit *list1*.

    Weighted least squares through the origin of ``I1`` against
    ``I2/partiality`` with the partiality as weight. Returns ``None`` with
    fewer than two usable pairs or when the fit is not finite.
    """
    x = []
    y = []
    w = []
    n_seen = 0
    for refl1 in list1:
        n_seen += 1
        refl2 = list2.find(refl1.h, refl1.k, refl1.l)
        if refl2 is None:
            continue
        ih1 = refl1.intensity
        ih2 = refl2.intensity
        if not (math.isfinite(ih1) and math.isfinite(ih2)):
            continue
        if ih1 <= 0.0 or ih2 <= 0.0:
            continue
        if refl2.partiality <= 0.0:
            continue
        x.append(ih2 / refl2.partiality)
        y.append(ih1)
        w.append(refl2.partiality)

    if len(x) < 2:
        logger.error(
            "Not enough reflections for scaling (had %d, but %d remain)", n_seen, len(x)
        )
        return None

    x_arr = np.asarray(x)
    y_arr = np.asarray(y)
    w_arr = np.asarray(w)
    with np.errstate(divide="ignore", invalid="ignore"):
        g = float(np.sum(w_arr * x_arr * y_arr) / np.sum(w_arr * x_arr * x_arr))
    if not math.isfinite(g):
        logger.error("Scaling gave a non-finite factor (%d pairs)", len(x))
        return None
    return g


def scale_all_to_reference(
    crystals: Sequence[Crystal], reference: ReflectionList, *, strict: bool = False
) -> int:
    """Linear-scale each crystal to *reference* and reset its B-factor.

    Returns how many crystals were scaled. With ``strict`` a crystal that
    cannot be scaled raises :class:`ScalingError` instead of being skipped.
    """
    n_scaled = 0
    for i, crystal in enumerate(crystals):
        g = None
        if crystal.reflections is not None:
            g = linear_scale(reference, crystal.reflections)
        if g is None:
            if strict:
                raise ScalingError(f"Scaling failed for crystal {i}")
            logger.error("Scaling failed for crystal %d", i)
            continue
        crystal.osf = g
        crystal.bfac = 0.0
        n_scaled += 1
    return n_scaled
