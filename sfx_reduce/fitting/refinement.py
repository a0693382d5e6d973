"""Gauss-Newton refinement of the crystal orientation and detector shift.

Eleven parameters are refined together: the nine components of the
reciprocal basis and the detector shift in ``x`` and ``y``. Three residuals
are used per paired peak: the excitation error, weighted by the peak's
normalised intensity, and the ``x`` and ``y`` offsets between prediction
and observation on the detector. Pairing is done once per call; only the
predictions move from cycle to cycle.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from sfx_reduce.config.settings import RefinementSettings
from sfx_reduce.errors import CellError, RefinementStatus
from sfx_reduce.geometry.gradients import (
    DETECTOR,
    PREDICTION_PARAMETERS,
    PredictionState,
    gradient_matrices,
)
from sfx_reduce.geometry.prediction import PredictionBatch, update_predictions
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.detector import Detector
from sfx_reduce.model.image import Image
from sfx_reduce.model.reflections import ReflPeak
from sfx_reduce.parallel import Task, run_threads

from .linalg import NormalEquations
from .pairing import pair_peaks

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    status: RefinementStatus
    n_pairs: int = 0
    initial_residual: float = math.nan
    final_residual: float = math.nan

    @property
    def ok(self) -> bool:
        return self.status.ok


def deviations(pairs: Sequence[ReflPeak], batch: PredictionBatch, detector: Detector):
    """Return ``(r_dev, x_dev, y_dev)`` for pairs matching *batch* row by row.

    Positions are compared without the detector shift, which would appear
    on both sides of the difference.
    """
    x_dev = np.empty(len(pairs))
    y_dev = np.empty(len(pairs))
    for i, rp in enumerate(pairs):
        panel = detector[rp.panel]
        xh, yh = panel.twod_mapping(batch.fs[i], batch.ss[i])
        xpk, ypk = panel.twod_mapping(rp.peak.fs, rp.peak.ss)
        x_dev[i] = xh - xpk
        y_dev[i] = yh - ypk
    return np.array(batch.exerr, dtype=np.float64), x_dev, y_dev


def prediction_residual(
    pairs: Sequence[ReflPeak],
    crystal: Crystal,
    settings: RefinementSettings | None = None,
) -> float:
    """Weighted sum of squared residuals at the crystal's current parameters."""
    settings = settings or RefinementSettings()
    if not pairs:
        return 0.0
    batch = update_predictions(crystal, [rp.refl for rp in pairs])
    r_dev, x_dev, y_dev = deviations(pairs, batch, crystal.image.detector)
    ih = np.array([rp.Ih for rp in pairs])
    return float(
        np.sum(settings.exc_weight * ih * r_dev**2)
        + np.sum(x_dev**2)
        + np.sum(y_dev**2)
    )


def _damping(settings: RefinementSettings) -> np.ndarray:
    return np.array(
        [
            settings.shift_damping if p.group == DETECTOR else settings.cell_damping
            for p in PREDICTION_PARAMETERS
        ]
    )


def _normalise_intensities(pairs: Sequence[ReflPeak]) -> bool:
    max_i = max(rp.peak.intensity for rp in pairs)
    if not max_i > 0.0:
        return False
    for rp in pairs:
        rp.Ih = rp.peak.intensity / max_i if rp.peak.intensity > 0.0 else 0.0
    return True


def _iterate(pairs: Sequence[ReflPeak], crystal: Crystal, settings: RefinementSettings) -> bool:
    """Run one Gauss-Newton cycle on *crystal*, in place."""
    detector = crystal.image.detector
    batch = update_predictions(crystal, [rp.refl for rp in pairs])
    g_r, g_x, g_y = gradient_matrices(batch, detector)
    r_dev, x_dev, y_dev = deviations(pairs, batch, detector)
    ih = np.array([rp.Ih for rp in pairs])

    equations = NormalEquations(len(PREDICTION_PARAMETERS))
    equations.add_many(g_r, r_dev, settings.exc_weight * ih)
    equations.add_many(g_x, x_dev)
    equations.add_many(g_y, y_dev)
    equations.damp(_damping(settings))

    shifts = equations.solve()
    if shifts is None:
        logger.error("Failed to solve refinement equations")
        return False
    shifts[np.isnan(shifts)] = 0.0

    state = PredictionState.from_crystal(crystal)
    for param, shift in zip(PREDICTION_PARAMETERS, shifts):
        param.apply_shift(state, float(shift))
    try:
        state.commit(crystal)
    except CellError as exc:
        logger.error("Refinement step rejected: %s", exc)
        return False
    return True


def refine_prediction(
    image: Image,
    crystal: Crystal,
    settings: RefinementSettings | None = None,
) -> RefinementResult:
    """Refine the cell and detector shift of *crystal* against its peaks.

    The work is done on a copy of the crystal. Cell and shift are written
    back only if every cycle succeeds and re-pairing with the refined model
    still finds enough peaks; otherwise the crystal is left untouched.
    """
    settings = settings or RefinementSettings()
    pairs = pair_peaks(image, crystal, settings=settings)
    if len(pairs) < settings.min_pairs:
        logger.info("Only %d paired peaks, not refining", len(pairs))
        return RefinementResult(RefinementStatus.TOO_FEW_PAIRS, len(pairs))

    if not _normalise_intensities(pairs):
        logger.error("All paired peaks have non-positive intensity")
        return RefinementResult(RefinementStatus.NO_POSITIVE_INTENSITY, len(pairs))

    work = Crystal(
        cell=crystal.cell.copy(),
        image=image,
        profile_radius=crystal.profile_radius,
        det_shift=tuple(crystal.det_shift),
    )

    initial = prediction_residual(pairs, work, settings)
    for _ in range(settings.max_cycles):
        if not _iterate(pairs, work, settings):
            return RefinementResult(
                RefinementStatus.SOLVE_FAILED, len(pairs), initial_residual=initial
            )
    final = prediction_residual(pairs, work, settings)
    crystal.add_note(f"predict_refine/final_residual = {final:e}")
    logger.debug("Prediction residual went from %e to %e", initial, final)

    n_after = len(pair_peaks(image, work, settings=settings))
    if n_after < settings.min_pairs:
        logger.info("Only %d peaks pair after refinement, reverting", n_after)
        return RefinementResult(
            RefinementStatus.TOO_FEW_PAIRS, n_after, initial_residual=initial,
            final_residual=final,
        )

    crystal.cell.set_reciprocal(work.cell.reciprocal)
    crystal.det_shift = work.det_shift
    return RefinementResult(RefinementStatus.OK, len(pairs), initial, final)


def refine_radius(
    image: Image,
    crystal: Crystal,
    settings: RefinementSettings | None = None,
) -> RefinementResult:
    """Set the profile radius from the spread of excitation errors.

    The paired peaks are ordered by excitation error and the radius is the
    magnitude at position ``(n-1) - n//50``, which drops the worst two per
    cent.
    """
    settings = settings or RefinementSettings()
    pairs = pair_peaks(image, crystal, settings=settings)
    n_acc = len(pairs)
    if n_acc < settings.min_radius_pairs:
        return RefinementResult(RefinementStatus.TOO_FEW_PAIRS, n_acc)

    update_predictions(crystal, [rp.refl for rp in pairs], image=image)
    pairs.sort(key=lambda rp: abs(rp.refl.exerr))
    n = max((n_acc - 1) - n_acc // 50, 2)
    crystal.profile_radius = abs(pairs[n].refl.exerr)
    logger.debug("Profile radius set to %e from %d pairs", crystal.profile_radius, n_acc)
    return RefinementResult(RefinementStatus.OK, n_acc)


def refine_all(
    jobs: Sequence[tuple[Image, Crystal]],
    n_threads: int = 1,
    settings: RefinementSettings | None = None,
) -> list[RefinementResult | None]:
    """Refine many crystals in parallel, one task per crystal.

    An entry is ``None`` when its task raised; the error is logged and the
    other crystals are unaffected.
    """
    settings = settings or RefinementSettings()
    counts = {"ok": 0, "failed": 0}

    def work(job: tuple[Image, Crystal]) -> RefinementResult:
        image, crystal = job
        return refine_prediction(image, crystal, settings)

    def done(task: Task) -> None:
        if not task.failed and task.result.ok:
            counts["ok"] += 1
        else:
            counts["failed"] += 1

    tasks = run_threads(n_threads, work, jobs, done, label="refine")
    logger.info("Refinement: %d crystals refined, %d failed", counts["ok"], counts["failed"])
    return [task.result for task in tasks]
