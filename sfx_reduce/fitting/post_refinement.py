"""Post-refinement of crystal orientation against merged intensities.

After a first merge, the partiality of each measured reflection can be
predicted from the crystal orientation and compared with the fraction of
the merged intensity actually recorded. Two small rotations, about the
laboratory ``x`` and ``y`` axes, are refined per crystal by minimising::

    sum  w * (I_partial - I_full * p * exp(-B s^2) / (G L))^2

with ``w = (s/1e9)^2 / esd^2``. Reflections flagged as free are left out of
the fit; their residual decides whether the new orientation is kept.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from sfx_reduce.config.settings import PostRefinementSettings, PredictionSettings
from sfx_reduce.errors import CrystalFlag
from sfx_reduce.geometry.gradients import ORIENTATION_PARAMETERS, PredictionState
from sfx_reduce.geometry.prediction import (
    project_reflections,
    sphere_partiality,
    sphere_partiality_gradient,
    update_predictions,
)
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.reflections import ReflectionList
from sfx_reduce.parallel import Task, run_threads

from .linalg import NormalEquations

logger = logging.getLogger(__name__)

_CUTOFF = PredictionSettings().profile_cutoff


@dataclass
class PostRefinementResult:
    refined: bool
    n_used: int = 0
    n_cycles: int = 0
    initial_residual: float = math.nan
    final_residual: float = math.nan
    free_initial: float = math.nan
    free_final: float = math.nan


@dataclass
class _Observations:
    hkl: np.ndarray
    panels: np.ndarray
    intensity: np.ndarray
    weight: np.ndarray
    # Model intensity divided by partiality
    full: np.ndarray

    def __len__(self) -> int:
        return len(self.intensity)


def _observations(
    crystal: Crystal,
    full: ReflectionList,
    settings: PostRefinementSettings,
    *,
    free: bool,
) -> _Observations:
    """Collect the reflections of *crystal* usable against *full*.

    With ``free=True`` only held-out reflections are returned, otherwise
    only the ones that are not held out.
    """
    rows = []
    for refl in crystal.reflections or ():
        if refl.free != free:
            continue
        match = full.find(refl.h, refl.k, refl.l)
        if match is None or match.redundancy < settings.min_redundancy:
            continue
        if refl.redundancy < 1 or refl.esd <= 0.0:
            continue
        if refl.intensity < 3.0 * refl.esd:
            continue
        s = crystal.cell.resolution(refl.h, refl.k, refl.l)
        scale = match.intensity * math.exp(-crystal.bfac * s * s) / (crystal.osf * refl.lorentz)
        weight = (s / 1e9) ** 2 / (refl.esd * refl.esd)
        rows.append((refl.h, refl.k, refl.l, refl.panel, refl.intensity, weight, scale))

    if not rows:
        empty = np.zeros(0)
        return _Observations(np.zeros((0, 3), dtype=np.int64),
                             np.zeros(0, dtype=np.int64), empty, empty, empty)
    table = np.array(rows, dtype=np.float64)
    return _Observations(
        hkl=table[:, :3].astype(np.int64),
        panels=table[:, 3].astype(np.int64),
        intensity=table[:, 4],
        weight=table[:, 5],
        full=table[:, 6],
    )


def _project(crystal: Crystal, state: PredictionState, obs: _Observations):
    image = crystal.image
    return project_reflections(
        state.reciprocal,
        image.detector,
        obs.hkl,
        obs.panels,
        image.wavelength,
        image.bandwidth,
        tuple(state.det_shift),
        _CUTOFF,
    )


def _residual(crystal: Crystal, state: PredictionState, obs: _Observations) -> float:
    if not len(obs):
        return math.nan
    batch = _project(crystal, state, obs)
    p = sphere_partiality(batch.rlow, batch.rhigh, crystal.profile_radius)
    dev = obs.intensity - obs.full * p
    return float(np.sum(obs.weight * dev * dev))


def intensity_residual(
    crystal: Crystal,
    full: ReflectionList,
    free: bool = False,
    settings: PostRefinementSettings | None = None,
) -> float:
    """Weighted intensity residual of *crystal* at its current orientation.

    NaN when no reflection qualifies.
    """
    settings = settings or PostRefinementSettings()
    obs = _observations(crystal, full, settings, free=free)
    return _residual(crystal, PredictionState.from_crystal(crystal), obs)


def _iterate(crystal: Crystal, state: PredictionState, obs: _Observations):
    """One Gauss-Newton step for the orientation. Returns the shifts or None."""
    batch = _project(crystal, state, obs)
    radius = crystal.profile_radius
    p = sphere_partiality(batch.rlow, batch.rhigh, radius)
    dp_low, dp_high = sphere_partiality_gradient(batch.rlow, batch.rhigh, radius)

    gradients = np.empty((len(obs), len(ORIENTATION_PARAMETERS)))
    for j, param in enumerate(ORIENTATION_PARAMETERS):
        d_low, d_high = param.gradient(batch)
        gradients[:, j] = obs.full * (dp_low * d_low + dp_high * d_high)

    equations = NormalEquations(len(ORIENTATION_PARAMETERS))
    equations.add_many(gradients, obs.full * p - obs.intensity, obs.weight)
    return equations.solve()


def pr_refine(
    crystal: Crystal,
    full: ReflectionList,
    settings: PostRefinementSettings | None = None,
) -> PostRefinementResult:
    """Refine the orientation of *crystal* against the merged list *full*.

    The new orientation is written back, and the crystal's predictions
    updated, only when the residual went down and the free residual, if any
    reflections are held out, did not go up. Crystals with too few usable
    reflections or an unsolvable step are flagged.
    """
    settings = settings or PostRefinementSettings()
    obs = _observations(crystal, full, settings, free=False)
    if len(obs) < settings.min_reflections:
        logger.info("Only %d reflections usable, not post-refining", len(obs))
        crystal.flag = CrystalFlag.FEW_REFLECTIONS
        return PostRefinementResult(False, len(obs))
    free_obs = _observations(crystal, full, settings, free=True)

    state = PredictionState.from_crystal(crystal)
    initial = _residual(crystal, state, obs)
    free_initial = _residual(crystal, state, free_obs)
    result = PostRefinementResult(
        False, len(obs), initial_residual=initial, final_residual=initial,
        free_initial=free_initial, free_final=free_initial,
    )

    old = initial
    for cycle in range(settings.max_cycles):
        shifts = _iterate(crystal, state, obs)
        if shifts is None:
            crystal.flag = CrystalFlag.SOLVE_FAILED
            logger.error("Post-refinement step could not be solved")
            return result
        if np.max(np.abs(shifts)) > settings.max_rotation:
            logger.debug("Rejecting orientation step of %e rad", np.max(np.abs(shifts)))
            break

        trial = PredictionState(state.reciprocal.copy(), state.det_shift.copy())
        for param, shift in zip(ORIENTATION_PARAMETERS, shifts):
            param.apply_shift(trial, float(shift))
        new = _residual(crystal, trial, obs)
        if not new < old:
            break
        state = trial
        result.n_cycles = cycle + 1
        converged = old - new <= settings.convergence * old
        old = new
        if converged:
            break

    result.final_residual = old
    result.free_final = _residual(crystal, state, free_obs)
    logger.debug(
        "PR residual %e -> %e, free %e -> %e",
        initial, old, free_initial, result.free_final,
    )
    if result.n_cycles == 0:
        return result
    if len(free_obs) and result.free_final > free_initial:
        logger.info("Free residual went up, keeping the old orientation")
        return result

    state.commit(crystal)
    if crystal.reflections is not None:
        update_predictions(crystal)
    crystal.add_note(f"post_refine/final_residual = {old:e}")
    result.refined = True
    return result


def post_refine_all(
    crystals: Sequence[Crystal],
    full: ReflectionList,
    n_threads: int | None = None,
    settings: PostRefinementSettings | None = None,
) -> list[PostRefinementResult | None]:
    """Post-refine every unflagged crystal against *full*, one task each.

    Flagged crystals are left alone. An entry is ``None`` when its task
    raised, and that crystal is flagged.
    """
    settings = settings or PostRefinementSettings()
    if n_threads is None:
        n_threads = settings.n_threads
    counts = {"refined": 0, "kept": 0}

    def work(crystal: Crystal) -> PostRefinementResult:
        if crystal.flag != CrystalFlag.OK:
            return PostRefinementResult(False)
        return pr_refine(crystal, full, settings)

    def done(task: Task) -> None:
        if task.failed:
            task.item.flag = CrystalFlag.SOLVE_FAILED
            counts["kept"] += 1
        elif task.result.refined:
            counts["refined"] += 1
        else:
            counts["kept"] += 1

    tasks = run_threads(n_threads, work, crystals, done, label="post-refine")
    logger.info(
        "Post-refinement: %d crystals refined, %d unchanged", counts["refined"], counts["kept"]
    )
    return [task.result for task in tasks]
