"""Analytic gradients and the ordered parameter tables used by the fitters.

Each :class:`RefinementParameter` couples a parameter with its gradient and
with the function that applies a solved shift to it. The fitters iterate the
tables, so the position of a parameter in the normal equations always
matches the shift applied to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.detector import Detector

from .prediction import PredictionBatch

CELL = "cell"
DETECTOR = "detector"
SCALE = "scale"


@dataclass(frozen=True)
class RefinementParameter:
    kind: str
    gradient: Callable
    apply_shift: Callable
    group: str = CELL


@dataclass
class PredictionState:
    """Working copy of the 11 prediction parameters of one crystal."""

    reciprocal: np.ndarray
    det_shift: np.ndarray

    @classmethod
    def from_crystal(cls, crystal: Crystal) -> "PredictionState":
        return cls(
            reciprocal=np.array(crystal.cell.reciprocal, dtype=np.float64),
            det_shift=np.array(crystal.det_shift, dtype=np.float64),
        )

    def commit(self, crystal: Crystal) -> None:
        """Write the state back; the cell is replaced in one step."""
        crystal.cell.set_reciprocal(self.reciprocal)
        crystal.det_shift = (float(self.det_shift[0]), float(self.det_shift[1]))


def _panel_steps(detector: Detector, panels: np.ndarray):
    us = np.array([p.fs_vector * p.pixel_pitch for p in detector])
    vs = np.array([p.ss_vector * p.pixel_pitch for p in detector])
    return us[panels], vs[panels]


def _position_gradient(batch: PredictionBatch, detector: Detector, dz: np.ndarray):
    u, v = _panel_steps(detector, batch.panel)
    dfs = dz[:, 0]
    dss = dz[:, 1]
    return dfs * u[:, 0] + dss * v[:, 0], dfs * u[:, 1] + dss * v[:, 1]


def _shell_gradient(batch: PredictionBatch, k: float, clamp: np.ndarray,
                    index: np.ndarray, component: int) -> np.ndarray:
    qk = batch.q.copy()
    qk[:, 2] += k
    grad = -index * qk[:, component] / np.linalg.norm(qk, axis=1)
    grad[clamp != 0] = 0.0
    return grad


def _cell_gradient(vector: int, component: int):
    """Gradients with respect to component *component* of basis *vector*."""

    def gradient(batch: PredictionBatch, detector: Detector):
        index = batch.hkl[:, vector].astype(np.float64)

        dlow = _shell_gradient(batch, batch.klow, batch.clamp_low, index, component)
        dhigh = _shell_gradient(batch, batch.khigh, batch.clamp_high, index, component)
        dr = 0.5 * (dlow + dhigh)

        # d[fs, ss, t] = Ainv (t dq) for a change dq of the diffracted ray
        dq = np.zeros((len(batch), 3))
        dq[:, component] = index
        dz = np.einsum("nij,nj->ni", batch.ainv, batch.t[:, None] * dq)
        dx, dy = _position_gradient(batch, detector, dz)
        return dr, dx, dy

    return gradient


def _shift_gradient(axis: int):
    """Gradients with respect to the detector shift along *axis*."""

    def gradient(batch: PredictionBatch, detector: Detector):
        dz = -batch.ainv[:, :, axis]
        dx, dy = _position_gradient(batch, detector, dz)
        return np.zeros(len(batch)), dx, dy

    return gradient


def _cell_shift(vector: int, component: int):
    def apply(state: PredictionState, delta: float) -> None:
        state.reciprocal[vector, component] += delta

    return apply


def _detector_shift(axis: int):
    def apply(state: PredictionState, delta: float) -> None:
        state.det_shift[axis] += delta

    return apply


def _cell_parameters():
    for vector, name in enumerate("abc"):
        for component, axis in enumerate("xyz"):
            yield RefinementParameter(
                kind=f"{name}star_{axis}",
                gradient=_cell_gradient(vector, component),
                apply_shift=_cell_shift(vector, component),
                group=CELL,
            )


PREDICTION_PARAMETERS: tuple[RefinementParameter, ...] = (
    *_cell_parameters(),
    RefinementParameter("det_x", _shift_gradient(0), _detector_shift(0), DETECTOR),
    RefinementParameter("det_y", _shift_gradient(1), _detector_shift(1), DETECTOR),
)


ORIENTATION = "orientation"
_AXES = np.eye(3)


def rotation_about(axis: int, angle: float) -> np.ndarray:
    """Right-handed rotation by *angle* radians about laboratory *axis*."""
    c = np.cos(angle)
    s = np.sin(angle)
    i, j = [a for a in range(3) if a != axis]
    if axis == 1:
        # keep the cyclic order z, x for rotations about y
        i, j = j, i
    rot = np.eye(3)
    rot[i, i] = c
    rot[i, j] = -s
    rot[j, i] = s
    rot[j, j] = c
    return rot


def _orientation_gradient(axis: int):
    """Gradients of ``(rlow, rhigh)`` for a small rotation about *axis*."""

    def gradient(batch: PredictionBatch):
        # d(Rq)/d(angle) at zero angle is axis x q
        dq = np.cross(_AXES[axis], batch.q)
        grads = []
        for k in (batch.klow, batch.khigh):
            qk = batch.q.copy()
            qk[:, 2] += k
            grads.append(-np.einsum("ij,ij->i", qk, dq) / np.linalg.norm(qk, axis=1))
        return grads[0], grads[1]

    return gradient


def _orientation_shift(axis: int):
    def apply(state: PredictionState, delta: float) -> None:
        state.reciprocal = state.reciprocal @ rotation_about(axis, delta).T

    return apply


ORIENTATION_PARAMETERS: tuple[RefinementParameter, ...] = (
    RefinementParameter("ang1", _orientation_gradient(0), _orientation_shift(0), ORIENTATION),
    RefinementParameter("ang2", _orientation_gradient(1), _orientation_shift(1), ORIENTATION),
)


def gradient_matrices(
    batch: PredictionBatch,
    detector: Detector,
    parameters=PREDICTION_PARAMETERS,
):
    """Return ``(G_r, G_x, G_y)``, each of shape ``(n_reflections, n_params)``."""
    n = len(batch)
    g_r = np.zeros((n, len(parameters)))
    g_x = np.zeros((n, len(parameters)))
    g_y = np.zeros((n, len(parameters)))
    for j, param in enumerate(parameters):
        g_r[:, j], g_x[:, j], g_y[:, j] = param.gradient(batch, detector)
    return g_r, g_x, g_y


@dataclass
class ScaleState:
    """Working copy of the scaling parameters of one crystal."""

    osf: float
    bfac: float

    @classmethod
    def from_crystal(cls, crystal: Crystal) -> "ScaleState":
        return cls(osf=crystal.osf, bfac=crystal.bfac)

    def commit(self, crystal: Crystal) -> None:
        crystal.osf = self.osf
        crystal.bfac = self.bfac


def _osf_shift(state: ScaleState, delta: float) -> None:
    # The refined quantity is -log(G)
    state.osf = float(state.osf * np.exp(-delta))


def _bfac_shift(state: ScaleState, delta: float) -> None:
    state.bfac += delta


SCALING_PARAMETERS: tuple[RefinementParameter, ...] = (
    RefinementParameter("osf", lambda s: np.ones_like(s), _osf_shift, SCALE),
    RefinementParameter("bfac", lambda s: -s * s, _bfac_shift, SCALE),
)
