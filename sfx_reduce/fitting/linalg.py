"""Normal-equation accumulation and the SVD least-squares solve."""

from __future__ import annotations

import logging

import numpy as np
import scipy.linalg

logger = logging.getLogger(__name__)

SINGULAR_THRESHOLD = 1e-11


class NormalEquations:
    """Symmetric information matrix ``M`` and right-hand side ``v``.

    Each observation with gradient ``g``, residual ``r`` (model minus
    observation) and weight ``w`` contributes ``M += w g g^T`` and
    ``v += -w g r``, so that the solution of ``M x = v`` is the Gauss-Newton
    shift.
    """

    def __init__(self, n_params: int) -> None:
        self.matrix = np.zeros((n_params, n_params))
        self.vector = np.zeros(n_params)

    def add(self, gradients, residual: float, weight: float = 1.0) -> None:
        g = np.asarray(gradients, dtype=np.float64)
        self.matrix += weight * np.outer(g, g)
        self.vector -= weight * g * residual

    def add_many(self, gradients, residuals, weights=None) -> None:
        """Accumulate a block of observations, one row of *gradients* each."""
        g = np.asarray(gradients, dtype=np.float64)
        r = np.asarray(residuals, dtype=np.float64)
        w = np.ones(len(r)) if weights is None else np.asarray(weights, dtype=np.float64)
        self.matrix += g.T @ (w[:, None] * g)
        self.vector -= g.T @ (w * r)

    def damp(self, diagonal) -> None:
        self.matrix[np.diag_indices_from(self.matrix)] += np.asarray(diagonal, dtype=np.float64)

    def solve(self) -> np.ndarray | None:
        return solve_svd(self.matrix, self.vector)


def solve_svd(matrix, vector, threshold: float = SINGULAR_THRESHOLD) -> np.ndarray | None:
    """Solve ``matrix @ x = vector`` by SVD, tolerating rank deficiency.

    The system is first scaled so that the diagonal of ``matrix`` is one.
    Singular values below *threshold* are discarded. Returns ``None`` when
    the decomposition cannot be computed.
    """
    m = np.asarray(matrix, dtype=np.float64)
    v = np.asarray(vector, dtype=np.float64)
    if not (np.all(np.isfinite(m)) and np.all(np.isfinite(v))):
        logger.warning("Refusing to solve non-finite normal equations")
        return None

    diag = np.diag(m)
    scale = np.ones_like(diag)
    positive = diag > 0.0
    scale[positive] = 1.0 / np.sqrt(diag[positive])
    sms = scale[:, None] * m * scale[None, :]

    try:
        u, s, vt = scipy.linalg.svd(sms)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("SVD failed: %s", exc)
        return None

    keep = s >= threshold
    inv_s = np.zeros_like(s)
    inv_s[keep] = 1.0 / s[keep]
    n_filtered = int(np.count_nonzero(~keep))
    if n_filtered:
        logger.debug("Discarded %d small singular values", n_filtered)

    x = vt.T @ (inv_s * (u.T @ (scale * v)))
    return scale * x
