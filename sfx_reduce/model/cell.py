"""Unit cell stored as a reciprocal basis, plus orientation helpers."""

from __future__ import annotations

import itertools
import math

import numpy as np

from sfx_reduce.errors import CellError


def _check_basis(matrix: np.ndarray) -> np.ndarray:
    matrix = np.array(matrix, dtype=np.float64)
    if matrix.shape != (3, 3):
        raise CellError(f"reciprocal basis must be 3x3, got {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise CellError("reciprocal basis contains non-finite values")
    det = float(np.linalg.det(matrix))
    if det == 0.0:
        raise CellError("reciprocal basis has zero volume")
    if det < 0.0:
        raise CellError("reciprocal basis is left-handed")
    return matrix


class UnitCell:
    """Three reciprocal basis vectors in Cartesian space (m^-1).

    Rows of :attr:`reciprocal` are ``a*``, ``b*`` and ``c*``. The direct basis
    is ``inv(reciprocal).T`` so that ``direct() @ q`` gives the fractional
    Miller indices of a reciprocal-space vector ``q``.
    """

    def __init__(self, reciprocal) -> None:
        self._reciprocal = _check_basis(reciprocal)

    @classmethod
    def from_parameters(
        cls,
        a: float,
        b: float,
        c: float,
        alpha_deg: float,
        beta_deg: float,
        gamma_deg: float,
    ) -> "UnitCell":
        """Cell from lengths (metres) and angles (degrees).

        ``a`` lies along ``x`` and ``b`` in the ``xy`` plane.
        """
        al, be, ga = (math.radians(v) for v in (alpha_deg, beta_deg, gamma_deg))
        cos_al, cos_be, cos_ga = math.cos(al), math.cos(be), math.cos(ga)
        sin_ga = math.sin(ga)
        if sin_ga == 0.0:
            raise CellError("gamma must not be 0 or 180 degrees")
        cy = c * (cos_al - cos_be * cos_ga) / sin_ga
        cz_sq = c * c - (c * cos_be) ** 2 - cy * cy
        if cz_sq <= 0.0:
            raise CellError("cell angles do not describe a valid cell")
        direct = np.array(
            [
                [a, 0.0, 0.0],
                [b * cos_ga, b * sin_ga, 0.0],
                [c * cos_be, cy, math.sqrt(cz_sq)],
            ]
        )
        return cls.from_direct(direct)

    @classmethod
    def from_direct(cls, direct) -> "UnitCell":
        direct = np.asarray(direct, dtype=np.float64)
        try:
            recip = np.linalg.inv(direct).T
        except np.linalg.LinAlgError as exc:
            raise CellError("direct basis is singular") from exc
        return cls(recip)

    @property
    def reciprocal(self) -> np.ndarray:
        """Read-only view of the reciprocal basis."""
        view = self._reciprocal.view()
        view.flags.writeable = False
        return view

    def set_reciprocal(self, matrix) -> None:
        """Replace all nine reciprocal components at once."""
        self._reciprocal = _check_basis(matrix)

    def direct(self) -> np.ndarray:
        return np.linalg.inv(self._reciprocal).T

    def volume(self) -> float:
        """Direct-space cell volume (m^3)."""
        return float(np.linalg.det(self.direct()))

    def is_right_handed(self) -> bool:
        return float(np.linalg.det(self._reciprocal)) > 0.0

    def parameters(self) -> tuple[float, float, float, float, float, float]:
        """Return ``(a, b, c, alpha, beta, gamma)`` in metres and degrees."""
        d = self.direct()
        a, b, c = (float(np.linalg.norm(v)) for v in d)

        def angle(u, v):
            cosang = float(np.dot(u, v)) / (np.linalg.norm(u) * np.linalg.norm(v))
            return math.degrees(math.acos(max(-1.0, min(1.0, cosang))))

        return a, b, c, angle(d[1], d[2]), angle(d[0], d[2]), angle(d[0], d[1])

    def rotate(self, rotation) -> None:
        """Rotate the lattice by the 3x3 matrix *rotation*."""
        rotation = np.asarray(rotation, dtype=np.float64)
        self.set_reciprocal(self._reciprocal @ rotation.T)

    def g_vector(self, h, k, l) -> np.ndarray:
        hkl = np.stack(np.broadcast_arrays(h, k, l), axis=-1).astype(np.float64)
        return hkl @ self._reciprocal

    def resolution(self, h, k, l):
        """Return ``1/(2d)`` in m^-1 for the given indices."""
        g = self.g_vector(h, k, l)
        res = 0.5 * np.linalg.norm(g, axis=-1)
        return float(res) if np.ndim(res) == 0 else res

    def lowest_reflection(self) -> float:
        """Length of the shortest non-zero reciprocal lattice vector."""
        best = math.inf
        for h, k, l in itertools.product(range(-2, 3), repeat=3):
            if h == 0 and k == 0 and l == 0:
                continue
            length = float(np.linalg.norm(self.g_vector(h, k, l)))
            best = min(best, length)
        return best

    def copy(self) -> "UnitCell":
        return UnitCell(self._reciprocal.copy())

    def __repr__(self) -> str:
        a, b, c, al, be, ga = self.parameters()
        return (
            f"UnitCell({a * 1e10:.3f} {b * 1e10:.3f} {c * 1e10:.3f} A, "
            f"{al:.2f} {be:.2f} {ga:.2f} deg)"
        )


def random_quaternion(rng: np.random.Generator | None = None) -> np.ndarray:
    """Uniformly distributed unit quaternion ``(w, x, y, z)``."""
    rng = np.random.default_rng() if rng is None else rng
    while True:
        q = rng.uniform(-1.0, 1.0, size=4)
        norm = float(np.linalg.norm(q))
        if 0.0 < norm <= 1.0:
            return q / norm


def quaternion_to_matrix(q) -> np.ndarray:
    w, x, y, z = (float(v) for v in q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def random_rotation(rng: np.random.Generator | None = None) -> np.ndarray:
    return quaternion_to_matrix(random_quaternion(rng))
