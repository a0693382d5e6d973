from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np
import pytest
from scipy.special import erf

# Allow importing sfx_reduce from repository root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sfx_reduce.model import Crystal, Detector, Image, UnitCell  # noqa: E402
from sfx_reduce.model.cell import random_rotation  # noqa: E402

WAVELENGTH = 1.5498e-10
ANGSTROM = 1e-10


def make_detector(w: int = 1000, h: int = 1000) -> Detector:
    return Detector.single_panel(w, h, 75e-6, 0.075)


def make_cell(seed: int = 7) -> UnitCell:
    cell = UnitCell.from_parameters(
        90 * ANGSTROM, 100 * ANGSTROM, 110 * ANGSTROM, 90.0, 90.0, 90.0
    )
    cell.rotate(random_rotation(np.random.default_rng(seed)))
    return cell


def render_spots(shape, positions, total: float, sigma: float = 1.0,
                 background: float = 0.0) -> np.ndarray:
    """Image of Gaussian spots integrated exactly over each pixel."""
    h, w = shape
    data = np.full((h, w), float(background))
    half = int(math.ceil(6 * sigma))
    scale = sigma * math.sqrt(2.0)
    for fs, ss in positions:
        f0 = max(int(math.floor(fs)) - half, 0)
        f1 = min(int(math.floor(fs)) + half + 1, w)
        s0 = max(int(math.floor(ss)) - half, 0)
        s1 = min(int(math.floor(ss)) + half + 1, h)
        if f0 >= f1 or s0 >= s1:
            continue
        edges_f = np.arange(f0, f1 + 1, dtype=np.float64)
        edges_s = np.arange(s0, s1 + 1, dtype=np.float64)
        frac_f = np.diff(0.5 * erf((edges_f - fs) / scale))
        frac_s = np.diff(0.5 * erf((edges_s - ss) / scale))
        data[s0:s1, f0:f1] += total * np.outer(frac_s, frac_f)
    return data


@pytest.fixture
def detector() -> Detector:
    return make_detector()


@pytest.fixture
def blank_image(detector: Detector) -> Image:
    return Image(
        detector=detector,
        data=[np.zeros((p.h, p.w)) for p in detector],
        wavelength=WAVELENGTH,
    )


@pytest.fixture
def crystal(blank_image: Image) -> Crystal:
    return blank_image.add_crystal(Crystal(cell=make_cell()))
