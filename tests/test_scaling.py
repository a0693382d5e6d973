from __future__ import annotations

import math

import numpy as np
import pytest

from conftest import ANGSTROM
from sfx_reduce.config.settings import ScalingSettings
from sfx_reduce.errors import CrystalFlag, ScalingError
from sfx_reduce.fitting import (
    linear_scale,
    log_residual,
    merge_intensities,
    scale_all,
    scale_all_to_reference,
    scale_crystal,
)
from sfx_reduce.model import Crystal, Reflection, ReflectionList, UnitCell


def _cell() -> UnitCell:
    return UnitCell.from_parameters(60 * ANGSTROM, 70 * ANGSTROM, 80 * ANGSTROM, 90, 90, 90)


def _truth(n: int = 200, seed: int = 5) -> dict[tuple[int, int, int], float]:
    rng = np.random.default_rng(seed)
    truth: dict[tuple[int, int, int], float] = {}
    while len(truth) < n:
        hkl = tuple(int(v) for v in rng.integers(-15, 16, size=3))
        if hkl == (0, 0, 0):
            continue
        truth[hkl] = float(rng.uniform(1e3, 1e5))
    return truth


def _crystal(truth, g: float = 1.0, b: float = 0.0, partiality: float = 1.0,
             noise: float = 0.0, rng=None) -> Crystal:
    """Crystal whose measurements are the truth scaled by ``1/g`` and ``exp(-b s^2)``."""
    rng = np.random.default_rng(0) if rng is None else rng
    cell = _cell()
    reflections = ReflectionList()
    for (h, k, l), intensity in truth.items():
        s = cell.resolution(h, k, l)
        refl = reflections.new(h, k, l)
        refl.partiality = partiality
        refl.intensity = intensity * partiality * math.exp(-b * s * s) / g
        if noise:
            refl.intensity *= math.exp(rng.normal(0.0, noise))
        refl.esd = 1.0
        refl.redundancy = 1
    return Crystal(cell=cell, reflections=reflections)


def test_merge_averages_corrected_intensities() -> None:
    truth = _truth(20)
    a = _crystal(truth)
    b = _crystal(truth, g=2.0)
    b.osf = 2.0
    merged = merge_intensities([a, b])

    assert len(merged) == 20
    for (h, k, l), intensity in truth.items():
        refl = merged.find(h, k, l)
        assert refl.intensity == pytest.approx(intensity)
        assert refl.redundancy == 2
        assert refl.esd == pytest.approx(0.0, abs=1e-6 * intensity)


def test_merge_skips_flagged_and_unmeasured() -> None:
    truth = _truth(10)
    a = _crystal(truth)
    b = _crystal(truth)
    c = _crystal(truth, g=10.0)
    c.flag = CrystalFlag.SOLVE_FAILED
    first = next(iter(b.reflections))
    first.redundancy = 0

    merged = merge_intensities([a, b, c])
    assert len(merged) == 9
    assert first.indices not in merged
    assert len(merge_intensities([a, b, c], min_measurements=1)) == 10


def test_scale_all_recovers_relative_scale() -> None:
    truth = _truth()
    g0 = 2.5
    rng = np.random.default_rng(17)
    crystals = [
        _crystal(truth, noise=0.01, rng=rng),
        _crystal(truth, g=1.0 / g0, noise=0.01, rng=rng),
    ]

    report = scale_all(crystals, n_threads=2)

    assert report.converged
    assert report.n_reflections > 0
    ratio = crystals[0].osf / crystals[1].osf
    assert ratio == pytest.approx(g0, rel=0.01)
    for crystal in crystals:
        assert abs(crystal.bfac) < 1e-6
        assert crystal.flag == CrystalFlag.OK


def test_scale_crystal_fits_b_factor() -> None:
    truth = _truth()
    cell = _cell()
    s_max = max(cell.resolution(*hkl) for hkl in truth)
    b0 = 1.0 / (s_max * s_max)

    reference = ReflectionList()
    for (h, k, l), intensity in truth.items():
        refl = reference.new(h, k, l)
        refl.intensity = intensity
        refl.redundancy = 5

    crystal = _crystal(truth, g=1.7, b=b0)
    scale_crystal(crystal, reference, ScalingSettings(max_cycles=20, convergence=1e-6))

    assert crystal.osf == pytest.approx(1.7, rel=1e-3)
    assert crystal.bfac == pytest.approx(b0, rel=1e-3)
    assert log_residual(crystal, reference) == pytest.approx(0.0, abs=1e-8)


def test_too_few_reflections_flag_the_crystal() -> None:
    truth = _truth(1)
    crystals = [_crystal(truth), _crystal(truth)]
    scale_all(crystals, settings=ScalingSettings(max_outer_cycles=2))
    assert all(c.flag == CrystalFlag.FEW_REFLECTIONS for c in crystals)


def test_free_residual_uses_only_held_out_reflections() -> None:
    truth = _truth(40)
    reference = ReflectionList()
    for (h, k, l), intensity in truth.items():
        refl = reference.new(h, k, l)
        refl.intensity = intensity
        refl.redundancy = 3

    crystal = _crystal(truth, g=1.0)
    assert log_residual(crystal, reference, free=True) == 0.0

    held_out = list(crystal.reflections)[:5]
    for refl in held_out:
        refl.free = True
        refl.intensity *= math.e
    assert log_residual(crystal, reference, free=True) == pytest.approx(5.0)
    assert log_residual(crystal, reference) == pytest.approx(5.0)


def test_weak_reflections_are_ignored() -> None:
    truth = _truth(10)
    reference = ReflectionList()
    for (h, k, l), intensity in truth.items():
        refl = reference.new(h, k, l)
        refl.intensity = intensity
        refl.redundancy = 3
    crystal = _crystal(truth)
    for refl in crystal.reflections:
        refl.esd = refl.intensity
    assert log_residual(crystal, reference) == 0.0


def _plain_list(values) -> ReflectionList:
    return ReflectionList(
        Reflection(i + 1, 0, 0, intensity=v, partiality=p) for i, (v, p) in enumerate(values)
    )


def test_linear_scale_factor() -> None:
    reference = _plain_list([(300.0, 1.0), (600.0, 1.0), (900.0, 1.0)])
    other = _plain_list([(50.0, 0.5), (100.0, 0.5), (150.0, 0.5)])
    assert linear_scale(reference, other) == pytest.approx(3.0)


def test_linear_scale_needs_two_pairs() -> None:
    reference = _plain_list([(300.0, 1.0), (600.0, 1.0)])
    other = _plain_list([(100.0, 1.0), (-5.0, 1.0)])
    assert linear_scale(reference, other) is None


def test_scale_to_reference_resets_b() -> None:
    truth = _truth(30)
    reference = ReflectionList()
    for (h, k, l), intensity in truth.items():
        reference.new(h, k, l).intensity = intensity
    crystals = [_crystal(truth, g=0.5), Crystal(cell=_cell())]
    crystals[0].bfac = 3.0

    assert scale_all_to_reference(crystals, reference) == 1
    assert crystals[0].osf == pytest.approx(0.5)
    assert crystals[0].bfac == 0.0
    assert crystals[1].osf == 1.0


def test_strict_scale_to_reference_raises() -> None:
    truth = _truth(30)
    reference = ReflectionList()
    for (h, k, l), intensity in truth.items():
        reference.new(h, k, l).intensity = intensity
    with pytest.raises(ScalingError):
        scale_all_to_reference([Crystal(cell=_cell())], reference, strict=True)


def test_scale_all_takes_thread_count_from_settings(monkeypatch) -> None:
    import sfx_reduce.fitting.scaling as scaling

    seen = []
    real = scaling.run_threads

    def recording(n_threads, *args, **kwargs):
        seen.append(n_threads)
        return real(n_threads, *args, **kwargs)

    monkeypatch.setattr(scaling, "run_threads", recording)
    truth = _truth(40)
    crystals = [_crystal(truth), _crystal(truth, g=2.0)]

    scale_all(crystals, settings=ScalingSettings(n_threads=8, max_outer_cycles=1))
    assert seen and set(seen) == {8}

    seen.clear()
    scale_all(crystals, n_threads=3, settings=ScalingSettings(n_threads=8, max_outer_cycles=1))
    assert set(seen) == {3}


def test_failing_crystal_does_not_stop_the_others(monkeypatch) -> None:
    import sfx_reduce.fitting.scaling as scaling

    truth = _truth()
    crystals = [_crystal(truth), _crystal(truth, g=0.5), _crystal(truth)]
    broken = crystals[2]
    real = scaling.scale_crystal

    def flaky(crystal, full, settings=None):
        if crystal is broken:
            raise RuntimeError("broken crystal")
        return real(crystal, full, settings)

    monkeypatch.setattr(scaling, "scale_crystal", flaky)
    scale_all(crystals, n_threads=2, settings=ScalingSettings(max_outer_cycles=3))

    assert broken.flag == CrystalFlag.SOLVE_FAILED
    assert crystals[0].flag == CrystalFlag.OK
    assert crystals[1].flag == CrystalFlag.OK
    assert crystals[0].osf / crystals[1].osf == pytest.approx(2.0, rel=0.01)
