from __future__ import annotations

import numpy as np
import pytest

from conftest import ANGSTROM, WAVELENGTH
from sfx_reduce.geometry import (
    ORIENTATION_PARAMETERS,
    PREDICTION_PARAMETERS,
    ewald_wavenumbers,
    predict_to_res,
    project_reflections,
    rotation_about,
    sphere_partiality,
    sphere_partiality_gradient,
    update_predictions,
)
from sfx_reduce.geometry.gradients import gradient_matrices
from sfx_reduce.geometry.prediction import _locate, excitation_terms, panel_arrays
from sfx_reduce.errors import GeometryError
from sfx_reduce.model import Crystal, Detector, DetectorPanel, Image, UnitCell, random_rotation

CUTOFF = 0.005e9


def _cubic_cell(seed: int) -> UnitCell:
    cell = UnitCell.from_parameters(100 * ANGSTROM, 100 * ANGSTROM, 100 * ANGSTROM, 90, 90, 90)
    cell.rotate(random_rotation(np.random.default_rng(seed)))
    return cell


def test_wavenumbers_are_ordered() -> None:
    klow, kcen, khigh = ewald_wavenumbers(WAVELENGTH, 0.01)
    assert klow > kcen > khigh
    assert kcen == pytest.approx(1.0 / WAVELENGTH)


def test_prediction_needs_an_image(crystal: Crystal) -> None:
    detached = Crystal(cell=crystal.cell.copy())
    with pytest.raises(GeometryError):
        predict_to_res(detached)


def test_predictions_land_on_panel_near_the_shell(crystal: Crystal) -> None:
    reflections = predict_to_res(crystal)
    assert len(reflections) > 50

    panel = crystal.image.detector[0]
    for refl in reflections:
        assert refl.indices != (0, 0, 0)
        assert refl.panel == 0
        assert panel.contains(refl.fs, refl.ss)
        assert refl.rlow * refl.rhigh < 0 or min(abs(refl.rlow), abs(refl.rhigh)) < CUTOFF
        assert abs(refl.exerr) <= CUTOFF
        assert 0.0 <= refl.partiality <= 1.0


def test_predicted_positions_index_back(crystal: Crystal) -> None:
    image = crystal.image
    reflections = predict_to_res(crystal)
    direct = crystal.cell.direct()
    limit = crystal.cell.lowest_reflection() / 3.0

    for refl in reflections:
        q_det = image.detector.transform_coords(refl.panel, refl.fs, refl.ss, WAVELENGTH)
        assert tuple(int(v) for v in np.rint(direct @ q_det)) == refl.indices
        q_lattice = crystal.cell.g_vector(*refl.indices)
        assert np.linalg.norm(q_det - q_lattice) < limit


def test_resolution_limit_is_honoured(crystal: Crystal) -> None:
    max_res = 1.5e9
    reflections = predict_to_res(crystal, max_res)
    assert len(reflections) > 0
    for refl in reflections:
        assert np.linalg.norm(crystal.cell.g_vector(*refl.indices)) <= max_res


def test_update_keeps_panel_and_matches_prediction(crystal: Crystal) -> None:
    reflections = predict_to_res(crystal)
    expected = {r.indices: (r.fs, r.ss, r.exerr) for r in reflections}
    for refl in reflections:
        refl.fs = refl.ss = -1.0
    batch = update_predictions(crystal, reflections)
    assert len(batch) == len(reflections)
    for refl in reflections:
        fs, ss, exerr = expected[refl.indices]
        assert refl.fs == pytest.approx(fs, abs=1e-6)
        assert refl.ss == pytest.approx(ss, abs=1e-6)
        assert refl.exerr == pytest.approx(exerr, abs=1.0)


def test_excitation_terms_clamp() -> None:
    rlow = np.array([1e6, 9e6, -9e6, -2e6])
    rhigh = np.array([-1e6, 8e6, -7e6, 4e6])
    clamp_low, clamp_high, exerr = excitation_terms(rlow, rhigh, CUTOFF)
    np.testing.assert_array_equal(clamp_low, [0, 1, -1, 0])
    np.testing.assert_array_equal(clamp_high, [0, 1, -1, 0])
    np.testing.assert_allclose(exerr, [0.0, CUTOFF, -CUTOFF, 1e6])


def test_sphere_partiality_limits() -> None:
    radius = 3e6
    p = sphere_partiality(np.array([5e6, 1e6, -4e6]), np.array([-5e6, -1e6, -5e6]), radius)
    assert p[0] == pytest.approx(1.0)
    assert 0.0 < p[1] < 1.0
    assert p[2] == pytest.approx(0.0)


def _numerical_gradients(reciprocal, detector, hkl, panels, det_shift, j, step):
    def evaluate(offset):
        recip = np.array(reciprocal)
        shift = list(det_shift)
        if j < 9:
            recip[j // 3, j % 3] += offset
        else:
            shift[j - 9] += offset
        batch = project_reflections(
            recip, detector, hkl, panels, WAVELENGTH, 1e-5, tuple(shift), CUTOFF
        )
        x, y = batch.positions(detector)
        return batch, x, y

    minus, xm, ym = evaluate(-step)
    plus, xp, yp = evaluate(step)
    same_clamp = (
        (minus.clamp_low == plus.clamp_low) & (minus.clamp_high == plus.clamp_high)
    )
    d_r = (plus.exerr - minus.exerr) / (2 * step)
    return d_r, (xp - xm) / (2 * step), (yp - ym) / (2 * step), same_clamp


def _assert_agree(analytic: np.ndarray, numeric: np.ndarray, scale: float) -> None:
    peak = np.max(np.abs(analytic))
    if peak <= 1e-9 * scale:
        np.testing.assert_allclose(numeric, 0.0, atol=1e-6 * scale)
    elif np.ptp(analytic) <= 1e-9 * peak:
        np.testing.assert_allclose(numeric, analytic, rtol=1e-4)
    else:
        assert np.corrcoef(analytic, numeric)[0, 1] >= 0.99


@pytest.mark.parametrize("seed", [1, 2, 3])
@pytest.mark.parametrize("j", range(len(PREDICTION_PARAMETERS)))
def test_analytic_gradients_match_finite_differences(
    blank_image: Image, seed: int, j: int
) -> None:
    crystal = blank_image.add_crystal(Crystal(cell=_cubic_cell(seed)))
    crystal.det_shift = (2e-5, -1e-5)
    reflections = predict_to_res(crystal)
    hkl = reflections.indices()
    panels = np.array([r.panel for r in reflections])
    detector = crystal.image.detector
    reciprocal = np.array(crystal.cell.reciprocal)

    batch = project_reflections(
        reciprocal, detector, hkl, panels, WAVELENGTH, 1e-5, crystal.det_shift, CUTOFF
    )
    g_r, g_x, g_y = gradient_matrices(batch, detector)

    step = 1e-5 * np.linalg.norm(reciprocal[0]) if j < 9 else 1e-7
    d_r, d_x, d_y, same_clamp = _numerical_gradients(
        reciprocal, detector, hkl, panels, crystal.det_shift, j, step
    )

    scale = max(np.max(np.abs(g_x[:, j])), np.max(np.abs(g_y[:, j])))
    _assert_agree(g_x[:, j], d_x, scale)
    _assert_agree(g_y[:, j], d_y, scale)
    if j < 9:
        usable = same_clamp & (batch.clamp_low == 0) & (batch.clamp_high == 0)
        assert np.count_nonzero(usable) > 10
        assert np.corrcoef(g_r[usable, j], d_r[usable])[0, 1] >= 0.99
    else:
        np.testing.assert_array_equal(g_r[:, j], 0.0)


def test_shift_gradient_on_flat_panel(blank_image: Image, crystal: Crystal) -> None:
    reflections = predict_to_res(crystal)
    batch = update_predictions(crystal, reflections)
    _, g_x, g_y = gradient_matrices(batch, blank_image.detector)
    # Moving a flat panel along x moves every prediction along x only
    np.testing.assert_allclose(g_x[:, 9], -1.0, rtol=1e-9)
    np.testing.assert_allclose(g_y[:, 9], 0.0, atol=1e-12)


def test_partiality_gradient_matches_finite_differences() -> None:
    radius = 3e6
    rlow = np.array([1e6, 2.5e6, -1e6, 5e6, 0.2e6])
    rhigh = np.array([-1e6, 0.5e6, -2e6, -4e6, -2.9e6])
    d_low, d_high = sphere_partiality_gradient(rlow, rhigh, radius)

    step = 1e2
    num_low = (sphere_partiality(rlow + step, rhigh, radius)
               - sphere_partiality(rlow - step, rhigh, radius)) / (2 * step)
    num_high = (sphere_partiality(rlow, rhigh + step, radius)
                - sphere_partiality(rlow, rhigh - step, radius)) / (2 * step)

    np.testing.assert_allclose(d_low, num_low, rtol=1e-6, atol=1e-15)
    np.testing.assert_allclose(d_high, num_high, rtol=1e-6, atol=1e-15)
    assert d_low[3] == 0.0
    assert np.all(d_high <= 0.0)


def test_partiality_gradient_of_a_point_profile_is_zero() -> None:
    d_low, d_high = sphere_partiality_gradient(np.array([1e6]), np.array([-1e6]), 0.0)
    np.testing.assert_array_equal(d_low, 0.0)
    np.testing.assert_array_equal(d_high, 0.0)


def test_rotation_about_is_right_handed() -> None:
    quarter = np.pi / 2
    np.testing.assert_allclose(rotation_about(0, quarter) @ [0, 1, 0], [0, 0, 1], atol=1e-12)
    np.testing.assert_allclose(rotation_about(1, quarter) @ [0, 0, 1], [1, 0, 0], atol=1e-12)
    np.testing.assert_allclose(rotation_about(2, quarter) @ [1, 0, 0], [0, 1, 0], atol=1e-12)


@pytest.mark.parametrize("axis", [0, 1])
def test_orientation_gradients_match_finite_differences(crystal: Crystal, axis: int) -> None:
    reflections = predict_to_res(crystal)
    hkl = reflections.indices()
    panels = np.array([r.panel for r in reflections])
    detector = crystal.image.detector
    reciprocal = np.array(crystal.cell.reciprocal)

    def project(angle):
        recip = reciprocal @ rotation_about(axis, angle).T
        return project_reflections(recip, detector, hkl, panels, WAVELENGTH, 1e-5,
                                   (0.0, 0.0), CUTOFF)

    d_low, d_high = ORIENTATION_PARAMETERS[axis].gradient(project(0.0))
    step = 1e-7
    plus = project(step)
    minus = project(-step)
    num_low = (plus.rlow - minus.rlow) / (2 * step)
    num_high = (plus.rhigh - minus.rhigh) / (2 * step)

    scale = np.max(np.abs(d_low))
    assert scale > 0.0
    np.testing.assert_allclose(d_low, num_low, rtol=1e-4, atol=1e-5 * scale)
    np.testing.assert_allclose(d_high, num_high, rtol=1e-4, atol=1e-5 * scale)


def _panel(name: str, cnx: float, w: int, cnz: float = 1000.0) -> DetectorPanel:
    return DetectorPanel(name=name, cnx=cnx, cny=-50.0, cnz=cnz, fs=(1.0, 0.0, 0.0),
                         ss=(0.0, 1.0, 0.0), pixel_pitch=75e-6, w=w, h=100)


def test_locate_needs_exactly_one_panel() -> None:
    # Panel "c" sits in front of the right half of "a"; "a" and "b" leave a gap
    detector = Detector((
        _panel("a", -50.0, 50),
        _panel("b", 10.0, 40),
        _panel("c", -30.0, 20, cnz=900.0),
    ))
    origins, us, vs, widths, heights = panel_arrays(detector)
    pitch = 75e-6

    def locate(x_px):
        return _locate(x_px * pitch, 0.0, 1000.0 * pitch, origins, us, vs, widths, heights)

    p, fs, ss = locate(-40.0)
    assert p == 0
    assert fs == pytest.approx(10.0)
    assert ss == pytest.approx(50.0)

    p, fs, _ = locate(30.0)
    assert p == 1
    assert fs == pytest.approx(20.0)

    # Both "a" and "c" are hit
    assert locate(-20.0)[0] == -1
    # Between the panels
    assert locate(5.0)[0] == -1


def test_prediction_on_overlapping_panels(blank_image: Image, crystal: Crystal) -> None:
    single = predict_to_res(crystal)
    panel = blank_image.detector[0]
    doubled = Detector((panel, panel))
    image = Image(detector=doubled, data=[np.zeros((p.h, p.w)) for p in doubled],
                  wavelength=WAVELENGTH)
    twin = image.add_crystal(Crystal(cell=crystal.cell.copy()))
    assert len(single) > 0
    assert len(predict_to_res(twin)) == 0
