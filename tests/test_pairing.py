from __future__ import annotations

import numpy as np
import pytest

from conftest import WAVELENGTH
from sfx_reduce.config.settings import RefinementSettings
from sfx_reduce.fitting import check_outlier_transition, pair_peaks
from sfx_reduce.fitting.pairing import OUTLIER_OFFSET
from sfx_reduce.geometry import predict_to_res
from sfx_reduce.model import Crystal, FeatureList, Image, ImageFeature, Reflection, ReflPeak


def _interior(reflections, margin: float = 40.0):
    return [
        r for r in reflections
        if margin < r.fs < 1000.0 - margin and margin < r.ss < 1000.0 - margin
    ]


def test_features_on_predictions_pair_with_their_indices(blank_image: Image, crystal: Crystal) -> None:
    reflections = _interior(predict_to_res(crystal))
    blank_image.features = FeatureList(
        ImageFeature(r.panel, r.fs, r.ss, 100.0) for r in reflections
    )
    pairs = pair_peaks(blank_image, crystal, reject_outliers=False)

    assert len(pairs) == len(reflections)
    for rp in pairs:
        assert (rp.refl.fs, rp.refl.ss) == pytest.approx((rp.peak.fs, rp.peak.ss), abs=1e-6)
        assert rp.panel == rp.peak.panel


def _displaced_feature(image: Image, refl, distance: float):
    """Feature moved along fs by *distance* in reciprocal space."""
    detector = image.detector
    q0 = detector.transform_coords(refl.panel, refl.fs, refl.ss, WAVELENGTH)
    q1 = detector.transform_coords(refl.panel, refl.fs + 1.0, refl.ss, WAVELENGTH)
    step = distance / np.linalg.norm(q1 - q0)
    feature = ImageFeature(refl.panel, refl.fs + step, refl.ss, 100.0)
    qf = detector.transform_coords(refl.panel, feature.fs, feature.ss, WAVELENGTH)
    return feature, float(np.linalg.norm(qf - q0))


@pytest.mark.parametrize("factor, should_pair", [(0.8, True), (1.25, False)])
def test_pairing_distance_boundary(
    blank_image: Image, crystal: Crystal, factor: float, should_pair: bool
) -> None:
    limit = crystal.cell.lowest_reflection() / 3.0
    reflections = _interior(predict_to_res(crystal))
    checked = 0
    for refl in reflections[:40]:
        feature, actual = _displaced_feature(blank_image, refl, factor * limit)
        if should_pair and actual >= 0.95 * limit:
            continue
        if not should_pair and actual <= 1.05 * limit:
            continue
        blank_image.features = FeatureList([feature])
        pairs = pair_peaks(blank_image, crystal, reject_outliers=False)
        paired = [rp.refl.indices for rp in pairs]
        if should_pair:
            assert paired == [refl.indices]
        else:
            assert refl.indices not in paired
        checked += 1
    assert checked > 20


def test_origin_peak_is_skipped(blank_image: Image, crystal: Crystal) -> None:
    blank_image.features = FeatureList([ImageFeature(0, 500.0, 500.0, 100.0)])
    assert pair_peaks(blank_image, crystal) == []


def test_large_indices_are_skipped(blank_image: Image, crystal: Crystal) -> None:
    reflections = _interior(predict_to_res(crystal))
    blank_image.features = FeatureList(
        ImageFeature(r.panel, r.fs, r.ss, 100.0) for r in reflections
    )
    settings = RefinementSettings(max_index=1)
    assert pair_peaks(blank_image, crystal, reject_outliers=False, settings=settings) == []


def _pairs(errors):
    return [
        ReflPeak(Reflection(i + 1, 0, 0, exerr=e), ImageFeature(0, 0.0, 0.0, 1.0), 0)
        for i, e in enumerate(errors)
    ]


def test_outlier_transition_cuts_the_tail() -> None:
    errors = [1e4 * i for i in range(1, 21)] + [5e6, 6e6, 7e6]
    pairs = _pairs(errors[::-1])
    n = check_outlier_transition(pairs)

    assert n < len(errors)
    assert n >= 20 - 1
    kept = [abs(rp.refl.exerr) for rp in pairs[:n]]
    assert kept == sorted(kept)
    assert max(kept) < OUTLIER_OFFSET


def test_outlier_transition_keeps_smooth_distributions() -> None:
    errors = list(np.linspace(1e4, 4e6, 50))
    pairs = _pairs(errors)
    assert check_outlier_transition(pairs) == len(errors)


def test_outlier_transition_small_lists() -> None:
    pairs = _pairs([1e6, -3e6])
    assert check_outlier_transition(pairs) == 2
