"""Per-image processing: peaks, refinement, prediction and integration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from sfx_reduce.config.settings import ProcessingSettings
from sfx_reduce.errors import RefinementStatus
from sfx_reduce.fitting.refinement import RefinementResult, refine_all, refine_radius
from sfx_reduce.geometry.prediction import predict_to_res
from sfx_reduce.model.crystal import Crystal
from sfx_reduce.model.image import Image
from sfx_reduce.peaks.integration import integrate_reflections
from sfx_reduce.peaks.sanity import peak_sanity_check
from sfx_reduce.peaks.search import search_peaks, validate_peaks

logger = logging.getLogger(__name__)


@dataclass
class CrystalSummary:
    radius_status: RefinementStatus
    refine_status: RefinementStatus
    n_predicted: int = 0
    n_measured: int = 0
    peaks_agree: bool = False


@dataclass
class ProcessingSummary:
    n_peaks: int
    crystals: list[CrystalSummary] = field(default_factory=list)
    n_saturated: int = 0

    @property
    def n_refined(self) -> int:
        return sum(1 for c in self.crystals if c.refine_status.ok)


def process_image(
    image: Image,
    crystals: Sequence[Crystal] = (),
    settings: ProcessingSettings | None = None,
    *,
    search: bool = True,
) -> ProcessingSummary:
    """Run the per-image chain for *image* and its indexed *crystals*.

    With ``search=False`` the peaks already attached to the image are
    re-integrated instead of searched for. Crystals whose refinement fails
    are kept but receive no reflections.
    """
    settings = settings or ProcessingSettings()

    if search:
        search_peaks(image, settings.peak_search)
    else:
        ps = settings.peak_search
        validate_peaks(image, ps.min_snr, ps.ir_inn, ps.ir_mid, ps.ir_out)
    summary = ProcessingSummary(n_peaks=len(image.features))
    logger.info("%s: %d peaks", image.filename or "image", summary.n_peaks)

    for crystal in crystals:
        if crystal.image is not image:
            image.add_crystal(crystal)

    radii = [refine_radius(image, crystal, settings.refinement) for crystal in crystals]
    results = refine_all(
        [(image, crystal) for crystal in crystals], settings.n_threads, settings.refinement
    )

    for crystal, radius, refined in zip(crystals, radii, results):
        if refined is None:
            refined = RefinementResult(RefinementStatus.ERROR)
        entry = CrystalSummary(radius.status, refined.status)
        summary.crystals.append(entry)
        if not refined.ok:
            logger.info("Crystal rejected: %s", refined.status.value)
            crystal.reflections = None
            continue

        entry.peaks_agree = peak_sanity_check(image, crystal.cell)
        crystal.reflections = predict_to_res(crystal, settings=settings.prediction)
        entry.n_predicted = len(crystal.reflections)
        entry.n_measured = integrate_reflections(image, crystal, settings.integration)

    summary.n_saturated = image.n_saturated
    return summary
