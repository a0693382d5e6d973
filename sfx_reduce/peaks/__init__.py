"""Peak search, aperture integration and peak validation."""

from .integration import (
    PeakMeasurement,
    integrate_peak,
    integrate_reflections,
    make_background_mask,
)
from .sanity import peak_lattice_agreement, peak_sanity_check
from .search import cull_peaks, search_peaks, validate_peaks

__all__ = [
    "PeakMeasurement",
    "cull_peaks",
    "integrate_peak",
    "integrate_reflections",
    "make_background_mask",
    "peak_lattice_agreement",
    "peak_sanity_check",
    "search_peaks",
    "validate_peaks",
]
