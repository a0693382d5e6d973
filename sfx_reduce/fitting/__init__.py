"""Peak pairing, prediction refinement, scaling and merging."""

from .linalg import NormalEquations, solve_svd
from .merging import merge_intensities
from .pairing import check_outlier_transition, pair_peaks
from .post_refinement import (
    PostRefinementResult,
    intensity_residual,
    post_refine_all,
    pr_refine,
)
from .refinement import (
    RefinementResult,
    prediction_residual,
    refine_all,
    refine_prediction,
    refine_radius,
)
from .scaling import (
    ScalingReport,
    linear_scale,
    log_residual,
    scale_all,
    scale_all_to_reference,
    scale_crystal,
)

__all__ = [
    "NormalEquations",
    "PostRefinementResult",
    "RefinementResult",
    "ScalingReport",
    "check_outlier_transition",
    "intensity_residual",
    "linear_scale",
    "log_residual",
    "merge_intensities",
    "pair_peaks",
    "post_refine_all",
    "pr_refine",
    "prediction_residual",
    "refine_all",
    "refine_prediction",
    "refine_radius",
    "scale_all",
    "scale_all_to_reference",
    "scale_crystal",
    "solve_svd",
]
