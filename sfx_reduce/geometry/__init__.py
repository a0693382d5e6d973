"""Spot prediction and its parameter gradients."""

from .gradients import (
    ORIENTATION_PARAMETERS,
    PREDICTION_PARAMETERS,
    SCALING_PARAMETERS,
    RefinementParameter,
    rotation_about,
)
from .prediction import (
    PredictionBatch,
    ewald_wavenumbers,
    predict_to_res,
    project_reflections,
    sphere_partiality,
    sphere_partiality_gradient,
    update_predictions,
)

__all__ = [
    "ORIENTATION_PARAMETERS",
    "PREDICTION_PARAMETERS",
    "PredictionBatch",
    "RefinementParameter",
    "SCALING_PARAMETERS",
    "ewald_wavenumbers",
    "predict_to_res",
    "project_reflections",
    "rotation_about",
    "sphere_partiality",
    "sphere_partiality_gradient",
    "update_predictions",
]
