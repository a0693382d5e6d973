"""Config loading helpers for sfx_reduce."""

from .loader import clear_config_cache, get_config_bundle, get_config_dir
from .models import ConfigBundle
from .settings import (
    BeamSettings,
    IntegrationSettings,
    PeakSearchSettings,
    PostRefinementSettings,
    PredictionSettings,
    ProcessingSettings,
    RefinementSettings,
    ScalingSettings,
    load_settings,
)

__all__ = [
    "BeamSettings",
    "ConfigBundle",
    "IntegrationSettings",
    "PeakSearchSettings",
    "PostRefinementSettings",
    "PredictionSettings",
    "ProcessingSettings",
    "RefinementSettings",
    "ScalingSettings",
    "clear_config_cache",
    "get_config_bundle",
    "get_config_dir",
    "load_settings",
]
