"""Typed processing settings with defaults matching the reference pipeline.

Each section of ``processing.yaml`` maps onto one frozen dataclass. Keys that
are absent fall back to the defaults below; unknown keys are rejected so that
typos in configuration files do not silently change behaviour.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any

from .models import ConfigBundle
from .validation import ensure_known_keys, ensure_mapping


@dataclass(frozen=True)
class BeamSettings:
    """Default beam description applied to images that carry none."""

    wavelength: float = 1.5498e-10  # 8 keV, metres
    bandwidth: float = 1.0e-5  # fractional, delta-lambda / lambda
    profile_radius: float = 0.003e9  # m^-1


@dataclass(frozen=True)
class PeakSearchSettings:
    threshold: float = 800.0
    min_gradient: float = 100000.0
    min_snr: float = 5.0
    ir_inn: float = 4.0
    ir_mid: float = 5.0
    ir_out: float = 7.0
    use_saturated: bool = False


@dataclass(frozen=True)
class IntegrationSettings:
    min_snr: float = -math.inf
    ir_inn: float = 4.0
    ir_mid: float = 5.0
    ir_out: float = 7.0
    use_closer: bool = False
    closer_distance: float = 10.0  # pixels
    integrate_saturated: bool = False


@dataclass(frozen=True)
class PredictionSettings:
    # Reciprocal-space distance below which a point touches the Ewald shell.
    profile_cutoff: float = 0.005e9  # m^-1
    # Used only when neither the caller nor the detector gives a limit.
    max_resolution: float = 1.0e10  # m^-1, 1 A


@dataclass(frozen=True)
class RefinementSettings:
    max_cycles: int = 10
    # Weighting of the excitation error term (m^-1) against positions (m).
    exc_weight: float = 4.0e-20
    shift_damping: float = 10.0
    cell_damping: float = 1.0e-18
    min_pairs: int = 10
    min_radius_pairs: int = 3
    max_index: int = 512


@dataclass(frozen=True)
class ScalingSettings:
    max_cycles: int = 10
    max_outer_cycles: int = 10
    convergence: float = 0.01
    min_redundancy: int = 2
    n_threads: int = 1


@dataclass(frozen=True)
class PostRefinementSettings:
    max_cycles: int = 30
    min_reflections: int = 10
    min_redundancy: int = 2
    # Largest orientation change accepted in one cycle, radians.
    max_rotation: float = 1.0e-2
    convergence: float = 1.0e-3
    n_threads: int = 1


@dataclass(frozen=True)
class ProcessingSettings:
    beam: BeamSettings = field(default_factory=BeamSettings)
    peak_search: PeakSearchSettings = field(default_factory=PeakSearchSettings)
    integration: IntegrationSettings = field(default_factory=IntegrationSettings)
    prediction: PredictionSettings = field(default_factory=PredictionSettings)
    refinement: RefinementSettings = field(default_factory=RefinementSettings)
    scaling: ScalingSettings = field(default_factory=ScalingSettings)
    post_refinement: PostRefinementSettings = field(default_factory=PostRefinementSettings)
    n_threads: int = 1


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, payload: Any, *, name: str):
    mapping = ensure_mapping(payload, name=name)
    allowed = [f.name for f in fields(cls)]
    ensure_known_keys(mapping, allowed, name=name)
    defaults = cls()
    kwargs = {
        key: _coerce(value, getattr(defaults, key))
        for key, value in mapping.items()
    }
    return cls(**kwargs)


_SECTIONS = {
    "beam": BeamSettings,
    "peak_search": PeakSearchSettings,
    "integration": IntegrationSettings,
    "prediction": PredictionSettings,
    "refinement": RefinementSettings,
    "scaling": ScalingSettings,
    "post_refinement": PostRefinementSettings,
}


def settings_from_mapping(processing: dict[str, Any] | None) -> ProcessingSettings:
    """Build :class:`ProcessingSettings` from a parsed ``processing.yaml``."""

    processing = ensure_mapping(processing, name="processing.yaml")
    ensure_known_keys(
        processing, list(_SECTIONS) + ["n_threads"], name="processing.yaml"
    )
    kwargs: dict[str, Any] = {
        key: _build_section(cls, processing.get(key), name=f"processing.{key}")
        for key, cls in _SECTIONS.items()
    }
    kwargs["n_threads"] = max(1, int(processing.get("n_threads", 1)))
    return ProcessingSettings(**kwargs)


def load_settings(bundle: ConfigBundle | None = None) -> ProcessingSettings:
    """Return the processing settings of *bundle* (or the active bundle)."""

    if bundle is None:
        from .loader import get_config_bundle

        bundle = get_config_bundle()
    return settings_from_mapping(bundle.processing)
