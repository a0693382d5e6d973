"""Validation helpers for configuration payloads."""

from __future__ import annotations

from typing import Any

from sfx_reduce.errors import ConfigError


def ensure_mapping(value: Any, *, name: str) -> dict[str, Any]:
    """Return *value* as ``dict`` or raise a descriptive ``ConfigError``."""

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def ensure_known_keys(mapping: dict[str, Any], allowed, *, name: str) -> None:
    """Reject keys in *mapping* that are not in *allowed*."""

    unknown = sorted(set(mapping) - set(allowed))
    if unknown:
        raise ConfigError(f"{name} has unknown keys: {', '.join(unknown)}")
