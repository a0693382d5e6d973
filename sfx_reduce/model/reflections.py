"""Reflections, reflection lists and observed image features."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from typing import Iterable, Iterator

import numpy as np
import pandas as pd

HKL = tuple[int, int, int]


@dataclass
class Reflection:
    """One Miller index with its prediction and measurement."""

    h: int
    k: int
    l: int
    fs: float = math.nan
    ss: float = math.nan
    panel: int = -1
    exerr: float = 0.0
    rlow: float = 0.0
    rhigh: float = 0.0
    clamp_low: int = 0
    clamp_high: int = 0
    partiality: float = 1.0
    lorentz: float = 1.0
    intensity: float = 0.0
    esd: float = 0.0
    peak: float = 0.0
    mean_bg: float = 0.0
    redundancy: int = 1
    free: bool = False

    @property
    def indices(self) -> HKL:
        return self.h, self.k, self.l

    def copy_data(self, other: "Reflection") -> None:
        """Copy everything but the indices from *other*."""
        for f in fields(self):
            if f.name not in ("h", "k", "l"):
                setattr(self, f.name, getattr(other, f.name))


class ReflectionList:
    """Mapping from ``(h, k, l)`` to :class:`Reflection` with unique keys."""

    def __init__(self, reflections: Iterable[Reflection] = ()) -> None:
        self._items: dict[HKL, Reflection] = {}
        for refl in reflections:
            self.add(refl)

    def add(self, refl: Reflection) -> Reflection:
        key = refl.indices
        if key in self._items:
            raise KeyError(f"reflection {key} is already in the list")
        self._items[key] = refl
        return refl

    def new(self, h: int, k: int, l: int) -> Reflection:
        return self.add(Reflection(int(h), int(k), int(l)))

    def find(self, h: int, k: int, l: int) -> Reflection | None:
        return self._items.get((h, k, l))

    def remove(self, h: int, k: int, l: int) -> None:
        del self._items[(h, k, l)]

    def __contains__(self, key) -> bool:
        return tuple(key) in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Reflection]:
        return iter(self._items.values())

    def indices(self) -> np.ndarray:
        if not self._items:
            return np.zeros((0, 3), dtype=np.int64)
        return np.array(list(self._items), dtype=np.int64)

    def copy(self) -> "ReflectionList":
        out = ReflectionList()
        for refl in self:
            dup = Reflection(refl.h, refl.k, refl.l)
            dup.copy_data(refl)
            out.add(dup)
        return out

    def to_dataframe(self) -> pd.DataFrame:
        columns = [f.name for f in fields(Reflection)]
        return pd.DataFrame([asdict(r) for r in self], columns=columns)


@dataclass
class ImageFeature:
    """One observed peak on a detector panel."""

    panel: int
    fs: float
    ss: float
    intensity: float
    sigma: float = 0.0
    name: str = ""

    @property
    def snr(self) -> float:
        if self.sigma > 0.0:
            return self.intensity / self.sigma
        return math.inf if self.intensity > 0.0 else 0.0


class FeatureList:
    """Ordered list of :class:`ImageFeature` entries."""

    def __init__(self, features: Iterable[ImageFeature] = ()) -> None:
        self._features: list[ImageFeature] = list(features)

    def add(self, feature: ImageFeature) -> ImageFeature:
        self._features.append(feature)
        return feature

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[ImageFeature]:
        return iter(self._features)

    def __getitem__(self, index: int) -> ImageFeature:
        return self._features[index]

    def closest(
        self, fs: float, ss: float, panel: int
    ) -> tuple[ImageFeature, float] | tuple[None, float]:
        """Nearest feature on *panel* and its distance in pixels."""
        best = None
        best_d = math.inf
        for feature in self._features:
            if feature.panel != panel:
                continue
            d = math.hypot(feature.fs - fs, feature.ss - ss)
            if d < best_d:
                best, best_d = feature, d
        return best, best_d

    def to_dataframe(self) -> pd.DataFrame:
        rows = [
            {
                "panel": f.panel,
                "fs": f.fs,
                "ss": f.ss,
                "intensity": f.intensity,
                "sigma": f.sigma,
                "snr": f.snr,
            }
            for f in self._features
        ]
        return pd.DataFrame(rows, columns=["panel", "fs", "ss", "intensity", "sigma", "snr"])


@dataclass
class ReflPeak:
    """Pairing of one predicted reflection with one observed feature."""

    refl: Reflection
    peak: ImageFeature
    panel: int
    Ih: float = 0.0
