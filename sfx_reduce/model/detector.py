"""Panel geometry and the detector-to-reciprocal-space transform.

Panels follow the corner/basis-vector convention: the laboratory position of a
panel coordinate ``(fs, ss)`` is ``pixel_pitch * (corner + fs*fs_vec +
ss*ss_vec)``, in metres, with the X-ray beam travelling along ``+z`` and the
interaction point at the origin. Corner and basis vectors are in pixel units.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from sfx_reduce.errors import GeometryError

logger = logging.getLogger(__name__)

_BADROW_VALUES = (None, "fs", "ss")


@dataclass(frozen=True)
class DetectorPanel:
    """One planar rectangular region of the detector."""

    name: str
    cnx: float
    cny: float
    cnz: float
    fs: tuple[float, float, float]
    ss: tuple[float, float, float]
    pixel_pitch: float
    w: int
    h: int
    adu_per_photon: float = 1.0
    max_adu: float = math.inf
    badrow: str | None = None
    no_index: bool = False

    def __post_init__(self) -> None:
        if self.w <= 0 or self.h <= 0:
            raise GeometryError(f"panel {self.name!r} has no pixels")
        if not self.pixel_pitch > 0.0:
            raise GeometryError(f"panel {self.name!r} needs a positive pixel pitch")
        if self.badrow not in _BADROW_VALUES:
            raise GeometryError(
                f"panel {self.name!r}: badrow must be 'fs', 'ss' or None"
            )
        normal = np.cross(self.fs_vector, self.ss_vector)
        if not np.linalg.norm(normal) > 0.0:
            raise GeometryError(f"panel {self.name!r} has parallel basis vectors")

    @property
    def fs_vector(self) -> np.ndarray:
        return np.asarray(self.fs, dtype=np.float64)

    @property
    def ss_vector(self) -> np.ndarray:
        return np.asarray(self.ss, dtype=np.float64)

    @property
    def corner(self) -> np.ndarray:
        return np.array([self.cnx, self.cny, self.cnz], dtype=np.float64)

    def plane(self, dx: float = 0.0, dy: float = 0.0):
        """Return ``(origin, u, v)`` of the panel plane in metres.

        ``origin`` includes the detector shift, ``u`` and ``v`` are the
        laboratory displacements of one pixel step along fs and ss.
        """
        origin = self.corner * self.pixel_pitch + np.array([dx, dy, 0.0])
        return origin, self.fs_vector * self.pixel_pitch, self.ss_vector * self.pixel_pitch

    def pixel_to_lab(self, fs, ss, dx: float = 0.0, dy: float = 0.0) -> np.ndarray:
        """Laboratory position (metres) of panel coordinates *fs*, *ss*.

        Scalars give a 3-vector, arrays give an ``(..., 3)`` array.
        """
        fs = np.asarray(fs, dtype=np.float64)[..., None]
        ss = np.asarray(ss, dtype=np.float64)[..., None]
        origin, u, v = self.plane(dx, dy)
        return origin + fs * u + ss * v

    def twod_mapping(self, fs, ss, dx: float = 0.0, dy: float = 0.0):
        """Return the laboratory ``(x, y)`` in metres of *fs*, *ss*."""
        x = (fs * self.fs[0] + ss * self.ss[0] + self.cnx) * self.pixel_pitch + dx
        y = (fs * self.fs[1] + ss * self.ss[1] + self.cny) * self.pixel_pitch + dy
        return x, y

    def contains(self, fs: float, ss: float) -> bool:
        return 0.0 <= fs <= self.w and 0.0 <= ss <= self.h


def transform_coords(
    panel: DetectorPanel,
    fs,
    ss,
    wavelength: float,
    dx: float = 0.0,
    dy: float = 0.0,
) -> np.ndarray:
    """Reciprocal-space vector (m^-1) scattered onto panel coordinates.

    The Ewald sphere of radius ``1/wavelength`` is centred on ``(0, 0, -k)``,
    so the returned vector is ``k * (unit(lab) - z_hat)``.
    """
    lab = panel.pixel_to_lab(fs, ss, dx, dy)
    norm = np.linalg.norm(lab, axis=-1, keepdims=True)
    k = 1.0 / wavelength
    q = k * lab / norm
    q[..., 2] -= k
    return q


@dataclass
class Detector:
    """Ordered collection of panels plus per-panel bad-pixel masks.

    ``bad`` holds one boolean array of shape ``(h, w)`` per panel where
    ``True`` marks a pixel that must never contribute to a measurement.
    """

    panels: tuple[DetectorPanel, ...]
    bad: list[np.ndarray] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.panels = tuple(self.panels)
        if not self.panels:
            raise GeometryError("detector has no panels")
        if not self.bad:
            self.bad = [np.zeros((p.h, p.w), dtype=bool) for p in self.panels]
        if len(self.bad) != len(self.panels):
            raise GeometryError("one bad-pixel mask is needed per panel")
        for panel, mask in zip(self.panels, self.bad):
            if mask.shape != (panel.h, panel.w):
                raise GeometryError(
                    f"mask for panel {panel.name!r} has shape {mask.shape}, "
                    f"expected {(panel.h, panel.w)}"
                )

    def __len__(self) -> int:
        return len(self.panels)

    def __getitem__(self, index: int) -> DetectorPanel:
        return self.panels[index]

    def __iter__(self):
        return iter(self.panels)

    def panel_index(self, name: str) -> int:
        for i, panel in enumerate(self.panels):
            if panel.name == name:
                return i
        raise KeyError(name)

    def transform_coords(
        self,
        panel_number: int,
        fs,
        ss,
        wavelength: float,
        dx: float = 0.0,
        dy: float = 0.0,
    ) -> np.ndarray:
        return transform_coords(self.panels[panel_number], fs, ss, wavelength, dx, dy)

    def in_bad_region(self, panel_number: int, fs: float, ss: float) -> bool:
        """``True`` if the pixel containing *fs*, *ss* is off-panel or masked."""
        panel = self.panels[panel_number]
        ifs = int(math.floor(fs))
        iss = int(math.floor(ss))
        if ifs < 0 or iss < 0 or ifs >= panel.w or iss >= panel.h:
            return True
        return bool(self.bad[panel_number][iss, ifs])

    def max_resolution(self, wavelength: float) -> float:
        """Largest ``|q|`` (m^-1) reachable at any panel corner."""
        best = 0.0
        for panel in self.panels:
            fs = np.array([0.0, panel.w, 0.0, panel.w])
            ss = np.array([0.0, 0.0, panel.h, panel.h])
            q = transform_coords(panel, fs, ss, wavelength)
            best = max(best, float(np.linalg.norm(q, axis=-1).max()))
        return best

    @classmethod
    def single_panel(
        cls,
        w: int,
        h: int,
        pixel_pitch: float,
        clen: float,
        *,
        beam_fs: float | None = None,
        beam_ss: float | None = None,
        adu_per_photon: float = 1.0,
        max_adu: float = math.inf,
        name: str = "p0",
    ) -> "Detector":
        """Flat detector perpendicular to the beam at distance *clen* metres."""
        beam_fs = w / 2.0 if beam_fs is None else beam_fs
        beam_ss = h / 2.0 if beam_ss is None else beam_ss
        panel = DetectorPanel(
            name=name,
            cnx=-beam_fs,
            cny=-beam_ss,
            cnz=clen / pixel_pitch,
            fs=(1.0, 0.0, 0.0),
            ss=(0.0, 1.0, 0.0),
            pixel_pitch=pixel_pitch,
            w=int(w),
            h=int(h),
            adu_per_photon=adu_per_photon,
            max_adu=max_adu,
        )
        return cls((panel,))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "Detector":
        """Build a detector from a parsed geometry mapping.

        Each entry of ``mapping["panels"]`` needs ``w``, ``h``, ``fs``, ``ss``,
        ``corner`` (pixels) and either ``pixel_pitch`` (metres) or ``res``
        (pixels per metre). ``clen`` in metres may replace the z corner.
        ``bad_regions`` lists ``{panel, min_fs, max_fs, min_ss, max_ss}``
        rectangles, inclusive, in pixel indices.
        """
        entries = mapping.get("panels")
        if not entries:
            raise GeometryError("geometry mapping has no panels")
        panels = [_panel_from_mapping(i, entry) for i, entry in enumerate(entries)]
        bad = [np.zeros((p.h, p.w), dtype=bool) for p in panels]
        names = [p.name for p in panels]
        for region in mapping.get("bad_regions", ()) or ():
            _apply_bad_region(region, names, panels, bad)
        detector = cls(tuple(panels), bad)
        logger.debug("Loaded detector with %d panels", len(panels))
        return detector


def _vector(value: Any, *, name: str) -> tuple[float, float, float]:
    values = [float(v) for v in value]
    if len(values) == 2:
        values.append(0.0)
    if len(values) != 3:
        raise GeometryError(f"{name} must have two or three components")
    return values[0], values[1], values[2]


def _panel_from_mapping(index: int, entry: Mapping[str, Any]) -> DetectorPanel:
    name = str(entry.get("name", f"p{index}"))
    if "pixel_pitch" in entry:
        pitch = float(entry["pixel_pitch"])
    elif "res" in entry:
        pitch = 1.0 / float(entry["res"])
    else:
        raise GeometryError(f"panel {name!r} needs pixel_pitch or res")
    try:
        corner = [float(v) for v in entry["corner"]]
        w = int(entry["w"])
        h = int(entry["h"])
    except KeyError as exc:
        raise GeometryError(f"panel {name!r} is missing {exc.args[0]!r}") from exc
    if len(corner) == 2:
        corner.append(0.0)
    if "clen" in entry:
        corner[2] = float(entry["clen"]) / pitch
    return DetectorPanel(
        name=name,
        cnx=corner[0],
        cny=corner[1],
        cnz=corner[2],
        fs=_vector(entry.get("fs", (1.0, 0.0, 0.0)), name=f"{name}.fs"),
        ss=_vector(entry.get("ss", (0.0, 1.0, 0.0)), name=f"{name}.ss"),
        pixel_pitch=pitch,
        w=w,
        h=h,
        adu_per_photon=float(entry.get("adu_per_photon", 1.0)),
        max_adu=float(entry.get("max_adu", math.inf)),
        badrow=entry.get("badrow"),
        no_index=bool(entry.get("no_index", False)),
    )


def _apply_bad_region(
    region: Mapping[str, Any],
    names: Sequence[str],
    panels: Iterable[DetectorPanel],
    bad: list[np.ndarray],
) -> None:
    target = region.get("panel")
    panels = list(panels)
    if isinstance(target, str):
        if target not in names:
            raise GeometryError(f"bad region refers to unknown panel {target!r}")
        index = names.index(target)
    else:
        index = int(target or 0)
    panel = panels[index]
    fs0 = max(0, int(region.get("min_fs", 0)))
    fs1 = min(panel.w - 1, int(region.get("max_fs", panel.w - 1)))
    ss0 = max(0, int(region.get("min_ss", 0)))
    ss1 = min(panel.h - 1, int(region.get("max_ss", panel.h - 1)))
    if fs1 >= fs0 and ss1 >= ss0:
        bad[index][ss0 : ss1 + 1, fs0 : fs1 + 1] = True
