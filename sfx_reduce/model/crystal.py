"""Per-crystal model state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sfx_reduce.errors import CrystalFlag

from .cell import UnitCell
from .reflections import ReflectionList

if TYPE_CHECKING:
    from .image import Image


@dataclass(eq=False)
class Crystal:
    """One crystal lattice found on an image.

    The crystal exclusively owns its :class:`UnitCell`. ``image`` is a
    back-reference to the parent image and is never copied.
    """

    cell: UnitCell
    image: "Image | None" = None
    profile_radius: float = 0.003e9
    det_shift: tuple[float, float] = (0.0, 0.0)
    osf: float = 1.0
    bfac: float = 0.0
    notes: list[str] = field(default_factory=list)
    flag: CrystalFlag = CrystalFlag.OK
    reflections: ReflectionList | None = None

    def add_note(self, text: str) -> None:
        self.notes.append(text)
