"""Data model: detector, unit cell, crystal, image and reflections."""

from .cell import UnitCell, quaternion_to_matrix, random_quaternion, random_rotation
from .crystal import Crystal
from .detector import Detector, DetectorPanel, transform_coords
from .image import Image
from .reflections import FeatureList, ImageFeature, ReflectionList, Reflection, ReflPeak

__all__ = [
    "Crystal",
    "Detector",
    "DetectorPanel",
    "FeatureList",
    "Image",
    "ImageFeature",
    "ReflPeak",
    "Reflection",
    "ReflectionList",
    "UnitCell",
    "quaternion_to_matrix",
    "random_quaternion",
    "random_rotation",
    "transform_coords",
]
