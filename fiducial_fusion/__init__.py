"""Fiducial landmark mapping and observer localization."""

from .config import SlamConfig
from .engine import FiducialSlamEngine
from .map_state import Landmark, MapState
from .transform_with_variance import TransformWithVariance

__all__ = [
    "FiducialSlamEngine",
    "Landmark",
    "MapState",
    "SlamConfig",
    "TransformWithVariance",
]
