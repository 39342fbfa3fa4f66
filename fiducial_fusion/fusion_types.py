from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .transform_with_variance import TransformWithVariance


@dataclass
class RawSighting:
    """One marker as reported by the upstream detector, camera relative.

    Rotation is given either as an (x, y, z, w) quaternion or as an OpenCV
    rotation vector.
    """

    fiducial_id: int
    tvec: Any  # (3,)
    rotation: Any = None  # (4,) quaternion
    rvec: Any = None  # (3,) Rodrigues vector
    object_error: float = 0.0
    fiducial_area: float = 0.0


@dataclass
class SightingBatch:
    """All sightings from one detector message."""

    stamp: float
    frame_id: str
    sightings: list[RawSighting] = field(default_factory=list)


@dataclass(frozen=True)
class ObserverPose:
    """Resolved world pose of the observer for one fusion pass."""

    stamp: float
    frame_id: str
    pose: TransformWithVariance
    num_landmarks: int


@dataclass(frozen=True)
class LandmarkCandidate:
    fiducial_id: int
    pose: TransformWithVariance
    known: bool


@dataclass
class EstimateResult:
    observer_pose: Optional[TransformWithVariance]
    candidates: list[LandmarkCandidate] = field(default_factory=list)
    num_known: int = 0

    @property
    def resolved(self) -> bool:
        return self.observer_pose is not None
