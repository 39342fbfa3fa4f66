"""Observer pose resolution and landmark pose candidates for one fusion pass.

Frames: ``T_mapFid`` is a landmark's world pose, ``T_camFid`` an observation
and ``T_mapCam`` the observer's world pose, so that

    T_mapCam = T_mapFid * inverse(T_camFid)
    T_mapFid = T_mapCam * T_camFid
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Mapping, Optional, Sequence

from .fusion_types import EstimateResult, LandmarkCandidate
from .observation import Observation
from .transform_with_variance import TransformWithVariance


class AnchorPolicy(str, Enum):
    # Observer sits at the world origin; new landmarks keep their relative pose
    OBSERVER_ORIGIN = "observer_origin"
    # Lowest-id new landmark sits at the world origin
    LANDMARK_ORIGIN = "landmark_origin"


class LandmarkPoseEstimator:
    def __init__(
        self,
        anchor_policy: AnchorPolicy = AnchorPolicy.OBSERVER_ORIGIN,
        systematic_error: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.anchor_policy = AnchorPolicy(anchor_policy)
        self.systematic_error = float(systematic_error)
        self.logger = logger or logging.getLogger(__name__)

    def resolve_observer_pose(
        self,
        observations: Sequence[Observation],
        landmark_poses: Mapping[int, TransformWithVariance],
    ) -> tuple[Optional[TransformWithVariance], int]:
        """Weighted observer pose from every visible known landmark.

        Returns ``(None, 0)`` when no observed landmark is in the map.
        """
        T_mapCam: Optional[TransformWithVariance] = None
        num_known = 0
        for o in observations:
            T_mapFid = landmark_poses.get(o.fiducial_id)
            if T_mapFid is None:
                continue
            implied = T_mapFid * o.T_camFid.inverse()
            if not implied.is_finite():
                self.logger.warning("fid %d: non-finite observer estimate ignored", o.fiducial_id)
                continue
            num_known += 1
            T_mapCam = implied if T_mapCam is None else T_mapCam.averaged_with(implied)

        if T_mapCam is not None and self.systematic_error:
            T_mapCam = T_mapCam.with_variance(T_mapCam.variance + self.systematic_error)
        return T_mapCam, num_known

    def estimate(
        self,
        observations: Sequence[Observation],
        landmark_poses: Mapping[int, TransformWithVariance],
    ) -> EstimateResult:
        """Resolve the observer and propose a world pose for every observation.

        ``observations`` must already be ordered by id with duplicates removed.
        """
        if not observations:
            return EstimateResult(None)

        T_mapCam, num_known = self.resolve_observer_pose(observations, landmark_poses)

        candidates = []
        if T_mapCam is not None:
            for o in observations:
                candidates.append(
                    LandmarkCandidate(
                        o.fiducial_id,
                        T_mapCam * o.T_camFid,
                        o.fiducial_id in landmark_poses,
                    )
                )
            return EstimateResult(T_mapCam, candidates, num_known)

        # Nothing in view is mapped yet: anchor this pass without claiming
        # an observer pose
        if self.anchor_policy == AnchorPolicy.OBSERVER_ORIGIN:
            for o in observations:
                candidates.append(LandmarkCandidate(o.fiducial_id, o.T_camFid, False))
        else:
            first = observations[0]
            anchor = TransformWithVariance.identity(first.variance)
            T_mapCam_provisional = TransformWithVariance.identity() * first.T_camFid.inverse()
            candidates.append(LandmarkCandidate(first.fiducial_id, anchor, False))
            for o in observations[1:]:
                candidates.append(
                    LandmarkCandidate(o.fiducial_id, T_mapCam_provisional * o.T_camFid, False)
                )

        self.logger.debug(
            "no known fiducials in view, anchored %d new (%s)",
            len(candidates), self.anchor_policy.value,
        )
        return EstimateResult(None, candidates, 0)
