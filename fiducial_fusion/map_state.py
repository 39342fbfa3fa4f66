"""Authoritative fiducial map: id -> world pose estimate.

The map has a single owner and a single mutator context. All mutation goes
through :meth:`MapState.update`, :meth:`MapState.add_landmark` and
:meth:`MapState.clear`, each of which holds an exclusive gate for its whole
duration, so a fusion pass is never observed half applied and never overlaps
another pass even if the engine is driven from more than one thread.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Iterator, Optional, Sequence

import numpy as np

from .estimator import LandmarkPoseEstimator
from .fusion_types import EstimateResult
from .observation import Observation
from .transform_with_variance import TransformWithVariance


@dataclass
class Landmark:
    fiducial_id: int
    pose: TransformWithVariance
    num_obs: int = 1
    first_seen: float = 0.0
    last_seen: float = 0.0
    links: set[int] = field(default_factory=set)

    @property
    def variance(self) -> float:
        return self.pose.variance

    @property
    def confidence(self) -> float:
        """Inverse variance; grows as observations accumulate."""
        if self.pose.variance <= 0.0:
            return float("inf")
        return 1.0 / self.pose.variance

    def is_finite(self) -> bool:
        return self.pose.is_finite()

    def copy(self) -> "Landmark":
        return replace(self, links=set(self.links))


class MapState:
    def __init__(
        self,
        read_only: bool = False,
        estimator: Optional[LandmarkPoseEstimator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.read_only = read_only
        self.estimator = estimator or LandmarkPoseEstimator()
        self.logger = logger or logging.getLogger(__name__)
        self._landmarks: dict[int, Landmark] = {}
        self._gate = threading.RLock()
        self.passes = 0
        self.ticks = 0

    def __len__(self) -> int:
        return len(self._landmarks)

    def __contains__(self, fiducial_id: int) -> bool:
        return fiducial_id in self._landmarks

    def __iter__(self) -> Iterator[Landmark]:
        with self._gate:
            items = [self._landmarks[k].copy() for k in sorted(self._landmarks)]
        return iter(items)

    def get(self, fiducial_id: int) -> Optional[Landmark]:
        """Copy of one landmark, or None."""
        with self._gate:
            lm = self._landmarks.get(fiducial_id)
            return lm.copy() if lm is not None else None

    def landmark_poses(self) -> dict[int, TransformWithVariance]:
        with self._gate:
            return {fid: lm.pose for fid, lm in self._landmarks.items()}

    def snapshot(self) -> dict[int, tuple]:
        """Plain-value view of every landmark, suitable for equality checks."""
        with self._gate:
            return {
                fid: (
                    tuple(lm.pose.translation.tolist()),
                    tuple(lm.pose.rotation.tolist()),
                    lm.pose.variance,
                    lm.num_obs,
                    lm.first_seen,
                    lm.last_seen,
                    tuple(sorted(lm.links)),
                )
                for fid, lm in sorted(self._landmarks.items())
            }

    def load(self, landmarks: Sequence[Landmark]) -> None:
        """Replace the whole map, used once at startup before any pass."""
        with self._gate:
            self._landmarks = {lm.fiducial_id: lm.copy() for lm in landmarks}
        self.logger.info("map loaded with %d fiducials", len(self._landmarks))

    def update(
        self,
        observations: Optional[Sequence[Observation]] = None,
        timestamp: Optional[float] = None,
    ) -> Optional[EstimateResult]:
        """Run a fusion pass, or a maintenance tick when called without arguments.

        A fusion pass returns the estimate, including the resolved observer
        pose if any. A tick returns None and never changes landmark poses.
        """
        if observations is None:
            self._tick()
            return None
        return self._fuse(list(observations), timestamp)

    def _fuse(self, observations: list[Observation], timestamp: Optional[float]) -> EstimateResult:
        if timestamp is None:
            timestamp = max((o.stamp for o in observations), default=0.0)

        with self._gate:
            result = self.estimator.estimate(observations, self.landmark_poses())
            self.passes += 1

            if self.read_only:
                if result.candidates:
                    self.logger.debug(
                        "read only map: %d candidate(s) discarded", len(result.candidates)
                    )
                return result

            # Stage every change, then swap it in so a pass lands whole
            staged: dict[int, Landmark] = {}
            candidates = []
            for cand in result.candidates:
                if not cand.pose.is_finite():
                    self.logger.warning("fid %d: non-finite candidate discarded", cand.fiducial_id)
                    continue
                candidates.append(cand)
            seen_ids = {c.fiducial_id for c in candidates}
            for cand in candidates:
                others = seen_ids - {cand.fiducial_id}
                current = self._landmarks.get(cand.fiducial_id)
                if current is None:
                    staged[cand.fiducial_id] = Landmark(
                        cand.fiducial_id,
                        cand.pose,
                        num_obs=1,
                        first_seen=timestamp,
                        last_seen=timestamp,
                        links=set(others),
                    )
                    self.logger.info(
                        "New fiducial %d at %s", cand.fiducial_id,
                        np.array2string(cand.pose.translation, precision=3),
                    )
                    continue

                fused = current.pose.averaged_with(cand.pose)
                if not fused.is_finite():
                    self.logger.warning("fid %d: fused pose non-finite, kept previous", cand.fiducial_id)
                    continue
                lm = current.copy()
                lm.pose = fused
                lm.num_obs += 1
                lm.last_seen = max(lm.last_seen, timestamp)
                lm.links.update(others)
                staged[cand.fiducial_id] = lm
                self.logger.debug(
                    "fid %d refined: var %.6g -> %.6g (n=%d)",
                    lm.fiducial_id, current.variance, fused.variance, lm.num_obs,
                )

            # Links are symmetric; a new landmark's neighbours learn about it too
            for fid, lm in list(staged.items()):
                for other in lm.links:
                    peer = staged.get(other)
                    if peer is None and other in self._landmarks:
                        peer = self._landmarks[other].copy()
                        staged[other] = peer
                    if peer is not None:
                        peer.links.add(fid)

            self._landmarks.update(staged)
            return result

    def _tick(self) -> None:
        with self._gate:
            self.ticks += 1
            bad = self.check_consistency()
            if bad:
                self.logger.error("non-finite fiducial pose(s) in map: %s", bad)
            if self.logger.isEnabledFor(logging.DEBUG) and self.ticks % 100 == 0:
                self.logger.debug(
                    "map: %d fiducials, %d passes, read_only=%s",
                    len(self._landmarks), self.passes, self.read_only,
                )

    def check_consistency(self) -> list[int]:
        """Ids of landmarks whose stored pose is not finite."""
        with self._gate:
            return sorted(fid for fid, lm in self._landmarks.items() if not lm.is_finite())

    def add_landmark(
        self, fiducial_id: int, pose: TransformWithVariance, stamp: float = 0.0
    ) -> bool:
        """Seed or overwrite a landmark by hand. Refused on a read-only map."""
        if self.read_only:
            self.logger.warning("read only map: add fiducial %d refused", fiducial_id)
            return False
        if not pose.is_finite():
            self.logger.warning("fid %d: non-finite pose refused", fiducial_id)
            return False
        with self._gate:
            prev = self._landmarks.get(fiducial_id)
            links = set(prev.links) if prev is not None else set()
            self._landmarks[fiducial_id] = Landmark(
                int(fiducial_id), pose, 1, stamp, stamp, links
            )
        self.logger.info("Fiducial %d added by request", fiducial_id)
        return True

    def clear(self) -> bool:
        """Drop every landmark. Refused on a read-only map."""
        if self.read_only:
            self.logger.warning("read only map: clear refused")
            return False
        with self._gate:
            self._landmarks.clear()
        self.logger.info("map cleared")
        return True
