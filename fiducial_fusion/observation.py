from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .fusion_types import RawSighting, SightingBatch
from .transform_with_variance import TransformWithVariance


# Area/error values at or below zero are raised to this before weighting
MIN_METRIC = 1e-6
MIN_VARIANCE = 1e-9
MAX_VARIANCE = 1e18


def _vector(values, size: int) -> Optional[np.ndarray]:
    """Flat float array of exactly `size` values, or None."""
    try:
        a = np.asarray(values, dtype=float).reshape(-1)
    except (TypeError, ValueError):
        return None
    return a if a.size == size else None


class WeightingPolicy(str, Enum):
    AREA = "area"
    ERROR = "error"


@dataclass(frozen=True)
class Observation:
    """A single fiducial sighting, camera frame -> fiducial frame."""

    fiducial_id: int
    T_camFid: TransformWithVariance
    stamp: float
    frame_id: str
    object_error: float = 0.0
    fiducial_area: float = 0.0

    @property
    def variance(self) -> float:
        return self.T_camFid.variance


def compute_variance(policy: WeightingPolicy, scale: float, area: float, error: float) -> float:
    """Variance for one sighting under the given weighting policy.

    Area based: ``scale / area`` so large, close markers are trusted more.
    Error based: ``scale * error``.
    """
    if policy == WeightingPolicy.AREA:
        variance = scale / max(area, MIN_METRIC)
    else:
        variance = scale * max(error, MIN_METRIC)
    return min(max(variance, MIN_VARIANCE), MAX_VARIANCE)


class ObservationBuilder:
    """Turns raw detector sightings into weighted, ordered observations."""

    def __init__(
        self,
        policy: WeightingPolicy = WeightingPolicy.ERROR,
        weighting_scale: float = 1e9,
        flatten: bool = False,
        multi_error_threshold: Optional[float] = None,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.policy = WeightingPolicy(policy)
        self.weighting_scale = float(weighting_scale)
        self.flatten = flatten
        self.multi_error_threshold = multi_error_threshold
        self.verbose = verbose
        self.logger = logger or logging.getLogger(__name__)

    def build(self, raw: RawSighting, stamp: float, frame_id: str) -> Optional[Observation]:
        """Build one observation, or None if the sighting is unusable."""
        fid = int(raw.fiducial_id)
        if raw.rotation is None and raw.rvec is None:
            self.logger.warning("fid %d: sighting has no rotation, dropped", fid)
            return None

        tvec = _vector(raw.tvec, 3)
        if raw.rotation is not None:
            rot = _vector(raw.rotation, 4)
        else:
            rot = _vector(raw.rvec, 3)
        if tvec is None or rot is None:
            self.logger.warning("fid %d: malformed translation or rotation, dropped", fid)
            return None

        if not (np.all(np.isfinite(tvec)) and np.all(np.isfinite(rot))):
            self.logger.warning("fid %d: non-finite pose, dropped", fid)
            return None
        if raw.rotation is not None and np.linalg.norm(rot) < 1e-12:
            self.logger.warning("fid %d: zero-length quaternion, dropped", fid)
            return None

        area = float(raw.fiducial_area)
        error = float(raw.object_error)
        metric = area if self.policy == WeightingPolicy.AREA else error
        if not math.isfinite(metric):
            self.logger.warning("fid %d: non-finite %s, dropped", fid, self.policy.value)
            return None
        if metric <= 0.0:
            self.logger.debug("fid %d: %s %.6g clamped", fid, self.policy.value, metric)

        if self.verbose:
            self.logger.info("FSlam: fid %d obj_err %9.5f", fid, error)

        variance = compute_variance(self.policy, self.weighting_scale, area, error)
        if raw.rotation is not None:
            T_camFid = TransformWithVariance(tvec, rot, variance)
        else:
            T_camFid = TransformWithVariance.from_rvec_tvec(rot, tvec, variance)
        # Flat-floor mode: roll and pitch are treated as detector noise
        if self.flatten:
            T_camFid = T_camFid.flattened()
        return Observation(fid, T_camFid, float(stamp), frame_id, error, area)

    def build_batch(self, batch: SightingBatch) -> list[Observation]:
        """Observations for a batch, sorted by id with duplicates resolved.

        When an id appears twice the later sighting in detector order wins,
        before the multi-marker error threshold sees the batch.
        """
        latest: dict[int, RawSighting] = {}
        for s in batch.sightings:
            latest[int(s.fiducial_id)] = s
        sightings = list(latest.values())

        if self.multi_error_threshold is not None and len(sightings) > 1:
            kept = []
            for s in sightings:
                if s.object_error > self.multi_error_threshold:
                    self.logger.debug(
                        "fid %d: error %.6g over threshold %.6g, dropped",
                        s.fiducial_id, s.object_error, self.multi_error_threshold,
                    )
                    continue
                kept.append(s)
            sightings = kept

        observations = []
        for raw in sightings:
            obs = self.build(raw, batch.stamp, batch.frame_id)
            if obs is not None:
                observations.append(obs)

        observations = order_observations(observations)

        if self.verbose:
            for o in observations:
                x, y, z = o.T_camFid.translation
                self.logger.info("FSlam: fid %d  XYZ %9.6f %9.6f %9.6f", o.fiducial_id, x, y, z)

        return observations


def order_observations(observations: list[Observation]) -> list[Observation]:
    """Stable sort by fiducial id, keeping only the last entry per id."""
    by_id: dict[int, Observation] = {}
    for obs in sorted(observations, key=lambda o: o.fiducial_id):
        by_id[obs.fiducial_id] = obs
    return list(by_id.values())
