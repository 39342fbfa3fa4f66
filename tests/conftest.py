import logging

import numpy as np
import pytest

from fiducial_fusion.fusion_types import RawSighting, SightingBatch
from fiducial_fusion.observation import Observation
from fiducial_fusion.transform_with_variance import TransformWithVariance


def yaw_quaternion(yaw: float) -> np.ndarray:
    return np.array([0.0, 0.0, np.sin(yaw / 2.0), np.cos(yaw / 2.0)])


def make_observation(fid, translation, yaw=0.0, variance=1.0, stamp=0.0, frame_id="camera"):
    """Observation with a yaw-only rotation, built without the weighting step."""
    T = TransformWithVariance(translation, yaw_quaternion(yaw), variance)
    return Observation(fid, T, stamp, frame_id, object_error=variance)


def make_sighting(fid, translation, yaw=0.0, error=1.0, area=100.0):
    return RawSighting(
        fiducial_id=fid,
        tvec=list(translation),
        rotation=yaw_quaternion(yaw).tolist(),
        object_error=error,
        fiducial_area=area,
    )


def make_batch(stamp, *sightings, frame_id="camera"):
    return SightingBatch(stamp=stamp, frame_id=frame_id, sightings=list(sightings))


@pytest.fixture
def quiet_logger():
    logger = logging.getLogger("fiducial_fusion.tests.quiet")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = True
    return logger
