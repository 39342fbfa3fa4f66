"""SE(3) and quaternion utilities for fiducial pose handling.

Quaternions are stored as (x, y, z, w) arrays, matching the ordering used by
``scipy.spatial.transform.Rotation``.
"""

import numpy as np
import cv2
from scipy.spatial.transform import Rotation


IDENTITY_QUATERNION = np.array([0.0, 0.0, 0.0, 1.0])


def rvec_tvec_to_matrix(rvec, tvec) -> np.ndarray:
    """4x4 pose from an OpenCV rotation vector and a translation."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=float).reshape(3))
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(tvec, dtype=float).reshape(3)
    return T


def invert_transform(T: np.ndarray) -> np.ndarray:
    """Rigid inverse: rotation transposed, translation rotated back."""
    R_inv = T[:3, :3].T
    T_inv = np.eye(4)
    T_inv[:3, :3] = R_inv
    T_inv[:3, 3] = -R_inv @ T[:3, 3]
    return T_inv


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    """Return a unit quaternion; a zero-length input maps to identity.

    Non-finite input is returned unchanged so callers can detect it.
    """
    q = np.asarray(q, dtype=float).reshape(4)
    norm = np.linalg.norm(q)
    if not np.isfinite(norm):
        return q
    if norm < 1e-12:
        return IDENTITY_QUATERNION.copy()
    return q / norm


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    """3x3 rotation matrix for an (x, y, z, w) quaternion."""
    return Rotation.from_quat(normalize_quaternion(q)).as_matrix()


def matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """(x, y, z, w) quaternion for a 3x3 rotation matrix, with w >= 0."""
    q = Rotation.from_matrix(np.asarray(R, dtype=float)[:3, :3]).as_quat()
    if q[3] < 0:
        q = -q
    return q


def rvec_to_quaternion(rvec: np.ndarray) -> np.ndarray:
    return matrix_to_quaternion(rvec_tvec_to_matrix(rvec, np.zeros(3))[:3, :3])


def pose_to_matrix(translation: np.ndarray, q: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = quaternion_to_matrix(q)
    T[:3, 3] = np.asarray(translation, dtype=float).reshape(3)
    return T


def slerp_quaternion(q1: np.ndarray, q2: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation along the shortest arc.

    t=0 returns q1, t=1 returns q2.
    """
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)
    dot = float(np.dot(q1, q2))

    # q and -q are the same rotation; take the short way round
    if dot < 0:
        q2 = -q2
        dot = -dot

    if dot > 0.9995:
        result = q1 + t * (q2 - q1)
        return result / np.linalg.norm(result)

    theta = np.arccos(np.clip(dot, -1.0, 1.0))
    sin_theta = np.sin(theta)

    a = np.sin((1.0 - t) * theta) / sin_theta
    b = np.sin(t * theta) / sin_theta

    result = a * q1 + b * q2
    return result / np.linalg.norm(result)


def flatten_quaternion(q: np.ndarray) -> np.ndarray:
    """Drop roll and pitch, keeping only the yaw part of the rotation.

    The x and y components are zeroed and the result renormalized, which is
    how a flat-floor environment discards marker tilt noise.
    """
    q = np.asarray(q, dtype=float).reshape(4)
    return normalize_quaternion(np.array([0.0, 0.0, q[2], q[3]]))


def yaw_from_quaternion(q: np.ndarray) -> float:
    x, y, z, w = normalize_quaternion(q)
    return float(np.arctan2(2.0 * (w * z + x * y), 1.0 - 2.0 * (y * y + z * z)))
