"""Rigid transform paired with a scalar variance."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .transforms import (
    IDENTITY_QUATERNION,
    flatten_quaternion,
    invert_transform,
    matrix_to_quaternion,
    normalize_quaternion,
    pose_to_matrix,
    rvec_tvec_to_matrix,
    slerp_quaternion,
)


def _frozen(values, size: int) -> np.ndarray:
    arr = np.array(values, dtype=float).reshape(size)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class TransformWithVariance:
    """Transform from a parent frame to a child frame.

    ``translation`` is (3,), ``rotation`` an (x, y, z, w) unit quaternion and
    ``variance`` a non-negative scalar where lower means more confident.

    Composition adds variances; averaging weights each side by the inverse of
    its variance.
    """

    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: IDENTITY_QUATERNION.copy())
    variance: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "translation", _frozen(self.translation, 3))
        object.__setattr__(
            self, "rotation", _frozen(normalize_quaternion(self.rotation), 4)
        )
        object.__setattr__(self, "variance", float(self.variance))
        if self.variance < 0.0:
            raise ValueError(f"variance must be non-negative, got {self.variance}")

    @classmethod
    def identity(cls, variance: float = 0.0) -> "TransformWithVariance":
        return cls(np.zeros(3), IDENTITY_QUATERNION, variance)

    @classmethod
    def from_matrix(cls, T: np.ndarray, variance: float) -> "TransformWithVariance":
        T = np.asarray(T, dtype=float)
        return cls(T[:3, 3], matrix_to_quaternion(T[:3, :3]), variance)

    @classmethod
    def from_rvec_tvec(cls, rvec, tvec, variance: float) -> "TransformWithVariance":
        """From an OpenCV rotation vector and translation."""
        return cls.from_matrix(rvec_tvec_to_matrix(rvec, tvec), variance)

    def as_matrix(self) -> np.ndarray:
        return pose_to_matrix(self.translation, self.rotation)

    def is_finite(self) -> bool:
        return bool(
            np.all(np.isfinite(self.translation))
            and np.all(np.isfinite(self.rotation))
            and np.isfinite(self.variance)
        )

    def compose(self, other: "TransformWithVariance") -> "TransformWithVariance":
        """Chain A->B (self) with B->C (other) into A->C."""
        T = self.as_matrix() @ other.as_matrix()
        return TransformWithVariance.from_matrix(T, self.variance + other.variance)

    def __mul__(self, other: "TransformWithVariance") -> "TransformWithVariance":
        return self.compose(other)

    def inverse(self) -> "TransformWithVariance":
        return TransformWithVariance.from_matrix(
            invert_transform(self.as_matrix()), self.variance
        )

    def averaged_with(self, other: "TransformWithVariance") -> "TransformWithVariance":
        """Inverse-variance weighted average of two transforms to the same frame.

        With ``w = v_self / (v_self + v_other)`` the result is
        ``(1 - w) * self + w * other`` (slerp for rotation), and its variance is
        ``v_self * v_other / (v_self + v_other)``.
        """
        v1 = self.variance
        v2 = other.variance
        total = v1 + v2
        if total <= 0.0:
            # Two exact transforms; split the difference
            w = 0.5
            variance = 0.0
        else:
            w = v1 / total
            variance = (v1 * v2) / total

        translation = (1.0 - w) * self.translation + w * other.translation
        rotation = slerp_quaternion(self.rotation, other.rotation, w)
        return TransformWithVariance(translation, rotation, variance)

    def with_variance(self, variance: float) -> "TransformWithVariance":
        return TransformWithVariance(self.translation, self.rotation, variance)

    def flattened(self) -> "TransformWithVariance":
        """Same translation, rotation reduced to yaw only."""
        return TransformWithVariance(
            self.translation, flatten_quaternion(self.rotation), self.variance
        )

    def planar(self) -> "TransformWithVariance":
        """Yaw-only rotation with z zeroed, for 2D consumers."""
        t = np.array(self.translation)
        t[2] = 0.0
        return TransformWithVariance(t, flatten_quaternion(self.rotation), self.variance)

    def allclose(self, other: "TransformWithVariance", atol: float = 1e-9) -> bool:
        """Pose equality up to tolerance; q and -q compare equal."""
        same_rotation = np.allclose(self.rotation, other.rotation, atol=atol) or np.allclose(
            self.rotation, -other.rotation, atol=atol
        )
        return bool(
            np.allclose(self.translation, other.translation, atol=atol) and same_rotation
        )

    def __repr__(self) -> str:
        t = ", ".join(f"{v:.4f}" for v in self.translation)
        q = ", ".join(f"{v:.4f}" for v in self.rotation)
        return f"TransformWithVariance(t=[{t}], q=[{q}], var={self.variance:.6g})"
