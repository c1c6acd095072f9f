"""Rigid-body rotations and frames used by the calibration offsets."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

_GIMBAL_EPSILON = 1e-12
_SMALL_SINE = 1e-6


@dataclass
class Frame:
    """A rigid transform: a 3x3 rotation followed by a translation."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=float)
        self.translation = np.asarray(self.translation, dtype=float)
        if self.rotation.shape != (3, 3):
            raise ValueError(f"rotation must be 3x3, got shape {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"translation must have 3 components, got shape {self.translation.shape}"
            )

    def compose(self, other: Frame) -> Frame:
        """Return the frame equal to applying ``other`` inside this frame."""
        return Frame(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    __matmul__ = compose


def rotation_from_rpy(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Rotation about fixed axes: roll about X, then pitch about Y, then yaw about Z."""
    ca, sa = math.cos(yaw), math.sin(yaw)
    cb, sb = math.cos(pitch), math.sin(pitch)
    cg, sg = math.cos(roll), math.sin(roll)
    return np.array(
        [
            [ca * cb, ca * sb * sg - sa * cg, ca * sb * cg + sa * sg],
            [sa * cb, sa * sb * sg + ca * cg, sa * sb * cg - ca * sg],
            [-sb, cb * sg, cb * cg],
        ]
    )


def rpy_from_rotation(rotation) -> tuple[float, float, float]:
    """Return (roll, pitch, yaw) about fixed axes for a rotation matrix."""
    r = np.asarray(rotation, dtype=float)
    pitch = math.atan2(-r[2, 0], math.sqrt(r[0, 0] ** 2 + r[1, 0] ** 2))
    if abs(pitch) > math.pi / 2.0 - _GIMBAL_EPSILON:
        yaw = math.atan2(-r[0, 1], r[1, 1])
        roll = 0.0
    else:
        roll = math.atan2(r[2, 1], r[2, 2])
        yaw = math.atan2(r[1, 0], r[0, 0])
    return roll, pitch, yaw


def rotation_from_axis_magnitude(a: float, b: float, c: float) -> np.ndarray:
    """Rotation whose axis is (a, b, c) and whose angle is that vector's length."""
    vector = np.array([a, b, c], dtype=float)
    angle = float(np.linalg.norm(vector))
    if angle == 0.0:
        return np.eye(3)
    x, y, z = vector / angle
    k = np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])
    return np.eye(3) + math.sin(angle) * k + (1.0 - math.cos(angle)) * (k @ k)


def axis_magnitude_from_rotation(rotation) -> tuple[float, float, float]:
    """Return the rotation vector (axis scaled by angle) of a rotation matrix."""
    r = np.asarray(rotation, dtype=float)
    v = np.array([r[2, 1] - r[1, 2], r[0, 2] - r[2, 0], r[1, 0] - r[0, 1]])
    sine = float(np.linalg.norm(v)) / 2.0
    diagonal_sum = float(r[0, 0] + r[1, 1] + r[2, 2])
    cosine = (diagonal_sum - 1.0) / 2.0

    if sine > _SMALL_SINE:
        angle = math.atan2(sine, cosine)
        axis = v / (2.0 * sine)
        x, y, z = axis * angle
        return float(x), float(y), float(z)

    if cosine > 0.0:
        # Nearly the identity: the rotation vector is approximately v / 2.
        x, y, z = v / 2.0
        return float(x), float(y), float(z)

    # Rotation by pi: R = 2 a a^T - I.
    diagonal = np.sqrt(np.clip((np.diag(r) + 1.0) / 2.0, 0.0, None))
    largest = int(np.argmax(diagonal))
    axis = np.empty(3)
    axis[largest] = diagonal[largest]
    for other in {0, 1, 2} - {largest}:
        axis[other] = (r[largest, other] + r[other, largest]) / (4.0 * axis[largest])
    axis /= np.linalg.norm(axis)
    x, y, z = axis * math.pi
    return float(x), float(y), float(z)