"""Rigid-pose utilities for temporal BEV fusion.

This module provides:
- Pose: immutable 6-DoF pose (unit quaternion + translation)
- RelativeTransform: rigid motion between two ego poses
- PoseAligner: serialises past->current alignment for the BEV warp step

Coordinate Systems:
    - Ego frame: X-forward, Y-left, Z-up (vehicle center)
    - Global frame: world coordinates the ego pose is expressed in
    - BEV grid frame: (column, row) cell indices of the BEV feature map

Quaternions are stored in (w, x, y, z) order, matching nuScenes-style
calibration files.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import torch
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)

QUATERNION_EPS = 1e-6

ArrayLike = Union[Sequence[float], np.ndarray]


class MalformedPoseError(ValueError):
    """Raised for degenerate or missing poses."""


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class Pose:
    """Rigid 6-DoF pose.

    Attributes:
        rotation: Unit quaternion [w, x, y, z]
        translation: Translation [x, y, z] in meters

    The quaternion is renormalised on construction; near-zero or non-finite
    quaternions raise MalformedPoseError instead of becoming identity.
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        quat = np.asarray(self.rotation, dtype=np.float64).reshape(-1)
        trans = np.asarray(self.translation, dtype=np.float64).reshape(-1)

        if quat.shape != (4,):
            raise MalformedPoseError(f"Quaternion must have 4 values, got {quat.shape[0]}")
        if trans.shape != (3,):
            raise MalformedPoseError(f"Translation must have 3 values, got {trans.shape[0]}")
        if not (np.all(np.isfinite(quat)) and np.all(np.isfinite(trans))):
            raise MalformedPoseError("Pose contains non-finite values")

        norm = float(np.linalg.norm(quat))
        if norm < QUATERNION_EPS:
            raise MalformedPoseError(f"Degenerate quaternion (norm={norm:.3g})")

        object.__setattr__(self, "rotation", _readonly(quat / norm))
        object.__setattr__(self, "translation", _readonly(trans.copy()))

    @classmethod
    def identity(cls) -> "Pose":
        return cls(rotation=np.array([1.0, 0.0, 0.0, 0.0]), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "Pose":
        """Build a pose from a [4, 4] homogeneous transform."""
        matrix = np.asarray(matrix, dtype=np.float64)
        x, y, z, w = Rotation.from_matrix(matrix[:3, :3]).as_quat()
        return cls(rotation=np.array([w, x, y, z]), translation=matrix[:3, 3])

    @property
    def rotation_matrix(self) -> np.ndarray:
        """[3, 3] rotation matrix."""
        w, x, y, z = self.rotation
        # scipy expects scalar-last quaternions
        return Rotation.from_quat([x, y, z, w]).as_matrix()

    @property
    def yaw(self) -> float:
        """Heading around the z-axis in radians."""
        R = self.rotation_matrix
        return float(np.arctan2(R[1, 0], R[0, 0]))

    def as_matrix(self) -> np.ndarray:
        """[4, 4] homogeneous transform (this frame -> parent frame)."""
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> "Pose":
        w, x, y, z = self.rotation
        conj = np.array([w, -x, -y, -z])
        R_inv = self.rotation_matrix.T
        return Pose(rotation=conj, translation=-R_inv @ self.translation)

    def compose(self, other: "Pose") -> "Pose":
        """Return self ∘ other (apply `other` first, then `self`)."""
        return Pose.from_matrix(self.as_matrix() @ other.as_matrix())

    def __matmul__(self, other: "Pose") -> "Pose":
        return self.compose(other)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the pose to [..., 3] points."""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.rotation_matrix.T + self.translation

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Pose):
            return NotImplemented
        return bool(
            np.array_equal(self.rotation, other.rotation)
            and np.array_equal(self.translation, other.translation)
        )

    def __hash__(self) -> int:
        return hash((self.rotation.tobytes(), self.translation.tobytes()))

    def to_dict(self):
        return {"rotation": self.rotation.tolist(), "translation": self.translation.tolist()}


@dataclass(frozen=True)
class RelativeTransform:
    """Rigid motion mapping points of a past ego frame into the current one.

    Attributes:
        rotation: [3, 3] rotation (past ego -> current ego)
        translation: [3] translation in meters
    """

    rotation: np.ndarray
    translation: np.ndarray

    def as_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> "RelativeTransform":
        R_inv = self.rotation.T
        return RelativeTransform(rotation=R_inv, translation=-R_inv @ self.translation)

    @property
    def is_identity(self) -> bool:
        return bool(
            np.allclose(self.rotation, np.eye(3), atol=1e-6)
            and np.allclose(self.translation, 0.0, atol=1e-6)
        )

    def to_grid_matrix(
        self,
        x_start: float,
        x_step: float,
        y_start: float,
        y_step: float,
    ) -> np.ndarray:
        """Map current BEV cell coordinates to past BEV cell coordinates.

        The warp samples the past feature map at the location each current
        cell occupied in the past frame, so the ego-space motion used here is
        the inverse (current -> past) restricted to the ground plane.

        Returns:
            [3, 3] homogeneous matrix acting on (column, row, 1)
        """
        curr2past = self.inverse()
        ego_2d = np.array(
            [
                [curr2past.rotation[0, 0], curr2past.rotation[0, 1], curr2past.translation[0]],
                [curr2past.rotation[1, 0], curr2past.rotation[1, 1], curr2past.translation[1]],
                [0.0, 0.0, 1.0],
            ]
        )
        grid2ego = np.array(
            [
                [x_step, 0.0, x_start],
                [0.0, y_step, y_start],
                [0.0, 0.0, 1.0],
            ]
        )
        return np.linalg.inv(grid2ego) @ ego_2d @ grid2ego


class PoseAligner:
    """Computes and stages the alignment transforms for historical BEV frames.

    One flattened [3, 3] grid transform (9 floats, column-major) is written
    per historical slot into a device tensor allocated once at construction.

    Example:
        >>> aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=8)
        >>> aligner.write_transform(curr_pose, past_pose, slot=0)
        >>> engine_inputs["transforms"] = aligner.transforms
    """

    TRANSFORM_SIZE = 9

    def __init__(
        self,
        x_start: float,
        x_step: float,
        y_start: float,
        y_step: float,
        num_slots: int = 1,
        device: Union[str, torch.device] = "cpu",
    ):
        if num_slots < 1:
            raise ValueError(f"num_slots must be >= 1, got {num_slots}")
        self.x_start = float(x_start)
        self.x_step = float(x_step)
        self.y_start = float(y_start)
        self.y_step = float(y_step)
        self.num_slots = int(num_slots)
        self.device = torch.device(device)

        self._host = torch.zeros(self.num_slots, self.TRANSFORM_SIZE, dtype=torch.float32)
        self._host_view = self._host.numpy()
        self.transforms: Optional[torch.Tensor] = torch.zeros(
            self.num_slots, self.TRANSFORM_SIZE, dtype=torch.float32, device=self.device
        )

    @staticmethod
    def relative_transform(current: Optional[Pose], past: Optional[Pose]) -> RelativeTransform:
        """T = current⁻¹ ∘ past, expressing the past ego frame in the current one."""
        for name, pose in (("current", current), ("past", past)):
            if pose is None:
                raise MalformedPoseError(f"{name} pose is missing")
            if not isinstance(pose, Pose):
                raise MalformedPoseError(f"{name} pose must be a Pose, got {type(pose).__name__}")

        T = current.inverse().as_matrix() @ past.as_matrix()
        return RelativeTransform(rotation=T[:3, :3], translation=T[:3, 3])

    def grid_transform(self, current: Pose, past: Pose) -> np.ndarray:
        """[3, 3] current-grid -> past-grid matrix."""
        relative = self.relative_transform(current, past)
        return relative.to_grid_matrix(self.x_start, self.x_step, self.y_start, self.y_step)

    def write_transform(self, current: Pose, past: Pose, slot: int = 0) -> torch.Tensor:
        """Serialise the alignment for `slot` into the pre-allocated buffer.

        Returns:
            View of the device buffer row for this slot
        """
        if self.transforms is None:
            raise RuntimeError("PoseAligner buffers have been released")
        if not 0 <= slot < self.num_slots:
            raise IndexError(f"slot {slot} outside [0, {self.num_slots})")

        matrix = self.grid_transform(current, past)
        self._host_view[slot, :] = matrix.flatten(order="F")
        self.transforms[slot].copy_(self._host[slot])
        return self.transforms[slot]

    def release(self) -> None:
        self.transforms = None
