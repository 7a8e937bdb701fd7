"""Camera calibration and per-frame observation bundles.

A sample mapping follows the nuScenes-info layout:

    {
        "scene_token": "...",
        "timestamp": 1533151603547590,
        "ego2global_rotation": [w, x, y, z],
        "ego2global_translation": [x, y, z],
        "lidar2ego_rotation": [w, x, y, z],
        "lidar2ego_translation": [x, y, z],
        "cams": {
            "CAM_FRONT": {
                "data_path": "samples/CAM_FRONT/....jpg",
                "cam_intrinsic": [[fx, 0, cx], [0, fy, cy], [0, 0, 1]],
                "sensor2ego_rotation": [w, x, y, z],
                "sensor2ego_translation": [x, y, z],
            },
            ...
        },
    }

Reading the YAML/pickle file itself is left to the Kedro catalog.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import torch

from bevdet_pipeline.utils.geometry import Pose

from .config import BEVDetConfigError

logger = logging.getLogger(__name__)


@dataclass
class CameraParams:
    """Calibration and ego pose for one multi-camera observation.

    Attributes:
        intrinsics: [N, 3, 3] intrinsic matrices
        cams2ego: Camera -> ego pose per camera
        ego2global: Ego -> global pose at capture time
        lidar2ego: LiDAR -> ego pose
        timestamp: Capture time in microseconds
        scene_token: Identifier of the recording the frame belongs to
        image_files: Per-camera image paths (informational)
    """

    intrinsics: np.ndarray
    cams2ego: List[Pose]
    ego2global: Pose = field(default_factory=Pose.identity)
    lidar2ego: Pose = field(default_factory=Pose.identity)
    timestamp: int = 0
    scene_token: str = ""
    image_files: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.intrinsics = np.asarray(self.intrinsics, dtype=np.float64).reshape(-1, 3, 3)
        if len(self.cams2ego) != self.intrinsics.shape[0]:
            raise BEVDetConfigError(
                f"Got {self.intrinsics.shape[0]} intrinsics but {len(self.cams2ego)} extrinsics"
            )

    @property
    def num_cameras(self) -> int:
        return self.intrinsics.shape[0]

    @property
    def cams2ego_rotations(self) -> np.ndarray:
        """[N, 3, 3] camera -> ego rotation matrices."""
        return np.stack([pose.rotation_matrix for pose in self.cams2ego])

    @property
    def cams2ego_translations(self) -> np.ndarray:
        """[N, 3] camera -> ego translations."""
        return np.stack([pose.translation for pose in self.cams2ego])

    def check_num_cameras(self, expected: int) -> None:
        if self.num_cameras != expected:
            raise BEVDetConfigError(
                f"Need {expected} camera params, but given {self.num_cameras}"
            )


def _matrix3(values: Any) -> np.ndarray:
    matrix = np.asarray(values, dtype=np.float64)
    if matrix.shape != (3, 3):
        raise BEVDetConfigError(f"Expected a 3x3 matrix, got shape {matrix.shape}")
    return matrix


def load_camera_params(sample: Dict[str, Any], camera_names: Sequence[str]) -> CameraParams:
    """Build CameraParams from an already-parsed sample mapping.

    Args:
        sample: Sample mapping (see module docstring)
        camera_names: Camera order; every name must be present in sample["cams"]

    Returns:
        CameraParams with cameras in `camera_names` order
    """
    cams = sample.get("cams", {})
    missing = [name for name in camera_names if name not in cams]
    if missing:
        raise BEVDetConfigError(
            f"Need {len(camera_names)} camera params, but sample is missing {missing}"
        )

    intrinsics = []
    cams2ego = []
    image_files = []
    for name in camera_names:
        cam = cams[name]
        intrinsics.append(_matrix3(cam["cam_intrinsic"]))
        cams2ego.append(
            Pose(rotation=cam["sensor2ego_rotation"], translation=cam["sensor2ego_translation"])
        )
        if "data_path" in cam:
            image_files.append(str(cam["data_path"]))

    params = CameraParams(
        intrinsics=np.stack(intrinsics),
        cams2ego=cams2ego,
        ego2global=Pose(
            rotation=sample.get("ego2global_rotation", [1.0, 0.0, 0.0, 0.0]),
            translation=sample.get("ego2global_translation", [0.0, 0.0, 0.0]),
        ),
        lidar2ego=Pose(
            rotation=sample.get("lidar2ego_rotation", [1.0, 0.0, 0.0, 0.0]),
            translation=sample.get("lidar2ego_translation", [0.0, 0.0, 0.0]),
        ),
        timestamp=int(sample.get("timestamp", 0)),
        scene_token=str(sample.get("scene_token", "")),
        image_files=image_files,
    )
    logger.debug(f"Loaded calibration for {params.num_cameras} cameras (scene {params.scene_token})")
    return params


@dataclass
class CameraFrame:
    """One observation: device-resident images plus calibration and pose.

    Attributes:
        params: Calibration, ego pose, scene token and timestamp
        images: [N_cam, 3, H, W] images already on the inference device
    """

    params: CameraParams
    images: torch.Tensor
    frame_id: Optional[int] = None

    @property
    def scene_token(self) -> str:
        return self.params.scene_token

    @property
    def ego_pose(self) -> Pose:
        return self.params.ego2global

    @property
    def timestamp(self) -> int:
        return self.params.timestamp
