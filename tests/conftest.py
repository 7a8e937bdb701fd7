"""Pytest configuration and fixtures for BEV detection tests."""

import sys
from pathlib import Path

import numpy as np
import pytest
import torch

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from bevdet_pipeline.pipelines.bev_detection.config import BEVDetConfig, GridAxis, TaskHead  # noqa: E402
from bevdet_pipeline.pipelines.bev_detection.detector import InferenceEngine  # noqa: E402
from bevdet_pipeline.utils.geometry import Pose  # noqa: E402

# Camera looking along ego +x / -x (camera frame: x right, y down, z forward)
FRONT_CAM2EGO = np.array([[0.0, 0.0, 1.0], [-1.0, 0.0, 0.0], [0.0, -1.0, 0.0]])
BACK_CAM2EGO = np.array([[0.0, 0.0, -1.0], [1.0, 0.0, 0.0], [0.0, -1.0, 0.0]])


def yaw_pose(yaw: float, x: float = 0.0, y: float = 0.0, z: float = 0.0) -> Pose:
    """Pose rotated by `yaw` around z at (x, y, z)."""
    return Pose(
        rotation=[np.cos(yaw / 2), 0.0, 0.0, np.sin(yaw / 2)],
        translation=[x, y, z],
    )


def matrix_quaternion(R: np.ndarray):
    T = np.eye(4)
    T[:3, :3] = R
    return Pose.from_matrix(T).rotation.tolist()


def make_head_outputs(config: BEVDetConfig, peaks=(), with_velocity: bool = True, fill: float = -10.0):
    """Engine head outputs with background logits and a few peaks.

    Args:
        config: Detector config (tasks and BEV size)
        peaks: Iterable of dicts with keys task, cls, row, col, logit and
            optionally reg, height, dim (log size), rot (sin, cos), vel
    """
    ny, nx = config.bev_size
    outputs = {}
    for t, task in enumerate(config.tasks):
        outputs[f"heatmap_{t}"] = torch.full((1, task.num_class, ny, nx), fill)
        outputs[f"reg_{t}"] = torch.full((1, 2, ny, nx), 0.5)
        outputs[f"height_{t}"] = torch.zeros(1, 1, ny, nx)
        outputs[f"dim_{t}"] = torch.zeros(1, 3, ny, nx)
        rot = torch.zeros(1, 2, ny, nx)
        rot[:, 1] = 1.0
        outputs[f"rot_{t}"] = rot
        if with_velocity:
            outputs[f"vel_{t}"] = torch.zeros(1, 2, ny, nx)

    for peak in peaks:
        t, r, c = peak["task"], peak["row"], peak["col"]
        outputs[f"heatmap_{t}"][0, peak["cls"], r, c] = peak["logit"]
        if "reg" in peak:
            outputs[f"reg_{t}"][0, :, r, c] = torch.tensor(peak["reg"])
        if "height" in peak:
            outputs[f"height_{t}"][0, 0, r, c] = peak["height"]
        if "dim" in peak:
            outputs[f"dim_{t}"][0, :, r, c] = torch.tensor(peak["dim"])
        if "rot" in peak:
            outputs[f"rot_{t}"][0, :, r, c] = torch.tensor(peak["rot"])
        if "vel" in peak and with_velocity:
            outputs[f"vel_{t}"][0, :, r, c] = torch.tensor(peak["vel"])
    return outputs


class RecordingEngine(InferenceEngine):
    """Fake engine that records what it was given.

    The returned current BEV feature is filled with the call number (1, 2, ...)
    so tests can tell frames apart inside the ring buffer.
    """

    def __init__(self, config: BEVDetConfig, peaks=(), feature_shape=None):
        self.config = config
        self.peaks = list(peaks)
        self.feature_shape = feature_shape or config.bev_feature_shape
        self.calls = []
        self.closed = 0

    def infer(self, inputs):
        record = {key: value.detach().clone() for key, value in inputs.items()}
        self.calls.append(record)
        outputs = make_head_outputs(self.config, self.peaks)
        outputs["curr_bevfeat"] = torch.full((1, *self.feature_shape), float(len(self.calls)))
        return outputs

    def close(self):
        self.closed += 1


@pytest.fixture
def small_config():
    """Two-camera config with a 16 x 16 BEV grid."""
    return BEVDetConfig(
        num_cameras=2,
        camera_names=("CAM_FRONT", "CAM_BACK"),
        src_size=(64, 128),
        input_size=(32, 64),
        crop=(0, 0),
        x_axis=GridAxis(-8.0, 8.0, 1.0),
        y_axis=GridAxis(-8.0, 8.0, 1.0),
        z_axis=GridAxis(-5.0, 3.0, 8.0),
        depth_axis=GridAxis(1.0, 9.0, 1.0),
        down_sample=8,
        bevpool_channel=4,
        use_adj=True,
        adj_num=3,
        score_thresh=0.3,
        nms_overlap_thresh=0.2,
        nms_pre_maxnum=100,
        nms_post_maxnum=50,
        nms_rescale_factor=(1.0, 1.0, 1.0),
        tasks=(TaskHead(1, ("car",)), TaskHead(2, ("pedestrian", "traffic_cone"))),
    )


@pytest.fixture
def calibration_sample():
    """Parsed sample mapping for the two-camera rig."""
    intrinsic = [[64.0, 0.0, 64.0], [0.0, 64.0, 32.0], [0.0, 0.0, 1.0]]
    return {
        "scene_token": "scene-0001",
        "timestamp": 1533151603547590,
        "ego2global_rotation": [1.0, 0.0, 0.0, 0.0],
        "ego2global_translation": [100.0, 50.0, 0.0],
        "lidar2ego_rotation": [1.0, 0.0, 0.0, 0.0],
        "lidar2ego_translation": [0.9, 0.0, 1.8],
        "cams": {
            "CAM_FRONT": {
                "data_path": "samples/CAM_FRONT/0001.jpg",
                "cam_intrinsic": intrinsic,
                "sensor2ego_rotation": matrix_quaternion(FRONT_CAM2EGO),
                "sensor2ego_translation": [1.0, 0.0, 1.5],
            },
            "CAM_BACK": {
                "data_path": "samples/CAM_BACK/0001.jpg",
                "cam_intrinsic": intrinsic,
                "sensor2ego_rotation": matrix_quaternion(BACK_CAM2EGO),
                "sensor2ego_translation": [-1.0, 0.0, 1.5],
            },
        },
    }


@pytest.fixture
def calibration(calibration_sample, small_config):
    from bevdet_pipeline.pipelines.bev_detection.camera import load_camera_params

    return load_camera_params(calibration_sample, small_config.camera_names)


@pytest.fixture
def make_frame(calibration, small_config):
    """Factory for CameraFrame objects sharing the rig calibration."""
    from dataclasses import replace

    from bevdet_pipeline.pipelines.bev_detection.camera import CameraFrame

    H, W = small_config.input_size

    def _make(scene_token="scene-0001", pose=None, frame_id=None):
        params = replace(
            calibration,
            scene_token=scene_token,
            ego2global=pose if pose is not None else Pose.identity(),
        )
        images = torch.zeros(small_config.num_cameras, 3, H, W)
        return CameraFrame(params=params, images=images, frame_id=frame_id)

    return _make
