"""Temporal BEV Detection Pipeline.

Camera-only 3D object detection in the BEVDet family: multi-camera images
are lifted into a bird's-eye-view grid with precomputed view-transform
tables, fused with ego-motion-aligned BEV features of previous frames, and
decoded into oriented 3D boxes.

Components:
    - ViewTransformIndexer: camera -> BEV pooling tables, built once
    - FrameRingBuffer: device-resident history of BEV features
    - PoseAligner: relative ego motion as BEV grid transforms
    - DetectionPostprocessor: center-head decoding and rotated NMS
    - BEVDet: per-frame orchestration around an inference engine

Input Requirements:
    - Multi-camera images (6 cameras for nuScenes) on the inference device
    - Camera intrinsics and camera -> ego extrinsics
    - Ego -> global pose and scene token per frame
"""

from kedro.pipeline import Pipeline, node, pipeline

from .camera import CameraFrame, CameraParams, load_camera_params
from .config import BEVDetConfig, BEVDetConfigError, DecodeConfig, GridAxis, TaskHead
from .detector import BEVDet, BEVResult, InferenceEngine, TorchModuleEngine
from .frame_buffer import FrameRingBuffer, FrameSlot
from .nodes import (
    compute_bev_detection_stats,
    create_bev_detector,
    log_bev_detection_to_mlflow,
    run_bev_detection,
)
from .postprocess import (
    Box3D,
    DetectionPostprocessor,
    PostprocessConfig,
    nms_rotated,
    rotated_bev_iou,
)
from .view_transform import ViewTransformIndexer, ViewTransformTables, bev_pool

__all__ = [
    # Configuration
    "BEVDetConfig",
    "BEVDetConfigError",
    "DecodeConfig",
    "GridAxis",
    "TaskHead",
    # Camera data
    "CameraParams",
    "CameraFrame",
    "load_camera_params",
    # Core
    "FrameRingBuffer",
    "FrameSlot",
    "ViewTransformIndexer",
    "ViewTransformTables",
    "bev_pool",
    "Box3D",
    "PostprocessConfig",
    "DetectionPostprocessor",
    "rotated_bev_iou",
    "nms_rotated",
    "InferenceEngine",
    "TorchModuleEngine",
    "BEVDet",
    "BEVResult",
    # Node functions
    "create_bev_detector",
    "run_bev_detection",
    "compute_bev_detection_stats",
    "log_bev_detection_to_mlflow",
    "create_pipeline",
]


def create_pipeline(**kwargs) -> Pipeline:
    """Create the BEV detection pipeline.

    Returns:
        A Kedro Pipeline object for temporal BEV detection.
    """
    return pipeline(
        [
            node(
                func=create_bev_detector,
                inputs=["bev_engine", "calibration", "params:bev_detection"],
                outputs="bev_detector",
                name="create_bev_detector",
                tags=["bev_detection", "model"],
            ),
            node(
                func=run_bev_detection,
                inputs=["bev_detector", "camera_frames"],
                outputs="bev_results",
                name="run_bev_detection",
                tags=["bev_detection", "inference"],
            ),
            node(
                func=compute_bev_detection_stats,
                inputs=["bev_results", "params:bev_detection"],
                outputs="bev_detection_stats",
                name="compute_bev_detection_stats",
                tags=["bev_detection", "metrics"],
            ),
            node(
                func=log_bev_detection_to_mlflow,
                inputs=["bev_detection_stats", "params:bev_detection"],
                outputs=None,
                name="log_bev_detection_to_mlflow",
                tags=["bev_detection", "mlflow"],
            ),
        ],
        inputs={"bev_engine", "calibration", "camera_frames"},
        outputs={"bev_results", "bev_detection_stats"},
        parameters={"params:bev_detection"},
        namespace="bev_detection",
        tags=["bev_detection"],
    )
