"""Temporal BEV detector: per-frame orchestration around an inference engine.

Per frame:
    1. Refresh the per-camera parameter block from the frame calibration
    2. Temporal alignment (use_adj): reset history on scene change, stage the
       historical BEV features and one grid transform per history slot
    3. Run the engine once
    4. Store the engine's current BEV feature in the ring buffer
    5. Decode and de-duplicate detections

All device memory (index tables, staging tensors, ring buffer) is allocated
once at construction and released by close().

Concurrency:
    A BEVDet instance is single-writer. Callers must serialise do_infer();
    concurrent calls would race on the ring buffer and staging tensors.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np
import torch
import torch.nn as nn

from bevdet_pipeline.utils.geometry import PoseAligner
from bevdet_pipeline.utils.profiling import Profiler, Timer

from .camera import CameraFrame, CameraParams
from .config import BEVDetConfig, BEVDetConfigError
from .frame_buffer import FrameRingBuffer
from .postprocess import Box3D, DetectionPostprocessor, PostprocessConfig
from .view_transform import ViewTransformIndexer

logger = logging.getLogger(__name__)

CAM_PARAM_SIZE = 22
CURRENT_FEATURE_KEY = "curr_bevfeat"


# =============================================================================
# Inference Engines
# =============================================================================


class InferenceEngine(ABC):
    """Opaque compiled network: named device tensors in, named tensors out."""

    @abstractmethod
    def infer(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """Run one forward pass."""

    def close(self) -> None:
        """Release engine resources."""

    def __call__(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        return self.infer(inputs)


class TorchModuleEngine(InferenceEngine):
    """Adapts an nn.Module taking the input dict and returning an output dict.

    Example:
        >>> engine = TorchModuleEngine(model, device="cuda:0")
        >>> outputs = engine({"images": images, ...})
    """

    def __init__(self, module: nn.Module, device: Union[str, torch.device] = "cpu"):
        self.device = torch.device(device)
        self.module = module.to(self.device)
        self.module.eval()

    def infer(self, inputs: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        with torch.no_grad():
            outputs = self.module(inputs)
        if not isinstance(outputs, dict):
            raise TypeError(f"Engine module must return a dict, got {type(outputs).__name__}")
        return outputs


# =============================================================================
# Results
# =============================================================================


@dataclass
class BEVResult:
    """Container for one frame's detections.

    Attributes:
        detections: 3D detections, highest score first
        inference_time: Wall-clock seconds spent in do_infer
        frame_id: Frame identifier
        scene_token: Scene the frame belongs to
        timestamp: Capture time in microseconds
        stage_times: Seconds per stage for this frame
    """

    detections: List[Box3D]
    inference_time: float = 0.0
    frame_id: int = 0
    scene_token: str = ""
    timestamp: int = 0
    stage_times: Dict[str, float] = field(default_factory=dict)

    @property
    def num_detections(self) -> int:
        return len(self.detections)

    def get_detections_in_range(self, max_distance: float = 50.0) -> List[Box3D]:
        """Filter detections by distance from ego."""
        return [d for d in self.detections if d.distance <= max_distance]

    def get_detections_by_class(self, class_names: List[str]) -> List[Box3D]:
        return [d for d in self.detections if d.class_name in class_names]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_id": self.frame_id,
            "scene_token": self.scene_token,
            "timestamp": self.timestamp,
            "inference_time": self.inference_time,
            "num_detections": self.num_detections,
            "detections": [d.to_dict() for d in self.detections],
        }


# =============================================================================
# Detector
# =============================================================================


def camera_param_block(params: CameraParams, post_rot: np.ndarray, post_trans: np.ndarray) -> np.ndarray:
    """Per-camera parameter rows handed to the engine, [N, 22].

    Row layout: fx, fy, cx, cy, post_rot[0, 0], post_rot[0, 1], post_trans[0],
    post_rot[1, 0], post_rot[1, 1], post_trans[1], cam -> ego rotation
    (9, row-major), cam -> ego translation (3).
    """
    K = params.intrinsics
    rots = params.cams2ego_rotations
    trans = params.cams2ego_translations
    N = params.num_cameras

    block = np.empty((N, CAM_PARAM_SIZE), dtype=np.float32)
    block[:, 0] = K[:, 0, 0]
    block[:, 1] = K[:, 1, 1]
    block[:, 2] = K[:, 0, 2]
    block[:, 3] = K[:, 1, 2]
    block[:, 4:10] = [
        post_rot[0, 0],
        post_rot[0, 1],
        post_trans[0],
        post_rot[1, 0],
        post_rot[1, 1],
        post_trans[1],
    ]
    block[:, 10:19] = rots.reshape(N, 9)
    block[:, 19:22] = trans
    return block


class BEVDet:
    """Multi-camera BEV detector with temporal feature fusion.

    Args:
        config: Validated detector configuration
        engine: Inference engine (called once per frame)
        calibration: Calibration the view-transform tables are built from
        device: Inference device

    Example:
        >>> with BEVDet(config, engine, calibration, device="cuda:0") as detector:
        ...     for frame in frames:
        ...         result = detector.do_infer(frame)
    """

    def __init__(
        self,
        config: BEVDetConfig,
        engine: InferenceEngine,
        calibration: CameraParams,
        device: Union[str, torch.device] = "cpu",
    ):
        calibration.check_num_cameras(config.num_cameras)

        self.config = config
        self.engine = engine
        self.device = torch.device(device)
        self.frame_count = 0
        self.profiler = Profiler(use_cuda_sync=self.device.type == "cuda")
        self._closed = False

        # View transform tables are static for a fixed calibration and grid
        indexer = ViewTransformIndexer(
            intrinsics=calibration.intrinsics,
            cams2ego_rot=calibration.cams2ego_rotations,
            cams2ego_trans=calibration.cams2ego_translations,
            post_rot=config.post_rot,
            post_trans=config.post_trans,
            input_size=config.input_size,
            feat_size=config.feat_size,
            depth_axis=config.depth_axis,
            x_axis=config.x_axis,
            y_axis=config.y_axis,
            z_axis=config.z_axis,
        )
        self.tables = indexer.build()
        self.tables.validate()
        self.grid_shape = indexer.grid_shape
        self._table_tensors: Optional[Dict[str, torch.Tensor]] = self.tables.to_tensors(self.device)

        self._cam_params_host = torch.zeros(config.num_cameras, CAM_PARAM_SIZE, dtype=torch.float32)
        self.cam_params: Optional[torch.Tensor] = torch.zeros(
            config.num_cameras, CAM_PARAM_SIZE, dtype=torch.float32, device=self.device
        )
        self.mean: Optional[torch.Tensor] = torch.tensor(config.mean, dtype=torch.float32, device=self.device)
        self.std: Optional[torch.Tensor] = torch.tensor(config.std, dtype=torch.float32, device=self.device)

        self.aligner: Optional[PoseAligner] = None
        self.frame_buffer: Optional[FrameRingBuffer] = None
        self._adj_feats: Optional[torch.Tensor] = None
        self._flag: Optional[torch.Tensor] = None
        if config.use_adj:
            self.aligner = PoseAligner(
                config.x_axis.start,
                config.x_axis.step,
                config.y_axis.start,
                config.y_axis.step,
                num_slots=config.adj_num,
                device=self.device,
            )
            self.frame_buffer = FrameRingBuffer(
                capacity=config.adj_num,
                feature_shape=config.bev_feature_shape,
                device=self.device,
            )
            self._adj_feats = torch.zeros(
                (config.adj_num, *config.bev_feature_shape), dtype=torch.float32, device=self.device
            )
            self._flag = torch.zeros(1, dtype=torch.int32, device=self.device)

        self.postprocessor = DetectionPostprocessor(PostprocessConfig.from_bevdet_config(config))

        logger.info(
            f"BEVDet ready on {self.device}: {config.num_cameras} cameras, "
            f"{self.tables.valid_feat_num} pooled samples, "
            f"temporal fusion {'on (' + str(config.adj_num) + ' frames)' if config.use_adj else 'off'}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("BEVDet has been closed")

    def close(self) -> None:
        """Release every device allocation. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self.frame_buffer is not None:
            self.frame_buffer.release()
        if self.aligner is not None:
            self.aligner.release()
        self._table_tensors = None
        self.cam_params = None
        self.mean = None
        self.std = None
        self._adj_feats = None
        self._flag = None
        self.engine.close()
        logger.info(f"BEVDet closed after {self.frame_count} frames")

    def reset(self) -> None:
        """Drop temporal history, e.g. after a pose discontinuity.

        The next frame runs with flag 0 and its feature is broadcast to every slot.
        """
        self._check_open()
        if self.frame_buffer is not None:
            self.frame_buffer.reset()
            logger.info("BEVDet history reset")

    def __enter__(self) -> "BEVDet":
        return self

    def __exit__(self, *args):
        self.close()

    # ------------------------------------------------------------------
    # Per-frame stages
    # ------------------------------------------------------------------

    def _check_frame(self, frame: CameraFrame) -> None:
        N = self.config.num_cameras
        H, W = self.config.input_size
        if frame.params.num_cameras != N:
            raise ValueError(f"Need {N} camera params, but given {frame.params.num_cameras}")
        if tuple(frame.images.shape) != (N, 3, H, W):
            raise ValueError(f"Expected images of shape {(N, 3, H, W)}, got {tuple(frame.images.shape)}")

    def _write_cam_params(self, params: CameraParams) -> None:
        block = camera_param_block(params, self.config.post_rot, self.config.post_trans)
        self._cam_params_host.numpy()[:] = block
        self.cam_params.copy_(self._cam_params_host)

    def _stage_adjacent_frames(self, frame: CameraFrame) -> int:
        """Fill adj_feats/transforms for every history slot.

        Returns:
            flag: 1 when the history belongs to the current scene, 0 after a reset
        """
        buffer = self.frame_buffer
        flag = 1
        if buffer.last_scene_id != frame.scene_token:
            if buffer.initialized:
                logger.info(f"Scene changed ({buffer.last_scene_id} -> {frame.scene_token}), resetting history")
            buffer.reset()
        if not buffer.initialized:
            flag = 0

        current = frame.ego_pose
        for k in range(self.config.adj_num):
            slot = buffer.lookup(k)
            self._adj_feats[k].copy_(slot.feature)
            # Without history the engine ignores the slot; stage an identity alignment
            past = slot.pose if buffer.initialized else current
            self.aligner.write_transform(current, past, slot=k)

        self._flag.fill_(flag)
        return flag

    def _engine_inputs(self, frame: CameraFrame) -> Dict[str, torch.Tensor]:
        inputs = {
            "images": frame.images.to(self.device),
            "mean": self.mean,
            "std": self.std,
            "cam_params": self.cam_params,
        }
        inputs.update(self._table_tensors)
        if self.config.use_adj:
            inputs["adj_feats"] = self._adj_feats
            inputs["transforms"] = self.aligner.transforms
            inputs["flag"] = self._flag
        return inputs

    def _current_feature(self, outputs: Dict[str, torch.Tensor]) -> torch.Tensor:
        if CURRENT_FEATURE_KEY not in outputs:
            raise BEVDetConfigError(f"Engine did not return '{CURRENT_FEATURE_KEY}'")
        feature = outputs[CURRENT_FEATURE_KEY]
        shape = tuple(feature.shape)
        if shape[0] == 1 and len(shape) == len(self.config.bev_feature_shape) + 1:
            shape = shape[1:]
        if shape != self.config.bev_feature_shape:
            raise BEVDetConfigError(
                f"Engine BEV feature shape {tuple(feature.shape)} does not match "
                f"configured {self.config.bev_feature_shape}"
            )
        return feature

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def do_infer(self, frame: CameraFrame) -> BEVResult:
        """Detect objects in one multi-camera frame.

        Args:
            frame: Images on the inference device plus calibration and pose

        Returns:
            BEVResult with detections sorted by score
        """
        self._check_open()
        self._check_frame(frame)

        stage_times: Dict[str, float] = {}
        timer = Timer(use_cuda_sync=self.device.type == "cuda").start()

        with self.profiler.profile("view_align"):
            self._write_cam_params(frame.params)
            flag = self._stage_adjacent_frames(frame) if self.config.use_adj else 0
        stage_times["view_align"] = self.profiler.last_time("view_align")

        with self.profiler.profile("engine"):
            outputs = self.engine(self._engine_inputs(frame))
        stage_times["engine"] = self.profiler.last_time("engine")

        if self.config.use_adj:
            with self.profiler.profile("save_frame"):
                feature = self._current_feature(outputs)
                self.frame_buffer.save(feature, frame.scene_token, frame.ego_pose)
            stage_times["save_frame"] = self.profiler.last_time("save_frame")

        with self.profiler.profile("postprocess"):
            detections = self.postprocessor.process(outputs)
        stage_times["postprocess"] = self.profiler.last_time("postprocess")

        elapsed = timer.stop()
        frame_id = frame.frame_id if frame.frame_id is not None else self.frame_count
        self.frame_count += 1

        logger.debug(
            f"Frame {frame_id}: {len(detections)} detections in {elapsed * 1000:.1f}ms "
            f"(flag={flag})"
        )
        return BEVResult(
            detections=detections,
            inference_time=elapsed,
            frame_id=frame_id,
            scene_token=frame.scene_token,
            timestamp=frame.timestamp,
            stage_times=stage_times,
        )

    __call__ = do_infer
