"""Configuration dataclasses for BEV detection.

Parameters arrive already parsed (Kedro `params:bev_detection`) and are
validated here once, before any device memory is allocated.

Example:
    params = {
        "data_config": {"num_cameras": 6, "src_size": [900, 1600], ...},
        "grid_config": {"x": [-51.2, 51.2, 0.8], "depth": [1.0, 60.0, 1.0], ...},
        "model": {"use_adj": True, "adj_num": 8, ...},
        "test_cfg": {"score_threshold": 0.1, "nms_thr": 0.2, ...},
        "tasks": [{"num_class": 1, "class_names": ["car"]}, ...],
    }
    config = BEVDetConfig.from_params(params)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

GRID_TOLERANCE = 1e-4

YAW_ENCODINGS = ("sincos", "angle")
SIZE_ENCODINGS = ("log", "linear")
HEATMAP_ACTIVATIONS = ("sigmoid", "none")


class BEVDetConfigError(ValueError):
    """Fatal configuration mismatch detected at initialization."""


@dataclass(frozen=True)
class GridAxis:
    """One axis of a regular grid: [start, end) sampled every `step`.

    `(end - start) / step` must be a positive integer: it is the number of
    cells along the axis.
    """

    start: float
    end: float
    step: float

    def __post_init__(self):
        if self.step <= 0:
            raise BEVDetConfigError(f"Grid step must be positive, got {self.step}")
        ratio = (self.end - self.start) / self.step
        if ratio < 1 - GRID_TOLERANCE or abs(ratio - round(ratio)) > GRID_TOLERANCE:
            raise BEVDetConfigError(
                f"Grid axis ({self.start}, {self.end}, {self.step}) does not span "
                f"a positive integer number of cells ({ratio:.4f})"
            )

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "GridAxis":
        if len(values) != 3:
            raise BEVDetConfigError(f"Grid axis needs [start, end, step], got {list(values)}")
        return cls(start=float(values[0]), end=float(values[1]), step=float(values[2]))

    @property
    def num(self) -> int:
        """Number of cells along the axis."""
        return int(round((self.end - self.start) / self.step))

    def centers(self) -> np.ndarray:
        return self.start + (np.arange(self.num) + 0.5) * self.step


@dataclass(frozen=True)
class TaskHead:
    """A group of classes sharing one regression head."""

    num_class: int
    class_names: Tuple[str, ...]

    def __post_init__(self):
        if self.num_class != len(self.class_names):
            raise BEVDetConfigError(
                f"Task declares {self.num_class} classes but names {len(self.class_names)}"
            )


@dataclass(frozen=True)
class DecodeConfig:
    """Output convention of the trained detection head.

    Attributes:
        out_size_factor: Heatmap cell size in BEV grid cells
        yaw_encoding: 'sincos' (rot = [sin, cos]) or 'angle' (rot = [yaw])
        size_encoding: 'log' (dim = log(size)) or 'linear'
        heatmap_activation: 'sigmoid' for logits, 'none' for probabilities
    """

    out_size_factor: int = 1
    yaw_encoding: str = "sincos"
    size_encoding: str = "log"
    heatmap_activation: str = "sigmoid"

    def __post_init__(self):
        if self.out_size_factor < 1:
            raise BEVDetConfigError(f"out_size_factor must be >= 1, got {self.out_size_factor}")
        if self.yaw_encoding not in YAW_ENCODINGS:
            raise BEVDetConfigError(f"Unknown yaw_encoding: {self.yaw_encoding}. Supported: {YAW_ENCODINGS}")
        if self.size_encoding not in SIZE_ENCODINGS:
            raise BEVDetConfigError(f"Unknown size_encoding: {self.size_encoding}. Supported: {SIZE_ENCODINGS}")
        if self.heatmap_activation not in HEATMAP_ACTIVATIONS:
            raise BEVDetConfigError(
                f"Unknown heatmap_activation: {self.heatmap_activation}. Supported: {HEATMAP_ACTIVATIONS}"
            )


@dataclass(frozen=True)
class BEVDetConfig:
    """Configuration for the temporal BEV detector.

    Attributes:
        num_cameras: Number of surround cameras (calibration must match)
        camera_names: Camera order used for every per-camera array
        src_size: Raw image size (H, W)
        input_size: Network input size (H, W) after resize and crop
        crop: Crop offset (H, W) applied after resizing
        mean, std: Per-channel normalization handed to the engine
        x_axis, y_axis, z_axis: BEV voxel grid
        depth_axis: Depth bins sampled along each camera ray
        down_sample: Image -> feature map stride
        bevpool_channel: Channels of the BEV feature map
        use_depth: Whether the exported engine was built with depth inputs;
            recorded with the run parameters, the engine owns depth handling
        use_adj: Whether temporal fusion is enabled
        adj_num: Number of historical frames fused
        score_thresh, nms_overlap_thresh, nms_pre_maxnum, nms_post_maxnum,
        nms_rescale_factor: Postprocessing knobs (rescale factor per class)
        tasks: Task heads in output order
        decode: Detection head output convention
    """

    num_cameras: int = 6
    camera_names: Tuple[str, ...] = (
        "CAM_FRONT_LEFT",
        "CAM_FRONT",
        "CAM_FRONT_RIGHT",
        "CAM_BACK_LEFT",
        "CAM_BACK",
        "CAM_BACK_RIGHT",
    )
    src_size: Tuple[int, int] = (900, 1600)
    input_size: Tuple[int, int] = (256, 704)
    crop: Tuple[int, int] = (140, 0)
    mean: Tuple[float, float, float] = (123.675, 116.28, 103.53)
    std: Tuple[float, float, float] = (58.395, 57.12, 57.375)

    x_axis: GridAxis = GridAxis(-51.2, 51.2, 0.8)
    y_axis: GridAxis = GridAxis(-51.2, 51.2, 0.8)
    z_axis: GridAxis = GridAxis(-5.0, 3.0, 8.0)
    depth_axis: GridAxis = GridAxis(1.0, 60.0, 1.0)

    down_sample: int = 16
    bevpool_channel: int = 80
    use_depth: bool = False
    use_adj: bool = True
    adj_num: int = 8

    score_thresh: float = 0.1
    nms_overlap_thresh: float = 0.2
    nms_pre_maxnum: int = 1000
    nms_post_maxnum: int = 500
    nms_rescale_factor: Tuple[float, ...] = (1.0, 0.7, 0.7, 0.4, 0.55, 1.1, 1.0, 1.0, 1.5, 3.5)
    tasks: Tuple[TaskHead, ...] = (
        TaskHead(1, ("car",)),
        TaskHead(2, ("truck", "construction_vehicle")),
        TaskHead(2, ("bus", "trailer")),
        TaskHead(1, ("barrier",)),
        TaskHead(2, ("motorcycle", "bicycle")),
        TaskHead(2, ("pedestrian", "traffic_cone")),
    )
    decode: DecodeConfig = field(default_factory=DecodeConfig)

    def __post_init__(self):
        if len(self.camera_names) != self.num_cameras:
            raise BEVDetConfigError(
                f"Need {self.num_cameras} camera names, but given {len(self.camera_names)}"
            )
        if self.down_sample < 1:
            raise BEVDetConfigError(f"down_sample must be >= 1, got {self.down_sample}")
        for dim, name in zip(self.input_size, ("height", "width")):
            if dim % self.down_sample != 0:
                raise BEVDetConfigError(
                    f"Input {name} {dim} is not divisible by down_sample {self.down_sample}"
                )
        if self.use_adj and self.adj_num < 1:
            raise BEVDetConfigError(f"adj_num must be >= 1 when use_adj is set, got {self.adj_num}")
        if len(self.nms_rescale_factor) != self.class_num:
            raise BEVDetConfigError(
                f"Need one nms_rescale_factor per class ({self.class_num}), "
                f"got {len(self.nms_rescale_factor)}"
            )
        if not 0.0 <= self.nms_overlap_thresh <= 1.0:
            raise BEVDetConfigError(f"nms_overlap_thresh must be in [0, 1], got {self.nms_overlap_thresh}")
        if self.nms_pre_maxnum < 1 or self.nms_post_maxnum < 1:
            raise BEVDetConfigError("nms_pre_maxnum and nms_post_maxnum must be >= 1")
        if len(self.mean) != 3 or len(self.std) != 3:
            raise BEVDetConfigError("mean and std need one value per image channel")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def class_num(self) -> int:
        return sum(task.num_class for task in self.tasks)

    @property
    def class_names(self) -> List[str]:
        return [name for task in self.tasks for name in task.class_names]

    @property
    def class_num_per_task(self) -> List[int]:
        return [task.num_class for task in self.tasks]

    @property
    def resize_ratio(self) -> float:
        return self.input_size[1] / self.src_size[1]

    @property
    def feat_size(self) -> Tuple[int, int]:
        """Feature map size (H, W)."""
        return self.input_size[0] // self.down_sample, self.input_size[1] // self.down_sample

    @property
    def bev_size(self) -> Tuple[int, int]:
        """BEV grid size (H, W) = (y cells, x cells)."""
        return self.y_axis.num, self.x_axis.num

    @property
    def bev_feature_shape(self) -> Tuple[int, int, int]:
        """Shape of one BEV feature map (C, H, W)."""
        return self.bevpool_channel, self.y_axis.num, self.x_axis.num

    @property
    def post_rot(self) -> np.ndarray:
        """Image augmentation rotation (resize)."""
        return np.diag([self.resize_ratio, self.resize_ratio, 1.0])

    @property
    def post_trans(self) -> np.ndarray:
        """Image augmentation translation (crop)."""
        return np.array([-float(self.crop[1]), -float(self.crop[0]), 0.0])

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "BEVDetConfig":
        """Build a config from a nested parameter mapping.

        Missing sections fall back to the dataclass defaults.
        """
        defaults = cls()
        data_cfg = params.get("data_config", {})
        grid_cfg = params.get("grid_config", {})
        model_cfg = params.get("model", {})
        test_cfg = params.get("test_cfg", {})

        camera_names = tuple(data_cfg.get("camera_names", defaults.camera_names))
        num_cameras = int(data_cfg.get("num_cameras", len(camera_names)))

        def _axis(key: str, default: GridAxis) -> GridAxis:
            if key in grid_cfg:
                return GridAxis.from_sequence(grid_cfg[key])
            return default

        if "tasks" in params:
            tasks = tuple(
                TaskHead(
                    num_class=int(task.get("num_class", len(task["class_names"]))),
                    class_names=tuple(task["class_names"]),
                )
                for task in params["tasks"]
            )
        else:
            tasks = defaults.tasks

        decode = DecodeConfig(
            out_size_factor=int(model_cfg.get("out_size_factor", defaults.decode.out_size_factor)),
            yaw_encoding=model_cfg.get("yaw_encoding", defaults.decode.yaw_encoding),
            size_encoding=model_cfg.get("size_encoding", defaults.decode.size_encoding),
            heatmap_activation=model_cfg.get("heatmap_activation", defaults.decode.heatmap_activation),
        )

        class_num = sum(task.num_class for task in tasks)
        rescale = test_cfg.get("nms_rescale_factor", None)
        if rescale is None:
            rescale = defaults.nms_rescale_factor if class_num == defaults.class_num else (1.0,) * class_num

        config = cls(
            num_cameras=num_cameras,
            camera_names=camera_names,
            src_size=tuple(data_cfg.get("src_size", defaults.src_size)),
            input_size=tuple(data_cfg.get("input_size", defaults.input_size)),
            crop=tuple(data_cfg.get("crop", defaults.crop)),
            mean=tuple(float(v) for v in data_cfg.get("mean", defaults.mean)),
            std=tuple(float(v) for v in data_cfg.get("std", defaults.std)),
            x_axis=_axis("x", defaults.x_axis),
            y_axis=_axis("y", defaults.y_axis),
            z_axis=_axis("z", defaults.z_axis),
            depth_axis=_axis("depth", defaults.depth_axis),
            down_sample=int(model_cfg.get("down_sample", defaults.down_sample)),
            bevpool_channel=int(model_cfg.get("bevpool_channel", defaults.bevpool_channel)),
            use_depth=bool(model_cfg.get("use_depth", defaults.use_depth)),
            use_adj=bool(model_cfg.get("use_adj", defaults.use_adj)),
            adj_num=int(model_cfg.get("adj_num", defaults.adj_num)),
            score_thresh=float(test_cfg.get("score_threshold", defaults.score_thresh)),
            nms_overlap_thresh=float(test_cfg.get("nms_thr", defaults.nms_overlap_thresh)),
            nms_pre_maxnum=int(test_cfg.get("pre_max_size", defaults.nms_pre_maxnum)),
            nms_post_maxnum=int(test_cfg.get("post_max_size", defaults.nms_post_maxnum)),
            nms_rescale_factor=tuple(float(v) for v in rescale),
            tasks=tasks,
            decode=decode,
        )

        logger.info(
            f"BEVDet config: {config.num_cameras} cameras, BEV {config.bev_size}, "
            f"depth bins {config.depth_axis.num}, {config.class_num} classes in "
            f"{len(config.tasks)} tasks, adj_num={config.adj_num if config.use_adj else 0}"
        )
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Flat summary suitable for experiment tracking."""
        return {
            "num_cameras": self.num_cameras,
            "input_size": list(self.input_size),
            "bev_size": list(self.bev_size),
            "depth_bins": self.depth_axis.num,
            "bevpool_channel": self.bevpool_channel,
            "use_depth": self.use_depth,
            "use_adj": self.use_adj,
            "adj_num": self.adj_num,
            "score_thresh": self.score_thresh,
            "nms_overlap_thresh": self.nms_overlap_thresh,
            "nms_pre_maxnum": self.nms_pre_maxnum,
            "nms_post_maxnum": self.nms_post_maxnum,
            "class_num": self.class_num,
            "yaw_encoding": self.decode.yaw_encoding,
            "size_encoding": self.decode.size_encoding,
        }
