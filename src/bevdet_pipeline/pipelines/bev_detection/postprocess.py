"""3D detection postprocessing for center-based BEV detection heads.

Each task head predicts, per BEV heatmap cell:
    - heatmap: [C_task, H, W] class scores (logits or probabilities)
    - reg: [2, H, W] sub-cell center offset
    - height: [1, H, W] box center z
    - dim: [3, H, W] box size (log or linear)
    - rot: [2, H, W] (sin, cos) yaw, or [1, H, W] direct yaw
    - vel: [2, H, W] velocity (optional)

Pipeline per task head:
    threshold -> decode -> per-class top-K -> rescale -> rotated NMS -> top-K

Rotated IoU is computed in the ground plane (height ignored) with Shapely
polygons. Ordering is stable so identical inputs give identical outputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import shapely
import torch
from shapely.geometry import Polygon

from .config import BEVDetConfig, DecodeConfig, GridAxis, TaskHead

logger = logging.getLogger(__name__)

HEAD_NAMES = ("reg", "height", "dim", "rot", "vel", "heatmap")
REQUIRED_HEADS = ("reg", "height", "dim", "rot", "heatmap")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Box3D:
    """3D detection in the ego frame.

    Attributes:
        center: Center position [x, y, z] in meters
        size: Box extent [length, width, height] in meters; length runs
            along the heading
        yaw: Heading around the z-axis in radians
        velocity: Velocity [vx, vy] in m/s (optional)
        score: Detection confidence
        class_id: Global class index
        class_name: Class name
    """

    center: np.ndarray
    size: np.ndarray
    yaw: float
    velocity: Optional[np.ndarray] = None
    score: float = 0.0
    class_id: int = -1
    class_name: str = "unknown"

    @property
    def x(self) -> float:
        return float(self.center[0])

    @property
    def y(self) -> float:
        return float(self.center[1])

    @property
    def z(self) -> float:
        return float(self.center[2])

    @property
    def distance(self) -> float:
        """Euclidean distance from ego vehicle in the ground plane."""
        return float(np.hypot(self.center[0], self.center[1]))

    def bev_corners(self, scale: float = 1.0) -> np.ndarray:
        """Ground-plane corners [4, 2], counter-clockwise.

        Args:
            scale: Factor applied to length and width
        """
        return box_bev_corners(self.center[None], self.size[None], np.array([self.yaw]), scale)[0]

    def get_corners_3d(self) -> np.ndarray:
        """Get 8 corners [8, 3] (bottom face first)."""
        bottom = self.bev_corners()
        z_min = self.center[2] - self.size[2] / 2
        z_max = self.center[2] + self.size[2] / 2
        return np.concatenate(
            [
                np.column_stack([bottom, np.full(4, z_min)]),
                np.column_stack([bottom, np.full(4, z_max)]),
            ]
        )

    def to_vector(self) -> np.ndarray:
        """[x, y, z, l, w, h, yaw, vx, vy]."""
        velocity = self.velocity if self.velocity is not None else np.zeros(2)
        return np.concatenate([self.center, self.size, [self.yaw], velocity])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "center": self.center.tolist(),
            "size": self.size.tolist(),
            "yaw": self.yaw,
            "velocity": self.velocity.tolist() if self.velocity is not None else None,
            "score": self.score,
            "class_id": self.class_id,
            "class_name": self.class_name,
            "distance": self.distance,
        }


@dataclass(frozen=True)
class PostprocessConfig:
    """Knobs for DetectionPostprocessor.

    Attributes:
        score_thresh: Minimum best-class score of a heatmap cell
        nms_overlap_thresh: Rotated IoU above which a lower-scored box is suppressed
        nms_pre_maxnum: Candidates kept per class before NMS
        nms_post_maxnum: Boxes kept per task head after NMS
        nms_rescale_factor: Per-class footprint scale used only for IoU
        tasks: Task heads in output order
        x_axis, y_axis: BEV grid the heatmap is defined on
        decode: Output convention of the detection head
    """

    score_thresh: float
    nms_overlap_thresh: float
    nms_pre_maxnum: int
    nms_post_maxnum: int
    nms_rescale_factor: Tuple[float, ...]
    tasks: Tuple[TaskHead, ...]
    x_axis: GridAxis
    y_axis: GridAxis
    decode: DecodeConfig = field(default_factory=DecodeConfig)

    @classmethod
    def from_bevdet_config(cls, config: BEVDetConfig) -> "PostprocessConfig":
        return cls(
            score_thresh=config.score_thresh,
            nms_overlap_thresh=config.nms_overlap_thresh,
            nms_pre_maxnum=config.nms_pre_maxnum,
            nms_post_maxnum=config.nms_post_maxnum,
            nms_rescale_factor=tuple(config.nms_rescale_factor),
            tasks=tuple(config.tasks),
            x_axis=config.x_axis,
            y_axis=config.y_axis,
            decode=config.decode,
        )

    @property
    def class_names(self) -> List[str]:
        return [name for task in self.tasks for name in task.class_names]

    @property
    def class_offsets(self) -> List[int]:
        """Global class index of each task's first class."""
        return list(np.cumsum([0] + [task.num_class for task in self.tasks[:-1]]))


@dataclass
class DecodedBoxes:
    """Column-wise candidate boxes of one task head.

    boxes rows are [x, y, z, l, w, h, yaw]; velocity is [K, 2] or None.
    """

    boxes: np.ndarray
    scores: np.ndarray
    labels: np.ndarray
    velocity: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return int(self.scores.shape[0])

    def select(self, idx: np.ndarray) -> "DecodedBoxes":
        return DecodedBoxes(
            boxes=self.boxes[idx],
            scores=self.scores[idx],
            labels=self.labels[idx],
            velocity=self.velocity[idx] if self.velocity is not None else None,
        )

    @classmethod
    def empty(cls, with_velocity: bool = False) -> "DecodedBoxes":
        return cls(
            boxes=np.zeros((0, 7)),
            scores=np.zeros(0),
            labels=np.zeros(0, dtype=np.int64),
            velocity=np.zeros((0, 2)) if with_velocity else None,
        )


# =============================================================================
# Geometry
# =============================================================================


def box_bev_corners(
    centers: np.ndarray,
    sizes: np.ndarray,
    yaws: np.ndarray,
    scale: Union[float, np.ndarray] = 1.0,
) -> np.ndarray:
    """Ground-plane corners of K boxes.

    Args:
        centers: [K, >=2] centers
        sizes: [K, >=2] (length, width, ...)
        yaws: [K] headings
        scale: Scalar or [K] footprint scale

    Returns:
        corners: [K, 4, 2] counter-clockwise
    """
    centers = np.asarray(centers, dtype=np.float64)
    sizes = np.asarray(sizes, dtype=np.float64)
    yaws = np.asarray(yaws, dtype=np.float64).reshape(-1)
    scale = np.broadcast_to(np.asarray(scale, dtype=np.float64), yaws.shape)

    half_l = sizes[:, 0] * scale / 2
    half_w = sizes[:, 1] * scale / 2
    local = np.stack(
        [
            np.stack([half_l, half_w], axis=-1),
            np.stack([-half_l, half_w], axis=-1),
            np.stack([-half_l, -half_w], axis=-1),
            np.stack([half_l, -half_w], axis=-1),
        ],
        axis=1,
    )  # [K, 4, 2]

    c, s = np.cos(yaws), np.sin(yaws)
    R = np.stack([np.stack([c, -s], axis=-1), np.stack([s, c], axis=-1)], axis=1)  # [K, 2, 2]
    return np.einsum("kij,kpj->kpi", R, local) + centers[:, None, :2]


def rotated_bev_iou(box_a: Box3D, box_b: Box3D, scale_a: float = 1.0, scale_b: float = 1.0) -> float:
    """IoU of two boxes' rotated ground-plane footprints (height ignored)."""
    poly_a = Polygon(box_a.bev_corners(scale_a))
    poly_b = Polygon(box_b.bev_corners(scale_b))
    union = poly_a.union(poly_b).area
    if union <= 0:
        return 0.0
    return float(poly_a.intersection(poly_b).area / union)


def nms_rotated(corners: np.ndarray, scores: np.ndarray, overlap_thresh: float) -> np.ndarray:
    """Greedy NMS over rotated ground-plane rectangles.

    Args:
        corners: [K, 4, 2] footprints
        scores: [K] scores
        overlap_thresh: Suppress when IoU with a kept box exceeds this

    Returns:
        Indices of kept boxes, highest score first; ties keep input order
    """
    K = scores.shape[0]
    if K == 0:
        return np.zeros(0, dtype=np.int64)

    order = np.argsort(-scores, kind="stable")
    polys = shapely.polygons(corners[order])
    areas = shapely.area(polys)

    suppressed = np.zeros(K, dtype=bool)
    keep = []
    for i in range(K):
        if suppressed[i]:
            continue
        keep.append(order[i])

        rest = np.flatnonzero(~suppressed[i + 1 :]) + i + 1
        if rest.size == 0:
            break
        inter = shapely.area(shapely.intersection(polys[i], polys[rest]))
        union = areas[i] + areas[rest] - inter
        iou = np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)
        suppressed[rest[iou > overlap_thresh]] = True

    return np.asarray(keep, dtype=np.int64)


# =============================================================================
# Postprocessor
# =============================================================================


def _to_numpy(tensor: Union[torch.Tensor, np.ndarray]) -> np.ndarray:
    if isinstance(tensor, torch.Tensor):
        array = tensor.detach().float().cpu().numpy()
    else:
        array = np.asarray(tensor, dtype=np.float32)
    # Drop a leading batch dimension of 1
    if array.ndim == 4:
        if array.shape[0] != 1:
            raise ValueError(f"Only batch size 1 is supported, got {array.shape[0]}")
        array = array[0]
    return array


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


class DetectionPostprocessor:
    """Turns raw task-head tensors into a de-duplicated list of Box3D.

    Example:
        >>> post = DetectionPostprocessor(PostprocessConfig.from_bevdet_config(cfg))
        >>> boxes = post.process(engine_outputs)
    """

    def __init__(self, config: PostprocessConfig):
        self.config = config
        if len(config.nms_rescale_factor) != len(config.class_names):
            raise ValueError(
                f"Need one nms_rescale_factor per class ({len(config.class_names)}), "
                f"got {len(config.nms_rescale_factor)}"
            )
        self._class_names = config.class_names
        self._class_offsets = config.class_offsets
        self._rescale = np.asarray(config.nms_rescale_factor, dtype=np.float64)

    @staticmethod
    def task_heads(outputs: Mapping[str, Any], task_index: int) -> Dict[str, np.ndarray]:
        """Collect `<head>_<task>` outputs of one task as numpy arrays."""
        heads = {}
        for name in HEAD_NAMES:
            key = f"{name}_{task_index}"
            if key in outputs:
                heads[name] = _to_numpy(outputs[key])
        missing = [name for name in REQUIRED_HEADS if name not in heads]
        if missing:
            raise KeyError(f"Task {task_index} is missing outputs: {missing}")
        return heads

    def decode_task(self, heads: Mapping[str, np.ndarray], task_index: int) -> DecodedBoxes:
        """Threshold and decode one task head into candidate boxes.

        Labels in the result are global class ids.
        """
        cfg = self.config
        decode = cfg.decode
        task = cfg.tasks[task_index]

        heatmap = heads["heatmap"]
        if heatmap.shape[0] != task.num_class:
            raise ValueError(
                f"Task {task_index} heatmap has {heatmap.shape[0]} channels, "
                f"expected {task.num_class}"
            )
        if decode.heatmap_activation == "sigmoid":
            heatmap = _sigmoid(heatmap)

        scores = heatmap.max(axis=0)
        labels = heatmap.argmax(axis=0)
        rows, cols = np.nonzero(scores >= cfg.score_thresh)
        has_velocity = "vel" in heads
        if rows.size == 0:
            return DecodedBoxes.empty(with_velocity=has_velocity)

        reg = heads["reg"][:, rows, cols]
        height = heads["height"][0, rows, cols]
        dim = heads["dim"][:, rows, cols]
        rot = heads["rot"][:, rows, cols]

        cell_x = decode.out_size_factor * cfg.x_axis.step
        cell_y = decode.out_size_factor * cfg.y_axis.step
        xs = (cols + reg[0]) * cell_x + cfg.x_axis.start
        ys = (rows + reg[1]) * cell_y + cfg.y_axis.start

        sizes = np.exp(dim) if decode.size_encoding == "log" else dim
        if decode.yaw_encoding == "sincos":
            yaws = np.arctan2(rot[0], rot[1])
        else:
            yaws = rot[0]

        boxes = np.column_stack([xs, ys, height, sizes.T, yaws]).astype(np.float64)
        velocity = heads["vel"][:2, rows, cols].T.astype(np.float64) if has_velocity else None

        # Row-major cell order is the deterministic tie order
        return DecodedBoxes(
            boxes=boxes,
            scores=scores[rows, cols].astype(np.float64),
            labels=labels[rows, cols].astype(np.int64) + self._class_offsets[task_index],
            velocity=velocity,
        )

    def suppress(self, candidates: DecodedBoxes) -> DecodedBoxes:
        """Per-class top-K, rescale and rotated NMS, then task top-K."""
        cfg = self.config
        kept_idx = []
        for class_id in np.unique(candidates.labels):
            idx = np.flatnonzero(candidates.labels == class_id)
            order = np.argsort(-candidates.scores[idx], kind="stable")
            idx = idx[order[: cfg.nms_pre_maxnum]]

            boxes = candidates.boxes[idx]
            corners = box_bev_corners(boxes[:, :2], boxes[:, 3:5], boxes[:, 6], self._rescale[class_id])
            keep = nms_rotated(corners, candidates.scores[idx], cfg.nms_overlap_thresh)
            kept_idx.append(idx[keep])

        if not kept_idx:
            return candidates.select(np.zeros(0, dtype=np.int64))

        kept = np.concatenate(kept_idx)
        # Stable on (score desc, candidate order)
        kept = kept[np.lexsort((kept, -candidates.scores[kept]))]
        return candidates.select(kept[: cfg.nms_post_maxnum])

    def to_boxes(self, decoded: DecodedBoxes) -> List[Box3D]:
        boxes = []
        for i in range(len(decoded)):
            row = decoded.boxes[i]
            class_id = int(decoded.labels[i])
            boxes.append(
                Box3D(
                    center=row[:3].copy(),
                    size=row[3:6].copy(),
                    yaw=float(row[6]),
                    velocity=decoded.velocity[i].copy() if decoded.velocity is not None else None,
                    score=float(decoded.scores[i]),
                    class_id=class_id,
                    class_name=self._class_names[class_id],
                )
            )
        return boxes

    def process_task(self, outputs: Mapping[str, Any], task_index: int) -> List[Box3D]:
        heads = self.task_heads(outputs, task_index)
        candidates = self.decode_task(heads, task_index)
        kept = self.suppress(candidates)
        logger.debug(
            f"Task {task_index}: {len(candidates)} candidates above threshold, {len(kept)} after NMS"
        )
        return self.to_boxes(kept)

    def process(self, outputs: Mapping[str, Any]) -> List[Box3D]:
        """Run all task heads and merge their detections, highest score first."""
        detections: List[Box3D] = []
        for task_index in range(len(self.config.tasks)):
            detections.extend(self.process_task(outputs, task_index))

        detections.sort(key=lambda d: d.score, reverse=True)
        return detections

    __call__ = process
