"""Fixed-capacity ring buffer of historical BEV features.

The buffer owns a single zero-initialised arena tensor of shape
[N, *feature_shape] on the inference device. Every slot holds one BEV
feature map plus the scene token and ego pose it was captured at.

Logical Indexing:
    k = 0 is the most recently saved frame, k = N - 1 the oldest one kept.
    Logical k maps to physical slot (last - k + N) % N.

Cold Start:
    The first save after construction or reset() broadcasts the frame into
    all N slots, so every lookup returns a valid (if duplicated) frame.

Concurrency:
    Single writer. Callers must not read a slot while save() runs.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

import torch

from bevdet_pipeline.utils.geometry import Pose

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class FrameSlot:
    """One historical frame.

    Attributes:
        feature: View into the buffer arena (no copy); treat as read-only
        scene_id: Scene token the frame belongs to
        pose: Ego -> global pose at capture time
    """

    feature: torch.Tensor
    scene_id: Optional[str]
    pose: Optional[Pose]


class FrameRingBuffer:
    """Circular store of (BEV feature, scene token, ego pose) tuples.

    Example:
        >>> buffer = FrameRingBuffer(capacity=8, feature_shape=(80, 128, 128))
        >>> buffer.save(bev_feat, "scene-0001", ego_pose)
        >>> previous = buffer.lookup(1)
    """

    def __init__(
        self,
        capacity: int,
        feature_shape: Tuple[int, ...],
        dtype: torch.dtype = torch.float32,
        device: Union[str, torch.device] = "cpu",
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self.capacity = int(capacity)
        self.feature_shape = tuple(int(s) for s in feature_shape)
        self.dtype = dtype
        self.device = torch.device(device)

        self._arena: Optional[torch.Tensor] = torch.zeros(
            (self.capacity, *self.feature_shape), dtype=dtype, device=self.device
        )
        self._scene_ids: List[Optional[str]] = [None] * self.capacity
        self._poses: List[Optional[Pose]] = [None] * self.capacity

        self._last = 0
        self._buffer_num = 0
        self._initialized = False

        logger.debug(
            f"Allocated frame ring buffer: {self.capacity} x {self.feature_shape} "
            f"({self.nbytes / 1024**2:.1f} MB on {self.device})"
        )

    @property
    def nbytes(self) -> int:
        """Size of the arena in bytes."""
        if self._arena is None:
            return 0
        return self._arena.element_size() * self._arena.nelement()

    @property
    def num_frames(self) -> int:
        """Frames seen since the last reset, capped at capacity."""
        return self._buffer_num

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def last_scene_id(self) -> Optional[str]:
        """Scene token of the most recently saved frame."""
        return self._scene_ids[self._last]

    def _check_alive(self) -> torch.Tensor:
        if self._arena is None:
            raise RuntimeError("FrameRingBuffer has been released")
        return self._arena

    def _physical_index(self, k: int) -> int:
        if not 0 <= k < self.capacity:
            raise IndexError(f"logical index {k} outside [0, {self.capacity})")
        return (self._last - k + self.capacity) % self.capacity

    def reset(self) -> None:
        """Forget history without freeing storage.

        The next save() behaves like the first one and broadcasts.
        """
        self._last = 0
        self._buffer_num = 0
        self._initialized = False

    def save(self, feature: torch.Tensor, scene_id: Any, pose: Pose) -> None:
        """Copy `feature` into the next slot (all slots on cold start).

        Args:
            feature: BEV feature of shape feature_shape (a leading batch dim of 1
                is accepted)
            scene_id: Scene token
            pose: Ego -> global pose of the frame
        """
        arena = self._check_alive()

        if tuple(feature.shape) != self.feature_shape:
            if feature.dim() == len(self.feature_shape) + 1 and feature.shape[0] == 1:
                feature = feature[0]
            if tuple(feature.shape) != self.feature_shape:
                raise ValueError(
                    f"Feature shape {tuple(feature.shape)} does not match "
                    f"buffer slot shape {self.feature_shape}"
                )

        iters = 1 if self._initialized else self.capacity
        for _ in range(iters):
            self._last = (self._last + 1) % self.capacity
            arena[self._last].copy_(feature)
            self._scene_ids[self._last] = scene_id
            self._poses[self._last] = pose
            self._buffer_num = min(self._buffer_num + 1, self.capacity)

        self._initialized = True

    def has_frame(self, k: int) -> bool:
        """True if logical slot k holds a frame saved since the last reset."""
        return 0 <= k < self._buffer_num

    def lookup(self, k: int) -> FrameSlot:
        """Return the frame k saves ago (0 = most recent)."""
        arena = self._check_alive()
        idx = self._physical_index(k)
        return FrameSlot(
            feature=arena[idx],
            scene_id=self._scene_ids[idx],
            pose=self._poses[idx],
        )

    def get_feature(self, k: int) -> torch.Tensor:
        return self.lookup(k).feature

    def get_pose(self, k: int) -> Optional[Pose]:
        return self.lookup(k).pose

    def release(self) -> None:
        """Drop the device arena. The buffer is unusable afterwards."""
        if self._arena is not None:
            logger.debug(f"Releasing frame ring buffer ({self.nbytes} bytes)")
        self._arena = None
        self._scene_ids = [None] * self.capacity
        self._poses = [None] * self.capacity
        self.reset()

    def __len__(self) -> int:
        return self._buffer_num

    def __repr__(self) -> str:
        return (
            f"FrameRingBuffer(capacity={self.capacity}, feature_shape={self.feature_shape}, "
            f"num_frames={self._buffer_num}, device={self.device})"
        )
