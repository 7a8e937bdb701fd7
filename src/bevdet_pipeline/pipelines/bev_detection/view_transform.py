"""Sparse view-transform index tables (Lift-Splat camera -> BEV).

The camera frustum is static for a fixed calibration and grid, so the
mapping from every (camera, depth bin, feature pixel) sample to its BEV
voxel is computed once at initialization:

    1. LIFT: place one sample per feature pixel and depth bin, undo the image
       augmentation (resize/crop), unproject with K⁻¹ and move to ego frame
    2. QUANTIZE: floor((p - start) / step) on the x/y/z voxel grid, dropping
       samples outside the grid
    3. GROUP: stable-sort surviving samples by destination voxel and record
       the contiguous runs (interval_starts, interval_lengths)

The runs let the engine pool samples into BEV cells with a segment sum
instead of per-sample atomic scatter. `bev_pool` is the PyTorch reference
of that pooling step.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple, Union

import numpy as np
import torch

from bevdet_pipeline.utils.profiling import timed

from .config import GridAxis

logger = logging.getLogger(__name__)

TABLE_KEYS = ("ranks_bev", "ranks_depth", "ranks_feat", "interval_starts", "interval_lengths")


@dataclass(frozen=True)
class ViewTransformTables:
    """Index tables for grouped camera -> BEV pooling.

    Attributes:
        ranks_bev: [M] destination voxel of each kept sample, sorted ascending
        ranks_depth: [M] flat index into the depth distribution (N, D, fH, fW)
        ranks_feat: [M] flat index into the context features (N, fH, fW)
        interval_starts: [U] offset of each run of equal ranks_bev
        interval_lengths: [U] length of each run
        num_samples: Total samples before bounds filtering
    """

    ranks_bev: np.ndarray
    ranks_depth: np.ndarray
    ranks_feat: np.ndarray
    interval_starts: np.ndarray
    interval_lengths: np.ndarray
    num_samples: int = 0

    def __post_init__(self):
        for key in TABLE_KEYS:
            array = np.ascontiguousarray(getattr(self, key), dtype=np.int32)
            array.setflags(write=False)
            object.__setattr__(self, key, array)

    @property
    def valid_feat_num(self) -> int:
        """Number of in-bounds samples (M)."""
        return int(self.ranks_bev.shape[0])

    @property
    def unique_bev_num(self) -> int:
        """Number of non-empty destination voxels (U)."""
        return int(self.interval_starts.shape[0])

    def validate(self) -> None:
        """Check the run layout; raises ValueError on violation."""
        M = self.valid_feat_num
        if not (self.ranks_depth.shape[0] == M and self.ranks_feat.shape[0] == M):
            raise ValueError("ranks_bev, ranks_depth and ranks_feat must have equal length")
        if self.interval_starts.shape != self.interval_lengths.shape:
            raise ValueError("interval_starts and interval_lengths must have equal length")
        if M and np.any(np.diff(self.ranks_bev) < 0):
            raise ValueError("ranks_bev is not sorted")
        if int(self.interval_lengths.sum()) != M:
            raise ValueError(f"interval lengths sum to {int(self.interval_lengths.sum())}, expected {M}")
        if self.unique_bev_num == 0:
            return
        if np.any(self.interval_lengths <= 0):
            raise ValueError("interval lengths must be positive")

        expected_starts = np.concatenate([[0], np.cumsum(self.interval_lengths)[:-1]])
        if not np.array_equal(self.interval_starts, expected_starts):
            raise ValueError("intervals have gaps or overlaps")

        heads = self.ranks_bev[self.interval_starts]
        if np.any(np.diff(heads) <= 0):
            raise ValueError("two runs share a destination voxel")
        run_ids = np.repeat(np.arange(self.unique_bev_num), self.interval_lengths)
        if not np.array_equal(self.ranks_bev, heads[run_ids]):
            raise ValueError("a run spans more than one destination voxel")

    def to_tensors(self, device: Union[str, torch.device] = "cpu") -> Dict[str, torch.Tensor]:
        """Copy the tables to the inference device as int32 tensors."""
        return {
            key: torch.from_numpy(np.array(getattr(self, key))).to(device)
            for key in TABLE_KEYS
        }

    def to_dict(self) -> Dict[str, int]:
        return {
            "num_samples": self.num_samples,
            "valid_feat_num": self.valid_feat_num,
            "unique_bev_num": self.unique_bev_num,
        }


class ViewTransformIndexer:
    """Precomputes ViewTransformTables for one calibration and grid.

    Args:
        intrinsics: [N, 3, 3] camera intrinsic matrices
        cams2ego_rot: [N, 3, 3] camera -> ego rotations
        cams2ego_trans: [N, 3] camera -> ego translations
        post_rot: [3, 3] image augmentation rotation (resize)
        post_trans: [3] image augmentation translation (crop)
        input_size: Network input image size (H, W)
        feat_size: Feature map size (H, W)
        depth_axis, x_axis, y_axis, z_axis: Depth bins and voxel grid

    Example:
        >>> indexer = ViewTransformIndexer(K, R, t, post_rot, post_trans,
        ...                                (256, 704), (16, 44), depth, x, y, z)
        >>> tables = indexer.build()
        >>> tables.valid_feat_num, tables.unique_bev_num
    """

    def __init__(
        self,
        intrinsics: np.ndarray,
        cams2ego_rot: np.ndarray,
        cams2ego_trans: np.ndarray,
        post_rot: np.ndarray,
        post_trans: np.ndarray,
        input_size: Tuple[int, int],
        feat_size: Tuple[int, int],
        depth_axis: GridAxis,
        x_axis: GridAxis,
        y_axis: GridAxis,
        z_axis: GridAxis,
    ):
        self.intrinsics = np.asarray(intrinsics, dtype=np.float64).reshape(-1, 3, 3)
        self.cams2ego_rot = np.asarray(cams2ego_rot, dtype=np.float64).reshape(-1, 3, 3)
        self.cams2ego_trans = np.asarray(cams2ego_trans, dtype=np.float64).reshape(-1, 3)
        if not (
            self.intrinsics.shape[0] == self.cams2ego_rot.shape[0] == self.cams2ego_trans.shape[0]
        ):
            raise ValueError(
                f"Camera arrays disagree: {self.intrinsics.shape[0]} intrinsics, "
                f"{self.cams2ego_rot.shape[0]} rotations, {self.cams2ego_trans.shape[0]} translations"
            )

        self.post_rot = np.asarray(post_rot, dtype=np.float64)
        self.post_trans = np.asarray(post_trans, dtype=np.float64).reshape(3)
        self.input_size = tuple(input_size)
        self.feat_size = tuple(feat_size)
        self.depth_axis = depth_axis
        self.x_axis = x_axis
        self.y_axis = y_axis
        self.z_axis = z_axis

    @property
    def num_cameras(self) -> int:
        return self.intrinsics.shape[0]

    @property
    def grid_shape(self) -> Tuple[int, int, int]:
        """(nz, ny, nx)."""
        return self.z_axis.num, self.y_axis.num, self.x_axis.num

    def create_frustum(self) -> np.ndarray:
        """Image-space samples [D, fH, fW, 3] holding (u, v, depth).

        Feature pixels are spread evenly over the input image so the first and
        last feature column land on the first and last image column.
        """
        iH, iW = self.input_size
        fH, fW = self.feat_size
        D = self.depth_axis.num

        ds = self.depth_axis.start + np.arange(D, dtype=np.float64) * self.depth_axis.step
        xs = np.arange(fW, dtype=np.float64) * ((iW - 1) / (fW - 1) if fW > 1 else 0.0)
        ys = np.arange(fH, dtype=np.float64) * ((iH - 1) / (fH - 1) if fH > 1 else 0.0)

        d, v, u = np.meshgrid(ds, ys, xs, indexing="ij")  # [D, fH, fW]
        return np.stack((u, v, d), axis=-1)

    def get_geometry(self) -> np.ndarray:
        """Ego-frame position of every sample, [N, D, fH, fW, 3]."""
        points = self.create_frustum()

        # Undo image augmentation: p = post_rot⁻¹ (p - post_trans)
        points = (points - self.post_trans) @ np.linalg.inv(self.post_rot).T

        # Pixel -> camera ray scaled by depth
        points = np.concatenate(
            (points[..., :2] * points[..., 2:3], points[..., 2:3]),
            axis=-1,
        )

        # Camera -> ego: R · K⁻¹ · p + t
        combine = self.cams2ego_rot @ np.linalg.inv(self.intrinsics)  # [N, 3, 3]
        geom = np.einsum("nij,dhwj->ndhwi", combine, points)
        return geom + self.cams2ego_trans[:, None, None, None, :]

    def voxelize(self, geom: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Quantize ego points into voxel indices.

        Returns:
            voxel: [..., 3] integer (x, y, z) voxel coordinates
            kept: [...] mask of samples inside the grid
        """
        starts = np.array([self.x_axis.start, self.y_axis.start, self.z_axis.start])
        steps = np.array([self.x_axis.step, self.y_axis.step, self.z_axis.step])
        voxel = np.floor((geom - starts) / steps).astype(np.int64)

        nz, ny, nx = self.grid_shape
        kept = (
            (voxel[..., 0] >= 0)
            & (voxel[..., 0] < nx)
            & (voxel[..., 1] >= 0)
            & (voxel[..., 1] < ny)
            & (voxel[..., 2] >= 0)
            & (voxel[..., 2] < nz)
        )
        return voxel, kept

    @timed(name="view_transform_tables", log_level=logging.INFO)
    def build(self) -> ViewTransformTables:
        """Compute the index tables."""
        N = self.num_cameras
        D = self.depth_axis.num
        fH, fW = self.feat_size
        nz, ny, nx = self.grid_shape

        geom = self.get_geometry()
        voxel, kept = self.voxelize(geom)

        num_samples = N * D * fH * fW
        ranks_depth = np.arange(num_samples, dtype=np.int64).reshape(N, D, fH, fW)
        pixel = np.arange(fH * fW, dtype=np.int64).reshape(1, 1, fH, fW)
        camera = np.arange(N, dtype=np.int64).reshape(N, 1, 1, 1)
        ranks_feat = np.broadcast_to(camera * fH * fW + pixel, (N, D, fH, fW))

        voxel = voxel[kept]
        ranks_depth = ranks_depth[kept]
        ranks_feat = ranks_feat[kept]
        ranks_bev = voxel[:, 2] * (nx * ny) + voxel[:, 1] * nx + voxel[:, 0]

        order = np.argsort(ranks_bev, kind="stable")
        ranks_bev = ranks_bev[order]
        ranks_depth = ranks_depth[order]
        ranks_feat = ranks_feat[order]

        valid = ranks_bev.shape[0]
        if valid:
            interval_starts = np.concatenate([[0], np.flatnonzero(np.diff(ranks_bev)) + 1])
            interval_lengths = np.diff(np.concatenate([interval_starts, [valid]]))
        else:
            logger.warning("No camera sample falls inside the BEV grid")
            interval_starts = np.zeros(0, dtype=np.int64)
            interval_lengths = np.zeros(0, dtype=np.int64)

        tables = ViewTransformTables(
            ranks_bev=ranks_bev,
            ranks_depth=ranks_depth,
            ranks_feat=ranks_feat,
            interval_starts=interval_starts,
            interval_lengths=interval_lengths,
            num_samples=num_samples,
        )
        logger.info(
            f"View transform tables: {tables.valid_feat_num}/{num_samples} samples in grid, "
            f"{tables.unique_bev_num} unique BEV cells"
        )
        return tables


def bev_pool(
    depth: torch.Tensor,
    feat: torch.Tensor,
    tables: Union[ViewTransformTables, Mapping[str, torch.Tensor]],
    grid_shape: Tuple[int, int, int],
) -> torch.Tensor:
    """Segment-sum pooling of depth-weighted features into the BEV grid.

    Args:
        depth: [N, D, fH, fW] depth distribution per camera
        feat: [N, fH, fW, C] context features per camera
        tables: Index tables (or their tensor form from `to_tensors`)
        grid_shape: (nz, ny, nx)

    Returns:
        bev: [nz * C, ny, nx]; cells without samples are exactly zero
    """
    if isinstance(tables, ViewTransformTables):
        tables = tables.to_tensors(feat.device)

    nz, ny, nx = grid_shape
    C = feat.shape[-1]
    device = feat.device

    ranks_depth = tables["ranks_depth"].long()
    ranks_feat = tables["ranks_feat"].long()
    ranks_bev = tables["ranks_bev"].long()
    starts = tables["interval_starts"].long()
    lengths = tables["interval_lengths"].long()

    # Accumulators start at zero so empty cells stay zero
    out = torch.zeros(nz * ny * nx, C, dtype=feat.dtype, device=device)
    if ranks_bev.numel() == 0:
        return out.view(nz, ny, nx, C).permute(0, 3, 1, 2).reshape(nz * C, ny, nx)

    products = depth.reshape(-1)[ranks_depth].unsqueeze(1) * feat.reshape(-1, C)[ranks_feat]

    run_ids = torch.repeat_interleave(torch.arange(starts.numel(), device=device), lengths)
    sums = torch.zeros(starts.numel(), C, dtype=feat.dtype, device=device)
    sums.index_add_(0, run_ids, products)

    out[ranks_bev[starts]] = sums

    # Stack z slices along channels: [nz, ny, nx, C] -> [nz * C, ny, nx]
    return out.view(nz, ny, nx, C).permute(0, 3, 1, 2).reshape(nz * C, ny, nx)
