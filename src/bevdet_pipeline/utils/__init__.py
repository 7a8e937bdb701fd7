"""Utility modules for the BEV detection pipeline.

This package contains:
- Ego poses and temporal alignment transforms
- Timing and profiling helpers
- MLFlow experiment tracking
"""

from bevdet_pipeline.utils.geometry import (
    MalformedPoseError,
    Pose,
    PoseAligner,
    RelativeTransform,
)
from bevdet_pipeline.utils.mlflow_utils import (
    log_metrics_safe,
    log_params_safe,
    mlflow_run,
)
from bevdet_pipeline.utils.profiling import (
    Profiler,
    Timer,
    TimingResult,
    timed,
)

__all__ = [
    # Geometry
    "Pose",
    "RelativeTransform",
    "PoseAligner",
    "MalformedPoseError",
    # Profiling
    "Timer",
    "Profiler",
    "TimingResult",
    "timed",
    # MLFlow
    "mlflow_run",
    "log_params_safe",
    "log_metrics_safe",
]
