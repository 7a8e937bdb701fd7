"""MLFlow helpers for the BEV detection pipeline.

Tracking is best-effort: failures to reach the tracking server are logged
as warnings and never interrupt a detection run.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional, Union

import mlflow
import numpy as np

logger = logging.getLogger(__name__)

MAX_PARAM_LENGTH = 500


@contextmanager
def mlflow_run(
    experiment_name: str = "bevdet_pipeline",
    run_name: Optional[str] = None,
    tags: Optional[Dict[str, str]] = None,
    nested: bool = False,
):
    """Context manager for MLFlow runs.

    Example:
        >>> with mlflow_run("bev_detection", run_name="nuscenes-mini") as run:
        ...     log_metrics_safe({"fps": 24.0})
    """
    mlflow.set_experiment(experiment_name)
    with mlflow.start_run(run_name=run_name, nested=nested) as run:
        if tags:
            mlflow.set_tags(tags)
        logger.info(f"Started MLFlow run: {run.info.run_id}")
        yield run
        logger.info(f"Finished MLFlow run: {run.info.run_id}")


def log_params_safe(params: Dict[str, Any], prefix: str = "") -> None:
    """Log (possibly nested) parameters, truncating over-long values.

    Args:
        params: Dictionary of parameters to log.
        prefix: Optional prefix for parameter names.
    """
    for key, value in _flatten_dict(params, prefix).items():
        str_value = str(value)
        if len(str_value) > MAX_PARAM_LENGTH:
            str_value = str_value[: MAX_PARAM_LENGTH - 3] + "..."
        try:
            mlflow.log_param(key, str_value)
        except Exception as e:
            logger.warning(f"Failed to log param {key}: {e}")


def log_metrics_safe(
    metrics: Dict[str, Union[int, float]],
    step: Optional[int] = None,
    prefix: str = "",
) -> None:
    """Log finite numeric metrics; anything else is skipped.

    Args:
        metrics: Dictionary of metrics to log.
        step: Optional step number for the metrics.
        prefix: Optional prefix for metric names.
    """
    for key, value in metrics.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
            continue
        if not np.isfinite(value):
            continue
        metric_name = f"{prefix}{key}" if prefix else key
        try:
            mlflow.log_metric(metric_name, float(value), step=step)
        except Exception as e:
            logger.warning(f"Failed to log metric {metric_name}: {e}")


def _flatten_dict(d: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested dictionary, joining keys with underscores."""
    items = {}
    for key, value in d.items():
        new_key = f"{prefix}{key}" if prefix else key
        if isinstance(value, dict):
            items.update(_flatten_dict(value, f"{new_key}_"))
        else:
            items[new_key] = value
    return items
