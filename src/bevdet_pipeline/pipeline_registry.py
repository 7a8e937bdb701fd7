"""Kedro Pipeline Registry.

This module provides the central registry for all pipelines in the BEV detection project.
"""

from typing import Dict

from kedro.pipeline import Pipeline

from bevdet_pipeline.pipelines.bev_detection import create_pipeline as create_bev_detection_pipeline


def register_pipelines() -> Dict[str, Pipeline]:
    """Register all project pipelines.

    Returns:
        A dictionary mapping pipeline names to Pipeline objects.
    """
    bev_detection_pipeline = create_bev_detection_pipeline()

    return {
        "bev_detection": bev_detection_pipeline,
        # Default pipeline
        "__default__": bev_detection_pipeline,
    }
