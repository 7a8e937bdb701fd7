"""Unit tests for the Kedro pipeline and its nodes."""

from unittest.mock import patch

import numpy as np
import pytest
import torch
import torch.nn as nn

from conftest import RecordingEngine

# Check if kedro is available
try:
    import kedro
    from kedro.pipeline import Pipeline

    KEDRO_AVAILABLE = True
except ImportError:
    KEDRO_AVAILABLE = False

pytestmark = pytest.mark.skipif(not KEDRO_AVAILABLE, reason="kedro is not installed")


SMALL_PARAMS = {
    "device": "cpu",
    "data_config": {
        "camera_names": ["CAM_FRONT", "CAM_BACK"],
        "src_size": [64, 128],
        "input_size": [32, 64],
        "crop": [0, 0],
    },
    "grid_config": {"x": [-8, 8, 1], "y": [-8, 8, 1], "z": [-5, 3, 8], "depth": [1, 9, 1]},
    "model": {"down_sample": 8, "bevpool_channel": 4, "use_adj": True, "adj_num": 3},
    "test_cfg": {"score_threshold": 0.3, "nms_thr": 0.2, "pre_max_size": 100, "post_max_size": 50},
    "tasks": [
        {"num_class": 1, "class_names": ["car"]},
        {"num_class": 2, "class_names": ["pedestrian", "traffic_cone"]},
    ],
}


class TestPipelineRegistry:
    """Tests for pipeline registry."""

    def test_register_pipelines(self):
        """Test that all registered pipelines are Pipeline objects."""
        from bevdet_pipeline.pipeline_registry import register_pipelines

        pipelines = register_pipelines()

        assert "bev_detection" in pipelines
        assert "__default__" in pipelines
        for name, pipeline in pipelines.items():
            assert isinstance(pipeline, Pipeline), f"{name} is not a Pipeline"

    def test_pipeline_nodes(self):
        """Test node names and free inputs of the BEV detection pipeline."""
        from bevdet_pipeline.pipelines.bev_detection import create_pipeline

        pipeline = create_pipeline()
        names = {node.name.split(".")[-1] for node in pipeline.nodes}

        assert names == {
            "create_bev_detector",
            "run_bev_detection",
            "compute_bev_detection_stats",
            "log_bev_detection_to_mlflow",
        }
        assert {"bev_engine", "calibration", "camera_frames", "params:bev_detection"} <= pipeline.inputs()


class TestNodes:
    """Tests for the node functions."""

    def test_create_from_sample_and_module(self, calibration_sample):
        """Test building a detector from a parsed sample and an nn.Module."""
        from bevdet_pipeline.pipelines.bev_detection.detector import TorchModuleEngine
        from bevdet_pipeline.pipelines.bev_detection.nodes import create_bev_detector

        detector = create_bev_detector(nn.Identity(), calibration_sample, SMALL_PARAMS)

        assert isinstance(detector.engine, TorchModuleEngine)
        assert detector.config.num_cameras == 2
        assert detector.frame_buffer.capacity == 3
        detector.close()

    def test_create_rejects_unknown_engine(self, calibration_sample):
        """Test that an unsupported engine type is reported."""
        from bevdet_pipeline.pipelines.bev_detection.nodes import create_bev_detector

        with pytest.raises(TypeError):
            create_bev_detector(object(), calibration_sample, SMALL_PARAMS)

    def test_run_and_stats(self, calibration, make_frame):
        """Test running frames and summarising the results."""
        from bevdet_pipeline.pipelines.bev_detection.config import BEVDetConfig
        from bevdet_pipeline.pipelines.bev_detection.nodes import (
            compute_bev_detection_stats,
            create_bev_detector,
            run_bev_detection,
        )

        config = BEVDetConfig.from_params(SMALL_PARAMS)
        peaks = [
            {"task": 0, "cls": 0, "row": 8, "col": 8, "logit": 3.0},
            {"task": 1, "cls": 0, "row": 2, "col": 2, "logit": 2.0},
        ]
        engine = RecordingEngine(config, peaks=peaks)
        detector = create_bev_detector(engine, calibration, SMALL_PARAMS)

        frames = [make_frame(scene_token=token) for token in ("a", "a", "b")]
        results = run_bev_detection(detector, frames)
        stats = compute_bev_detection_stats(results, SMALL_PARAMS)
        detector.close()

        assert len(results) == 3
        assert [r.frame_id for r in results] == [0, 1, 2]
        assert stats["total_frames"] == 3
        assert stats["total_detections"] == 6
        assert stats["detections_per_frame"] == pytest.approx(2.0)
        assert stats["num_scenes"] == 2
        assert stats["count_car"] == 3
        assert stats["count_pedestrian"] == 3
        assert stats["fps"] > 0
        assert "avg_engine_ms" in stats

    def test_stats_empty(self):
        """Test stats of an empty run."""
        from bevdet_pipeline.pipelines.bev_detection.nodes import compute_bev_detection_stats

        assert compute_bev_detection_stats([], SMALL_PARAMS) == {}

    def test_log_to_mlflow(self):
        """Test that stats are forwarded as prefixed metrics."""
        from bevdet_pipeline.pipelines.bev_detection.nodes import log_bev_detection_to_mlflow

        with patch("bevdet_pipeline.utils.mlflow_utils.mlflow") as mock_mlflow:
            log_bev_detection_to_mlflow({"fps": 20.0, "total_frames": 3}, SMALL_PARAMS)

            logged = {call[0][0] for call in mock_mlflow.log_metric.call_args_list}
            assert logged == {"bev_fps", "bev_total_frames"}
            mock_mlflow.log_param.assert_any_call("bev_adj_num", "3")
            mock_mlflow.log_param.assert_any_call("bev_use_depth", "False")
            mock_mlflow.log_param.assert_any_call("bev_device", "cpu")
