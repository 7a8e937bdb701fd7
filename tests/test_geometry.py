"""Unit tests for poses and temporal alignment transforms."""

import numpy as np
import pytest
import torch

from conftest import yaw_pose


class TestPose:
    """Tests for Pose."""

    def test_quaternion_is_normalised(self):
        """Test that a non-unit quaternion is renormalised."""
        from bevdet_pipeline.utils.geometry import Pose

        pose = Pose(rotation=[2.0, 0.0, 0.0, 0.0], translation=[1.0, 2.0, 3.0])

        assert np.linalg.norm(pose.rotation) == pytest.approx(1.0)
        np.testing.assert_allclose(pose.rotation_matrix, np.eye(3), atol=1e-12)

    def test_degenerate_quaternion_raises(self):
        """Test that a near-zero quaternion is rejected, not coerced."""
        from bevdet_pipeline.utils.geometry import MalformedPoseError, Pose

        with pytest.raises(MalformedPoseError):
            Pose(rotation=[0.0, 0.0, 0.0, 1e-9], translation=[0.0, 0.0, 0.0])

    def test_non_finite_values_raise(self):
        """Test that NaN poses are rejected."""
        from bevdet_pipeline.utils.geometry import MalformedPoseError, Pose

        with pytest.raises(MalformedPoseError):
            Pose(rotation=[1.0, 0.0, 0.0, 0.0], translation=[np.nan, 0.0, 0.0])

    def test_wrong_shape_raises(self):
        """Test that a 3-element quaternion is rejected."""
        from bevdet_pipeline.utils.geometry import MalformedPoseError, Pose

        with pytest.raises(MalformedPoseError):
            Pose(rotation=[1.0, 0.0, 0.0], translation=[0.0, 0.0, 0.0])

    def test_pose_is_immutable(self):
        """Test that stored arrays cannot be modified in place."""
        pose = yaw_pose(0.3, x=1.0)

        with pytest.raises(ValueError):
            pose.translation[0] = 5.0

    def test_yaw(self):
        """Test heading extraction."""
        assert yaw_pose(0.7).yaw == pytest.approx(0.7)

    def test_inverse_composes_to_identity(self):
        """Test that pose ∘ pose⁻¹ is the identity."""
        pose = yaw_pose(1.2, x=3.0, y=-4.0, z=0.5)

        np.testing.assert_allclose((pose @ pose.inverse()).as_matrix(), np.eye(4), atol=1e-9)

    def test_from_matrix_roundtrip(self):
        """Test building a pose from its own matrix."""
        from bevdet_pipeline.utils.geometry import Pose

        pose = yaw_pose(-0.4, x=1.0, y=2.0)
        rebuilt = Pose.from_matrix(pose.as_matrix())

        np.testing.assert_allclose(rebuilt.as_matrix(), pose.as_matrix(), atol=1e-9)

    def test_transform_points(self):
        """Test applying a pose to points."""
        pose = yaw_pose(np.pi / 2, x=10.0)

        out = pose.transform_points(np.array([[1.0, 0.0, 0.0]]))

        np.testing.assert_allclose(out, [[10.0, 1.0, 0.0]], atol=1e-9)

    def test_equality_by_value(self):
        """Test that equal values compare equal."""
        assert yaw_pose(0.5, x=1.0) == yaw_pose(0.5, x=1.0)
        assert yaw_pose(0.5, x=1.0) != yaw_pose(0.5, x=2.0)


class TestRelativeTransform:
    """Tests for relative ego motion."""

    def test_same_pose_is_identity(self):
        """Test that aligning a frame with itself is the identity."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        pose = yaw_pose(0.8, x=12.0, y=-3.0)
        relative = PoseAligner.relative_transform(pose, pose)

        assert relative.is_identity
        np.testing.assert_allclose(
            relative.to_grid_matrix(-51.2, 0.8, -51.2, 0.8), np.eye(3), atol=1e-9
        )

    def test_pure_translation(self):
        """Test that a past origin appears behind a vehicle that drove forward."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        past = yaw_pose(0.0, x=0.0)
        current = yaw_pose(0.0, x=2.0)

        relative = PoseAligner.relative_transform(current, past)

        np.testing.assert_allclose(relative.rotation, np.eye(3), atol=1e-12)
        np.testing.assert_allclose(relative.translation, [-2.0, 0.0, 0.0], atol=1e-12)

    def test_pure_rotation(self):
        """Test the relative rotation of a vehicle that turned left."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        past = yaw_pose(0.0)
        current = yaw_pose(np.pi / 2)

        relative = PoseAligner.relative_transform(current, past)

        expected = np.array([[0.0, 1.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        np.testing.assert_allclose(relative.rotation, expected, atol=1e-9)

    def test_grid_matrix_translation_in_cells(self):
        """Test that ego motion becomes a cell offset in the grid matrix."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        relative = PoseAligner.relative_transform(yaw_pose(0.0, x=2.0), yaw_pose(0.0))
        grid = relative.to_grid_matrix(-51.2, 0.8, -51.2, 0.8)

        expected = np.array([[1.0, 0.0, 2.5], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        np.testing.assert_allclose(grid, expected, atol=1e-9)

    def test_inverse(self):
        """Test that composing with the inverse gives the identity."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        relative = PoseAligner.relative_transform(yaw_pose(0.3, x=1.0), yaw_pose(-0.2, y=4.0))

        np.testing.assert_allclose(
            relative.as_matrix() @ relative.inverse().as_matrix(), np.eye(4), atol=1e-9
        )

    def test_missing_pose_raises(self):
        """Test that a missing past pose is rejected."""
        from bevdet_pipeline.utils.geometry import MalformedPoseError, PoseAligner

        with pytest.raises(MalformedPoseError):
            PoseAligner.relative_transform(yaw_pose(0.0), None)


class TestPoseAligner:
    """Tests for staging transforms into the device buffer."""

    def test_buffer_shape(self):
        """Test the pre-allocated transform buffer."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=4)

        assert aligner.transforms.shape == (4, 9)
        assert aligner.transforms.dtype == torch.float32

    def test_identity_written_column_major(self):
        """Test that an identity alignment serialises as a flattened identity."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=2)
        pose = yaw_pose(0.1, x=5.0)

        aligner.write_transform(pose, pose, slot=1)

        np.testing.assert_allclose(
            aligner.transforms[1].numpy(), [1, 0, 0, 0, 1, 0, 0, 0, 1], atol=1e-6
        )
        assert torch.count_nonzero(aligner.transforms[0]) == 0

    def test_translation_lands_in_third_column(self):
        """Test column-major layout of the translation entries."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=1)

        row = aligner.write_transform(yaw_pose(0.0, x=2.0), yaw_pose(0.0), slot=0)

        assert row[6].item() == pytest.approx(2.5)
        assert row[7].item() == pytest.approx(0.0, abs=1e-6)
        assert row[8].item() == pytest.approx(1.0)

    def test_slot_out_of_range(self):
        """Test that an invalid slot raises IndexError."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=2)

        with pytest.raises(IndexError):
            aligner.write_transform(yaw_pose(0.0), yaw_pose(0.0), slot=2)

    def test_write_after_release(self):
        """Test that a released aligner cannot be written."""
        from bevdet_pipeline.utils.geometry import PoseAligner

        aligner = PoseAligner(-51.2, 0.8, -51.2, 0.8, num_slots=1)
        aligner.release()

        with pytest.raises(RuntimeError):
            aligner.write_transform(yaw_pose(0.0), yaw_pose(0.0), slot=0)
