import numpy as np
import pytest

from robocal.messages import (
    CalibrationData,
    CaptureConfig,
    Observation,
    Point,
    PointCloud,
)


def test_from_points_defaults_to_single_row():
    points = [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0], [7.0, 8.0, 9.0]]
    cloud = PointCloud.from_points(points, frame_id="camera")
    assert cloud.height == 1
    assert cloud.width == len(points)
    assert cloud.header.frame_id == "camera"
    assert len(cloud) == len(points)


def test_xyz_returns_stored_point():
    points = [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]
    cloud = PointCloud.from_points(points)
    assert cloud.xyz(1) == Point(4.0, 5.0, 6.0)
    assert cloud.xyz(0) == Point(1.0, 2.0, 3.0)


def test_from_points_derives_missing_dimension():
    points = np.arange(18, dtype=float).reshape(6, 3)
    cloud = PointCloud.from_points(points, width=3)
    assert (cloud.height, cloud.width) == (2, 3)
    organised = PointCloud.from_points(points, height=3)
    assert (organised.height, organised.width) == (3, 2)


def test_shape_mismatch_raises():
    with pytest.raises(ValueError):
        PointCloud.from_points([[0.0, 0.0, 0.0]] * 4, height=3, width=3)


def test_rgb_length_mismatch_raises():
    with pytest.raises(ValueError):
        PointCloud.from_points([[0.0, 0.0, 0.0]] * 2, rgb=[[1, 2, 3]])


def test_rgb_round_trip():
    colours = [[10, 20, 30], [40, 50, 60]]
    cloud = PointCloud.from_points([[0.0, 0.0, 0.0]] * 2, rgb=colours)
    assert cloud.rgb.tolist() == colours
    assert cloud.rgb.dtype == np.uint8


def test_default_lists_are_independent():
    first = CalibrationData()
    second = CalibrationData()
    first.observations.append(Observation(sensor_name="camera"))
    assert second.observations == []
    config = CaptureConfig()
    config.features.append("checkerboard")
    assert CaptureConfig().features == []