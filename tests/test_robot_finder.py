import numpy as np
import pytest

from robocal.messages import CalibrationData, PointCloud
from robocal.robot_finder import RobotFinder


def _scene():
    ground = [(x, y, 1.0) for x in (-1.0, -0.5, 0.0, 0.5, 1.0) for y in (-1.0, -0.5, 0.0, 0.5, 1.0)]
    robot = [(0.1 * i, 0.05 * i, 0.5) for i in range(10)]
    stray = [(0.0, 0.0, 1.8)]
    return ground, robot, stray


def _finder(**kwargs):
    options = dict(
        transform_frame="none",
        settle_time=0.0,
        poll_period=0.0,
        seed=3,
        ransac_points=3,
        ransac_iterations=50,
    )
    options.update(kwargs)
    return RobotFinder(**options)


def test_find_observes_plane_and_robot():
    ground, robot, stray = _scene()
    cloud = PointCloud.from_points(ground + robot + stray, frame_id="sensor")
    robot_clouds = []
    plane_clouds = []
    finder = _finder(max_robot_z=1.5, publish=plane_clouds.append, robot_publish=robot_clouds.append)
    finder.spin = lambda: finder.camera_callback(cloud)
    msg = CalibrationData()

    assert finder.find(msg) is True
    assert [o.sensor_name for o in msg.observations] == ["camera", "camera_robot"]

    plane_obs, robot_obs = msg.observations
    assert len(plane_obs.features) == len(ground)
    assert all(f.point.z == pytest.approx(1.0) for f in plane_obs.features)

    assert len(robot_obs.features) == len(robot)
    robot_coords = sorted((f.point.x, f.point.y, f.point.z) for f in robot_obs.features)
    assert robot_coords == sorted(robot)

    assert len(plane_clouds) == 1 and plane_clouds[0].width == len(ground)
    assert len(robot_clouds) == 1 and robot_clouds[0].width == len(robot)


def test_robot_box_removes_points_left_over():
    ground, robot, stray = _scene()
    cloud = PointCloud.from_points(ground + robot + stray, frame_id="sensor")
    finder = _finder(max_robot_z=1.5)
    finder.spin = lambda: finder.camera_callback(cloud)
    finder.find(CalibrationData())
    assert finder.cloud.width == len(robot)
    assert np.all(finder.cloud.points[:, 2] <= 1.5)


def test_custom_robot_sensor_name():
    ground, robot, _ = _scene()
    cloud = PointCloud.from_points(ground + robot, frame_id="sensor")
    finder = _finder(robot_sensor_name="body", camera_sensor_name="floor")
    finder.spin = lambda: finder.camera_callback(cloud)
    msg = CalibrationData()
    assert finder.find(msg) is True
    assert [o.sensor_name for o in msg.observations] == ["floor", "body"]


def test_find_fails_without_cloud():
    msg = CalibrationData()
    assert _finder().find(msg) is False
    assert msg.observations == []