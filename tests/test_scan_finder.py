import math

import numpy as np
import pytest

from robocal.geometry import Frame
from robocal.messages import CalibrationData, Header, LaserScan, Observation, PointCloud
from robocal.scan_finder import ScanFinder


def _scan(ranges, angle_min=0.0, increment=math.pi / 2):
    return LaserScan(
        header=Header("laser_link"),
        angle_min=angle_min,
        angle_increment=increment,
        ranges=list(ranges),
    )


def _finder(scan=None, **kwargs):
    holder = {}

    def spin():
        if scan is not None:
            holder["finder"].scan_callback(scan)

    kwargs.setdefault("settle_time", 0.0)
    kwargs.setdefault("poll_period", 0.0)
    kwargs.setdefault("retry_delay", 0.0)
    finder = ScanFinder(spin=spin, **kwargs)
    holder["finder"] = finder
    return finder


def test_untransformed_points_repeat_at_zero_height():
    finder = _finder(transform_frame="none", z_repeats=2)
    finder.scan = _scan([1.0, math.nan, 1.0])
    cloud = finder.extract_points()
    assert cloud.header.frame_id == "laser_link"
    assert cloud.width == 4 and cloud.height == 1
    assert cloud.points[0] == pytest.approx([1.0, 0.0, 0.0])
    assert cloud.points[1] == pytest.approx([1.0, 0.0, 0.0])
    assert cloud.points[2] == pytest.approx([-1.0, 0.0, 0.0], abs=1e-12)
    assert np.all(cloud.points[:, 2] == 0.0)


def test_box_filters_points():
    finder = _finder(transform_frame="none", z_repeats=1, min_x=0.0)
    finder.scan = _scan([1.0, 1.0, 1.0])
    cloud = finder.extract_points()
    assert cloud.width == 2
    assert np.all(cloud.points[:, 0] >= -1e-12)


def test_transformed_points_are_stacked_in_height():
    def lookup(source, target):
        assert (source, target) == ("laser_link", "base_link")
        return Frame(translation=[0.0, 0.0, 1.0])

    finder = _finder(lookup=lookup, z_repeats=3, z_offset=0.1)
    finder.scan = _scan([1.0])
    cloud = finder.extract_points()
    assert cloud.header.frame_id == "base_link"
    assert cloud.width == 3
    assert cloud.points[:, 2] == pytest.approx([1.0 + 0.1 * k for k in range(3)])
    assert cloud.points[:, 0] == pytest.approx([1.0, 1.0, 1.0])


def test_missing_transform_gives_no_observation():
    scan = _scan([1.0, 1.0])
    finder = _finder(scan)
    msg = CalibrationData()
    assert finder.find(msg) is True
    assert msg.observations == []


def test_find_adds_laser_observation():
    scan = _scan([1.0, 2.0], increment=0.0)
    published = []
    finder = _finder(scan, transform_frame="none", z_repeats=1, publish=published.append)
    msg = CalibrationData(observations=[Observation(sensor_name="existing")])
    assert finder.find(msg)
    names = [o.sensor_name for o in msg.observations]
    assert names == ["existing", "laser"]
    xs = [f.point.x for f in msg.observations[1].features]
    assert xs == pytest.approx([1.0, 2.0])
    assert published[0].width == 2


def test_extract_observation_skips_empty_cloud():
    finder = ScanFinder()
    msg = CalibrationData()
    finder.extract_observation(PointCloud.from_points(np.zeros((0, 3))), msg)
    assert msg.observations == []


def test_debug_attaches_cloud():
    finder = ScanFinder(debug=True, sensor_name="front_laser")
    cloud = PointCloud.from_points([(1.0, 2.0, 3.0), (4.0, 5.0, 6.0)], "base_link")
    msg = CalibrationData()
    finder.extract_observation(cloud, msg)
    observation = msg.observations[0]
    assert observation.sensor_name == "front_laser"
    assert np.array_equal(observation.cloud.points, cloud.points)
    assert [(f.point.x, f.point.y, f.point.z) for f in observation.features] == [
        (1.0, 2.0, 3.0),
        (4.0, 5.0, 6.0),
    ]


def test_wait_times_out_without_scan():
    finder = _finder(None)
    msg = CalibrationData()
    assert finder.wait_for_scan() is False
    assert finder.find(msg) is False
    assert msg.observations == []


def test_callback_ignored_when_not_waiting():
    finder = ScanFinder()
    finder.scan_callback(_scan([1.0]))
    assert finder.scan is None