import math

import numpy as np
import pytest

from robocal.checkerboard_finder import CheckerboardFinder
from robocal.messages import CalibrationData, Observation, PointCloud

CORNERS = [(0, 0), (1, 0), (0, 1), (1, 1)]


def _cloud(height=3, width=4, nan_index=None):
    count = height * width
    points = np.array([[0.1 * i, 0.2 * i, 1.0] for i in range(count)])
    if nan_index is not None:
        points[nan_index] = [math.nan, 0.0, 1.0]
    rgb = np.zeros((count, 3), dtype=np.uint8)
    rgb[0] = (255, 255, 255)
    return PointCloud.from_points(points, "camera_frame", height, width, rgb)


def _finder(cloud, detector, **kwargs):
    holder = {}

    def spin():
        holder["finder"].camera_callback(cloud)

    finder = CheckerboardFinder(
        corner_detector=detector,
        points_x=2,
        points_y=2,
        size=0.5,
        spin=spin,
        settle_time=0.0,
        poll_period=0.0,
        **kwargs,
    )
    holder["finder"] = finder
    return finder


def test_find_pairs_cloud_points_with_board_positions():
    cloud = _cloud()
    published = []
    finder = _finder(cloud, lambda image, size: CORNERS, publish=published.append)
    msg = CalibrationData()
    assert finder.find(msg)

    camera, chain = msg.observations
    assert camera.sensor_name == "camera"
    assert chain.sensor_name == "arm"
    for feature, (column, row) in zip(camera.features, CORNERS):
        expected = cloud.points[row * 4 + column]
        assert (feature.point.x, feature.point.y, feature.point.z) == pytest.approx(expected)
        assert feature.header.frame_id == "camera_frame"
    board = [(f.point.x, f.point.y) for f in chain.features]
    assert board == [(0.0, 0.0), (0.5, 0.0), (0.0, 0.5), (0.5, 0.5)]
    assert all(f.header.frame_id == "checkerboard" for f in chain.features)
    assert len(published) == 1 and published[0].width == 4


def test_detector_sees_grey_image_of_cloud_shape():
    seen = []

    def detector(image, size):
        seen.append((image.copy(), size))
        return CORNERS

    finder = _finder(_cloud(), detector)
    assert finder.find_internal(CalibrationData())
    image, size = seen[0]
    assert image.shape == (3, 4)
    assert size == (2, 2)
    assert image[0, 0] == 255
    assert image[2, 3] == 0


def test_unorganized_cloud_is_rejected():
    finder = _finder(_cloud(height=1, width=12), lambda image, size: CORNERS)
    msg = CalibrationData()
    assert finder.find_internal(msg) is False
    assert msg.observations == []


def test_nan_corner_leaves_message_untouched():
    calls = []

    def detector(image, size):
        calls.append(1)
        return CORNERS

    finder = _finder(_cloud(nan_index=5), detector)
    msg = CalibrationData(observations=[Observation(sensor_name="existing")])
    assert finder.find(msg) is False
    assert [o.sensor_name for o in msg.observations] == ["existing"]
    assert len(calls) == 50


def test_find_keeps_existing_observations():
    finder = _finder(_cloud(), lambda image, size: CORNERS)
    msg = CalibrationData(observations=[Observation(sensor_name="existing")])
    assert finder.find(msg)
    assert [o.sensor_name for o in msg.observations] == ["existing", "camera", "arm"]


def test_debug_attaches_cloud():
    cloud = _cloud()
    finder = _finder(cloud, lambda image, size: CORNERS, debug=True)
    msg = CalibrationData()
    assert finder.find(msg)
    assert np.array_equal(msg.observations[0].cloud.points, cloud.points)


def test_wrong_corner_count_fails():
    finder = _finder(_cloud(), lambda image, size: CORNERS[:3])
    assert finder.find_internal(CalibrationData()) is False


def test_missing_detector_raises():
    finder = CheckerboardFinder(settle_time=0.0, poll_period=0.0)
    with pytest.raises(RuntimeError):
        finder.find_internal(CalibrationData())


def test_callback_ignored_when_not_waiting():
    finder = CheckerboardFinder()
    finder.camera_callback(_cloud())
    assert finder.cloud is None


def test_wait_times_out_without_cloud():
    finder = CheckerboardFinder(
        corner_detector=lambda image, size: CORNERS, settle_time=0.0, poll_period=0.0
    )
    assert finder.wait_for_cloud() is False
    assert finder.find_internal(CalibrationData()) is False