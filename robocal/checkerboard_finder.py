"""Finding a checkerboard in an organised, coloured depth cloud."""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import Callable, Optional, Sequence

import numpy as np

from robocal.messages import (
    CalibrationData,
    ExtendedCameraInfo,
    Header,
    Observation,
    Point,
    PointCloud,
    PointStamped,
)

logger = logging.getLogger(__name__)

_WAIT_CYCLES = 250
_MAX_ATTEMPTS = 50
# Luma weights for converting colour to a single grey channel.
_GREY_WEIGHTS = np.array([0.299, 0.587, 0.114])

# Given a grey image (height x width, uint8) and the board size as
# (points_x, points_y), returns the inner corners as (column, row) pixel
# coordinates ordered row by row, or None if the board was not found.
CornerDetector = Callable[[np.ndarray, tuple], Optional[Sequence[Sequence[float]]]]


def _grey_image(cloud: PointCloud) -> np.ndarray:
    grey = np.rint(cloud.rgb.astype(float) @ _GREY_WEIGHTS)
    return np.clip(grey, 0, 255).astype(np.uint8).reshape(cloud.height, cloud.width)


class CheckerboardFinder:
    """Locates checkerboard corners and pairs them with their board positions."""

    def __init__(
        self,
        name: str = "checkerboard_finder",
        *,
        corner_detector: Optional[CornerDetector] = None,
        points_x: int = 5,
        points_y: int = 4,
        size: float = 0.0245,
        debug: bool = False,
        frame_id: str = "checkerboard",
        camera_sensor_name: str = "camera",
        chain_sensor_name: str = "arm",
        depth_camera_info: Optional[ExtendedCameraInfo] = None,
        publish: Optional[Callable[[PointCloud], None]] = None,
        spin: Optional[Callable[[], None]] = None,
        settle_time: float = 0.1,
        poll_period: float = 0.01,
    ) -> None:
        self.name = name
        self.corner_detector = corner_detector
        self.points_x = points_x
        self.points_y = points_y
        self.square_size = size
        self.output_debug = debug
        self.frame_id = frame_id
        self.camera_sensor_name = camera_sensor_name
        self.chain_sensor_name = chain_sensor_name
        self.depth_camera_info = depth_camera_info or ExtendedCameraInfo()
        self.publish = publish
        self.spin = spin
        self.settle_time = settle_time
        self.poll_period = poll_period
        self.cloud: Optional[PointCloud] = None
        self._waiting = False

    def camera_callback(self, cloud: PointCloud) -> None:
        """Keep a copy of ``cloud`` if one is being waited for."""
        if self._waiting:
            self.cloud = copy.deepcopy(cloud)
            self._waiting = False

    def wait_for_cloud(self) -> bool:
        """Wait for a fresh cloud; False on timeout."""
        time.sleep(self.settle_time)
        self._waiting = True
        for _ in range(_WAIT_CYCLES - 1):
            if not self._waiting:
                return True
            time.sleep(self.poll_period)
            if self.spin is not None:
                self.spin()
        if self._waiting:
            logger.error("Failed to get cloud")
        return not self._waiting

    def find(self, msg: CalibrationData) -> bool:
        """Try several frames; on success add camera and chain observations to ``msg``."""
        for _ in range(_MAX_ATTEMPTS):
            attempt = copy.deepcopy(msg)
            if self.find_internal(attempt):
                msg.joint_states = attempt.joint_states
                msg.observations = attempt.observations
                return True
        return False

    def find_internal(self, msg: CalibrationData) -> bool:
        """One attempt at finding the board in a fresh cloud."""
        if self.corner_detector is None:
            raise RuntimeError("no corner detector configured")

        if not self.wait_for_cloud():
            logger.error("No point cloud data")
            return False
        cloud = self.cloud

        if cloud.height == 1:
            logger.error("Corner detection does not support unorganized cloud/image.")
            return False
        if cloud.rgb is None:
            logger.error("Conversion failed")
            return False

        expected = self.points_x * self.points_y
        corners = self.corner_detector(_grey_image(cloud), (self.points_x, self.points_y))
        if corners is None:
            return False
        corners = list(corners)
        if len(corners) != expected:
            logger.error("Expected %d corners, got %d", expected, len(corners))
            return False

        logger.info("Found the checkboard")

        camera = Observation(sensor_name=self.camera_sensor_name)
        chain = Observation(sensor_name=self.chain_sensor_name)

        for i, (column, row) in enumerate(corners):
            index = int(row) * cloud.width + int(column)
            rgbd = cloud.xyz(index)
            if any(math.isnan(v) for v in (rgbd.x, rgbd.y, rgbd.z)):
                logger.error("NAN point on %d", i)
                return False

            camera.features.append(
                PointStamped(Header(cloud.header.frame_id, cloud.header.stamp), rgbd)
            )
            chain.features.append(
                PointStamped(
                    Header(self.frame_id),
                    Point(
                        (i % self.points_x) * self.square_size,
                        (i // self.points_x) * self.square_size,
                        0.0,
                    ),
                )
            )
        camera.ext_camera_info = copy.deepcopy(self.depth_camera_info)

        if self.output_debug:
            camera.cloud = copy.deepcopy(cloud)

        msg.observations.append(camera)
        msg.observations.append(chain)

        if self.publish is not None:
            viz = PointCloud.from_points(
                [(f.point.x, f.point.y, f.point.z) for f in camera.features],
                frame_id=cloud.header.frame_id,
            )
            viz.header.stamp = time.time()
            self.publish(viz)
        return True