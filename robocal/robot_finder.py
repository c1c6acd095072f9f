"""Finding the ground plane and the robot body in a depth cloud."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from robocal.messages import CalibrationData, PointCloud
from robocal.plane_finder import PlaneFinder

logger = logging.getLogger(__name__)


class RobotFinder(PlaneFinder):
    """Observes both the ground plane and the robot points left above it."""

    def __init__(
        self,
        name: str = "robot_finder",
        *,
        robot_sensor_name: str = "camera_robot",
        min_robot_x: float = -2.0,
        max_robot_x: float = 2.0,
        min_robot_y: float = -2.0,
        max_robot_y: float = 2.0,
        min_robot_z: float = 0.0,
        max_robot_z: float = 2.0,
        robot_publish: Optional[Callable[[PointCloud], None]] = None,
        **kwargs,
    ) -> None:
        super().__init__(name, **kwargs)
        self.robot_sensor_name = robot_sensor_name
        self.min_robot_x, self.max_robot_x = min_robot_x, max_robot_x
        self.min_robot_y, self.max_robot_y = min_robot_y, max_robot_y
        self.min_robot_z, self.max_robot_z = min_robot_z, max_robot_z
        self.robot_publish = robot_publish

    def find(self, msg: CalibrationData) -> bool:
        """Capture a cloud and add the plane and robot observations to ``msg``."""
        if not self.wait_for_cloud():
            logger.error("No point cloud data")
            return False

        self.remove_invalid_points(
            self.cloud, self.min_x, self.max_x, self.min_y, self.max_y, self.min_z, self.max_z
        )
        plane = self.extract_plane(self.cloud)
        self.remove_invalid_points(
            self.cloud,
            self.min_robot_x, self.max_robot_x,
            self.min_robot_y, self.max_robot_y,
            self.min_robot_z, self.max_robot_z,
        )

        self.extract_observation(self.plane_sensor_name, plane, msg, self.publish)
        self.extract_observation(self.robot_sensor_name, self.cloud, msg, self.robot_publish)
        return True