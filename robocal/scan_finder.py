"""Turning a laser scan into a vertical wall of observation points."""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import Callable, Optional

import numpy as np

from robocal.messages import (
    CalibrationData,
    Header,
    LaserScan,
    Observation,
    Point,
    PointCloud,
    PointStamped,
)
from robocal.plane_finder import FrameLookup

logger = logging.getLogger(__name__)

_WAIT_CYCLES = 250


class ScanFinder:
    """Observes the points of a planar laser scan, repeated at several heights."""

    def __init__(
        self,
        name: str = "scan_finder",
        *,
        sensor_name: str = "laser",
        transform_frame: str = "base_link",
        min_x: float = -2.0,
        max_x: float = 2.0,
        min_y: float = -2.0,
        max_y: float = 2.0,
        z_repeats: int = 10,
        z_offset: float = 0.1,
        debug: bool = False,
        lookup: Optional[FrameLookup] = None,
        publish: Optional[Callable[[PointCloud], None]] = None,
        spin: Optional[Callable[[], None]] = None,
        settle_time: float = 0.1,
        poll_period: float = 0.01,
        retry_delay: float = 1.0,
    ) -> None:
        self.name = name
        self.laser_sensor_name = sensor_name
        self.transform_frame = transform_frame
        self.min_x, self.max_x = min_x, max_x
        self.min_y, self.max_y = min_y, max_y
        self.z_repeats = z_repeats
        self.z_offset = z_offset
        self.output_debug = debug
        self.lookup = lookup
        self.publish = publish
        self.spin = spin
        self.settle_time = settle_time
        self.poll_period = poll_period
        self.retry_delay = retry_delay
        self.scan: Optional[LaserScan] = None
        self._waiting = False

    def scan_callback(self, scan: LaserScan) -> None:
        """Keep a copy of ``scan`` if one is being waited for."""
        if self._waiting:
            self.scan = copy.deepcopy(scan)
            self._waiting = False

    def wait_for_scan(self) -> bool:
        """Wait for a fresh scan; False on timeout."""
        time.sleep(self.settle_time)
        self._waiting = True
        for _ in range(_WAIT_CYCLES - 1):
            if not self._waiting:
                return True
            time.sleep(self.poll_period)
            if self.spin is not None:
                self.spin()
        if self._waiting:
            logger.error("Failed to get scan")
        return not self._waiting

    def find(self, msg: CalibrationData) -> bool:
        """Capture a scan and add its observation to ``msg``."""
        if not self.wait_for_scan():
            logger.error("No laser scan data")
            return False
        cloud = self.extract_points()
        self.extract_observation(cloud, msg)
        return True

    def extract_points(self) -> PointCloud:
        """Points of the current scan inside the box, in ``transform_frame``."""
        scan = self.scan
        do_transform = self.transform_frame != "none"
        frame_id = self.transform_frame if do_transform else scan.header.frame_id

        points: list[tuple[float, float, float]] = []
        for i, distance in enumerate(scan.ranges):
            if not math.isfinite(distance):
                continue
            angle = scan.angle_min + i * scan.angle_increment
            x = math.cos(angle) * distance
            y = math.sin(angle) * distance
            if x < self.min_x or x > self.max_x or y < self.min_y or y > self.max_y:
                continue

            for repeat in range(self.z_repeats):
                if not do_transform:
                    points.append((x, y, 0.0))
                    continue
                try:
                    if self.lookup is None:
                        raise LookupError(
                            f"no transform from {scan.header.frame_id} to {self.transform_frame}"
                        )
                    frame = self.lookup(scan.header.frame_id, self.transform_frame)
                except LookupError as error:
                    logger.error("%s", error)
                    time.sleep(self.retry_delay)
                    continue
                v = frame.rotation @ np.array([x, y, repeat * self.z_offset]) + frame.translation
                points.append((float(v[0]), float(v[1]), float(v[2])))

        cloud = PointCloud.from_points(np.array(points, dtype=float).reshape(-1, 3), frame_id)
        cloud.header.stamp = time.time()
        return cloud

    def extract_observation(self, cloud: PointCloud, msg: CalibrationData) -> None:
        """Append every point of ``cloud`` to ``msg`` as a laser observation."""
        if cloud.width == 0:
            logger.warning("No points in observation, skipping")
            return

        logger.info("Got %d points for observation", cloud.width)

        observation = Observation(sensor_name=self.laser_sensor_name)
        msg.observations.append(observation)
        observation.features.extend(
            PointStamped(point=cloud.xyz(i)) for i in range(cloud.width)
        )

        if self.output_debug:
            observation.cloud = copy.deepcopy(cloud)

        if self.publish is not None:
            viz = PointCloud.from_points(cloud.points[: cloud.width].copy(), cloud.header.frame_id)
            viz.header = Header(cloud.header.frame_id, time.time())
            self.publish(viz)