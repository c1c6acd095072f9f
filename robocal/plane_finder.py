"""Finding a plane in a depth cloud and turning it into an observation."""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import Callable, Optional

import numpy as np

from robocal.geometry import Frame
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

# Looks up the transform taking points from a source frame into a target frame.
# It raises LookupError when no such transform is known.
FrameLookup = Callable[[str, str], Frame]


def sample_cloud(
    cloud: PointCloud,
    sample_distance: float,
    max_points: int,
    existing=(),
) -> list[PointStamped]:
    """Greedily pick points at least ``sample_distance`` apart.

    The result starts with ``existing`` and grows until ``max_points`` are
    held or the first row of the cloud is exhausted.
    """
    max_dist_sq = sample_distance * sample_distance
    sampled = list(existing)
    if len(sampled) >= max_points:
        return sampled
    for x, y, z in cloud.points[: cloud.width]:
        candidate = (float(x), float(y), float(z))
        far_enough = all(
            (s.point.x - candidate[0]) ** 2
            + (s.point.y - candidate[1]) ** 2
            + (s.point.z - candidate[2]) ** 2
            >= max_dist_sq
            for s in sampled
        )
        if far_enough:
            sampled.append(PointStamped(point=Point(*candidate)))
        if len(sampled) >= max_points:
            break
    logger.info(
        "Extracted %d points with sampling distance of %f", len(sampled), sample_distance
    )
    return sampled


def _fit_plane(points: np.ndarray) -> tuple[np.ndarray, float]:
    """Least-squares plane through points: unit normal n and d with n.p + d = 0."""
    centroid = points.mean(axis=0)
    _, _, vh = np.linalg.svd(points - centroid)
    normal = vh[-1]
    return normal, float(-normal @ centroid)


def _keep(cloud: PointCloud, mask: np.ndarray) -> None:
    cloud.points = cloud.points[mask]
    if cloud.rgb is not None:
        cloud.rgb = cloud.rgb[mask]
    cloud.height = 1
    cloud.width = len(cloud.points)


class PlaneFinder:
    """Captures a cloud, keeps the points inside a box and extracts the best plane."""

    def __init__(
        self,
        name: str = "plane_finder",
        *,
        camera_sensor_name: str = "camera",
        points_max: int = 60,
        initial_sample_distance: float = 0.2,
        tolerance: float = 0.02,
        transform_frame: str = "base_link",
        min_x: float = -2.0,
        max_x: float = 2.0,
        min_y: float = -2.0,
        max_y: float = 2.0,
        min_z: float = 0.0,
        max_z: float = 2.0,
        ransac_iterations: int = 100,
        ransac_points: int = 35,
        normal=(0.0, 0.0, 0.0),
        normal_angle: float = 0.349065,
        debug: bool = False,
        lookup: Optional[FrameLookup] = None,
        depth_camera_info: Optional[ExtendedCameraInfo] = None,
        publish: Optional[Callable[[PointCloud], None]] = None,
        spin: Optional[Callable[[], None]] = None,
        settle_time: float = 0.1,
        poll_period: float = 0.01,
        seed=None,
    ) -> None:
        self.name = name
        self.plane_sensor_name = camera_sensor_name
        self.points_max = points_max
        self.initial_sample_distance = initial_sample_distance
        self.plane_tolerance = tolerance
        self.transform_frame = transform_frame
        self.min_x, self.max_x = min_x, max_x
        self.min_y, self.max_y = min_y, max_y
        self.min_z, self.max_z = min_z, max_z
        self.ransac_iterations = ransac_iterations
        self.ransac_points = ransac_points
        self.desired_normal = np.asarray(normal, dtype=float)
        self.cos_normal_angle = math.cos(normal_angle)
        self.output_debug = debug
        self.lookup = lookup
        self.depth_camera_info = depth_camera_info or ExtendedCameraInfo()
        self.publish = publish
        self.spin = spin
        self.settle_time = settle_time
        self.poll_period = poll_period
        self.rng = np.random.default_rng(seed)
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
        """Capture a cloud and add the plane observation to ``msg``."""
        if not self.wait_for_cloud():
            logger.error("No point cloud data")
            return False
        self.remove_invalid_points(
            self.cloud, self.min_x, self.max_x, self.min_y, self.max_y, self.min_z, self.max_z
        )
        plane = self.extract_plane(self.cloud)
        self.extract_observation(self.plane_sensor_name, plane, msg, self.publish)
        return True

    def _lookup_frame(self, source_frame: str) -> Frame:
        if self.lookup is None:
            raise LookupError(
                f"no transform from {source_frame} to {self.transform_frame}"
            )
        return self.lookup(source_frame, self.transform_frame)

    def remove_invalid_points(
        self, cloud: PointCloud, min_x, max_x, min_y, max_y, min_z, max_z
    ) -> None:
        """Drop non-finite, zero-depth and out-of-box points from ``cloud`` in place.

        The box is tested in ``transform_frame`` unless that is ``"none"``;
        kept points retain their original coordinates.
        """
        points = cloud.points
        mask = np.all(np.isfinite(points), axis=1) & (points[:, 2] != 0)

        tested = points
        if self.transform_frame != "none":
            try:
                frame = self._lookup_frame(cloud.header.frame_id)
            except LookupError as error:
                logger.error("%s", error)
                _keep(cloud, np.zeros(len(points), dtype=bool))
                return
            tested = points @ frame.rotation.T + frame.translation

        with np.errstate(invalid="ignore"):
            inside = (
                (tested[:, 0] >= min_x)
                & (tested[:, 0] <= max_x)
                & (tested[:, 1] >= min_y)
                & (tested[:, 1] <= max_y)
                & (tested[:, 2] >= min_z)
                & (tested[:, 2] <= max_z)
            )
        _keep(cloud, mask & inside)

    def extract_plane(self, cloud: PointCloud) -> PointCloud:
        """Remove the best-fitting plane from ``cloud`` and return it as a new cloud."""
        points = cloud.points
        count = len(points)
        best_normal = np.array([0.0, 0.0, 1.0])
        best_d = 0.0
        best_fit = -1
        check_normal = float(np.linalg.norm(self.desired_normal)) > 0.1

        for _ in range(self.ransac_iterations if count else 0):
            sample = points[self.rng.integers(0, count, size=self.ransac_points)]
            normal, d = _fit_plane(sample)

            if check_normal:
                transformed = normal
                if self.transform_frame != "none":
                    try:
                        transformed = self._lookup_frame(cloud.header.frame_id).rotation @ normal
                    except LookupError as error:
                        logger.error("%s", error)
                        continue
                cosine = (
                    float(transformed @ self.desired_normal)
                    / float(np.linalg.norm(self.desired_normal))
                    / float(np.linalg.norm(transformed))
                )
                if abs(cosine) < self.cos_normal_angle:
                    continue

            fit = int(np.count_nonzero(np.abs(points @ normal + d) < self.plane_tolerance))
            if fit > best_fit:
                best_fit, best_normal, best_d = fit, normal, d

        logger.info(
            "Found plane with parameters: %f %f %f %f",
            best_normal[0], best_normal[1], best_normal[2], best_d,
        )

        in_plane = np.abs(points @ best_normal + best_d) < self.plane_tolerance
        plane_points = points[in_plane]
        plane = PointCloud(
            Header(cloud.header.frame_id, time.time()), 1, len(plane_points), plane_points
        )
        _keep(cloud, ~in_plane)
        logger.info("Extracted plane with %d points", plane.width)
        return plane

    def extract_observation(
        self,
        sensor_name: str,
        cloud: PointCloud,
        msg: CalibrationData,
        publish: Optional[Callable[[PointCloud], None]] = None,
    ) -> None:
        """Append a down-sampled observation of ``cloud`` to ``msg``."""
        if cloud.width == 0:
            logger.warning("No points in observation, skipping")
            return

        points_total = min(self.points_max, cloud.width)
        logger.info("Got %d points for observation, using %d", cloud.width, points_total)

        observation = Observation(
            sensor_name=sensor_name,
            ext_camera_info=copy.deepcopy(self.depth_camera_info),
        )
        msg.observations.append(observation)

        sampled: list[PointStamped] = []
        distance = self.initial_sample_distance
        while len(sampled) < points_total:
            sampled = sample_cloud(cloud, distance, points_total, sampled)
            distance /= 2

        observation.features.extend(sampled)
        if self.output_debug:
            observation.cloud = copy.deepcopy(cloud)

        if publish is not None:
            viz = PointCloud.from_points(
                [(s.point.x, s.point.y, s.point.z) for s in sampled],
                frame_id=cloud.header.frame_id,
            )
            viz.header.stamp = time.time()
            publish(viz)