"""Finding gripper LEDs by blinking them and differencing depth clouds."""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import Callable, Iterable, Mapping, Optional

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
from robocal.plane_finder import FrameLookup

logger = logging.getLogger(__name__)

_WAIT_CYCLES = 250
_INITIAL_MAX = -1000.0
_FALLBACK_DISTANCE = 1000.0
_CENTROID_RADIUS = 0.05
_LED_OFF = 0


def distance_points(p1: Point, p2: Point) -> float:
    """Euclidean distance between two points."""
    return math.sqrt((p1.x - p2.x) ** 2 + (p1.y - p2.y) ** 2 + (p1.z - p2.z) ** 2)


class CloudDifferenceTracker:
    """Accumulates colour changes near an expected LED position."""

    def __init__(self, frame: str, x: float, y: float, z: float) -> None:
        self.frame = frame
        self.point = Point(x, y, z)
        self.height = 0
        self.width = 0
        self.diff = np.zeros(0)
        self.max_value = _INITIAL_MAX
        self.max_index = -1

    def reset(self, height: int, width: int) -> None:
        """Start tracking afresh for clouds of the given shape."""
        self.height = height
        self.width = width
        self.max_value = _INITIAL_MAX
        self.max_index = -1
        self.diff = np.zeros(height * width)

    def process(
        self,
        cloud: PointCloud,
        prev: PointCloud,
        led_point: Point,
        max_distance: float,
        weight: float,
    ) -> bool:
        """Add the colour change between ``prev`` and ``cloud``; False if the size changed.

        Only points within ``max_distance`` of ``led_point`` whose three
        channels all change in the direction of ``weight`` contribute.
        """
        if len(cloud) != len(self.diff):
            logger.error("Cloud size has changed")
            return False
        if cloud.rgb is None or prev.rgb is None:
            raise ValueError("clouds must carry colour to be differenced")
        if len(prev) != len(cloud):
            raise ValueError("previous cloud does not match the current one")

        count = len(cloud)
        if count == 0:
            return True

        target = np.array([led_point.x, led_point.y, led_point.z])
        with np.errstate(invalid="ignore", over="ignore"):
            distance = np.sqrt(((cloud.points - target) ** 2).sum(axis=1))
        finite = np.isfinite(distance)

        # Points without a valid distance (e.g. washed out by the LED) reuse
        # the most recent valid distance before them.
        last_valid = np.maximum.accumulate(np.where(finite, np.arange(count), -1))
        filled = np.where(
            last_valid >= 0, distance[np.clip(last_valid, 0, None)], _FALLBACK_DISTANCE
        )
        within = filled <= max_distance

        change = cloud.rgb.astype(float) - prev.rgb.astype(float)
        rising = np.all(change > 0, axis=1) & (weight > 0)
        falling = np.all(change < 0, axis=1) & (weight < 0)
        update = within & (rising | falling)
        self.diff[update] += change[update].sum(axis=1) * weight

        if within.any():
            candidates = np.where(within, self.diff, -np.inf)
            best = int(np.argmax(candidates))
            if candidates[best] > self.max_value:
                self.max_value = float(candidates[best])
                self.max_index = best
        return True

    def is_found(self, cloud: PointCloud, threshold: float) -> bool:
        """True if the peak exceeds ``threshold`` at a valid cloud point."""
        if self.max_value < threshold or self.max_index < 0:
            return False
        return not np.any(np.isnan(cloud.points[self.max_index]))

    def get_refined_centroid(self, cloud: PointCloud) -> Optional[PointStamped]:
        """Average strong points near the peak; None if the peak point is invalid."""
        if self.max_index < 0:
            return None
        if len(cloud) != len(self.diff):
            raise ValueError("cloud does not match the tracked size")

        peak = cloud.points[self.max_index]
        if np.any(np.isnan(peak)):
            return None

        points = cloud.points
        with np.errstate(invalid="ignore", over="ignore"):
            strong = (self.diff > self.max_value * 0.75) & ~np.any(np.isnan(points), axis=1)
            near = ((points - peak) ** 2).sum(axis=1) < _CENTROID_RADIUS**2
        chosen = points[strong & near]

        centroid = peak.astype(float)
        if len(chosen):
            centroid = (centroid + chosen.sum(axis=0)) / (len(chosen) + 1)
        header = Header(cloud.header.frame_id, cloud.header.stamp)
        return PointStamped(header, Point(*(float(v) for v in centroid)))

    def get_image(self) -> np.ndarray:
        """A BGR image (height x width x 3) showing the tracked differences."""
        diff = self.diff
        image = np.zeros((len(diff), 3), dtype=np.uint8)
        peak = diff > self.max_value * 0.9
        positive = ~peak & (diff > 0)
        image[peak] = (255, 0, 0)
        grey = np.clip(diff[positive] / 2.0, 0, 255).astype(np.uint8)
        image[positive] = grey[:, None]
        return image.reshape(self.height, self.width, 3)


class LedFinder:
    """Blinks each LED in turn and locates it in the depth cloud."""

    def __init__(
        self,
        name: str = "led_finder",
        *,
        led_command: Optional[Callable[[int], None]] = None,
        poses: Iterable[Mapping] = (),
        gripper_led_frame: str = "wrist_roll_link",
        max_error: float = 0.1,
        max_inconsistency: float = 0.01,
        threshold: float = 1000.0,
        max_iterations: int = 50,
        debug: bool = False,
        camera_sensor_name: str = "camera",
        chain_sensor_name: str = "arm",
        lookup: Optional[FrameLookup] = None,
        depth_camera_info: Optional[ExtendedCameraInfo] = None,
        publish: Optional[Callable[[PointCloud], None]] = None,
        tracker_publish: Optional[Callable[[int, np.ndarray], None]] = None,
        spin: Optional[Callable[[], None]] = None,
        settle_time: float = 0.1,
        poll_period: float = 0.01,
    ) -> None:
        self.name = name
        self.led_command = led_command
        self.max_error = max_error
        self.max_inconsistency = max_inconsistency
        self.threshold = threshold
        self.max_iterations = max_iterations
        self.output_debug = debug
        self.camera_sensor_name = camera_sensor_name
        self.chain_sensor_name = chain_sensor_name
        self.lookup = lookup
        self.depth_camera_info = depth_camera_info or ExtendedCameraInfo()
        self.publish = publish
        self.tracker_publish = tracker_publish
        self.spin = spin
        self.settle_time = settle_time
        self.poll_period = poll_period

        # Each LED contributes an "on" code followed by the "off" code.
        self.codes: list[int] = []
        self.trackers: list[CloudDifferenceTracker] = []
        for pose in poses:
            self.codes.extend((int(pose["code"]), _LED_OFF))
            self.trackers.append(
                CloudDifferenceTracker(
                    gripper_led_frame, float(pose["x"]), float(pose["y"]), float(pose["z"])
                )
            )

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

    def _transform(self, stamped: PointStamped, target_frame: str) -> PointStamped:
        source = stamped.header.frame_id
        p = stamped.point
        if source != target_frame:
            if self.lookup is None:
                raise LookupError(f"no transform from {source} to {target_frame}")
            frame = self.lookup(source, target_frame)
            v = frame.rotation @ np.array([p.x, p.y, p.z]) + frame.translation
            p = Point(*(float(c) for c in v))
        return PointStamped(Header(target_frame, stamped.header.stamp), Point(p.x, p.y, p.z))

    def _command(self, code: int) -> None:
        if self.led_command is None:
            raise RuntimeError("no LED command channel configured")
        self.led_command(code)

    def find(self, msg: CalibrationData) -> bool:
        """Locate every LED and append camera and chain observations to ``msg``."""
        self._command(_LED_OFF)
        if not self.wait_for_cloud():
            return False
        prev_cloud = self.cloud

        for tracker in self.trackers:
            tracker.reset(self.cloud.height, self.cloud.width)

        # The step counter is 8 bits wide, so the first step wraps from 255.
        code_idx = 255
        cycles = 0
        while True:
            code_idx = (code_idx + 1) % len(self.codes)
            self._command(self.codes[code_idx])
            if not self.wait_for_cloud():
                return False
            cloud = self.cloud

            tracker = self.trackers[code_idx // 2]
            weight = 1.0 if code_idx % 2 == 0 else -1.0

            done = all([t.is_found(cloud, self.threshold) for t in self.trackers])
            # Only stop with the LED off, so its pixel is not washed out.
            if done and weight == -1.0:
                break

            expected = PointStamped(
                Header(tracker.frame),
                Point(tracker.point.x, tracker.point.y, tracker.point.z),
            )
            try:
                led = self._transform(expected, cloud.header.frame_id)
            except LookupError:
                logger.error("Failed to transform feature to %s", cloud.header.frame_id)
                return False

            tracker.process(cloud, prev_cloud, led.point, self.max_error, weight)

            cycles += 1
            if cycles > self.max_iterations:
                logger.error("Failed to find features before using maximum iterations.")
                return False

            prev_cloud = cloud
            if self.tracker_publish is not None:
                for index, t in enumerate(self.trackers):
                    self.tracker_publish(index, t.get_image())

        cloud = self.cloud
        camera = Observation(sensor_name=self.camera_sensor_name)
        chain = Observation(sensor_name=self.chain_sensor_name)

        for index, tracker in enumerate(self.trackers):
            rgbd_pt = tracker.get_refined_centroid(cloud)
            if rgbd_pt is None:
                logger.error("No centroid for feature %d", index)
                return False

            try:
                world_pt = self._transform(rgbd_pt, tracker.frame)
            except LookupError:
                logger.error("Failed to transform feature to %s", tracker.frame)
                return False
            distance = distance_points(world_pt.point, tracker.point)
            if distance > self.max_error:
                logger.error(
                    "Feature was too far away from expected pose in %s: %g",
                    tracker.frame, distance,
                )
                return False

            for earlier, feature in zip(self.trackers[:index], camera.features):
                expected = distance_points(earlier.point, tracker.point)
                actual = distance_points(feature.point, rgbd_pt.point)
                if abs(expected - actual) > self.max_inconsistency:
                    logger.error(
                        "Features not internally consistent: %g %g", expected, actual
                    )
                    return False

            camera.features.append(rgbd_pt)
            camera.ext_camera_info = copy.deepcopy(self.depth_camera_info)
            chain.features.append(
                PointStamped(
                    Header(tracker.frame),
                    Point(tracker.point.x, tracker.point.y, tracker.point.z),
                )
            )

        if len(camera.features) != len(self.trackers):
            return False

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