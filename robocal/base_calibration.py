"""Calibrating a mobile base by spinning it in front of a flat wall.

A laser scan of the wall gives the true rotation of the base. Comparing it
with the integrated odometry and gyro readings yields corrected values for
the wheel track width and the gyro scale.
"""

from __future__ import annotations

import logging
import math
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from robocal.export import datecode
from robocal.messages import LaserScan

logger = logging.getLogger(__name__)

DEFAULT_TRACK_WIDTH = 0.37476
DEFAULT_GYRO_SCALE = 0.001221729

# (angular velocity, number of full rotations) for each calibration spin.
CALIBRATION_SPINS = (
    (0.5, 1),
    (1.5, 1),
    (3.0, 2),
    (-0.5, 1),
    (-1.5, 1),
    (-3.0, 2),
)

_ALIGN_PERIOD = 0.02
_READY_PERIOD = 0.1
_ALIGN_SETTLE = 0.25


class BaseDriver:
    """Link to the base: velocity commands, waiting and liveness.

    This implementation records every command and waits in real time.
    Subclasses connect it to a real or simulated base; their ``sleep`` is
    where incoming odometry, gyro and laser data get delivered.
    """

    def __init__(self) -> None:
        self.commands: list[float] = []

    def send_velocity(self, velocity: float) -> None:
        """Command the base to turn at ``velocity`` rad/s."""
        self.commands.append(float(velocity))

    def sleep(self, seconds: float) -> None:
        """Wait for ``seconds``."""
        time.sleep(seconds)

    def ok(self) -> bool:
        """False once the process is shutting down."""
        return True


def _beam_angles(start: float, increment: float) -> Iterator[float]:
    angle = start
    while True:
        yield angle
        angle += increment


def _ieee_divide(numerator: float, denominator: float) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(numerator) / np.float64(denominator))


class BaseCalibration:
    """Tracks rotation from odometry, gyro and a wall seen by the laser."""

    def __init__(
        self,
        driver: BaseDriver,
        *,
        min_angle: float = -0.5,
        max_angle: float = 0.5,
        accel_limit: float = 2.0,
        align_velocity: float = 0.2,
        align_gain: float = 2.0,
        align_tolerance: float = 0.2,
        r2_tolerance: float = 0.1,
        start_time: Optional[float] = None,
    ) -> None:
        self.driver = driver
        self.min_angle = min_angle
        self.max_angle = max_angle
        self.accel_limit = accel_limit
        self.align_velocity = align_velocity
        self.align_gain = align_gain
        self.align_tolerance = align_tolerance
        self.r2_tolerance = r2_tolerance

        stamp = time.time() if start_time is None else float(start_time)
        self._last_odom_stamp = stamp
        self._last_imu_stamp = stamp
        self.last_scan_stamp = stamp

        self._lock = threading.RLock()
        self.ready = False
        self.scan_dist = 0.0

        self.scan_angles: list[float] = []
        self.odom_angles: list[float] = []
        self.imu_angles: list[float] = []

        self.odom_angle = 0.0
        self.imu_angle = 0.0
        self.scan_angle = 0.0
        self.scan_r2 = 0.0
        self.reset()

    def clear_messages(self) -> None:
        """Forget all saved spin measurements."""
        self.scan_angles.clear()
        self.odom_angles.clear()
        self.imu_angles.clear()

    def status(self) -> str:
        """Current fit quality and the three angle estimates."""
        return f"{self.scan_r2:g} {self.imu_angle:g} {self.odom_angle:g} {self.scan_angle:g}"

    def calibration_data(
        self,
        track_width: float = DEFAULT_TRACK_WIDTH,
        gyro_scale: float = DEFAULT_GYRO_SCALE,
    ) -> str:
        """Corrected track width and gyro scale as YAML lines."""
        if not self.scan_angles:
            raise ValueError("no spin measurements have been recorded")
        count = len(self.scan_angles)
        odom_scale = (
            sum((scan - odom) / odom for scan, odom in zip(self.scan_angles, self.odom_angles))
            / count
        )
        imu_scale = (
            sum((scan - imu) / imu for scan, imu in zip(self.scan_angles, self.imu_angles))
            / count
        )
        return (
            f"odom: {track_width * (1.0 + odom_scale):g}\n"
            f"imu: {gyro_scale * (1.0 + imu_scale):g}\n"
        )

    def align(self, angle: float = 0.0, verbose: bool = False) -> bool:
        """Turn until the wall is seen at ``angle``; False on shutdown."""
        while not self.ready:
            if not self.driver.ok():
                return False
            logger.warning("Not ready!")
            self.driver.sleep(_READY_PERIOD)

        print("aligning...")
        error = self.scan_angle - angle
        while abs(error) > self.align_tolerance or self.scan_r2 < self.r2_tolerance:
            if verbose:
                print(f"{self.scan_r2:g} {self.scan_angle:g}")

            velocity = min(
                max(-error * self.align_gain, -self.align_velocity), self.align_velocity
            )
            self.driver.send_velocity(velocity)
            self.driver.sleep(_ALIGN_PERIOD)

            error = self.scan_angle - angle

            if not self.driver.ok():
                self.driver.send_velocity(0.0)
                return False

        self.driver.send_velocity(0.0)
        print("...done")
        self.driver.sleep(_ALIGN_SETTLE)
        return True

    def spin(self, velocity: float, rotations: int = 1, verbose: bool = False) -> bool:
        """Rotate ``rotations`` full turns and record one measurement."""
        scan_start = self.scan_angle

        self.align(0.0, verbose)
        self.reset()
        print("spin...")

        # Stop early by the distance covered while decelerating (v^2 / 2a).
        target = rotations * 2 * math.pi - (0.5 * velocity * velocity / self.accel_limit)

        while abs(self.odom_angle) < target:
            if verbose:
                print(f"{self.scan_angle:g} {self.odom_angle:g} {self.imu_angle:g}")
            self.driver.send_velocity(velocity)
            self.driver.sleep(_ALIGN_PERIOD)

            if not self.driver.ok():
                self.driver.send_velocity(0.0)
                return False

        self.driver.send_velocity(0.0)
        print("...done")
        self.driver.sleep(0.5 + abs(velocity) / self.accel_limit)

        self.imu_angles.append(self.imu_angle)
        self.odom_angles.append(self.odom_angle)
        turned = 2 * rotations * math.pi
        if velocity > 0:
            self.scan_angles.append(scan_start + turned - self.scan_angle)
        else:
            self.scan_angles.append(scan_start - turned - self.scan_angle)
        return True

    def odometry_callback(self, stamp: float, angular_z: float) -> None:
        """Integrate an odometry angular velocity reading taken at ``stamp``."""
        with self._lock:
            self.odom_angle += angular_z * (stamp - self._last_odom_stamp)
            self._last_odom_stamp = stamp

    def imu_callback(self, stamp: float, angular_z: float) -> None:
        """Integrate a gyro angular velocity reading taken at ``stamp``."""
        with self._lock:
            self.imu_angle += angular_z * (stamp - self._last_imu_stamp)
            self._last_imu_stamp = stamp

    def laser_callback(self, scan: LaserScan) -> None:
        """Fit a line to the wall in front of the base."""
        with self._lock:
            increment = scan.angle_increment
            start: Optional[int] = None
            sum_x = sum_y = 0.0
            n = 0
            beams = zip(scan.ranges, _beam_angles(scan.angle_min, increment))
            for index, (distance, angle) in enumerate(beams):
                if angle < self.min_angle or angle > self.max_angle:
                    continue
                if math.isnan(distance):
                    continue
                if start is None:
                    start = index
                sum_x += math.sin(angle) * distance
                sum_y += math.cos(angle) * distance
                n += 1

            if start is None:
                return

            mean_x = sum_x / n
            mean_y = sum_y / n

            x = y = xx = xy = yy = 0.0
            n = 0
            beams = zip(
                scan.ranges[start:],
                _beam_angles(scan.angle_min + start * increment, increment),
            )
            for distance, angle in beams:
                if angle > self.max_angle:
                    break
                if math.isnan(distance):
                    continue
                px = math.sin(angle) * distance - mean_x
                py = math.cos(angle) * distance - mean_y
                xx += px * px
                xy += px * py
                x += px
                y += py
                yy += py * py
                n += 1

            self.scan_dist = mean_y
            slope = _ieee_divide(n * xy - x * y, n * xx - x * x)
            self.scan_angle = math.atan2(slope, 1.0)
            self.scan_r2 = _ieee_divide(abs(xy), xx * yy)
            self.last_scan_stamp = scan.header.stamp
            self.ready = True

    def reset(self) -> None:
        """Zero the running angle estimates."""
        with self._lock:
            self.odom_angle = 0.0
            self.imu_angle = 0.0
            self.scan_angle = 0.0
            self.scan_r2 = 0.0


def run_base_calibration(
    calibration: BaseCalibration,
    verbose: bool = False,
    directory=None,
    now: Optional[datetime] = None,
) -> Path:
    """Spin at several speeds, write the result YAML and return its path."""
    calibration.clear_messages()
    for velocity, rotations in CALIBRATION_SPINS:
        calibration.spin(velocity, rotations, verbose)

    result = calibration.calibration_data()
    target = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    path = target / f"base_calibration_{datecode(now)}.yaml"
    path.write_text(result, encoding="utf-8")
    print(result, end="")
    return path