"""Plain data records exchanged between capture, finders and calibration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass
class Header:
    frame_id: str = ""
    stamp: float = 0.0


@dataclass
class Point:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass
class PointStamped:
    header: Header = field(default_factory=Header)
    point: Point = field(default_factory=Point)


@dataclass
class JointState:
    header: Header = field(default_factory=Header)
    name: list[str] = field(default_factory=list)
    position: list[float] = field(default_factory=list)
    velocity: list[float] = field(default_factory=list)
    effort: list[float] = field(default_factory=list)


@dataclass
class CameraInfo:
    header: Header = field(default_factory=Header)
    height: int = 0
    width: int = 0
    distortion_model: str = ""
    D: list[float] = field(default_factory=list)
    K: list[float] = field(default_factory=lambda: [0.0] * 9)
    R: list[float] = field(default_factory=lambda: [0.0] * 9)
    P: list[float] = field(default_factory=lambda: [0.0] * 12)


@dataclass
class ExtendedCameraInfo:
    camera_info: CameraInfo = field(default_factory=CameraInfo)
    parameters: dict[str, float] = field(default_factory=dict)


@dataclass
class PointCloud:
    """An organised or flat cloud of XYZ points with optional RGB colour."""

    header: Header = field(default_factory=Header)
    height: int = 0
    width: int = 0
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    rgb: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        if self.height * self.width != len(self.points):
            raise ValueError(
                f"cloud of {self.height}x{self.width} cannot hold {len(self.points)} points"
            )
        if self.rgb is not None:
            self.rgb = np.asarray(self.rgb, dtype=np.uint8).reshape(-1, 3)
            if len(self.rgb) != len(self.points):
                raise ValueError(
                    f"{len(self.rgb)} colours given for {len(self.points)} points"
                )

    @classmethod
    def from_points(cls, points, frame_id="", height=None, width=None, rgb=None) -> PointCloud:
        """Build a cloud; with no shape given it is a single row of points."""
        array = np.asarray(points, dtype=float).reshape(-1, 3)
        count = len(array)
        if height is None and width is None:
            height, width = 1, count
        elif height is None:
            height = count // width if width else 0
        elif width is None:
            width = count // height if height else 0
        return cls(Header(frame_id=frame_id), height, width, array, rgb)

    def xyz(self, index: int) -> Point:
        """Return the point stored at a flat index."""
        x, y, z = self.points[index]
        return Point(float(x), float(y), float(z))

    def __len__(self) -> int:
        return len(self.points)


@dataclass
class Observation:
    sensor_name: str = ""
    features: list[PointStamped] = field(default_factory=list)
    ext_camera_info: ExtendedCameraInfo = field(default_factory=ExtendedCameraInfo)
    cloud: Optional[PointCloud] = None


@dataclass
class CalibrationData:
    joint_states: JointState = field(default_factory=JointState)
    observations: list[Observation] = field(default_factory=list)


@dataclass
class LaserScan:
    header: Header = field(default_factory=Header)
    angle_min: float = 0.0
    angle_max: float = 0.0
    angle_increment: float = 0.0
    range_min: float = 0.0
    range_max: float = 0.0
    ranges: list[float] = field(default_factory=list)


@dataclass
class CaptureConfig:
    joint_states: JointState = field(default_factory=JointState)
    features: list[str] = field(default_factory=list)