# robocal

`robocal` holds the building blocks for calibrating a robot's kinematics and
sensors: a registry of the parameters being estimated (joint offsets and
corrections to fixed frames), rewriting a URDF with those values, feature
finders that turn depth clouds and laser scans into observations, capture of
calibration samples at a list of poses, and calibration of a mobile base's
track width and gyro scale against a wall.

Nothing in the package talks to a robot by itself. Velocity commands, joint
trajectories, motion planning, LED switching, transform lookups and sensor data
are all passed in as objects or callables, so the same code runs against a
real robot, a simulator or recorded data.

Requires Python 3.10 or newer, with `numpy` and `pyyaml`.

## Modules

- `robocal.geometry` – `Frame` (rotation matrix plus translation, combined
  with `compose` or `@`) and conversions: `rotation_from_rpy`,
  `rpy_from_rotation`, `rotation_from_axis_magnitude`,
  `axis_magnitude_from_rotation`.
- `robocal.messages` – dataclasses for samples and sensor data: `Header`,
  `Point`, `PointStamped`, `JointState`, `CameraInfo`, `ExtendedCameraInfo`,
  `Observation`, `CalibrationData`, `PointCloud` (with `from_points` and
  `xyz`), `LaserScan` and `CaptureConfig`.
- `robocal.offset_parser` – `CalibrationOffsetParser`.
- `robocal.export` – `datecode` and `export_results`.
- `robocal.base_calibration` – `BaseDriver`, `BaseCalibration` and
  `run_base_calibration`.
- `robocal.chain_manager` – `ChainManager`, `ChainController`,
  `TrajectoryPoint`.
- `robocal.plane_finder` – `PlaneFinder` and `sample_cloud`.
- `robocal.robot_finder` – `RobotFinder`.
- `robocal.led_finder` – `LedFinder`, `CloudDifferenceTracker`,
  `distance_points`.
- `robocal.checkerboard_finder` – `CheckerboardFinder`.
- `robocal.scan_finder` – `ScanFinder`.
- `robocal.capture` – `CaptureManager`, `load_poses`, `run_capture`.

## Offsets and URDF updates

```python
from robocal.offset_parser import CalibrationOffsetParser

offsets = CalibrationOffsetParser()
offsets.add("second_joint")
offsets.add_frame("third_joint", True, True, True, True, True, True)

# Free parameters are updated in the order they were added.
offsets.update([0.245, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0])

offsets.get("second_joint")   # 0.245
offsets.get("unknown")        # 0.0, not being calibrated
offsets.size()                # 7 free parameters
print(offsets.offset_yaml())  # "name: value" lines for every parameter

with open("robot.urdf") as f:
    calibrated = offsets.update_urdf(f.read())
```

A frame added with `add_frame` contributes the parameters `<name>_x`, `_y`,
`_z` for translation and `_a`, `_b`, `_c` for the rotation in axis-magnitude
form; `set_frame` fills them from a translation and roll/pitch/yaw, and
`get_frame` returns the correction as a `Frame` (or `None` for a frame that was
never added).

`update_urdf` changes top-level `<joint>` elements of a `<robot>` document:

- a joint with a non-zero offset has it added to its
  `<calibration rising="...">` attribute, or gets a new `<calibration>` element;
- a calibrated frame has its `<origin>` composed with the correction (or gets a
  new `<origin>`), written with eight decimal places.

The document is printed with two-space indentation. If the text cannot be
parsed, or its root is not `<robot>`, it is returned unchanged.

For calibration in several steps, `reset()` makes every parameter fixed again
while keeping its value; `add` on an existing fixed parameter makes it free
again with its current value, and returns `False` if it is already free.
`set` only changes free parameters. `load_offset_yaml(path)` reads
`name: value` lines and sets the matching free parameters.

## Rotations

```python
from robocal.geometry import (
    axis_magnitude_from_rotation,
    rotation_from_axis_magnitude,
    rotation_from_rpy,
)

r = rotation_from_rpy(1.0, 0.0, 0.0)
axis_magnitude_from_rotation(r)               # about (1.0, 0.0, 0.0)
same = rotation_from_axis_magnitude(1.0, 0.0, 0.0)
```

## Writing results

`export_results(offsets, initial_urdf, directory=None, now=None)` writes
`calibrated_<datecode>.urdf` and `calibration_<datecode>.yaml` into
`directory` (the system temporary directory by default) and returns both
paths. The YAML holds the offsets followed by `depth_info`, `rgb_info` and
`urdf` entries naming files with the same datecode. `datecode(now)` formats a
time as `YYYY_MM_DD_HH_MM_SS`.

## Base calibration

`BaseCalibration` takes a `BaseDriver`. The default driver records every
velocity command in `commands`, sleeps in real time and always reports `ok()`;
subclass it to reach a real or simulated base, delivering sensor data during
`sleep`:

- `odometry_callback(stamp, angular_z)` and `imu_callback(stamp, angular_z)`
  integrate angular velocity;
- `laser_callback(scan)` fits a line to the wall between `min_angle` and
  `max_angle` and sets `scan_angle` and `scan_r2`.

`align` turns until the wall is square, `spin(velocity, rotations)` turns a
number of full rotations and records the laser, odometry and gyro angles, and
`calibration_data(track_width, gyro_scale)` returns the corrected values as
`odom:` and `imu:` lines. `run_base_calibration(calibration, verbose,
directory, now)` spins at ±0.5, ±1.5 and ±3.0 rad/s, writes
`base_calibration_<datecode>.yaml` and returns its path.

## Moving chains

`ChainManager.from_config` reads a mapping with a `chains` list (each with
`name`, `planning_group`, `topic` and `joints`; chains without `topic` are
skipped), `duration` and `velocity_factor`. Joint states are fed in through
`state_callback`. `move_to_state` needs a trajectory client with `send_goal`
and `wait_for_result`, and, for chains with a planning group, a `planner`
callable that returns joint names and trajectory points or `None`.
`wait_to_settle` blocks until a fresh state shows all managed joints at rest.

## Feature finders

Each finder receives data through its callback (`camera_callback` or
`scan_callback`) and appends observations to a `CalibrationData` in `find`:

- `PlaneFinder` keeps points inside a box (tested in `transform_frame` through
  the `lookup` callable unless it is `"none"`), finds the best plane by random
  sampling and adds a down-sampled observation of it.
- `RobotFinder` also keeps what lies inside a second box after the plane is
  removed, as a `camera_robot` observation.
- `LedFinder` blinks each LED through `led_command` and tracks colour changes
  with a `CloudDifferenceTracker` per LED, checking each found point against
  its expected position and against the others.
- `CheckerboardFinder` needs a `corner_detector` callable that finds the board
  corners in a grey image; it pairs the 3D corner points with their positions
  on the board.
- `ScanFinder` turns a laser scan into points repeated at `z_repeats` heights.

## Capturing samples

```python
from robocal.capture import CaptureManager, load_poses, run_capture

manager = CaptureManager(chain_manager, {"checkerboard": finder})
samples = run_capture(manager, load_poses("poses.yaml"))
```

`load_poses` reads a YAML list of entries holding `joint_states` and
`features`, or bare joint states. With an empty pose list, `run_capture` reads
lines from `read_line` (by default `input`): each line captures a sample,
`done` finishes, and `exit` abandons the capture and returns `None`.

## What is not included

- There is no optimiser: estimating the offsets from captured samples is left
  to the caller, who passes the results to `CalibrationOffsetParser.update`.
- `export_results` does not write the camera calibration files that its YAML
  names in `depth_info` and `rgb_info`.
- Poses and samples are read from YAML and held in memory; there is no
  reading or writing of recorded sensor logs.
- There is no command-line program; everything is called from Python.
- No corner detector ships with `CheckerboardFinder`.

## Tests

The tests live in `tests/` and use pytest, installed with the `test` extra.