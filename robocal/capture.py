"""Capturing calibration samples: moving to poses and running feature finders."""

from __future__ import annotations

import itertools
import logging
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

import yaml

from robocal.messages import CalibrationData, CaptureConfig, JointState

logger = logging.getLogger(__name__)

_DEFAULT_SETTLE_TIME = 0.1


class _FeatureFinder(Protocol):
    def find(self, msg: CalibrationData) -> bool: ...


class _ChainManager(Protocol):
    def move_to_state(self, state: JointState) -> bool: ...

    def wait_to_settle(self) -> bool: ...

    def get_state(self) -> tuple[JointState, bool]: ...


class CaptureManager:
    """Drives the robot to poses and gathers features from every finder."""

    def __init__(
        self,
        chain_manager: _ChainManager,
        finders: Mapping[str, _FeatureFinder],
        description: str = "",
        publish: Optional[Callable[[CalibrationData], None]] = None,
        settle_time: float = _DEFAULT_SETTLE_TIME,
    ) -> None:
        self.chain_manager = chain_manager
        self.finders = dict(finders)
        self.description = description
        self.publish = publish
        self.settle_time = settle_time

    def move_to_state(self, state: JointState) -> bool:
        """Move to ``state`` and wait for the joints to settle; False if the move fails."""
        if not self.chain_manager.move_to_state(state):
            return False
        self.chain_manager.wait_to_settle()
        return True

    def capture_features(self, feature_names: Sequence[str], msg: CalibrationData) -> bool:
        """Run the named finders (all of them if none are named) into ``msg``."""
        wanted = set(feature_names)
        for name, finder in self.finders.items():
            if wanted and name not in wanted:
                continue
            if not finder.find(msg):
                logger.warning("%s failed to capture features.", name)
                return False
        state, _ = self.chain_manager.get_state()
        msg.joint_states = state
        if self.publish is not None:
            self.publish(msg)
        return True


def _float_list(entry: Mapping[str, Any], key: str) -> list[float]:
    values = entry.get(key) or []
    if not isinstance(values, (list, tuple)):
        raise ValueError(f"'{key}' must be a list")
    return [float(value) for value in values]


def _joint_state(entry: Any) -> JointState:
    if not isinstance(entry, Mapping):
        raise ValueError("joint state must be a mapping")
    names = entry.get("name") or []
    if not isinstance(names, (list, tuple)):
        raise ValueError("'name' must be a list")
    return JointState(
        name=[str(name) for name in names],
        position=_float_list(entry, "position"),
        velocity=_float_list(entry, "velocity"),
        effort=_float_list(entry, "effort"),
    )


def _capture_config(entry: Any) -> CaptureConfig:
    if not isinstance(entry, Mapping):
        raise ValueError("each pose must be a mapping")
    if "joint_states" in entry:
        features = entry.get("features") or []
        if not isinstance(features, (list, tuple)):
            raise ValueError("'features' must be a list")
        return CaptureConfig(
            joint_states=_joint_state(entry["joint_states"]),
            features=[str(feature) for feature in features],
        )
    # Older pose files hold bare joint states.
    return CaptureConfig(joint_states=_joint_state(entry), features=[])


def load_poses(path) -> list[CaptureConfig]:
    """Read capture poses from a YAML list; raises OSError or ValueError."""
    logger.info("Opening %s", path)
    text = Path(path).read_text(encoding="utf-8")
    try:
        entries = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise ValueError(f"cannot parse {path}: {error}") from error
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValueError(f"{path} must hold a list of poses")
    return [_capture_config(entry) for entry in entries]


def run_capture(
    capture_manager: CaptureManager,
    poses: Sequence[CaptureConfig],
    read_line: Callable[[], str] = input,
) -> Optional[list[CalibrationData]]:
    """Capture a sample at each pose, or interactively when ``poses`` is empty.

    In interactive mode each line read captures a sample, ``done`` ends the
    capture and ``exit`` abandons it, returning None.
    """
    data: list[CalibrationData] = []
    manual = not poses
    if manual:
        logger.info("Using manual calibration mode...")
    indices = itertools.count() if manual else range(len(poses))

    for index in indices:
        msg = CalibrationData()
        if manual:
            logger.info(
                "Press [Enter] to capture a sample... "
                "(or type 'done' and [Enter] to finish capture)"
            )
            try:
                line = read_line().strip()
            except EOFError:
                break
            if line == "done":
                break
            if line == "exit":
                return None
            features: Sequence[str] = []
        else:
            pose = poses[index]
            if not capture_manager.move_to_state(pose.joint_states):
                logger.warning("Unable to move to desired state for sample %d.", index)
                continue
            time.sleep(capture_manager.settle_time)
            features = pose.features

        if not capture_manager.capture_features(features, msg):
            logger.warning("Failed to capture sample %d.", index)
            continue

        logger.info("Captured pose %d", index)
        data.append(msg)

    logger.info("Done capturing samples")
    return data