"""Moving kinematic chains to capture poses and tracking joint state."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from robocal.messages import Header, JointState

logger = logging.getLogger(__name__)

_SETTLED_VELOCITY = 0.001
_GOAL_TIME_TOLERANCE = 1.0
_CONSTRAINT_TOLERANCE = 0.01
_PLANNING_TIME = 5.0


@dataclass
class TrajectoryPoint:
    positions: list[float] = field(default_factory=list)
    velocities: list[float] = field(default_factory=list)
    accelerations: list[float] = field(default_factory=list)
    time_from_start: float = 0.0


@dataclass
class ChainController:
    """One controllable chain of joints and how to reach it."""

    chain_name: str
    topic: str
    chain_planning_group: str = ""
    joint_names: list[str] = field(default_factory=list)

    def should_plan(self) -> bool:
        """True if motions must be planned for this chain's planning group."""
        return self.chain_planning_group != ""


class _TrajectoryClient(Protocol):
    def send_goal(self, controller, joint_names, points, goal_time_tolerance) -> None: ...

    def wait_for_result(self, controller, timeout) -> None: ...


_Planner = Callable[[dict], Optional[tuple[list[str], list[TrajectoryPoint]]]]


def _required(chain: Mapping[str, Any], key: str) -> Any:
    try:
        return chain[key]
    except KeyError:
        raise ValueError(f"chain definition is missing '{key}'") from None


class ChainManager:
    """Sends chains to joint states and waits for them to come to rest."""

    def __init__(
        self,
        controllers=(),
        duration: float = 5.0,
        velocity_factor: float = 1.0,
        client: Optional[_TrajectoryClient] = None,
        planner: Optional[_Planner] = None,
        poll_interval: float = 0.01,
    ) -> None:
        self.controllers: list[ChainController] = list(controllers)
        self.duration = duration
        self.velocity_factor = velocity_factor
        self.client = client
        self.planner = planner
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._state = JointState()
        self._state_is_valid = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ChainManager:
        """Build from a mapping with ``chains``, ``duration`` and ``velocity_factor``."""
        chains = config.get("chains")
        if chains is None:
            logger.warning("No chains defined.")
            return cls()
        if not isinstance(chains, (list, tuple)):
            raise ValueError("'chains' must be a list")

        controllers = []
        for chain in chains:
            name = str(_required(chain, "name"))
            group = str(_required(chain, "planning_group"))
            if "topic" not in chain:
                continue
            topic = str(chain["topic"])
            joints = [str(joint) for joint in _required(chain, "joints")]
            logger.info("Adding chain %s on %s", name, topic)
            controllers.append(ChainController(name, topic, group, joints))

        return cls(
            controllers,
            duration=float(config.get("duration", 5.0)),
            velocity_factor=float(config.get("velocity_factor", 1.0)),
        )

    def state_callback(self, msg: JointState) -> bool:
        """Merge a joint state message; False if it is malformed."""
        if len(msg.name) != len(msg.position):
            logger.error("JointState Error: name array is not same size as position array.")
            return False
        if len(msg.position) != len(msg.velocity):
            logger.error("JointState Error: position array is not same size as velocity array.")
            return False

        with self._lock:
            for name, position, velocity in zip(msg.name, msg.position, msg.velocity):
                if name in self._state.name:
                    index = self._state.name.index(name)
                    self._state.position[index] = position
                    self._state.velocity[index] = velocity
                else:
                    self._state.name.append(name)
                    self._state.position.append(position)
                    self._state.velocity.append(velocity)
            self._state_is_valid = True
        return True

    def get_state(self) -> tuple[JointState, bool]:
        """A copy of the joint state and whether it is fresh."""
        with self._lock:
            state = JointState(
                header=Header(self._state.header.frame_id, self._state.header.stamp),
                name=list(self._state.name),
                position=list(self._state.position),
                velocity=list(self._state.velocity),
                effort=list(self._state.effort),
            )
            return state, self._state_is_valid

    def make_point(self, state: JointState, joints) -> TrajectoryPoint:
        """A resting trajectory point holding ``state``'s positions for ``joints``."""
        point = TrajectoryPoint()
        for joint in joints:
            if joint not in state.name:
                raise ValueError(f"Bad move to state, missing {joint}")
            point.positions.append(state.position[state.name.index(joint)])
            point.velocities.append(0.0)
            point.accelerations.append(0.0)
        return point

    def _plan_request(self, controller: ChainController, point: TrajectoryPoint) -> dict:
        return {
            "group_name": controller.chain_planning_group,
            "num_planning_attempts": 1,
            "allowed_planning_time": _PLANNING_TIME,
            "joint_constraints": [
                {
                    "joint_name": joint,
                    "position": position,
                    "tolerance_above": _CONSTRAINT_TOLERANCE,
                    "tolerance_below": _CONSTRAINT_TOLERANCE,
                    "weight": 1.0,
                }
                for joint, position in zip(controller.joint_names, point.positions)
            ],
            "max_velocity_scaling_factor": self.velocity_factor,
            "plan_only": True,
        }

    def move_to_state(self, state: JointState) -> bool:
        """Send every chain to ``state``; False if planning fails."""
        if not self.controllers:
            return True
        if self.client is None:
            raise RuntimeError("no trajectory client configured")

        max_duration = self.duration
        for controller in self.controllers:
            point = self.make_point(state, controller.joint_names)
            if controller.should_plan():
                if self.planner is None:
                    raise RuntimeError("no motion planner configured")
                plan = self.planner(self._plan_request(controller, point))
                if plan is None:
                    return False
                joint_names, points = plan
                max_duration = max(max_duration, points[-1].time_from_start)
            else:
                point.time_from_start = self.duration
                joint_names, points = list(controller.joint_names), [point]
            self.client.send_goal(controller, joint_names, points, _GOAL_TIME_TOLERANCE)

        for controller in self.controllers:
            self.client.wait_for_result(controller, max_duration * 1.5)
        return True

    def is_settled(self) -> bool:
        """True if the state is fresh and no managed joint is moving."""
        state, valid = self.get_state()
        if not valid:
            return False
        managed = {joint for c in self.controllers for joint in c.joint_names}
        return not any(
            abs(velocity) >= _SETTLED_VELOCITY and name in managed
            for name, velocity in zip(state.name, state.velocity)
        )

    def wait_to_settle(self) -> bool:
        """Block until a fresh state shows every managed joint at rest."""
        if not self.controllers:
            return True
        with self._lock:
            self._state_is_valid = False
        while not self.is_settled():
            time.sleep(self.poll_interval)
        return True

    def get_chains(self) -> list[str]:
        return [controller.chain_name for controller in self.controllers]

    def get_chain_joint_names(self, chain_name: str) -> list[str]:
        for controller in self.controllers:
            if controller.chain_name == chain_name:
                return list(controller.joint_names)
        return []

    def get_planning_group_name(self, chain_name: str) -> str:
        for controller in self.controllers:
            if controller.chain_name == chain_name:
                return controller.chain_planning_group
        return ""