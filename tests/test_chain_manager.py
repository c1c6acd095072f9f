import threading

import pytest

from robocal.chain_manager import (
    ChainController,
    ChainManager,
    TrajectoryPoint,
)
from robocal.messages import JointState

ARM_JOINTS = [
    "arm_lift_joint",
    "arm_shoulder_pan_joint",
    "arm_shoulder_lift_joint",
    "arm_upperarm_roll_joint",
    "arm_elbow_flex_joint",
    "arm_wrist_flex_joint",
    "arm_wrist_roll_joint",
]
HEAD_JOINTS = ["head_pan_joint", "head_tilt_joint"]

CONFIG = {
    "chains": [
        {
            "name": "arm",
            "topic": "arm_controller/follow_joint_trajectory",
            "planning_group": "arm_group",
            "joints": ARM_JOINTS,
        },
        {
            "name": "head",
            "topic": "head_controller/follow_joint_trajectory",
            "planning_group": "",
            "joints": HEAD_JOINTS,
        },
        {"name": "gripper", "planning_group": "", "joints": ["gripper_joint"]},
    ],
}


class RecordingClient:
    def __init__(self):
        self.goals = []
        self.waits = []

    def send_goal(self, controller, joint_names, points, goal_time_tolerance):
        self.goals.append((controller.chain_name, joint_names, points, goal_time_tolerance))

    def wait_for_result(self, controller, timeout):
        self.waits.append((controller.chain_name, timeout))


def full_state(velocity=0.0):
    names = ARM_JOINTS + HEAD_JOINTS
    return JointState(
        name=list(names),
        position=[0.1 * i for i in range(len(names))],
        velocity=[velocity] * len(names),
    )


def test_rosparam_loading():
    manager = ChainManager.from_config(CONFIG)
    assert len(manager.get_chains()) == 2

    joint_names = manager.get_chain_joint_names("arm")
    assert len(joint_names) == 7
    assert joint_names == ARM_JOINTS

    assert manager.get_chain_joint_names("not_a_chain") == []

    joint_names = manager.get_chain_joint_names("head")
    assert joint_names == ["head_pan_joint", "head_tilt_joint"]

    assert manager.get_planning_group_name("arm") == "arm_group"
    assert manager.get_planning_group_name("head") == ""


def test_from_config_without_chains_has_none():
    manager = ChainManager.from_config({})
    assert manager.get_chains() == []
    assert manager.wait_to_settle() is True
    assert manager.move_to_state(JointState()) is True


def test_from_config_reads_duration_and_requires_name():
    manager = ChainManager.from_config({**CONFIG, "duration": 2.5, "velocity_factor": 0.5})
    assert (manager.duration, manager.velocity_factor) == (2.5, 0.5)
    with pytest.raises(ValueError):
        ChainManager.from_config({"chains": [{"topic": "x", "joints": []}]})


def test_should_plan_follows_group():
    assert ChainController("arm", "t", "arm_group").should_plan() is True
    assert ChainController("head", "t", "").should_plan() is False


def test_state_callback_merges_joints():
    manager = ChainManager()
    assert manager.state_callback(JointState(name=["a", "b"], position=[1.0, 2.0], velocity=[0.0, 0.0]))
    assert manager.state_callback(JointState(name=["b", "c"], position=[5.0, 3.0], velocity=[0.5, 0.0]))
    state, valid = manager.get_state()
    assert valid is True
    assert state.name == ["a", "b", "c"]
    assert state.position == [1.0, 5.0, 3.0]
    assert state.velocity == [0.0, 0.5, 0.0]


def test_state_callback_rejects_mismatched_arrays():
    manager = ChainManager()
    assert manager.state_callback(JointState(name=["a"], position=[], velocity=[])) is False
    assert manager.state_callback(JointState(name=["a"], position=[1.0], velocity=[])) is False
    state, valid = manager.get_state()
    assert (state.name, valid) == ([], False)


def test_make_point_picks_named_joints():
    manager = ChainManager()
    state = JointState(name=["a", "b"], position=[1.0, 2.0], velocity=[0.0, 0.0])
    point = manager.make_point(state, ["b"])
    assert point.positions == [2.0]
    assert point.velocities == [0.0]
    assert point.accelerations == [0.0]
    with pytest.raises(ValueError):
        manager.make_point(state, ["missing"])


def test_move_to_state_direct():
    client = RecordingClient()
    head = ChainController("head", "t", "", list(HEAD_JOINTS))
    manager = ChainManager([head], duration=5.0, client=client)
    assert manager.move_to_state(full_state()) is True
    name, joints, points, tolerance = client.goals[0]
    assert (name, joints, tolerance) == ("head", HEAD_JOINTS, 1.0)
    assert points[0].positions == [0.7, pytest.approx(0.8)]
    assert points[0].time_from_start == 5.0
    assert client.waits == [("head", pytest.approx(7.5))]


def test_move_to_state_planned_uses_plan_duration():
    client = RecordingClient()
    requests = []

    def planner(request):
        requests.append(request)
        return ["arm_lift_joint"], [
            TrajectoryPoint([0.1], [0.0], [0.0], 2.0),
            TrajectoryPoint([0.2], [0.0], [0.0], 8.0),
        ]

    arm = ChainController("arm", "t", "arm_group", list(ARM_JOINTS))
    manager = ChainManager([arm], client=client, planner=planner, velocity_factor=0.3)
    assert manager.move_to_state(full_state()) is True
    request = requests[0]
    assert request["group_name"] == "arm_group"
    assert request["max_velocity_scaling_factor"] == 0.3
    assert [c["joint_name"] for c in request["joint_constraints"]] == ARM_JOINTS
    assert client.goals[0][1] == ["arm_lift_joint"]
    assert client.waits == [("arm", pytest.approx(12.0))]


def test_move_to_state_planning_failure():
    client = RecordingClient()
    arm = ChainController("arm", "t", "arm_group", list(ARM_JOINTS))
    manager = ChainManager([arm], client=client, planner=lambda request: None)
    assert manager.move_to_state(full_state()) is False
    assert client.goals == []


def test_move_to_state_needs_client_and_planner():
    arm = ChainController("arm", "t", "arm_group", list(ARM_JOINTS))
    with pytest.raises(RuntimeError):
        ChainManager([arm]).move_to_state(full_state())
    with pytest.raises(RuntimeError):
        ChainManager([arm], client=RecordingClient()).move_to_state(full_state())


def test_is_settled():
    head = ChainController("head", "t", "", list(HEAD_JOINTS))
    manager = ChainManager([head])
    assert manager.is_settled() is False
    manager.state_callback(JointState(name=["head_pan_joint", "other"], position=[0, 0], velocity=[0.5, 0.0]))
    assert manager.is_settled() is False
    manager.state_callback(JointState(name=["head_pan_joint", "other"], position=[0, 0], velocity=[0.0, 2.0]))
    assert manager.is_settled() is True


def test_wait_to_settle_needs_fresh_state():
    head = ChainController("head", "t", "", list(HEAD_JOINTS))
    manager = ChainManager([head], poll_interval=0.001)
    manager.state_callback(full_state())
    timer = threading.Timer(0.05, manager.state_callback, args=(full_state(),))
    timer.start()
    try:
        assert manager.wait_to_settle() is True
    finally:
        timer.join()
    assert manager.get_state()[1] is True