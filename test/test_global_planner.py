"""
test_global_planner.py - SkeletonPlanner 子图通知 / 前沿目标 / 航点执行测试
"""

import numpy as np
import pytest

from glocal_planner.communicator import Communicator, PlanningState
from glocal_planner.global_planner import GlobalPlannerBase, SkeletonPlanner
from glocal_planner.mapping import VoxelGridMap, VoxelState
from glocal_planner.models import (
    FrontierGoal, PlanningFailure, VoxelGridMapConfig, WayPoint,
)

from conftest import make_grid_graph

START = np.array([-0.2, 0.0, 0.0])
GOAL = np.array([5.0, 0.0, 0.0])


@pytest.fixture
def comm():
    return Communicator(WayPoint(-0.2, 0.0, 0.0))


@pytest.fixture
def skeleton_planner(federation, comm):
    planner = SkeletonPlanner(comm, federation.grid_map)
    planner.on_submap_finalized(federation.submap_a)
    planner.on_submap_finalized(federation.submap_b)
    return planner


class TestInterface:

    def test_abstract(self, comm):
        with pytest.raises(TypeError):
            GlobalPlannerBase(comm)

    def test_registered_as_listener(self, comm):
        grid = VoxelGridMap(VoxelGridMapConfig(dimensions=[20, 20, 10]))
        grid.fill(VoxelState.FREE)
        planner = SkeletonPlanner(comm, grid)
        grid.finalize_submap(4, [0.0, 0.0, 0.0], [2.0, 2.0, 1.0],
                             skeleton_graph=make_grid_graph(2, 0.5))
        assert planner.collection.submap_ids == [4]
        assert planner.collection.total_vertices == 4


class TestPlanning:

    def test_plan_path_loads_waypoints(self, skeleton_planner, comm):
        assert skeleton_planner.execution_finished
        result = skeleton_planner.plan_path(START, GOAL)
        assert result.success
        assert skeleton_planner.last_result is result
        assert not skeleton_planner.execution_finished
        assert len(skeleton_planner.remaining_waypoints) == len(result.waypoints)
        assert comm.state == PlanningState.GLOBAL_PLANNING

    def test_failed_plan_not_loaded(self, skeleton_planner, comm):
        result = skeleton_planner.plan_path([-5.0, 0.0, 0.0], GOAL)
        assert not result.success
        assert skeleton_planner.execution_finished
        assert comm.state == PlanningState.IDLE

    def test_frontiers_first_success(self, skeleton_planner):
        frontiers = [
            FrontierGoal([0.0, 1.0, 0.0], is_reachable=False),
            FrontierGoal(GOAL),
            # 墙内，更近但没有可达的出口顶点
            FrontierGoal([2.5, 0.0, 0.0]),
        ]
        result = skeleton_planner.plan_to_frontiers(START, frontiers)
        assert result.success
        np.testing.assert_allclose(result.waypoints[-1].position, GOAL)

    def test_frontiers_all_fail(self, skeleton_planner):
        result = skeleton_planner.plan_to_frontiers(
            START, [FrontierGoal([2.5, 0.0, 0.0]), FrontierGoal([6.8, 0.0, 0.0])])
        assert not result.success
        assert result.failure == PlanningFailure.NO_GOAL_VERTEX

    def test_no_reachable_frontiers(self, skeleton_planner):
        result = skeleton_planner.plan_to_frontiers(
            START, [FrontierGoal(GOAL, is_reachable=False)])
        assert not result.success
        assert result.failure == PlanningFailure.NO_GOAL_VERTEX
        assert skeleton_planner.last_result is result


class TestExecution:

    def test_feeds_waypoints_until_finished(self, skeleton_planner, comm):
        result = skeleton_planner.plan_path(START, GOAL)
        published = []
        comm.add_waypoint_callback(published.append)

        for _ in range(len(result.waypoints) + 5):
            skeleton_planner.run_one_iteration()
            # 未到达目标时不发布
            assert skeleton_planner.run_one_iteration() is None
            comm.target_reached = True

        assert skeleton_planner.execution_finished
        assert [wp.to_dict() for wp in published] == \
            [wp.to_dict() for wp in result.waypoints]
        np.testing.assert_allclose(published[-1].position, GOAL)

    def test_idle_without_path(self, skeleton_planner):
        assert skeleton_planner.run_one_iteration() is None
