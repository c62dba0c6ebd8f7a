"""
glocal_planner/global_planner.py - 全局规划器接口

GlobalPlannerBase 是地图层唯一依赖的全局规划器抽象：子图冻结时
地图通过 on_submap_finalized 通知所有已注册的全局规划器，
不再按具体类型做分派。

SkeletonPlanner 持有骨架子图集合和联邦 A*：
- plan_to_frontiers: 按直线距离依次尝试可达前沿目标，取第一条成功路径
- run_one_iteration: 每当机器人到达目标时通过 Communicator 发布下一个航点，
  路径发布完毕后置 execution_finished
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, List, Optional

import numpy as np

from .communicator import Communicator
from .mapping import MapBase
from .models import (
    FrontierGoal, GlobalPlanResult, PlanningFailure, SkeletonAStarConfig,
    WayPoint, as_point,
)
from .skeleton_a_star import SkeletonAStar
from .skeleton_graph import SkeletonSubmap, SkeletonSubmapCollection

logger = logging.getLogger(__name__)


class GlobalPlannerBase(ABC):
    """全局规划器接口"""

    def __init__(self, communicator: Communicator) -> None:
        self.comm = communicator

    @abstractmethod
    def on_submap_finalized(self, submap: SkeletonSubmap) -> None:
        """新子图冻结通知"""

    @abstractmethod
    def plan_path(self, start, goal) -> GlobalPlanResult:
        """start → goal 路径规划"""


class SkeletonPlanner(GlobalPlannerBase):
    """基于联邦骨架图的全局规划器

    Args:
        communicator: 与监督器共享的状态
        grid_map: 地图接口；构造时注册为子图冻结监听者
        config: A* 参数

    Example:
        >>> planner = SkeletonPlanner(comm, grid_map)
        >>> grid_map.finalize_submap(0, lo, hi, skeleton_graph=graph)
        >>> result = planner.plan_to_frontiers(comm.current_pose.position, frontiers)
        >>> while not planner.execution_finished:
        ...     planner.run_one_iteration()
    """

    def __init__(
        self,
        communicator: Communicator,
        grid_map: MapBase,
        config: Optional[SkeletonAStarConfig] = None,
    ) -> None:
        super().__init__(communicator)
        self.map = grid_map
        self.collection = SkeletonSubmapCollection()
        self.a_star = SkeletonAStar(self.collection, grid_map, config)
        self.last_result: Optional[GlobalPlanResult] = None
        self._waypoints: Deque[WayPoint] = deque()
        self._execution_finished = True
        grid_map.add_submap_listener(self)

    @property
    def execution_finished(self) -> bool:
        return self._execution_finished

    @property
    def remaining_waypoints(self) -> List[WayPoint]:
        return list(self._waypoints)

    def on_submap_finalized(self, submap: SkeletonSubmap) -> None:
        self.collection.add_submap(submap)

    # ── 规划 ──

    def plan_path(self, start, goal) -> GlobalPlanResult:
        """规划并在成功时载入路径等待执行"""
        result = self.a_star.plan_path(start, goal)
        self.last_result = result
        if result.success:
            self._load_path(result)
        return result

    def plan_to_frontiers(
        self, start, frontier_goals: List[FrontierGoal],
    ) -> GlobalPlanResult:
        """依次尝试可达前沿目标（按到 start 的直线距离升序），取第一条成功路径

        Returns:
            第一条成功的结果；全部失败时返回最后一次的失败结果
        """
        start = as_point(start)
        reachable = [g for g in frontier_goals if g.is_reachable]
        if not reachable:
            logger.warning("没有可达的前沿目标 (共 %d 个)", len(frontier_goals))
            result = GlobalPlanResult(
                failure=PlanningFailure.NO_GOAL_VERTEX,
                message="没有可达的前沿目标",
            )
            self.last_result = result
            return result

        reachable.sort(key=lambda g: float(np.linalg.norm(g.centroid - start)))
        result = None
        for i, frontier in enumerate(reachable):
            result = self.plan_path(start, frontier.centroid)
            if result.success:
                logger.info("前沿目标 %d/%d 规划成功: %s",
                            i + 1, len(reachable), frontier.centroid.tolist())
                return result
        logger.warning("全部 %d 个前沿目标规划失败", len(reachable))
        return result

    def _load_path(self, result: GlobalPlanResult) -> None:
        self._waypoints = deque(result.waypoints)
        self._execution_finished = False
        self.comm.signal_global_planning()
        logger.info("载入全局路径: %d 个航点, 长度 %.2f",
                    len(self._waypoints), result.path_length)

    # ── 执行 ──

    def run_one_iteration(self) -> Optional[WayPoint]:
        """机器人到达当前目标时发布下一个航点"""
        if self._execution_finished or not self.comm.target_reached:
            return None
        if not self._waypoints:
            self._execution_finished = True
            logger.info("全局路径执行完毕")
            return None
        waypoint = self._waypoints.popleft()
        self.comm.request_waypoint(waypoint)
        return waypoint
