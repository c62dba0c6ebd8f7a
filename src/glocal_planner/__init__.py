"""
glocal_planner - 局部 / 全局探索运动规划核心

局部：Receding-Horizon RRT* 视点树规划器，每个控制周期扩展一个采样点，
      在机器人到达目标时选出增益代价比最高的下一段路径。
全局：联邦骨架图 A*，在多个独立构建的子图骨架图之间临时桥接，
      规划到远处前沿目标的路径。

核心思路：
1. 视点树 arena + 稳定 node_id，连接对称存储于两端
2. active connection 链构成指向根节点的生成树，重连时检测环
3. 价值（GNV）= 子树内最佳累计增益 / 累计代价
4. 子图冻结时地图通知全局规划器（GlobalPlannerBase.on_submap_finalized）
5. A* open set: heapq + 插入计数器，结果可复现
"""

from .communicator import Communicator, PlanningState
from .errors import GlocalPlannerError, InvariantViolation, SubmapCollectionError
from .global_planner import GlobalPlannerBase, SkeletonPlanner
from .mapping import MapBase, VoxelGridMap, VoxelState
from .models import (
    GOAL_VERTEX_ID,
    FrontierGoal,
    GlobalPlanResult,
    GlobalVertexId,
    LidarModelConfig,
    PlannerStats,
    PlanningFailure,
    RHRRTStarConfig,
    SkeletonAStarConfig,
    Transformation,
    VoxelGridMapConfig,
    WayPoint,
)
from .report import PlannerReportGenerator
from .rh_rrt_star import RHRRTStar
from .sensor_model import GainModel, LidarModel
from .skeleton_a_star import SkeletonAStar
from .skeleton_graph import (
    SkeletonEdge,
    SkeletonGraph,
    SkeletonSubmap,
    SkeletonSubmapCollection,
    SkeletonVertex,
)
from .spatial_index import SpatialIndex
from .viewpoint_tree import Connection, ViewPoint, ViewpointTree

__version__ = "0.1.0"

__all__ = [
    'Communicator', 'PlanningState',
    'GlocalPlannerError', 'InvariantViolation', 'SubmapCollectionError',
    'GlobalPlannerBase', 'SkeletonPlanner',
    'MapBase', 'VoxelGridMap', 'VoxelState',
    'GOAL_VERTEX_ID', 'FrontierGoal', 'GlobalPlanResult', 'GlobalVertexId',
    'LidarModelConfig', 'PlannerStats', 'PlanningFailure', 'RHRRTStarConfig',
    'SkeletonAStarConfig', 'Transformation', 'VoxelGridMapConfig', 'WayPoint',
    'PlannerReportGenerator',
    'RHRRTStar',
    'GainModel', 'LidarModel',
    'SkeletonAStar',
    'SkeletonEdge', 'SkeletonGraph', 'SkeletonSubmap', 'SkeletonSubmapCollection',
    'SkeletonVertex',
    'SpatialIndex',
    'Connection', 'ViewPoint', 'ViewpointTree',
]
