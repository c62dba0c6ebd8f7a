"""
conftest.py — pytest fixtures shared across the test suite.

提供：
- BoxWorldMap: 轻量 MapBase 实现（AABB 边界 + 障碍盒），避免体素距离场开销
- 增益模型桩：常数增益 / 沿 +x 的前沿增益
- 两个子图组成的联邦骨架图场景（VoxelGridMap + 两张 3x3 网格骨架图）
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from glocal_planner.communicator import Communicator  # noqa: E402
from glocal_planner.mapping import MapBase, VoxelGridMap, VoxelState  # noqa: E402
from glocal_planner.models import (  # noqa: E402
    Transformation, VoxelGridMapConfig, WayPoint,
)
from glocal_planner.sensor_model import GainModel  # noqa: E402
from glocal_planner.skeleton_graph import (  # noqa: E402
    SkeletonGraph, SkeletonSubmap, SkeletonSubmapCollection,
)


# =========================================================================
# Map stubs
# =========================================================================

class BoxWorldMap(MapBase):
    """AABB 边界内、障碍盒外即可通行"""

    def __init__(self, lo, hi, voxel_size: float = 0.1) -> None:
        super().__init__()
        self.lo = np.asarray(lo, dtype=np.float64)
        self.hi = np.asarray(hi, dtype=np.float64)
        self.voxel_size = voxel_size
        self.blocked: List[Tuple[np.ndarray, np.ndarray]] = []
        self.regions: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        self.n_queries = 0

    def block(self, lo, hi) -> None:
        self.blocked.append((np.asarray(lo, dtype=np.float64),
                             np.asarray(hi, dtype=np.float64)))

    def add_region(self, submap_id: int, lo, hi) -> None:
        """登记冻结子图区域（get_submap_ids_at_position 的查询对象）"""
        self.regions[submap_id] = (np.asarray(lo, dtype=np.float64),
                                   np.asarray(hi, dtype=np.float64))

    def get_voxel_size(self) -> float:
        return self.voxel_size

    def is_traversable_in_active_submap(self, position, orientation=None) -> bool:
        self.n_queries += 1
        p = np.asarray(position, dtype=np.float64)
        if np.any(p < self.lo) or np.any(p > self.hi):
            return False
        for lo, hi in self.blocked:
            if np.all(p >= lo) and np.all(p <= hi):
                return False
        return True

    def is_traversable_in_global_map(self, position) -> bool:
        return self.is_traversable_in_active_submap(position)

    def get_distance_in_active_submap(self, position):
        return None

    def get_submap_ids_at_position(self, position):
        p = np.asarray(position, dtype=np.float64)
        return [sid for sid, (lo, hi) in self.regions.items()
                if np.all(p >= lo) and np.all(p <= hi)]


@pytest.fixture()
def open_map() -> BoxWorldMap:
    """20 x 20 x 4 m 的无障碍空间"""
    return BoxWorldMap([-10.0, -10.0, -2.0], [10.0, 10.0, 2.0], voxel_size=0.1)


@pytest.fixture()
def corridor_map() -> BoxWorldMap:
    """沿 +x 的直走廊：x ∈ [-0.5, 10.5]，截面 1 x 1 m"""
    return BoxWorldMap([-0.5, -0.5, -0.5], [10.5, 0.5, 0.5], voxel_size=0.1)


# =========================================================================
# Gain stubs
# =========================================================================

class ConstantGain(GainModel):
    """按位置查表的增益，默认 1.0"""

    def __init__(self, default: float = 1.0) -> None:
        self.default = default
        self.table: Dict[Tuple[float, float, float], float] = {}

    def set(self, position, gain: float) -> None:
        self.table[tuple(round(float(v), 6) for v in position)] = gain

    def get_visible_unknown_voxels(self, pose: WayPoint):
        return set()

    def compute_gain(self, pose: WayPoint) -> float:
        key = tuple(round(float(v), 6) for v in pose.position)
        return self.table.get(key, self.default)


class FrontierGain(GainModel):
    """沿 +x 的前沿增益

    机器人到过的最远 x（再加 sensor_range）之前的空间视为已观测，增益为 0；
    之后的增益 = 超出已观测边界的距离。
    """

    def __init__(self, communicator: Communicator, sensor_range: float = 0.0) -> None:
        self.comm = communicator
        self.sensor_range = sensor_range
        self.seen_x = communicator.current_pose.x

    def get_visible_unknown_voxels(self, pose: WayPoint):
        return set()

    def compute_gain(self, pose: WayPoint) -> float:
        self.seen_x = max(self.seen_x, self.comm.current_pose.x)
        return max(0.0, pose.x - self.seen_x - self.sensor_range)


@pytest.fixture()
def constant_gain() -> ConstantGain:
    return ConstantGain()


@pytest.fixture()
def communicator() -> Communicator:
    return Communicator(WayPoint(0.0, 0.0, 0.0))


@pytest.fixture()
def frontier_gain(communicator) -> FrontierGain:
    return FrontierGain(communicator)


# =========================================================================
# Federated skeleton scenario
# =========================================================================

def make_grid_graph(n: int = 3, spacing: float = 1.0) -> SkeletonGraph:
    """n x n 网格骨架图，顶点 ID = i * n + j 对应 (i * spacing, j * spacing, 0)"""
    graph = SkeletonGraph()
    for i in range(n):
        for j in range(n):
            graph.add_vertex([i * spacing, j * spacing, 0.0], vertex_id=i * n + j)
    for i in range(n):
        for j in range(n):
            if i + 1 < n:
                graph.add_edge(i * n + j, (i + 1) * n + j)
            if j + 1 < n:
                graph.add_edge(i * n + j, i * n + j + 1)
    return graph


@dataclass
class Federation:
    grid_map: MapBase
    collection: SkeletonSubmapCollection
    submap_a: SkeletonSubmap
    submap_b: SkeletonSubmap


def build_federation(wall_top: float = 1.5) -> Federation:
    """两张 3x3 网格图，B 相对 A 平移 (3, 0, 0)

    x ∈ [2.4, 2.6] 处有一堵墙，y 方向延伸到 wall_top；墙上方的缺口
    只允许 A(2, 2) → B 局部 (0, 2)（世界 (3, 2)）一条桥接边。
    """
    grid_map = VoxelGridMap(VoxelGridMapConfig(
        voxel_size=0.1,
        traversability_radius=0.3,
        origin=[-1.0, -1.0, -1.0],
        dimensions=[80, 40, 20],
    ))
    grid_map.fill(VoxelState.FREE)
    grid_map.add_obstacle([2.4, -1.0, -1.0], [2.6, wall_top, 1.0])

    submap_a = grid_map.finalize_submap(
        0, [-1.0, -1.0, -1.0], [3.5, 3.0, 1.0],
        skeleton_graph=make_grid_graph(), pose=Transformation.identity())
    submap_b = grid_map.finalize_submap(
        1, [1.5, -1.0, -1.0], [6.5, 3.0, 1.0],
        skeleton_graph=make_grid_graph(),
        pose=Transformation.from_translation_yaw([3.0, 0.0, 0.0], 0.0))

    collection = SkeletonSubmapCollection()
    collection.add_submap(submap_a)
    collection.add_submap(submap_b)
    return Federation(grid_map, collection, submap_a, submap_b)


@pytest.fixture()
def federation() -> Federation:
    return build_federation()


@pytest.fixture()
def blocked_federation() -> Federation:
    """墙覆盖整个 y 范围，两张图之间没有可行桥接"""
    return build_federation(wall_top=3.0)


def make_graph(points, edges) -> SkeletonGraph:
    """按顶点坐标列表（ID 即下标）和边列表构建骨架图"""
    graph = SkeletonGraph()
    for i, point in enumerate(points):
        graph.add_vertex(point, vertex_id=i)
    for a, b in edges:
        graph.add_edge(a, b)
    return graph


def build_two_route_federation(block_short_bridge: bool = False) -> Federation:
    """两张子图之间有两条桥接：y = 0 处的短桥和 y = 3 处的绕行桥

    A: (0,0)-(1,0)-(2,0) 主干，(1,0)-(1,3)-(2,3) 绕行支路
    B 平移 (3, 0, 0)：局部 (0,0)-(1,0) 与 (0,3)-(1,3)-(1,0)
    短桥 A2 → B0 长 1；绕行桥 A4 → B2 长 1，但到达 A4 要多走 3 m。
    block_short_bridge=True 时在 x = 2.5 处用障碍挡住短桥。
    """
    grid_map = BoxWorldMap([-1.0, -1.0, -1.0], [6.0, 5.0, 1.0], voxel_size=0.1)
    grid_map.add_region(0, [-1.0, -1.0, -1.0], [2.5, 4.0, 1.0])
    grid_map.add_region(1, [1.5, -1.0, -1.0], [5.5, 4.0, 1.0])
    if block_short_bridge:
        grid_map.block([2.4, -0.5, -1.0], [2.6, 0.5, 1.0])

    submap_a = SkeletonSubmap(0, make_graph(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0],
         [1.0, 3.0, 0.0], [2.0, 3.0, 0.0]],
        [(0, 1), (1, 2), (1, 3), (3, 4)]))
    submap_b = SkeletonSubmap(1, make_graph(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 3.0, 0.0], [1.0, 3.0, 0.0]],
        [(0, 1), (2, 3), (3, 1)]),
        pose=Transformation.from_translation_yaw([3.0, 0.0, 0.0], 0.0))

    collection = SkeletonSubmapCollection()
    collection.add_submap(submap_a)
    collection.add_submap(submap_b)
    return Federation(grid_map, collection, submap_a, submap_b)
