"""
glocal_planner/mapping.py - 地图接口与参考体素地图

规划核心只通过 MapBase 的抽象查询访问地图：
- 活动（局部）区域的点 / 线段可通行性
- 全局地图（所有已冻结子图的并集）的点 / 线段可通行性
- 体素尺寸、距离查询、位置所在子图查询

VoxelGridMap 是一个稠密 numpy 体素网格实现，供测试和离线仿真使用：
- 体素状态：未知 / 空闲 / 占据
- 距离场由 scipy.ndimage.distance_transform_edt 惰性重算
- finalize_submap 把某一区域冻结为全局地图子图，并通知全局规划器

并发说明：
    地图可能被独立的传感器融合线程修改。每个公开查询 / 修改都在
    RLock 内完成，保证单次调用看到一致的快照；规划器不会跨多次调用持锁。
"""

import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
from scipy import ndimage

from .communicator import Communicator
from .models import Transformation, VoxelGridMapConfig, as_point
from .skeleton_graph import SkeletonGraph, SkeletonSubmap

logger = logging.getLogger(__name__)


class VoxelState(enum.IntEnum):
    UNKNOWN = 0
    FREE = 1
    OCCUPIED = 2


class SubmapListener(Protocol):
    """子图冻结通知的接收方（全局规划器）"""

    def on_submap_finalized(self, submap: SkeletonSubmap) -> None:
        ...


class MapBase(ABC):
    """地图抽象接口

    子类必须实现单点查询；线段查询默认按体素分辨率逐点检查。
    """

    def __init__(self) -> None:
        self._submap_listeners: List[SubmapListener] = []

    # ── 抽象查询 ──

    @abstractmethod
    def get_voxel_size(self) -> float:
        ...

    @abstractmethod
    def is_traversable_in_active_submap(
        self, position: np.ndarray, orientation: Any = None,
    ) -> bool:
        ...

    @abstractmethod
    def is_traversable_in_global_map(self, position: np.ndarray) -> bool:
        ...

    @abstractmethod
    def get_distance_in_active_submap(self, position: np.ndarray) -> Optional[float]:
        """活动区域中到最近障碍的距离；未观测时返回 None"""

    @abstractmethod
    def get_submap_ids_at_position(self, position: np.ndarray) -> List[int]:
        ...

    # ── 线段查询 ──

    def _line_points(self, start_point: np.ndarray, end_point: np.ndarray) -> np.ndarray:
        """起点之后、终点为止的等间隔采样点"""
        start_point = np.asarray(start_point, dtype=np.float64)
        end_point = np.asarray(end_point, dtype=np.float64)
        n_points = int(np.floor(
            np.linalg.norm(end_point - start_point) / self.get_voxel_size())) + 1
        t = np.arange(1, n_points + 1, dtype=np.float64)[:, None] / n_points
        return start_point + t * (end_point - start_point)

    def is_line_traversable_in_active_submap(
        self, start_point: np.ndarray, end_point: np.ndarray,
    ) -> bool:
        for point in self._line_points(start_point, end_point):
            if not self.is_traversable_in_active_submap(point):
                return False
        return True

    def is_line_traversable_in_global_map(
        self, start_point: np.ndarray, end_point: np.ndarray,
    ) -> bool:
        for point in self._line_points(start_point, end_point):
            if not self.is_traversable_in_global_map(point):
                return False
        return True

    # ── 子图冻结通知 ──

    def add_submap_listener(self, listener: SubmapListener) -> None:
        self._submap_listeners.append(listener)

    def notify_submap_finalized(self, submap: SkeletonSubmap) -> None:
        for listener in self._submap_listeners:
            listener.on_submap_finalized(submap)


@dataclass
class _FrozenRegion:
    """冻结子图的距离场切片（索引范围 [lo, hi)）"""
    submap_id: int
    min_point: np.ndarray
    max_point: np.ndarray
    lo: np.ndarray
    hi: np.ndarray
    observed: np.ndarray
    distance: np.ndarray

    def contains(self, position: np.ndarray) -> bool:
        return bool(np.all(position >= self.min_point)
                    and np.all(position <= self.max_point))


class VoxelGridMap(MapBase):
    """稠密体素网格地图

    Args:
        config: 地图参数
        communicator: 用于获取机器人当前位置（clearing radius 判定），可选

    Example:
        >>> grid = VoxelGridMap(VoxelGridMapConfig(dimensions=[50, 50, 10]))
        >>> grid.fill(VoxelState.FREE)
        >>> grid.add_obstacle([2.0, 0.0, 0.0], [2.5, 5.0, 1.0])
        >>> grid.is_line_traversable_in_active_submap(a, b)
    """

    def __init__(
        self,
        config: Optional[VoxelGridMapConfig] = None,
        communicator: Optional[Communicator] = None,
    ) -> None:
        super().__init__()
        self.config = config or VoxelGridMapConfig()
        self.communicator = communicator
        self._lock = threading.RLock()
        self._voxel_size = float(self.config.voxel_size)
        self._origin = np.asarray(self.config.origin, dtype=np.float64)
        self._dims = np.asarray(self.config.dimensions, dtype=np.int64)
        self._states = np.zeros(tuple(self._dims), dtype=np.uint8)
        self._distance: Optional[np.ndarray] = None
        self._regions: Dict[int, _FrozenRegion] = {}

    @property
    def min_point(self) -> np.ndarray:
        return self._origin.copy()

    @property
    def max_point(self) -> np.ndarray:
        return self._origin + self._dims * self._voxel_size

    @property
    def finalized_submap_ids(self) -> List[int]:
        with self._lock:
            return list(self._regions.keys())

    def get_voxel_size(self) -> float:
        return self._voxel_size

    # ── 索引换算 ──

    def voxel_index(self, position: Any) -> Optional[Tuple[int, int, int]]:
        """位置所在体素索引；超出地图返回 None"""
        idx = np.floor((as_point(position) - self._origin) / self._voxel_size).astype(np.int64)
        if np.any(idx < 0) or np.any(idx >= self._dims):
            return None
        return int(idx[0]), int(idx[1]), int(idx[2])

    def voxel_center(self, index: Tuple[int, int, int]) -> np.ndarray:
        return self._origin + (np.asarray(index, dtype=np.float64) + 0.5) * self._voxel_size

    def get_voxel_center(self, position: Any) -> Optional[np.ndarray]:
        idx = self.voxel_index(position)
        return None if idx is None else self.voxel_center(idx)

    def _box_slices(self, min_point: Any, max_point: Any) -> Tuple[np.ndarray, np.ndarray]:
        """中心落在 [min, max] 内的体素索引范围 [lo, hi)"""
        lo = np.ceil((as_point(min_point) - self._origin) / self._voxel_size - 0.5)
        hi = np.floor((as_point(max_point) - self._origin) / self._voxel_size - 0.5) + 1
        lo = np.clip(lo, 0, self._dims).astype(np.int64)
        hi = np.clip(hi, 0, self._dims).astype(np.int64)
        return lo, np.maximum(hi, lo)

    # ── 修改 ──

    def fill(self, state: VoxelState) -> None:
        with self._lock:
            self._states.fill(int(state))
            self._distance = None

    def set_box_state(self, min_point: Any, max_point: Any, state: VoxelState) -> int:
        """把中心落在 AABB 内的体素设为 state，返回修改的体素数"""
        with self._lock:
            lo, hi = self._box_slices(min_point, max_point)
            block = self._states[lo[0]:hi[0], lo[1]:hi[1], lo[2]:hi[2]]
            block.fill(int(state))
            self._distance = None
            logger.debug("体素区域 %s-%s 设为 %s (%d 个体素)",
                         lo.tolist(), hi.tolist(), state.name, block.size)
            return int(block.size)

    def add_obstacle(self, min_point: Any, max_point: Any) -> int:
        return self.set_box_state(min_point, max_point, VoxelState.OCCUPIED)

    def clear_box(self, min_point: Any, max_point: Any) -> int:
        return self.set_box_state(min_point, max_point, VoxelState.FREE)

    # ── 距离场 ──

    def _compute_distance(self, states: np.ndarray) -> np.ndarray:
        occupied = states == VoxelState.OCCUPIED
        if not occupied.any():
            return np.full(states.shape, np.inf)
        return ndimage.distance_transform_edt(~occupied, sampling=self._voxel_size)

    def _distance_field(self) -> np.ndarray:
        if self._distance is None:
            self._distance = self._compute_distance(self._states)
        return self._distance

    def get_voxel_state(self, position: Any) -> VoxelState:
        with self._lock:
            idx = self.voxel_index(position)
            if idx is None:
                return VoxelState.UNKNOWN
            return VoxelState(int(self._states[idx]))

    def get_voxel_states(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """批量查询 (N, 3) 点的体素索引与状态

        Returns:
            (indices (N, 3), states (N,), inside (N,))；地图外的点 inside=False
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        idx = np.floor((pts - self._origin) / self._voxel_size).astype(np.int64)
        inside = np.all((idx >= 0) & (idx < self._dims), axis=1)
        states = np.full(len(pts), int(VoxelState.UNKNOWN), dtype=np.uint8)
        with self._lock:
            if inside.any():
                ii = idx[inside]
                states[inside] = self._states[ii[:, 0], ii[:, 1], ii[:, 2]]
        return idx, states, inside

    def get_distance_in_active_submap(self, position: Any) -> Optional[float]:
        with self._lock:
            idx = self.voxel_index(position)
            if idx is None or self._states[idx] == VoxelState.UNKNOWN:
                return None
            return float(self._distance_field()[idx])

    # ── 可通行性 ──

    def is_traversable_in_active_submap(
        self, position: Any, orientation: Any = None,
    ) -> bool:
        position = as_point(position)
        with self._lock:
            if self.voxel_index(position) is None:
                return False
            distance = self.get_distance_in_active_submap(position)
        if distance is not None:
            return distance > self.config.traversability_radius
        if self.communicator is None:
            return False
        robot_position = self.communicator.current_pose.position
        return float(np.linalg.norm(position - robot_position)) < self.config.clearing_radius

    def is_traversable_in_global_map(self, position: Any) -> bool:
        """全局地图可通行性：冻结子图的并集，叠加实时占据

        先查实时体素网格，当前标记为 OCCUPIED 的体素一律不可通行，
        即使冻结时该处是空闲的（冻结后新出现的障碍同样阻挡全局路径）。
        其余情况要求至少一个包含该点的冻结子图观测过它，且所有包含它的
        子图中障碍距离都大于 traversability_radius。
        """
        position = as_point(position)
        with self._lock:
            idx = self.voxel_index(position)
            if idx is None:
                return False
            if self._states[idx] == VoxelState.OCCUPIED:
                return False
            traversable_anywhere = False
            for region in self._regions.values():
                if not region.contains(position):
                    continue
                local = np.asarray(idx) - region.lo
                if np.any(local < 0) or np.any(local >= region.hi - region.lo):
                    continue
                local = tuple(int(v) for v in local)
                if not region.observed[local]:
                    continue
                if region.distance[local] <= self.config.traversability_radius:
                    return False
                traversable_anywhere = True
            # 全局规划不使用 clearing radius，从未观测的点不可通行
            return traversable_anywhere

    # ── 子图 ──

    def get_submap_ids_at_position(self, position: Any) -> List[int]:
        position = as_point(position)
        with self._lock:
            return [sid for sid, region in self._regions.items()
                    if region.contains(position)]

    def finalize_submap(
        self,
        submap_id: int,
        min_point: Any,
        max_point: Any,
        skeleton_graph: Optional[SkeletonGraph] = None,
        pose: Optional[Transformation] = None,
    ) -> Optional[SkeletonSubmap]:
        """冻结 [min, max] 区域为全局地图子图

        若同时给出上游构建好的骨架图，则封装为 SkeletonSubmap
        并通知所有已注册的全局规划器。

        Returns:
            创建的 SkeletonSubmap（未提供骨架图时为 None）
        """
        with self._lock:
            if submap_id in self._regions:
                raise ValueError(f"子图 {submap_id} 已冻结")
            lo, hi = self._box_slices(min_point, max_point)
            sl = (slice(lo[0], hi[0]), slice(lo[1], hi[1]), slice(lo[2], hi[2]))
            region = _FrozenRegion(
                submap_id=submap_id,
                min_point=as_point(min_point),
                max_point=as_point(max_point),
                lo=lo,
                hi=hi,
                observed=(self._states[sl] != VoxelState.UNKNOWN).copy(),
                distance=self._distance_field()[sl].copy(),
            )
            self._regions[submap_id] = region
            logger.info("冻结子图 %d: %d 个已观测体素",
                        submap_id, int(region.observed.sum()))

        if skeleton_graph is None:
            return None
        submap = SkeletonSubmap(
            submap_id=submap_id,
            graph=skeleton_graph,
            pose=pose or Transformation.identity(),
        )
        self.notify_submap_finalized(submap)
        return submap
