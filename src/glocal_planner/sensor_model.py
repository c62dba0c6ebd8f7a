"""
glocal_planner/sensor_model.py - 传感器可见性 / 信息增益模型

视点的增益定义为从该位姿可以观测到的未知体素数量。规划器只依赖
GainModel 接口；LidarModel 在 VoxelGridMap 上做射线投射：
- 水平视场以偏航角为中心，垂直视场以水平面为中心
- 射线按 ray_step 步进，遇到占据体素或离开地图即停止
- 收集途经的未知体素索引
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import List, Optional, Set, Tuple

import numpy as np

from .mapping import VoxelGridMap, VoxelState
from .models import LidarModelConfig, WayPoint

logger = logging.getLogger(__name__)

VoxelIndex = Tuple[int, int, int]


class GainModel(ABC):
    """信息增益模型接口"""

    @abstractmethod
    def get_visible_unknown_voxels(self, pose: WayPoint) -> Set[VoxelIndex]:
        """pose 处可见的未知体素索引集合"""

    def compute_gain(self, pose: WayPoint) -> float:
        """期望新观测体积（体素计数）"""
        return float(len(self.get_visible_unknown_voxels(pose)))

    def get_visible_voxel_centers(self, pose: WayPoint) -> List[np.ndarray]:
        """可见未知体素中心；不提供体素几何的模型返回空列表"""
        return []


class LidarModel(GainModel):
    """基于射线投射的激光雷达可见性模型

    Args:
        grid_map: 体素地图
        config: 雷达参数

    Example:
        >>> model = LidarModel(grid_map, LidarModelConfig(ray_length=3.0))
        >>> gain = model.compute_gain(WayPoint(1.0, 1.0, 0.5, yaw=0.0))
    """

    def __init__(
        self,
        grid_map: VoxelGridMap,
        config: Optional[LidarModelConfig] = None,
    ) -> None:
        self.grid_map = grid_map
        self.config = config or LidarModelConfig()
        self._body_directions = self._compute_body_directions()
        logger.debug("LidarModel: %d 条射线", len(self._body_directions))

    def _compute_body_directions(self) -> np.ndarray:
        """机体坐标系下的单位射线方向 (M, 3)"""
        cfg = self.config
        h_fov = math.radians(cfg.horizontal_fov)
        v_fov = math.radians(cfg.vertical_fov)
        if cfg.horizontal_fov >= 360.0:
            azimuths = np.linspace(-math.pi, math.pi, cfg.horizontal_resolution,
                                   endpoint=False)
        else:
            azimuths = np.linspace(-h_fov / 2.0, h_fov / 2.0, cfg.horizontal_resolution)
        if cfg.vertical_resolution == 1:
            elevations = np.zeros(1)
        else:
            elevations = np.linspace(-v_fov / 2.0, v_fov / 2.0, cfg.vertical_resolution)

        az, el = np.meshgrid(azimuths, elevations, indexing='ij')
        directions = np.stack([
            np.cos(el) * np.cos(az),
            np.cos(el) * np.sin(az),
            np.sin(el),
        ], axis=-1).reshape(-1, 3)

        step = max(1, int(round(cfg.downsampling_factor)))
        return directions[::step]

    def get_ray_directions(self, pose: WayPoint) -> np.ndarray:
        """世界坐标系下的射线方向"""
        return pose.orientation().apply(self._body_directions)

    def get_visible_unknown_voxels(self, pose: WayPoint) -> Set[VoxelIndex]:
        step = self.config.ray_step if self.config.ray_step > 0 \
            else self.grid_map.get_voxel_size()
        ranges = np.arange(step, self.config.ray_length + 1e-9, step)
        origin = pose.position

        visible: Set[VoxelIndex] = set()
        for direction in self.get_ray_directions(pose):
            points = origin + ranges[:, None] * direction
            idx, states, inside = self.grid_map.get_voxel_states(points)
            blocked = (~inside) | (states == VoxelState.OCCUPIED)
            stop = int(np.argmax(blocked)) if blocked.any() else len(points)
            for i in np.flatnonzero(states[:stop] == VoxelState.UNKNOWN):
                visible.add((int(idx[i, 0]), int(idx[i, 1]), int(idx[i, 2])))
        return visible

    def get_visible_voxel_centers(self, pose: WayPoint) -> List[np.ndarray]:
        """可见未知体素中心（诊断用）"""
        return [self.grid_map.voxel_center(i)
                for i in sorted(self.get_visible_unknown_voxels(pose))]
