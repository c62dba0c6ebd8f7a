"""
glocal_planner/models.py - 规划器数据模型

定义局部/全局规划器共享的核心数据结构：WayPoint、Transformation、
各规划器参数配置（RHRRTStarConfig、SkeletonAStarConfig、LidarModelConfig、
VoxelGridMapConfig）以及规划统计与结果（PlannerStats、GlobalPlanResult）。
"""

import enum
import json
from dataclasses import dataclass, field, fields as dc_fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

import numpy as np
from scipy.spatial.transform import Rotation


def as_point(point: Any) -> np.ndarray:
    """转为 (3,) float64 数组"""
    arr = np.asarray(point, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"点坐标必须是 3 维，得到 shape={arr.shape}")
    return arr


@dataclass
class WayPoint:
    """机器人位姿（位置 + 偏航角）

    Attributes:
        x, y, z: 位置 (m)
        yaw: 偏航角 (rad)
    """
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    yaw: float = 0.0

    @classmethod
    def from_position(cls, position: Any, yaw: float = 0.0) -> 'WayPoint':
        p = as_point(position)
        return cls(float(p[0]), float(p[1]), float(p[2]), float(yaw))

    @property
    def position(self) -> np.ndarray:
        """位置向量 (3,)"""
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    def orientation(self) -> Rotation:
        """绕 z 轴的姿态"""
        return Rotation.from_euler('z', self.yaw)

    def distance_to(self, other: 'WayPoint') -> float:
        return float(np.linalg.norm(self.position - other.position))

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'z': self.z, 'yaw': self.yaw}


class Transformation:
    """刚体变换 T = (R, t)，作用于点：p' = R p + t

    子图位姿（submap 坐标系 → 公共参考坐标系）使用该类型表示。

    Example:
        >>> T = Transformation.from_translation_yaw([3.0, 0.0, 0.0], 0.0)
        >>> T.transform([1.0, 0.0, 0.0])
        array([4., 0., 0.])
    """

    __slots__ = ('rotation', 'translation')

    def __init__(
        self,
        rotation: Optional[np.ndarray] = None,
        translation: Optional[Any] = None,
    ) -> None:
        self.rotation = (np.eye(3) if rotation is None
                         else np.asarray(rotation, dtype=np.float64).reshape(3, 3))
        self.translation = (np.zeros(3) if translation is None
                            else as_point(translation))

    @classmethod
    def identity(cls) -> 'Transformation':
        return cls()

    @classmethod
    def from_translation_yaw(cls, translation: Any, yaw: float = 0.0) -> 'Transformation':
        return cls(Rotation.from_euler('z', yaw).as_matrix(), translation)

    @classmethod
    def from_quaternion(cls, translation: Any, quaternion_xyzw: Any) -> 'Transformation':
        return cls(Rotation.from_quat(quaternion_xyzw).as_matrix(), translation)

    def transform(self, points: Any) -> np.ndarray:
        """变换单个点 (3,) 或点集 (N, 3)"""
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim == 1:
            return self.rotation @ pts + self.translation
        return pts @ self.rotation.T + self.translation

    def inverse(self) -> 'Transformation':
        r_inv = self.rotation.T
        return Transformation(r_inv, -r_inv @ self.translation)

    def compose(self, other: 'Transformation') -> 'Transformation':
        """返回 self * other（先作用 other）"""
        return Transformation(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def __repr__(self) -> str:
        yaw = Rotation.from_matrix(self.rotation).as_euler('zyx')[0]
        return (f"Transformation(t={self.translation.tolist()}, "
                f"yaw={yaw:.3f})")


class GlobalVertexId(NamedTuple):
    """联邦骨架图中的顶点标识 (submap_id, vertex_id)"""
    submap_id: int
    vertex_id: int


# 虚拟目标顶点，不对应任何真实顶点
GOAL_VERTEX_ID = GlobalVertexId(-1, -1)


@dataclass
class FrontierGoal:
    """前沿区域提供的全局目标候选

    Attributes:
        centroid: 前沿区域质心（公共参考坐标系）
        is_reachable: 前沿构建器给出的可达性分类
    """
    centroid: np.ndarray
    is_reachable: bool = True

    def __post_init__(self) -> None:
        self.centroid = as_point(self.centroid)


# ==================== 参数配置 ====================

class JsonConfigMixin:
    """配置 dataclass 的 JSON 序列化"""

    def to_dict(self) -> Dict[str, Any]:
        """转为字典"""
        return {f.name: getattr(self, f.name) for f in dc_fields(self)}

    def to_json(self, filepath: str | Path) -> str:
        """保存到 JSON 文件

        Args:
            filepath: 输出路径

        Returns:
            保存的文件路径字符串
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        return str(filepath)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """从字典创建（忽略未知字段，缺失字段用默认值）"""
        valid_fields = {f.name for f in dc_fields(cls)}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    @classmethod
    def from_json(cls, filepath: str | Path):
        """从 JSON 文件加载"""
        filepath = Path(filepath)
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls.from_dict(data)


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ValueError(f"{name} 必须大于 0，得到 {value}")


@dataclass
class RHRRTStarConfig(JsonConfigMixin):
    """局部规划器（receding-horizon RRT*）参数配置

    Attributes:
        local_sampling_radius: 局部采样半径 (m)，本根节点附近点数不足时使用
        global_sampling_radius: 全局采样半径 (m)
        min_local_points: 每个根节点附近至少需要的局部采样点数
        min_path_length: 建立连接的最小距离 (m)
        min_sampling_distance: 采样点到最近节点的最小距离 (m)
        max_path_length: 建立连接 / 采样延伸的最大距离 (m)
        path_cropping_length: 采样点相对障碍边界回缩距离 (m)
        max_number_of_neighbors: 新节点尝试连接的最近邻数量
        maximum_rewiring_iterations: 每次选点前重连优化的最大轮数
        seed: 随机数种子（0 = 用时间戳生成）
    """
    local_sampling_radius: float = 1.5
    global_sampling_radius: float = 50.0
    min_local_points: int = 5
    min_path_length: float = 0.5
    min_sampling_distance: float = 1.0
    max_path_length: float = 3.0
    path_cropping_length: float = 0.2
    max_number_of_neighbors: int = 20
    maximum_rewiring_iterations: int = 100
    seed: int = 0

    def __post_init__(self) -> None:
        _check_positive("max_path_length", self.max_path_length)
        _check_positive("path_cropping_length", self.path_cropping_length)
        _check_positive("max_number_of_neighbors", self.max_number_of_neighbors)
        _check_positive("maximum_rewiring_iterations", self.maximum_rewiring_iterations)
        _check_positive("local_sampling_radius", self.local_sampling_radius)
        _check_positive("global_sampling_radius", self.global_sampling_radius)
        if self.min_local_points < 0:
            raise ValueError(
                f"min_local_points 不能为负，得到 {self.min_local_points}")
        if self.min_path_length > self.max_path_length:
            raise ValueError(
                f"min_path_length ({self.min_path_length}) 不能大于 "
                f"max_path_length ({self.max_path_length})")


@dataclass
class SkeletonAStarConfig(JsonConfigMixin):
    """联邦骨架图 A* 参数配置

    Attributes:
        n_closest_start_vertices: 起点附近的入口顶点数
        n_closest_end_vertices: 目标附近的出口候选顶点数
        max_iterations: A* 最大迭代次数（超过即判定失败）
        max_edges_for_linking: 顶点边数不超过该值时才尝试跨子图桥接
        n_linking_neighbors: 每个相邻子图查询的最近顶点数
        max_linking_distance: 桥接边的最大长度 (m)
    """
    n_closest_start_vertices: int = 5
    n_closest_end_vertices: int = 30
    max_iterations: int = 5000
    max_edges_for_linking: int = 3
    n_linking_neighbors: int = 3
    max_linking_distance: float = 2.0

    def __post_init__(self) -> None:
        _check_positive("n_closest_start_vertices", self.n_closest_start_vertices)
        _check_positive("n_closest_end_vertices", self.n_closest_end_vertices)
        _check_positive("max_iterations", self.max_iterations)
        _check_positive("n_linking_neighbors", self.n_linking_neighbors)
        _check_positive("max_linking_distance", self.max_linking_distance)


@dataclass
class LidarModelConfig(JsonConfigMixin):
    """激光雷达可见性模型参数

    Attributes:
        ray_length: 最大射线长度 (m)
        vertical_fov: 垂直视场角 (deg)
        horizontal_fov: 水平视场角 (deg)，以偏航角为中心
        vertical_resolution: 垂直方向射线数
        horizontal_resolution: 水平方向射线数
        ray_step: 射线步进长度 (m)，<=0 时使用体素尺寸
        downsampling_factor: 射线降采样因子 (>=1)
    """
    ray_length: float = 5.0
    vertical_fov: float = 30.0
    horizontal_fov: float = 90.0
    vertical_resolution: int = 16
    horizontal_resolution: int = 64
    ray_step: float = 0.0
    downsampling_factor: float = 1.0

    def __post_init__(self) -> None:
        _check_positive("ray_length", self.ray_length)
        _check_positive("vertical_resolution", self.vertical_resolution)
        _check_positive("horizontal_resolution", self.horizontal_resolution)
        if self.downsampling_factor < 1.0:
            raise ValueError(
                f"downsampling_factor 必须 >= 1，得到 {self.downsampling_factor}")


@dataclass
class VoxelGridMapConfig(JsonConfigMixin):
    """参考体素地图参数

    Attributes:
        voxel_size: 体素边长 (m)
        traversability_radius: 可通行判定的最小障碍距离 (m)
        clearing_radius: 机器人周围未观测区域视为可通行的半径 (m)
        origin: 地图最小角点 [x, y, z]
        dimensions: 各轴体素数 [nx, ny, nz]
    """
    voxel_size: float = 0.1
    traversability_radius: float = 0.3
    clearing_radius: float = 0.5
    origin: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    dimensions: List[int] = field(default_factory=lambda: [100, 100, 20])

    def __post_init__(self) -> None:
        _check_positive("voxel_size", self.voxel_size)
        _check_positive("traversability_radius", self.traversability_radius)
        if len(self.origin) != 3 or len(self.dimensions) != 3:
            raise ValueError("origin 和 dimensions 必须是 3 维")
        self.origin = [float(v) for v in self.origin]
        self.dimensions = [int(v) for v in self.dimensions]
        if min(self.dimensions) <= 0:
            raise ValueError(f"dimensions 必须为正，得到 {self.dimensions}")


# ==================== 统计与结果 ====================

@dataclass
class PlannerStats:
    """局部规划会话统计（每次 reset 清零）

    Attributes:
        new_points: 自上次发布航点以来新增的节点数
        pruned_points: 自上次发布航点以来剪枝的节点数
        sampling_failures: 采样失败次数
        connection_failures: 连接失败次数
        n_waypoints: 已发布航点数
        n_no_candidate: 选点时未找到候选的次数（不应发生）
        local_sampled_points: 当前根节点剩余的局部采样配额
        last_rewiring_iterations: 上次重连优化迭代轮数
    """
    new_points: int = 0
    pruned_points: int = 0
    sampling_failures: int = 0
    connection_failures: int = 0
    n_waypoints: int = 0
    n_no_candidate: int = 0
    local_sampled_points: int = 0
    last_rewiring_iterations: int = 0

    def reset(self, local_sampled_points: int = 0) -> None:
        for f in dc_fields(self):
            setattr(self, f.name, 0)
        self.local_sampled_points = local_sampled_points


class PlanningFailure(enum.Enum):
    """全局规划失败原因"""
    NO_START_VERTEX = "no_start_vertex"
    NO_GOAL_VERTEX = "no_goal_vertex"
    ITERATION_LIMIT = "iteration_limit"
    OPEN_SET_EXHAUSTED = "open_set_exhausted"


@dataclass
class GlobalPlanResult:
    """全局路径规划结果

    Attributes:
        success: 是否找到路径
        waypoints: 航点序列（偏航角为 0）
        vertex_path: 顶点序列，末尾为 GOAL_VERTEX_ID
        n_iterations: A* 迭代次数
        computation_time: 计算时间 (s)
        failure: 失败原因（成功时为 None）
        message: 描述信息
        timestamp: 时间戳
    """
    success: bool = False
    waypoints: List[WayPoint] = field(default_factory=list)
    vertex_path: List[GlobalVertexId] = field(default_factory=list)
    n_iterations: int = 0
    computation_time: float = 0.0
    failure: Optional[PlanningFailure] = None
    message: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now().strftime('%Y%m%d_%H%M%S'))

    @property
    def path_length(self) -> float:
        """航点序列总长度"""
        if len(self.waypoints) < 2:
            return 0.0
        length = 0.0
        for i in range(1, len(self.waypoints)):
            length += self.waypoints[i].distance_to(self.waypoints[i - 1])
        return length

    @property
    def n_bridges(self) -> int:
        """路径中跨子图的次数（不含目标顶点）"""
        real = [v for v in self.vertex_path if v != GOAL_VERTEX_ID]
        return sum(1 for a, b in zip(real, real[1:]) if a.submap_id != b.submap_id)
