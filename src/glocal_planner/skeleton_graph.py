"""
glocal_planner/skeleton_graph.py - 骨架子图集合

每个已冻结的建图区域（子图）携带一张在自身坐标系下构建的稀疏拓扑
骨架图，以及一个到公共参考坐标系的刚体位姿。子图之间没有预先存在的
连接，跨子图的边由全局规划器在搜索时临时生成。

- SkeletonGraph: 顶点 / 边存储（子图局部坐标系）
- SkeletonSubmap: 骨架图 + 位姿，加入集合后视为不可变
- SkeletonSubmapCollection: 只追加的 submap_id → SkeletonSubmap 映射
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .errors import SubmapCollectionError
from .models import GlobalVertexId, Transformation, as_point

logger = logging.getLogger(__name__)


@dataclass
class SkeletonVertex:
    """骨架图顶点

    Attributes:
        vertex_id: 图内唯一 ID
        point: 顶点位置（子图坐标系）
        edge_list: 关联边 ID 列表
    """
    vertex_id: int
    point: np.ndarray
    edge_list: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.point = as_point(self.point)


@dataclass
class SkeletonEdge:
    """骨架图边（无向）"""
    edge_id: int
    start_vertex: int
    end_vertex: int

    def other_vertex(self, vertex_id: int) -> int:
        return self.end_vertex if self.start_vertex == vertex_id else self.start_vertex


class SkeletonGraph:
    """稀疏骨架图（子图局部坐标系）

    Example:
        >>> graph = SkeletonGraph()
        >>> a = graph.add_vertex([0.0, 0.0, 0.0])
        >>> b = graph.add_vertex([1.0, 0.0, 0.0])
        >>> graph.add_edge(a, b)
    """

    def __init__(self) -> None:
        self._vertices: Dict[int, SkeletonVertex] = {}
        self._edges: Dict[int, SkeletonEdge] = {}
        self._next_vertex_id = 0
        self._next_edge_id = 0

    @property
    def n_vertices(self) -> int:
        return len(self._vertices)

    @property
    def n_edges(self) -> int:
        return len(self._edges)

    @property
    def vertices(self) -> Dict[int, SkeletonVertex]:
        return self._vertices

    @property
    def edges(self) -> Dict[int, SkeletonEdge]:
        return self._edges

    def add_vertex(self, point, vertex_id: Optional[int] = None) -> int:
        """添加顶点，返回顶点 ID"""
        if vertex_id is None:
            vertex_id = self._next_vertex_id
        if vertex_id in self._vertices:
            raise ValueError(f"顶点 {vertex_id} 已存在")
        self._vertices[vertex_id] = SkeletonVertex(vertex_id, point)
        self._next_vertex_id = max(self._next_vertex_id, vertex_id + 1)
        return vertex_id

    def add_edge(self, start_vertex: int, end_vertex: int) -> int:
        """添加无向边，返回边 ID"""
        if start_vertex not in self._vertices or end_vertex not in self._vertices:
            raise ValueError(f"边 ({start_vertex}, {end_vertex}) 的端点不在图中")
        if start_vertex == end_vertex:
            raise ValueError(f"不允许自环边 ({start_vertex})")
        edge_id = self._next_edge_id
        self._next_edge_id += 1
        self._edges[edge_id] = SkeletonEdge(edge_id, start_vertex, end_vertex)
        self._vertices[start_vertex].edge_list.append(edge_id)
        self._vertices[end_vertex].edge_list.append(edge_id)
        return edge_id

    def get_vertex(self, vertex_id: int) -> SkeletonVertex:
        return self._vertices[vertex_id]

    def get_edge(self, edge_id: int) -> SkeletonEdge:
        return self._edges[edge_id]

    def get_points(self) -> Tuple[List[int], np.ndarray]:
        """所有顶点 ID 与位置 (N, 3)"""
        ids = list(self._vertices.keys())
        if not ids:
            return ids, np.empty((0, 3))
        return ids, np.array([self._vertices[i].point for i in ids])


class SkeletonSubmap:
    """一个冻结区域的骨架图及其位姿

    Args:
        submap_id: 子图 ID
        graph: 骨架图（子图坐标系）
        pose: 子图坐标系 → 公共参考坐标系
    """

    def __init__(
        self,
        submap_id: int,
        graph: SkeletonGraph,
        pose: Optional[Transformation] = None,
    ) -> None:
        self.submap_id = submap_id
        self._graph = graph
        self._pose = pose or Transformation.identity()
        self._pose_inverse = self._pose.inverse()
        self._vertex_ids, points = graph.get_points()
        self._kdtree = cKDTree(points) if self._vertex_ids else None
        self._world_points = self._pose.transform(points) if self._vertex_ids else points

    @property
    def graph(self) -> SkeletonGraph:
        return self._graph

    @property
    def pose(self) -> Transformation:
        return self._pose

    def get_skeleton_graph(self) -> SkeletonGraph:
        return self._graph

    def to_submap_frame(self, world_point) -> np.ndarray:
        return self._pose_inverse.transform(as_point(world_point))

    def to_world_frame(self, submap_point) -> np.ndarray:
        return self._pose.transform(as_point(submap_point))

    def get_vertex_world_position(self, vertex_id: int) -> np.ndarray:
        return self._pose.transform(self._graph.get_vertex(vertex_id).point)

    def iter_world_vertices(self) -> Iterator[Tuple[int, np.ndarray]]:
        """(vertex_id, 世界坐标) 迭代"""
        for vid, point in zip(self._vertex_ids, self._world_points):
            yield vid, point

    def get_n_closest_vertices(self, point, n: int) -> List[int]:
        """子图坐标系下离 point 最近的 n 个顶点 ID（按距离升序）"""
        if self._kdtree is None or n <= 0:
            return []
        k = min(n, len(self._vertex_ids))
        _, idx = self._kdtree.query(as_point(point), k=k)
        idx = np.atleast_1d(idx)
        return [self._vertex_ids[int(i)] for i in idx]

    def world_bounds(self, margin: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """顶点在世界坐标系下的 AABB（向外扩展 margin）"""
        if not self._vertex_ids:
            origin = self._pose.translation
            return origin - margin, origin + margin
        return (self._world_points.min(axis=0) - margin,
                self._world_points.max(axis=0) + margin)


class SkeletonSubmapCollection:
    """骨架子图集合（只追加）

    Args:
        overlap_margin: 按位置查询子图时，顶点包围盒向外扩展的距离 (m)
    """

    def __init__(self, overlap_margin: float = 1.0) -> None:
        self.overlap_margin = overlap_margin
        self._submaps: Dict[int, SkeletonSubmap] = {}
        self._bounds: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}

    def __len__(self) -> int:
        return len(self._submaps)

    def __contains__(self, submap_id: int) -> bool:
        return submap_id in self._submaps

    @property
    def submap_ids(self) -> List[int]:
        return list(self._submaps.keys())

    @property
    def total_vertices(self) -> int:
        return sum(s.graph.n_vertices for s in self._submaps.values())

    def add_submap(self, submap: SkeletonSubmap) -> None:
        if submap.submap_id in self._submaps:
            raise SubmapCollectionError(f"子图 {submap.submap_id} 已存在")
        self._submaps[submap.submap_id] = submap
        self._bounds[submap.submap_id] = submap.world_bounds(self.overlap_margin)
        logger.info("添加骨架子图 %d: %d 个顶点, %d 条边",
                    submap.submap_id, submap.graph.n_vertices, submap.graph.n_edges)

    def get_submap_by_id(self, submap_id: int) -> SkeletonSubmap:
        try:
            return self._submaps[submap_id]
        except KeyError:
            raise SubmapCollectionError(f"未知子图 {submap_id}") from None

    def get_submap(self, submap_id: int) -> Optional[SkeletonSubmap]:
        return self._submaps.get(submap_id)

    def get_submaps(self) -> List[SkeletonSubmap]:
        return list(self._submaps.values())

    def get_submap_ids_at_position(self, position) -> List[int]:
        """顶点包围盒（外扩 overlap_margin）包含 position 的子图 ID

        仅用于诊断 / 报告；SkeletonAStar 的入口、出口与桥接查询以地图的
        get_submap_ids_at_position（冻结区域）为准，不受 overlap_margin 影响。
        """
        p = as_point(position)
        return [sid for sid, (lo, hi) in self._bounds.items()
                if np.all(p >= lo) and np.all(p <= hi)]

    def get_vertex_world_position(self, vertex_id: GlobalVertexId) -> np.ndarray:
        return self.get_submap_by_id(vertex_id.submap_id).get_vertex_world_position(
            vertex_id.vertex_id)
