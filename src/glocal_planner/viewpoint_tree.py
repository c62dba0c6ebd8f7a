"""
glocal_planner/viewpoint_tree.py - 视点树

局部规划器的核心数据结构：候选视点（ViewPoint）以及它们之间经过
可通行性检查的连接（Connection），其中恰有一个根节点（机器人当前 /
刚提交的位姿）。

存储方式：
- 所有视点存放在按插入顺序排列的 arena（{node_id: ViewPoint}）中，
  node_id 稳定，剪枝不会重新编号
- 连接只保存两端的 node_id，同一个 Connection 对象同时出现在两端的
  connections 列表里（发起方标记 is_outgoing=True）
- 删除连接必须对称：从两端列表中按 connection_id 删除

树不变量：
1. 恰有一个根节点
2. 根节点的 active_connection 无意义
3. 任一非根节点沿 active_connection 行走，有限步内到达根节点（无环）
4. 从根节点经 active connection 可达的节点构成生成树形结构
5. value 只有在完整的价值传播之后才有意义
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .errors import InvariantViolation
from .mapping import MapBase
from .models import WayPoint
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """两个视点之间的直线连接

    Attributes:
        connection_id: 连接唯一 ID
        parent_id: 发起连接的视点 ID
        target_id: 被连接的视点 ID
        path_points: 碰撞检测采样点 (N, 3)，体素分辨率，含两端点
        cost: 欧氏长度
    """
    connection_id: int
    parent_id: int
    target_id: int
    path_points: np.ndarray
    cost: float = 0.0

    def other_end(self, node_id: int) -> int:
        return self.target_id if self.parent_id == node_id else self.parent_id


@dataclass(eq=False)
class ViewPoint:
    """候选视点

    Attributes:
        pose: 位姿（位置 + 偏航角）
        node_id: arena 中的稳定 ID（加入树时分配）
        gain: 期望新观测体积
        value: 经此节点可达的最佳 gain/cost 比（价值传播后有效）
        is_root: 是否为根节点
        active_connection: 当前指向父节点的连接下标，-1 表示未定义
        connections: [(is_outgoing, Connection), ...]
        is_connected_to_root: 可达性遍历的临时标志
    """
    pose: WayPoint
    node_id: int = -1
    gain: float = 0.0
    value: float = 0.0
    is_root: bool = False
    active_connection: int = -1
    connections: List[Tuple[bool, Connection]] = field(default_factory=list)
    is_connected_to_root: bool = False

    @property
    def position(self) -> np.ndarray:
        return self.pose.position

    def get_connected_id(self, index: int) -> int:
        """第 index 个连接另一端的节点 ID"""
        is_outgoing, connection = self.connections[index]
        return connection.target_id if is_outgoing else connection.parent_id

    def get_active_connection(self) -> Optional[Connection]:
        if 0 <= self.active_connection < len(self.connections):
            return self.connections[self.active_connection][1]
        return None

    def has_valid_active_connection(self) -> bool:
        return 0 <= self.active_connection < len(self.connections)


class ViewpointTree:
    """视点树：arena + 空间索引 + 连接管理

    Example:
        >>> tree = ViewpointTree()
        >>> root = tree.reset(WayPoint(0.0, 0.0, 1.0))
        >>> vp = ViewPoint(WayPoint(1.0, 0.0, 1.0))
        >>> conn = tree.try_add_connection(vp, root, grid_map)
        >>> tree.add_point(vp)
    """

    def __init__(self, index_rebuild_threshold: int = 32) -> None:
        self._points: Dict[int, ViewPoint] = {}
        self._index = SpatialIndex(dim=3, rebuild_threshold=index_rebuild_threshold)
        self._root: Optional[ViewPoint] = None
        self._next_node_id = 0
        self._next_connection_id = 0

    # ── 基本访问 ──

    def __len__(self) -> int:
        return len(self._points)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._points

    def __iter__(self) -> Iterator[ViewPoint]:
        return iter(list(self._points.values()))

    @property
    def root(self) -> ViewPoint:
        if self._root is None:
            raise InvariantViolation("视点树尚未初始化根节点")
        return self._root

    @property
    def n_connections(self) -> int:
        return sum(1 for vp in self._points.values()
                   for is_out, _ in vp.connections if is_out)

    def points(self) -> List[ViewPoint]:
        return list(self._points.values())

    def get_point(self, node_id: int) -> ViewPoint:
        return self._points[node_id]

    def reset(self, origin: WayPoint) -> ViewPoint:
        """清空 arena，在 origin 处放置唯一的根节点"""
        self._points.clear()
        self._index.clear()
        self._next_node_id = 0
        self._next_connection_id = 0
        root = ViewPoint(pose=origin, is_root=True)
        self._root = None
        self.add_point(root)
        self._root = root
        return root

    def add_point(self, view_point: ViewPoint) -> int:
        """加入 arena 并建立索引，返回分配的 node_id

        新视点在加入前可以已经通过 try_add_connection 建立连接，
        此时它的 node_id 已被预分配。
        """
        if view_point.node_id < 0:
            view_point.node_id = self.allocate_node_id()
        if view_point.node_id in self._points:
            raise InvariantViolation(f"节点 {view_point.node_id} 已在树中")
        self._points[view_point.node_id] = view_point
        self._index.insert(view_point.node_id, view_point.position)
        return view_point.node_id

    def allocate_node_id(self) -> int:
        nid = self._next_node_id
        self._next_node_id += 1
        return nid

    def set_root(self, new_root: ViewPoint) -> None:
        """把根节点标志转移到 new_root"""
        old_root = self.root
        old_root.is_root = False
        new_root.is_root = True
        self._root = new_root

    # ── 连接 ──

    def get_connected_view_point(self, view_point: ViewPoint, index: int) -> ViewPoint:
        return self._points[view_point.get_connected_id(index)]

    def get_parent(self, view_point: ViewPoint) -> Optional[ViewPoint]:
        """沿 active connection 的上游节点（根节点或未定义时为 None）"""
        if view_point.is_root or not view_point.has_valid_active_connection():
            return None
        return self._points.get(view_point.get_connected_id(view_point.active_connection))

    def get_children(self, view_point: ViewPoint) -> List[ViewPoint]:
        """active connection 指回 view_point 的相邻节点"""
        children: List[ViewPoint] = []
        for i in range(len(view_point.connections)):
            target = self.get_connected_view_point(view_point, i)
            if target.is_root or not target.has_valid_active_connection():
                continue
            if target.get_connected_id(target.active_connection) == view_point.node_id:
                children.append(target)
        return children

    def try_add_connection(
        self, source: ViewPoint, target: ViewPoint, grid_map: MapBase,
    ) -> Optional[Connection]:
        """source → target 直线碰撞检测，通过则双向添加连接

        采样点数 n = max(1, floor(长度 / 体素尺寸))，共 n+1 个点（含两端）。

        Returns:
            新建的 Connection；线段不可通行时返回 None
        """
        if source.node_id < 0:
            source.node_id = self.allocate_node_id()
        origin = source.position
        delta = target.position - origin
        length = float(np.linalg.norm(delta))
        n_points = max(1, int(np.floor(length / grid_map.get_voxel_size())))
        t = np.arange(n_points + 1, dtype=np.float64)[:, None] / n_points
        path_points = origin + t * delta
        for point in path_points:
            if not grid_map.is_traversable_in_active_submap(point):
                return None

        connection = Connection(
            connection_id=self._next_connection_id,
            parent_id=source.node_id,
            target_id=target.node_id,
            path_points=path_points,
            cost=length,
        )
        self._next_connection_id += 1
        source.connections.append((True, connection))
        target.connections.append((False, connection))
        logger.debug("添加连接 %d: %d -> %d, 长度 %.3f",
                     connection.connection_id, source.node_id, target.node_id, length)
        return connection

    @staticmethod
    def _detach(view_point: ViewPoint, connection: Connection) -> None:
        for i, (_, c) in enumerate(view_point.connections):
            if c.connection_id == connection.connection_id:
                del view_point.connections[i]
                if view_point.active_connection == i:
                    view_point.active_connection = -1
                elif view_point.active_connection > i:
                    view_point.active_connection -= 1
                return
        raise InvariantViolation(
            f"节点 {view_point.node_id} 不持有连接 {connection.connection_id}")

    def remove_connection(self, connection: Connection) -> None:
        """从两端同时删除连接，并修正两端的 active_connection 下标"""
        parent = self._points.get(connection.parent_id)
        target = self._points.get(connection.target_id)
        if parent is None or target is None:
            raise InvariantViolation(
                f"连接 {connection.connection_id} 的端点不在树中")
        self._detach(parent, connection)
        self._detach(target, connection)

    # ── 可达性与剪枝 ──

    def compute_points_connected_to_root(self, only_active_connections: bool) -> int:
        """广度优先设置 is_connected_to_root，返回可达节点数

        Args:
            only_active_connections: True 时只沿“子节点 active connection
                指向当前节点”的方向扩展；False 时任意连接都算
        """
        queue: deque = deque()
        for vp in self._points.values():
            vp.is_connected_to_root = vp.is_root
            if vp.is_root:
                queue.append(vp)

        n_connected = len(queue)
        while queue:
            current = queue.popleft()
            for i in range(len(current.connections)):
                neighbor = self.get_connected_view_point(current, i)
                if neighbor.is_connected_to_root:
                    continue
                if only_active_connections:
                    if not neighbor.has_valid_active_connection():
                        continue
                    if neighbor.get_connected_id(neighbor.active_connection) != current.node_id:
                        continue
                neighbor.is_connected_to_root = True
                n_connected += 1
                queue.append(neighbor)
        return n_connected

    def repair_active_connections(self) -> int:
        """把未经 active connection 连到根的节点挂到第一个已连通的邻居上

        反复遍历直到不动点；返回重新挂接的节点数。仍无法挂接的节点
        （与根不连通）保持原状并记录警告。
        """
        self.compute_points_connected_to_root(only_active_connections=True)
        pending: deque = deque(vp for vp in self._points.values()
                               if not vp.is_connected_to_root)
        n_attached = 0
        while pending:
            progress = False
            for _ in range(len(pending)):
                current = pending.popleft()
                for i in range(len(current.connections)):
                    if self.get_connected_view_point(current, i).is_connected_to_root:
                        current.active_connection = i
                        current.is_connected_to_root = True
                        n_attached += 1
                        progress = True
                        break
                else:
                    pending.append(current)
            if not progress:
                logger.warning("%d 个节点无法挂接到根节点", len(pending))
                break
        return n_attached

    def remove_unreachable_points(self) -> int:
        """删除经任意连接都无法到达根节点的视点，重建索引，返回删除数"""
        self.compute_points_connected_to_root(only_active_connections=False)
        removed = [nid for nid, vp in self._points.items() if not vp.is_connected_to_root]
        for nid in removed:
            del self._points[nid]
            logger.debug("剪枝节点 %d", nid)
        self.rebuild_index()
        return len(removed)

    # ── 最近邻 ──

    def rebuild_index(self) -> None:
        self._index.rebuild((nid, vp.position) for nid, vp in self._points.items())

    def find_nearest_neighbors(self, position, k: int = 1) -> List[ViewPoint]:
        """离 position 最近的至多 k 个视点（按距离升序）"""
        return [self._points[nid] for nid in self._index.find_k_nearest(position, k)]

    # ── 不变量 ──

    def active_chain_reaches_root(self, view_point: ViewPoint) -> bool:
        """沿 active connection 是否能到达根节点

        超过节点总数步仍未到达说明存在环，抛出 InvariantViolation。
        """
        current = view_point
        for _ in range(len(self._points) + 1):
            if current.is_root:
                return True
            parent = self.get_parent(current)
            if parent is None:
                return False
            current = parent
        raise InvariantViolation(
            f"节点 {view_point.node_id} 的 active connection 链存在环")

    def check_invariants(self, require_all_connected: bool = True) -> None:
        """检查根节点唯一、active connection 无环、连接对称"""
        roots = [vp for vp in self._points.values() if vp.is_root]
        if len(roots) != 1:
            raise InvariantViolation(f"根节点数量为 {len(roots)}，应为 1")
        if roots[0] is not self._root:
            raise InvariantViolation("根节点标志与记录的根节点不一致")

        for vp in self._points.values():
            for is_outgoing, connection in vp.connections:
                own = connection.parent_id if is_outgoing else connection.target_id
                if own != vp.node_id:
                    raise InvariantViolation(
                        f"节点 {vp.node_id} 的连接 {connection.connection_id} 方向错误")
                other = self._points.get(connection.other_end(vp.node_id))
                if other is None or not any(
                        c.connection_id == connection.connection_id
                        for _, c in other.connections):
                    raise InvariantViolation(
                        f"连接 {connection.connection_id} 不对称")
            if not vp.is_root:
                reached = self.active_chain_reaches_root(vp)
                if require_all_connected and not reached:
                    raise InvariantViolation(
                        f"节点 {vp.node_id} 无法经 active connection 到达根节点")
