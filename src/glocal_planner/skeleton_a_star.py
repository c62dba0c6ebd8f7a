"""
glocal_planner/skeleton_a_star.py - 联邦骨架图 A* 全局路径搜索

在多个独立构建、彼此没有预先连接的子图骨架图上做 A* 搜索：

1. 入口顶点：起点所在子图中离起点最近、且直线在活动地图中可通行的
   n_closest_start_vertices 个顶点，g = 起点到顶点的距离
2. 出口候选：目标所在子图中离目标最近、且直线在全局地图中可通行的
   n_closest_end_vertices 个顶点
3. 搜索：按 f = g + h（到目标的直线距离）弹出顶点
   - 弹出虚拟目标顶点 → 回溯路径，成功
   - 弹出出口候选 → 添加一条到虚拟目标顶点的“幻想”边，不展开真实邻居
   - 否则松弛子图内的真实边；边数较少的顶点额外尝试跨子图桥接
4. 顶点路径 → 航点序列（偏航角为 0，虚拟目标顶点映射为目标点本身）

open set 使用 heapq + 插入计数器：相同 f 时先入先出，保证结果可复现；
重复入堆的旧条目在弹出时按 closed 集合跳过（懒删除）。
"""

import heapq
import logging
import time
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from .mapping import MapBase
from .models import (
    GOAL_VERTEX_ID, GlobalPlanResult, GlobalVertexId, PlanningFailure,
    SkeletonAStarConfig, WayPoint, as_point,
)
from .skeleton_graph import SkeletonSubmapCollection

logger = logging.getLogger(__name__)

LineCheck = Callable[[np.ndarray, np.ndarray], bool]


class SkeletonAStar:
    """联邦骨架图 A* 规划器

    Args:
        collection: 骨架子图集合
        grid_map: 地图接口（入口 / 出口 / 桥接的直线可通行性检查）
        config: 搜索参数

    Example:
        >>> planner = SkeletonAStar(collection, grid_map, SkeletonAStarConfig())
        >>> result = planner.plan_path([0.0, 0.0, 1.0], [20.0, 5.0, 1.0])
        >>> if result.success:
        ...     print(result.path_length, result.n_bridges)
    """

    def __init__(
        self,
        collection: SkeletonSubmapCollection,
        grid_map: MapBase,
        config: Optional[SkeletonAStarConfig] = None,
    ) -> None:
        self.collection = collection
        self.map = grid_map
        self.config = config or SkeletonAStarConfig()

    # ==================== 主入口 ====================

    def plan_path(self, start, goal) -> GlobalPlanResult:
        """start → goal 路径搜索

        Returns:
            GlobalPlanResult；失败时 success=False 并给出 failure 原因
        """
        t0 = time.time()
        start = as_point(start)
        goal = as_point(goal)
        cfg = self.config

        start_vertices = self.search_n_closest_reachable_vertices(
            start, cfg.n_closest_start_vertices,
            self.map.is_line_traversable_in_active_submap)
        if not start_vertices:
            return self._fail(PlanningFailure.NO_START_VERTEX, 0, t0,
                              f"起点 {start.tolist()} 附近没有可达的骨架顶点")

        end_vertices = self.search_n_closest_reachable_vertices(
            goal, cfg.n_closest_end_vertices,
            self.map.is_line_traversable_in_global_map)
        if not end_vertices:
            return self._fail(PlanningFailure.NO_GOAL_VERTEX, 0, t0,
                              f"目标 {goal.tolist()} 附近没有可达的骨架顶点")
        end_set = set(end_vertices)

        g_score: Dict[GlobalVertexId, float] = {}
        parent: Dict[GlobalVertexId, GlobalVertexId] = {}
        closed: Set[GlobalVertexId] = set()
        open_heap: List[Tuple[float, int, GlobalVertexId]] = []
        counter = 0

        for vertex_id in start_vertices:
            position = self.get_vertex_world_position(vertex_id)
            g = float(np.linalg.norm(position - start))
            if g < g_score.get(vertex_id, float('inf')):
                g_score[vertex_id] = g
                counter += 1
                heapq.heappush(open_heap, (g + self._heuristic(position, goal),
                                           counter, vertex_id))

        def relax(current: GlobalVertexId, neighbor: GlobalVertexId,
                  cost: float, h: float) -> None:
            nonlocal counter
            if neighbor in closed:
                return
            tentative = g_score[current] + cost
            if tentative < g_score.get(neighbor, float('inf')):
                g_score[neighbor] = tentative
                parent[neighbor] = current
                counter += 1
                heapq.heappush(open_heap, (tentative + h, counter, neighbor))

        n_iterations = 0
        n_bridges_tried = 0
        while open_heap:
            if n_iterations >= cfg.max_iterations:
                return self._fail(PlanningFailure.ITERATION_LIMIT, n_iterations, t0,
                                  f"超过最大迭代次数 {cfg.max_iterations}")
            _, _, current = heapq.heappop(open_heap)
            if current in closed:
                continue
            closed.add(current)
            n_iterations += 1

            if current == GOAL_VERTEX_ID:
                vertex_path = self._reconstruct(parent, current)
                result = GlobalPlanResult(
                    success=True,
                    waypoints=self.convert_vertex_to_waypoint_path(vertex_path, goal),
                    vertex_path=vertex_path,
                    n_iterations=n_iterations,
                    computation_time=time.time() - t0,
                    message=f"找到路径: {len(vertex_path)} 个顶点",
                )
                logger.info("全局规划成功: %d 个顶点, 长度 %.2f, %d 次桥接, "
                            "%d 次迭代, %.1f ms",
                            len(vertex_path), result.path_length, result.n_bridges,
                            n_iterations, result.computation_time * 1000)
                return result

            position = self.get_vertex_world_position(current)
            if current in end_set:
                # 出口候选只连向虚拟目标，不展开真实邻居
                relax(current, GOAL_VERTEX_ID,
                      float(np.linalg.norm(goal - position)), 0.0)
                continue

            submap = self.collection.get_submap_by_id(current.submap_id)
            graph = submap.graph
            vertex = graph.get_vertex(current.vertex_id)
            for edge_id in vertex.edge_list:
                neighbor_vid = graph.get_edge(edge_id).other_vertex(vertex.vertex_id)
                neighbor = GlobalVertexId(current.submap_id, neighbor_vid)
                cost = float(np.linalg.norm(graph.get_vertex(neighbor_vid).point - vertex.point))
                relax(current, neighbor, cost,
                      self._heuristic(submap.get_vertex_world_position(neighbor_vid), goal))

            if len(vertex.edge_list) <= cfg.max_edges_for_linking:
                for neighbor, neighbor_position, cost in self._find_bridges(current, position):
                    n_bridges_tried += 1
                    relax(current, neighbor, cost, self._heuristic(neighbor_position, goal))

        logger.debug("桥接候选: %d 条", n_bridges_tried)
        return self._fail(PlanningFailure.OPEN_SET_EXHAUSTED, n_iterations, t0,
                          "open set 为空，目标不可达")

    # ==================== 入口 / 出口 ====================

    def search_n_closest_reachable_vertices(
        self, point, n: int, traversable: LineCheck,
    ) -> List[GlobalVertexId]:
        """point 所在各子图中离 point 最近、且 traversable(point, 顶点) 成立的至多 n 个顶点

        候选按距离升序（相同距离按 submap_id、vertex_id）逐个检查。
        """
        point = as_point(point)
        candidates: List[Tuple[float, int, int, np.ndarray]] = []
        for submap_id in self._submap_ids_at(point):
            submap = self.collection.get_submap_by_id(submap_id)
            local = submap.to_submap_frame(point)
            for vertex_id in submap.get_n_closest_vertices(local, n):
                world = submap.get_vertex_world_position(vertex_id)
                candidates.append((float(np.linalg.norm(world - point)),
                                   submap_id, vertex_id, world))
        candidates.sort(key=lambda c: c[:3])

        result: List[GlobalVertexId] = []
        for _, submap_id, vertex_id, world in candidates:
            if len(result) >= n:
                break
            if traversable(point, world):
                result.append(GlobalVertexId(submap_id, vertex_id))
        return result

    def _submap_ids_at(self, position: np.ndarray) -> List[int]:
        """地图报告的、已加入集合的子图 ID"""
        return [sid for sid in self.map.get_submap_ids_at_position(position)
                if sid in self.collection]

    # ==================== 跨子图桥接 ====================

    def _find_bridges(
        self, vertex_id: GlobalVertexId, position: np.ndarray,
    ) -> Iterator[Tuple[GlobalVertexId, np.ndarray, float]]:
        """在其它重叠子图中寻找可桥接的顶点 (邻居 ID, 世界坐标, 代价)"""
        cfg = self.config
        for submap_id in self._submap_ids_at(position):
            if submap_id == vertex_id.submap_id:
                continue
            other = self.collection.get_submap_by_id(submap_id)
            local = other.to_submap_frame(position)
            for other_vid in other.get_n_closest_vertices(local, cfg.n_linking_neighbors):
                other_position = other.get_vertex_world_position(other_vid)
                distance = float(np.linalg.norm(other_position - position))
                if distance > cfg.max_linking_distance:
                    continue
                if not self.map.is_line_traversable_in_global_map(position, other_position):
                    continue
                yield GlobalVertexId(submap_id, other_vid), other_position, distance

    # ==================== 路径转换 ====================

    def get_vertex_world_position(self, vertex_id: GlobalVertexId) -> np.ndarray:
        return self.collection.get_vertex_world_position(vertex_id)

    def convert_vertex_to_waypoint_path(
        self, vertex_path: List[GlobalVertexId], goal,
    ) -> List[WayPoint]:
        """顶点序列 → 航点序列（偏航角为 0）"""
        goal = as_point(goal)
        waypoints: List[WayPoint] = []
        for vertex_id in vertex_path:
            if vertex_id == GOAL_VERTEX_ID:
                waypoints.append(WayPoint.from_position(goal))
            else:
                waypoints.append(WayPoint.from_position(self.get_vertex_world_position(vertex_id)))
        return waypoints

    @staticmethod
    def _heuristic(position: np.ndarray, goal: np.ndarray) -> float:
        return float(np.linalg.norm(goal - position))

    @staticmethod
    def _reconstruct(
        parent: Dict[GlobalVertexId, GlobalVertexId], end: GlobalVertexId,
    ) -> List[GlobalVertexId]:
        path = [end]
        node = end
        while node in parent:
            node = parent[node]
            path.append(node)
        return list(reversed(path))

    def _fail(
        self, failure: PlanningFailure, n_iterations: int, t0: float, message: str,
    ) -> GlobalPlanResult:
        logger.warning("全局规划失败 (%s): %s", failure.value, message)
        return GlobalPlanResult(
            success=False,
            n_iterations=n_iterations,
            computation_time=time.time() - t0,
            failure=failure,
            message=message,
        )
