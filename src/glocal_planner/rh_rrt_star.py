"""
glocal_planner/rh_rrt_star.py - Receding-Horizon RRT* 局部探索规划器

在视点树上做滚动时域的采样搜索，每个控制周期调用一次
run_one_iteration()：

1. 新进入局部规划模式时重置：清空树，在当前位姿放置根节点
2. 上一周期提交过航点时，更新所有节点的增益（正在执行的连接两端清零）
3. 扩展：采样一个候选位姿，连接附近节点，评估增益，插入树
4. 机器人到达当前目标时：
   - 碰撞重验证 + 剪枝（跳过正在执行的连接）
   - 修复 active connection，迭代重连优化，计算价值
   - 选出根节点相邻的最佳候选，发布航点并推进根节点

价值（GNV）：节点沿 active connection 到根（不含根）的累计增益 / 累计代价，
再对所有下游子树取最大值，即“经此节点最终可达的最佳增益代价比”。
"""

import logging
import math
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np

from .communicator import Communicator, PlanningState
from .errors import InvariantViolation
from .mapping import MapBase
from .models import PlannerStats, RHRRTStarConfig, WayPoint
from .sensor_model import GainModel
from .utils import Timer, make_rng
from .viewpoint_tree import Connection, ViewPoint, ViewpointTree

logger = logging.getLogger(__name__)


class RHRRTStar:
    """Receding-Horizon RRT* 局部规划器

    Args:
        config: 规划参数
        communicator: 与监督器共享的状态（当前位姿、目标到达、航点发布）
        grid_map: 地图接口
        gain_model: 信息增益模型

    Example:
        >>> planner = RHRRTStar(RHRRTStarConfig(seed=1), comm, grid_map, gain_model)
        >>> for _ in range(100):
        ...     planner.run_one_iteration()
    """

    def __init__(
        self,
        config: RHRRTStarConfig,
        communicator: Communicator,
        grid_map: MapBase,
        gain_model: GainModel,
    ) -> None:
        self.config = config
        self.comm = communicator
        self.map = grid_map
        self.gain_model = gain_model
        self.rng = make_rng(config.seed)
        self.stats = PlannerStats()
        self.timer = Timer()

        self._tree = ViewpointTree()
        self._current_connection: Optional[Connection] = None
        self._should_update = False
        self._initialized = False

    # ── 只读访问 ──

    @property
    def tree(self) -> ViewpointTree:
        return self._tree

    @property
    def root(self) -> ViewPoint:
        return self._tree.root

    @property
    def current_connection(self) -> Optional[Connection]:
        """机器人当前正在执行的连接（旧根 → 新根）"""
        return self._current_connection

    # ==================== 主循环 ====================

    def run_one_iteration(self) -> Optional[WayPoint]:
        """执行一个规划周期，返回本周期发布的航点（若有）"""
        if not self._initialized or self.comm.state != PlanningState.LOCAL_PLANNING:
            self.reset_planner(self.comm.current_pose)
            self.comm.signal_local_planning()

        if self._should_update:
            self.update_gains()
            self._should_update = False

        self.expand_tree()

        if not self.comm.target_reached:
            return None

        self.update_collision()
        waypoint = self.select_next_best_waypoint()
        if waypoint is not None:
            self.comm.request_waypoint(waypoint)
            self._should_update = True
        return waypoint

    def reset_planner(self, origin: WayPoint) -> None:
        """清空视点树，以 origin 为唯一根节点，重置会话统计"""
        origin = WayPoint(origin.x, origin.y, origin.z, origin.yaw)
        self._tree.reset(origin)
        self._current_connection = None
        self._should_update = False
        self._initialized = True
        self.stats.reset(local_sampled_points=self.config.min_local_points)
        self.timer.reset()
        logger.info("局部规划器重置于 (%.2f, %.2f, %.2f)",
                    origin.x, origin.y, origin.z)

    # ==================== 扩展 ====================

    def expand_tree(self) -> bool:
        """采样 + 连接 + 评估 + 插入；失败时本周期不新增节点"""
        with self.timer.phase("expand"):
            view_point = self.sample_new_point()
            if view_point is None:
                self.stats.sampling_failures += 1
                return False

            if not self.connect_view_point(view_point):
                self.stats.connection_failures += 1
                return False

            self.evaluate_view_point(view_point)
            self._tree.add_point(view_point)

        if self.stats.local_sampled_points > 0:
            self.stats.local_sampled_points -= 1
        self.stats.new_points += 1
        return True

    def sample_new_point(self) -> Optional[ViewPoint]:
        """在当前位置周围的球面上采样目标方向，从最近节点向其光线步进

        步进上限为 min(max(距离, min_sampling_distance), max_path_length)
        + path_cropping_length，结果再回缩 path_cropping_length + 一个体素。

        Returns:
            候选视点（尚未连接）；无可通行采样时返回 None
        """
        cfg = self.config
        theta = 2.0 * math.pi * self.rng.random()
        phi = math.acos(1.0 - 2.0 * self.rng.random())
        rho = (cfg.local_sampling_radius if self.stats.local_sampled_points > 0
               else cfg.global_sampling_radius)
        goal = self.comm.current_pose.position + rho * np.array([
            math.sin(phi) * math.cos(theta),
            math.sin(phi) * math.sin(theta),
            math.cos(phi),
        ])

        nearest = self._tree.find_nearest_neighbors(goal, 1)
        if not nearest:
            return None
        origin = nearest[0].position
        delta = goal - origin
        distance = float(np.linalg.norm(delta))
        if distance < 1e-9:
            return None
        direction = delta / distance
        distance_max = min(max(distance, cfg.min_sampling_distance),
                           cfg.max_path_length) + cfg.path_cropping_length

        range_increment = self.map.get_voxel_size()
        sample_range = range_increment
        while (sample_range < distance_max
               and self.map.is_traversable_in_active_submap(origin + sample_range * direction)):
            sample_range += range_increment
        sample_range -= cfg.path_cropping_length + range_increment
        if sample_range < cfg.min_sampling_distance:
            return None

        position = origin + sample_range * direction
        yaw = 2.0 * math.pi * self.rng.random()
        return ViewPoint(pose=WayPoint.from_position(position, yaw))

    def connect_view_point(self, view_point: ViewPoint) -> bool:
        """连接 max_number_of_neighbors 个最近邻中距离在
        [min_path_length, max_path_length] 内且直线可通行的节点

        新节点的 active connection 设为第一条成功的连接。
        """
        neighbors = self._tree.find_nearest_neighbors(
            view_point.position, self.config.max_number_of_neighbors)
        if not neighbors:
            return False

        connection_found = False
        for neighbor in neighbors:
            distance = float(np.linalg.norm(view_point.position - neighbor.position))
            if distance > self.config.max_path_length or distance < self.config.min_path_length:
                continue
            if self._tree.try_add_connection(view_point, neighbor, self.map) is not None:
                connection_found = True
        if connection_found:
            view_point.active_connection = 0
        return connection_found

    def evaluate_view_point(self, view_point: ViewPoint) -> None:
        view_point.gain = self.gain_model.compute_gain(view_point.pose)

    def update_gains(self) -> None:
        """重新评估所有节点增益；active connection 为正在执行连接的节点增益清零"""
        with self.timer.phase("update_gains"):
            for view_point in self._tree:
                active = view_point.get_active_connection()
                if active is not None and active is self._current_connection:
                    view_point.gain = 0.0
                    continue
                self.evaluate_view_point(view_point)
        logger.debug("更新增益: %d 个节点, %.1f ms",
                     len(self._tree), self.timer.ms("update_gains"))

    # ==================== 碰撞更新 ====================

    def update_collision(self) -> int:
        """重新检查所有连接的采样点，删除失效连接并剪掉与根断开的节点

        正在执行的连接永不检查，保证机器人飞行中的路段不会失效。

        Returns:
            本次剪枝的节点数
        """
        with self.timer.phase("update_collision"):
            n_removed_connections = 0
            for view_point in self._tree:
                for is_outgoing, connection in list(view_point.connections):
                    # 每条连接只由发起方检查一次
                    if not is_outgoing or connection is self._current_connection:
                        continue
                    for point in connection.path_points:
                        if not self.map.is_traversable_in_active_submap(point):
                            self._tree.remove_connection(connection)
                            n_removed_connections += 1
                            break

            n_pruned = self._tree.remove_unreachable_points()
            self._tree.repair_active_connections()

        self.stats.pruned_points += n_pruned
        if n_removed_connections:
            logger.debug("碰撞更新: 删除 %d 条连接, 剪枝 %d 个节点",
                         n_removed_connections, n_pruned)
        return n_pruned

    # ==================== 选点 ====================

    def select_next_best_waypoint(self) -> Optional[WayPoint]:
        """价值传播 + 重连优化，选择根节点相邻的最佳候选并推进根节点

        Returns:
            下一个航点；树中不足两个节点或没有候选时返回 None
        """
        if len(self._tree) < 2:
            return None

        with self.timer.phase("rewire"):
            self._tree.repair_active_connections()
            iterations = 0
            while iterations < self.config.maximum_rewiring_iterations:
                iterations += 1
                something_changed = False
                for view_point in self._tree:
                    if view_point.is_root:
                        continue
                    previous_connection = view_point.active_connection
                    self.select_best_connection(view_point)
                    if view_point.active_connection != previous_connection:
                        something_changed = True
                if not something_changed:
                    break
        self.stats.last_rewiring_iterations = iterations
        logger.debug("重连优化: %d 轮, %.1f ms", iterations, self.timer.ms("rewire"))

        root = self._tree.root
        next_point_idx = -1
        best_value = -math.inf
        for i in range(len(root.connections)):
            target = self._tree.get_connected_view_point(root, i)
            if not target.has_valid_active_connection():
                continue
            if target.get_connected_id(target.active_connection) != root.node_id:
                continue
            # 相同价值取连接顺序中的第一个
            if target.value > best_value:
                best_value = target.value
                next_point_idx = i

        if next_point_idx < 0:
            # 上一段连接应始终保持有效，出现这种情况说明树结构被破坏
            self.stats.n_no_candidate += 1
            logger.error("根节点 %d 没有可选的候选航点 (%d 个节点)",
                         root.node_id, len(self._tree))
            return None

        new_root = self._tree.get_connected_view_point(root, next_point_idx)
        self._tree.set_root(new_root)
        root.active_connection = next_point_idx
        self._current_connection = root.connections[next_point_idx][1]
        self._refresh_local_points(new_root)

        logger.info("发布下一段: %d 新增, %d 剪枝, %d 总数 (value=%.3f)",
                    self.stats.new_points, self.stats.pruned_points,
                    len(self._tree), best_value)
        self.stats.new_points = 0
        self.stats.pruned_points = 0
        self.stats.n_waypoints += 1

        pose = new_root.pose
        return WayPoint(pose.x, pose.y, pose.z, pose.yaw)

    def _refresh_local_points(self, new_root: ViewPoint) -> None:
        """按新根附近已有节点数刷新局部采样配额"""
        min_local = self.config.min_local_points
        if min_local <= 0:
            self.stats.local_sampled_points = 0
            return
        quota = min_local
        goal = new_root.position
        for view_point in self._tree.find_nearest_neighbors(goal, min_local):
            if np.linalg.norm(view_point.position - goal) <= self.config.local_sampling_radius:
                quota -= 1
        self.stats.local_sampled_points = quota

    def select_best_connection(self, view_point: ViewPoint) -> bool:
        """逐个尝试连接作为 active connection，跳过成环的，保留价值最高者"""
        if not view_point.connections or view_point.is_root:
            return False

        original_connection = view_point.active_connection
        best_value = -math.inf
        best_connection = -1
        for i in range(len(view_point.connections)):
            view_point.active_connection = i
            if not self._reaches_root_without_loop(view_point):
                continue
            value = self.compute_value(view_point)
            if value > best_value:
                best_value = value
                best_connection = i

        if best_connection < 0:
            view_point.active_connection = original_connection
            return False
        view_point.active_connection = best_connection
        view_point.value = best_value
        return True

    def _reaches_root_without_loop(self, view_point: ViewPoint) -> bool:
        """view_point 当前的 active connection 链是否无环地到达根节点

        回到 view_point 自身即为环；链在未定义 active connection 的节点处
        中断也视为不可用；在别处成环说明树已被破坏。
        """
        current = view_point
        for _ in range(len(self._tree) + 1):
            parent = self._tree.get_parent(current)
            if parent is None or parent is view_point:
                return False
            if parent.is_root:
                return True
            current = parent
        raise InvariantViolation(
            f"节点 {view_point.node_id} 上游的 active connection 链存在环")

    def compute_value(self, view_point: ViewPoint) -> float:
        """计算并写入 view_point.value"""
        if view_point.is_root:
            view_point.value = 0.0
            return 0.0

        gain = 0.0
        cost = 0.0
        current = self._tree.get_parent(view_point)
        steps = 0
        while current is not None and not current.is_root:
            gain += current.gain
            cost += current.get_active_connection().cost
            current = self._tree.get_parent(current)
            steps += 1
            if steps > len(self._tree):
                raise InvariantViolation(
                    f"节点 {view_point.node_id} 上游的 active connection 链存在环")

        view_point.value = self._compute_gnv(view_point, gain, cost)
        return view_point.value

    def _compute_gnv(self, start: ViewPoint, gain: float, cost: float) -> float:
        """子树内累计增益代价比的最大值（显式栈，避免深树递归）"""
        best = 0.0
        visited: Set[int] = set()
        stack: List[Tuple[ViewPoint, float, float]] = [(start, gain, cost)]
        while stack:
            node, node_gain, node_cost = stack.pop()
            if node.node_id in visited:
                raise InvariantViolation(f"价值传播时重复访问节点 {node.node_id}")
            visited.add(node.node_id)
            node_gain += node.gain
            node_cost += node.get_active_connection().cost
            if node_cost > 0:
                best = max(best, node_gain / node_cost)
            for child in self._tree.get_children(node):
                stack.append((child, node_gain, node_cost))
        return best

    # ==================== 观测接口 ====================

    def get_tree_snapshot(self) -> List[Dict[str, Any]]:
        """树的只读快照（供可视化 / 日志工具使用）"""
        snapshot = []
        for vp in self._tree:
            parent = self._tree.get_parent(vp)
            snapshot.append({
                'node_id': vp.node_id,
                'position': vp.position.tolist(),
                'yaw': vp.pose.yaw,
                'gain': vp.gain,
                'value': vp.value,
                'is_root': vp.is_root,
                'parent_id': parent.node_id if parent is not None else None,
                'n_connections': len(vp.connections),
            })
        return snapshot

    def get_candidates(self) -> List[Tuple[ViewPoint, float]]:
        """根节点的直接子节点及其价值（按连接顺序）"""
        root = self._tree.root
        return [(child, child.value) for child in self._tree.get_children(root)]

    def visualize_gain(self, pose: WayPoint) -> List[np.ndarray]:
        """pose 处可见的未知体素中心（诊断用）"""
        return self.gain_model.get_visible_voxel_centers(pose)
