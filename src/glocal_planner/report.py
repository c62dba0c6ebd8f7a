"""
report.py - 规划报告生成器

把局部规划器当前状态 / 全局规划结果整理成 Markdown 报告，供离线检查。
"""

import logging
from datetime import datetime
from typing import List, TYPE_CHECKING

from .models import GOAL_VERTEX_ID

if TYPE_CHECKING:
    from .models import GlobalPlanResult
    from .rh_rrt_star import RHRRTStar
    from .skeleton_graph import SkeletonSubmapCollection

logger = logging.getLogger(__name__)


class PlannerReportGenerator:
    """规划报告生成器

    generate_local: 参数表、树统计、会话统计、根节点候选表、各阶段耗时
    generate_global: 搜索结果、子图集合概况、顶点路径表
    """

    @staticmethod
    def generate_local(planner: 'RHRRTStar') -> str:
        """生成局部规划器 Markdown 报告

        Args:
            planner: 局部规划器（需已初始化）

        Returns:
            Markdown 格式的报告字符串
        """
        lines: List[str] = []
        _a = lines.append

        tree = planner.tree
        root = tree.root
        stats = planner.stats

        _a("# 局部规划报告")
        _a("")
        _a(f"生成时间: {datetime.now().strftime('%Y%m%d_%H%M%S')}")
        _a("")

        _a("## 参数配置")
        _a("")
        _a("| 参数 | 值 |")
        _a("|------|----|")
        for key, value in planner.config.to_dict().items():
            _a(f"| {key} | {value} |")
        _a("")

        _a("## 视点树")
        _a("")
        p = root.position
        _a(f"- **节点数**: {len(tree)}")
        _a(f"- **连接数**: {tree.n_connections}")
        _a(f"- **根节点**: {root.node_id} ({p[0]:.3f}, {p[1]:.3f}, {p[2]:.3f})")
        _a(f"- **已发布航点**: {stats.n_waypoints}")
        _a(f"- **采样失败**: {stats.sampling_failures}")
        _a(f"- **连接失败**: {stats.connection_failures}")
        _a(f"- **剩余局部采样配额**: {stats.local_sampled_points}")
        _a(f"- **上次重连轮数**: {stats.last_rewiring_iterations}")
        if stats.n_no_candidate:
            _a(f"- **无候选次数**: {stats.n_no_candidate} ⚠")
        _a("")

        candidates = planner.get_candidates()
        _a("## 根节点候选")
        _a("")
        if candidates:
            _a("| 节点 | 位置 | 增益 | 价值 |")
            _a("|------|------|------|------|")
            best = max(value for _, value in candidates)
            for vp, value in candidates:
                q = vp.position
                mark = " ⭐" if value == best else ""
                _a(f"| {vp.node_id} | ({q[0]:.2f}, {q[1]:.2f}, {q[2]:.2f}) "
                   f"| {vp.gain:.1f} | {value:.4f}{mark} |")
        else:
            _a("（无候选）")
        _a("")

        if planner.timer.records:
            _a("## 耗时")
            _a("")
            _a("```")
            _a(planner.timer.summary())
            _a("```")
            _a("")
        return '\n'.join(lines)

    @staticmethod
    def generate_global(
        result: 'GlobalPlanResult',
        collection: 'SkeletonSubmapCollection',
    ) -> str:
        """生成全局规划 Markdown 报告"""
        lines: List[str] = []
        _a = lines.append

        _a("# 全局规划报告")
        _a("")
        _a(f"生成时间: {result.timestamp}")
        _a("")

        _a("## 搜索结果")
        _a("")
        _a(f"- **状态**: {'成功' if result.success else '失败'}")
        if result.failure is not None:
            _a(f"- **失败原因**: {result.failure.value}")
        if result.message:
            _a(f"- **信息**: {result.message}")
        _a(f"- **迭代次数**: {result.n_iterations}")
        _a(f"- **计算耗时**: {result.computation_time:.4f} 秒")
        if result.success:
            _a(f"- **路径长度**: {result.path_length:.3f} m")
            _a(f"- **跨子图次数**: {result.n_bridges}")
        _a("")

        _a("## 子图集合")
        _a("")
        _a(f"- **子图数**: {len(collection)}")
        _a(f"- **顶点总数**: {collection.total_vertices}")
        _a("")

        if result.vertex_path:
            _a("## 顶点路径")
            _a("")
            _a("| # | 子图 | 顶点 | 位置 |")
            _a("|---|------|------|------|")
            for i, (vid, wp) in enumerate(zip(result.vertex_path, result.waypoints)):
                if vid == GOAL_VERTEX_ID:
                    name = ("目标", "-")
                else:
                    name = (str(vid.submap_id), str(vid.vertex_id))
                _a(f"| {i} | {name[0]} | {name[1]} "
                   f"| ({wp.x:.2f}, {wp.y:.2f}, {wp.z:.2f}) |")
            _a("")
        return '\n'.join(lines)
