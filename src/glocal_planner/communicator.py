"""
glocal_planner/communicator.py - 规划器与外部监督器之间的窄接口

监督器（状态机 / 控制回路）持有一个 Communicator，规划器通过它：
- 读取机器人当前位姿、是否已到达当前目标
- 查询当前 / 上一个规划模式
- 发布下一个航点（request_waypoint，触发已注册的回调）
"""

import enum
import logging
from typing import Callable, List, Optional

from .models import WayPoint

logger = logging.getLogger(__name__)


class PlanningState(enum.Enum):
    """规划模式"""
    IDLE = "idle"
    LOCAL_PLANNING = "local_planning"
    GLOBAL_PLANNING = "global_planning"
    FINISHED = "finished"


WayPointCallback = Callable[[WayPoint], None]


class Communicator:
    """监督器与规划器之间的共享状态

    Example:
        >>> comm = Communicator(WayPoint(0.0, 0.0, 1.0))
        >>> comm.add_waypoint_callback(lambda wp: print(wp))
        >>> comm.signal_local_planning()
    """

    def __init__(self, current_pose: Optional[WayPoint] = None) -> None:
        self.current_pose: WayPoint = current_pose or WayPoint()
        self.target_reached: bool = True
        self._state = PlanningState.IDLE
        self._previous_state = PlanningState.IDLE
        self._callbacks: List[WayPointCallback] = []
        self._last_waypoint: Optional[WayPoint] = None
        self.n_requested_waypoints = 0

    # ── 规划模式 ──

    @property
    def state(self) -> PlanningState:
        return self._state

    @property
    def previous_state(self) -> PlanningState:
        return self._previous_state

    def _set_state(self, state: PlanningState) -> None:
        if state == self._state:
            return
        logger.debug("规划模式切换: %s -> %s", self._state.value, state.value)
        self._previous_state = self._state
        self._state = state

    def signal_local_planning(self) -> None:
        self._set_state(PlanningState.LOCAL_PLANNING)

    def signal_global_planning(self) -> None:
        self._set_state(PlanningState.GLOBAL_PLANNING)

    def signal_finished(self) -> None:
        self._set_state(PlanningState.FINISHED)

    # ── 航点 ──

    def add_waypoint_callback(self, callback: WayPointCallback) -> None:
        self._callbacks.append(callback)

    @property
    def last_waypoint(self) -> Optional[WayPoint]:
        return self._last_waypoint

    def request_waypoint(self, waypoint: WayPoint) -> None:
        """发布下一个航点，目标到达标志复位"""
        self._last_waypoint = waypoint
        self.target_reached = False
        self.n_requested_waypoints += 1
        logger.debug("请求航点 #%d: (%.2f, %.2f, %.2f, yaw=%.2f)",
                     self.n_requested_waypoints,
                     waypoint.x, waypoint.y, waypoint.z, waypoint.yaw)
        for callback in self._callbacks:
            callback(waypoint)
