"""
glocal_planner/errors.py - 异常定义

只有违反程序契约的情况才抛异常；采样失败、连接失败、搜索失败等
常规未命中通过返回值（None / False / GlobalPlanResult）表达。
"""


class GlocalPlannerError(Exception):
    """glocal_planner 异常基类"""


class InvariantViolation(GlocalPlannerError):
    """视点树不变量被破坏（环、根节点数量错误、非对称删边等）"""


class SubmapCollectionError(GlocalPlannerError, KeyError):
    """子图集合访问错误（未知 ID / 重复 ID）"""

    def __str__(self) -> str:
        # KeyError 默认会给消息加引号
        return str(self.args[0]) if self.args else ""
