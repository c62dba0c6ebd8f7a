"""
glocal_planner/spatial_index.py - 动态点集最近邻索引

静态批量 KD 树（scipy cKDTree）+ 未索引尾部缓冲：
- insert 只追加到尾部缓冲，查询时尾部用暴力搜索并与 KD 树结果合并
- 尾部超过 rebuild_threshold 时合并重建 KD 树
- 剪枝后（键集合变化）必须调用 rebuild

适用于“大量点查询 + 少量批量重建”的场景：视点树每个周期插入
一个点，而剪枝远比采样稀少。
"""

import logging
from typing import Hashable, Iterable, List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger(__name__)


class SpatialIndex:
    """k 近邻索引

    Args:
        dim: 点维度
        rebuild_threshold: 尾部缓冲超过该数量时重建 KD 树

    Example:
        >>> index = SpatialIndex()
        >>> index.insert(0, [0.0, 0.0, 0.0])
        >>> index.insert(1, [1.0, 0.0, 0.0])
        >>> index.find_k_nearest([0.9, 0.0, 0.0], k=1)
        [1]
    """

    def __init__(self, dim: int = 3, rebuild_threshold: int = 32) -> None:
        self.dim = dim
        self.rebuild_threshold = rebuild_threshold
        self._kdtree: Optional[cKDTree] = None
        self._tree_keys: List[Hashable] = []
        self._tail_keys: List[Hashable] = []
        self._tail_points: List[np.ndarray] = []
        self.n_rebuilds = 0

    def __len__(self) -> int:
        return len(self._tree_keys) + len(self._tail_keys)

    def clear(self) -> None:
        self._kdtree = None
        self._tree_keys = []
        self._tail_keys = []
        self._tail_points = []

    def insert(self, key: Hashable, point) -> None:
        """追加一个点"""
        p = np.asarray(point, dtype=np.float64).reshape(self.dim)
        self._tail_keys.append(key)
        self._tail_points.append(p)
        if len(self._tail_keys) > self.rebuild_threshold:
            self._merge_tail()

    def rebuild(self, items: Iterable[Tuple[Hashable, np.ndarray]]) -> None:
        """用 (key, point) 序列重建整个索引"""
        keys: List[Hashable] = []
        points: List[np.ndarray] = []
        for key, point in items:
            keys.append(key)
            points.append(np.asarray(point, dtype=np.float64).reshape(self.dim))
        self.clear()
        self._build(keys, points)

    def _build(self, keys: List[Hashable], points: List[np.ndarray]) -> None:
        self._tree_keys = keys
        self._kdtree = cKDTree(np.array(points)) if keys else None
        self.n_rebuilds += 1

    def _merge_tail(self) -> None:
        points: List[np.ndarray] = []
        if self._kdtree is not None:
            points.extend(self._kdtree.data)
        points.extend(self._tail_points)
        keys = self._tree_keys + self._tail_keys
        self._tail_keys = []
        self._tail_points = []
        self._build(keys, points)
        logger.debug("SpatialIndex 合并尾部缓冲: %d 个点", len(keys))

    def find_k_nearest(self, position, k: int = 1) -> List[Hashable]:
        """返回最多 k 个键，按欧氏距离升序；索引为空时返回空列表"""
        return [key for key, _ in self.find_k_nearest_with_distance(position, k)]

    def find_k_nearest_with_distance(
        self, position, k: int = 1,
    ) -> List[Tuple[Hashable, float]]:
        if k <= 0 or len(self) == 0:
            return []
        q = np.asarray(position, dtype=np.float64).reshape(self.dim)
        candidates: List[Tuple[float, int, Hashable]] = []

        if self._kdtree is not None:
            kk = min(k, len(self._tree_keys))
            dists, idx = self._kdtree.query(q, k=kk)
            dists = np.atleast_1d(dists)
            idx = np.atleast_1d(idx)
            for d, i in zip(dists, idx):
                candidates.append((float(d), int(i), self._tree_keys[int(i)]))

        if self._tail_points:
            offset = len(self._tree_keys)
            tail_d = np.linalg.norm(np.array(self._tail_points) - q, axis=1)
            for j, d in enumerate(tail_d):
                candidates.append((float(d), offset + j, self._tail_keys[j]))

        # 距离相同时按插入顺序
        candidates.sort(key=lambda c: (c[0], c[1]))
        return [(key, d) for d, _, key in candidates[:k]]
