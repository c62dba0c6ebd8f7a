"""
utils/seed.py — 采样随机源

RHRRTStarConfig.seed == 0 时用时间戳生成种子，并在日志中记录实际使用的值，
便于复现某次探索会话的采样序列。
"""

import logging
import time

import numpy as np

logger = logging.getLogger(__name__)


def make_seed(seed: int = 0) -> int:
    """seed == 0 时由毫秒时间戳生成，否则原样返回"""
    if seed == 0:
        return int(time.time() * 1000) % (2**31)
    return seed


def make_rng(seed: int = 0) -> np.random.Generator:
    resolved = make_seed(seed)
    if resolved != seed:
        logger.info("采样随机种子: %d（时间戳生成）", resolved)
    return np.random.default_rng(resolved)
