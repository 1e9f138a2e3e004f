from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from .models import Position, RangeEstimate

# 分母绝对值小于该值视为共线/重合
DEGENERATE_TOLERANCE = 1e-9


def solve(
    p1: Position, r1: float, p2: Position, r2: float, p3: Position, r3: float
) -> Optional[Position]:
    """
    线性三边定位（二维）
    圆方程两两相减（1-2、2-3）消去二次项，得到
        A*x + B*y = C
        D*x + E*y = F
    用克莱姆法则求解。参考点共线或重合时返回 None (Degenerate)。
    """
    try:
        a = 2 * p2.x - 2 * p1.x
        b = 2 * p2.y - 2 * p1.y
        c = r1**2 - r2**2 - p1.x**2 + p2.x**2 - p1.y**2 + p2.y**2
        d = 2 * p3.x - 2 * p2.x
        e = 2 * p3.y - 2 * p2.y
        f = r2**2 - r3**2 - p2.x**2 + p3.x**2 - p2.y**2 + p3.y**2
        denominator = e * a - b * d
    except OverflowError:
        return None
    if not math.isfinite(denominator) or abs(denominator) < DEGENERATE_TOLERANCE:
        return None

    try:
        x = (c * e - f * b) / denominator
        y = (c * d - a * f) / -denominator
    except OverflowError:
        return None
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return Position(x=x, y=y)


def multilaterate(ranges: Sequence[RangeEstimate]) -> Optional[Position]:
    """只取前3个距离估计；不足3个返回 None"""
    if len(ranges) < 3:
        return None
    first, second, third = ranges[:3]
    return solve(
        first.reference.position,
        first.distance,
        second.reference.position,
        second.distance,
        third.reference.position,
        third.distance,
    )


def rms_residual(position: Position, ranges: Sequence[RangeEstimate]) -> float:
    """解算点到各参考点的几何距离与估计距离之差的均方根"""
    refs = np.array([[r.reference.x, r.reference.y] for r in ranges], dtype=float)
    measured = np.array([r.distance for r in ranges], dtype=float)
    actual = np.hypot(refs[:, 0] - position.x, refs[:, 1] - position.y)
    return float(np.sqrt(np.mean((actual - measured) ** 2)))
