from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, Iterator, Optional

import pandas as pd

from .models import ReferencePoint, normalize_identifier


logger = logging.getLogger(__name__)

# 默认的三个已知接入点
SAMPLE_POINTS = (
    ReferencePoint("ac:0b:fb:6f:9d:51", 0.0, 0.0),
    ReferencePoint("52:eb:71:57:2e:e8", 10.0, 0.0),
    ReferencePoint("0e:ae:b2:86:11:c8", 5.0, 10.0),
)


class ReferenceRegistry:
    """已知参考点（标识 -> 坐标），构造后只读"""

    def __init__(self, points: Iterable[ReferencePoint] = ()):
        # 标识重复时保留最后一个
        self._points: Dict[str, ReferencePoint] = {}
        for point in points:
            self._points[point.identifier] = point

    # ---- Utils ----
    @staticmethod
    def _normalize_df(df: pd.DataFrame) -> pd.DataFrame:
        if "identifier" not in df.columns:
            raise KeyError("CSV 文件缺少 'identifier' 列")
        for col in ["x", "y"]:
            if col not in df.columns:
                df[col] = 0.0
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)
        df = df[["identifier", "x", "y"]].copy()
        df["identifier"] = df["identifier"].astype(str).str.strip().str.lower()
        df = df[df["identifier"] != ""]
        df = df.drop_duplicates(subset=["identifier"], keep="last")
        return df.astype({"x": "float64", "y": "float64"})

    # ---- Load/Save ----
    @classmethod
    def load(cls, csv_path: str) -> "ReferenceRegistry":
        """从 CSV 加载；文件不存在时写入示例参考点"""
        if not os.path.exists(csv_path):
            logger.warning("参考点文件 %s 不存在，写入示例数据", csv_path)
            registry = cls(SAMPLE_POINTS)
            registry.save(csv_path)
            return registry
        df = cls._normalize_df(pd.read_csv(csv_path, dtype={"identifier": str}))
        points = [
            ReferencePoint(identifier=row.identifier, x=float(row.x), y=float(row.y))
            for row in df.itertuples(index=False)
        ]
        logger.info("已加载 %d 个参考点: %s", len(points), csv_path)
        return cls(points)

    def save(self, csv_path: str) -> None:
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        df = pd.DataFrame(
            [{"identifier": p.identifier, "x": p.x, "y": p.y} for p in self._points.values()],
            columns=["identifier", "x", "y"],
        )
        df.to_csv(csv_path, index=False, encoding="utf-8")

    # ---- Accessors ----
    def lookup(self, identifier: str) -> Optional[ReferencePoint]:
        return self._points.get(normalize_identifier(identifier))

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and normalize_identifier(identifier) in self._points

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[ReferencePoint]:
        return iter(self._points.values())

    def all(self) -> Dict[str, ReferencePoint]:
        return dict(self._points)
