from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .models import (
    LocationResult,
    LocationResultStatus,
    Observation,
    RangeEstimate,
    ScanBatch,
)
from .multilateration import multilaterate, rms_residual
from .reference_registry import ReferenceRegistry
from .signal_model import SignalModel


logger = logging.getLogger(__name__)

MIN_REFERENCES = 3

PositionListener = Callable[[LocationResult], None]
RangeListener = Callable[[List[RangeEstimate]], None]


def dedupe(observations) -> List[Observation]:
    """按标识去重：时间戳较新者优先，相同时取信号更强者；保持首次出现的顺序"""
    best: Dict[str, Observation] = {}
    for obs in observations:
        key = obs.identifier.strip().lower()
        current = best.get(key)
        if current is None or (obs.timestamp, obs.rssi) > (current.timestamp, current.rssi):
            best[key] = obs
    return list(best.values())


class ScanAggregator:
    """
    每个扫描周期：过滤/去重观测 -> 匹配参考点 -> 计算距离 -> 三边定位
    新批次整体替换旧批次，不做跨周期平均
    """

    def __init__(
        self,
        registry: ReferenceRegistry,
        signal_model: SignalModel,
        name_filter: Optional[str] = None,
    ):
        self.registry = registry
        self.signal_model = signal_model
        self.name_filter = name_filter

        self._lock = threading.Lock()
        self._snapshot: Optional[ScanBatch] = None
        self._fresh = False
        self._position_listeners: List[PositionListener] = []
        self._range_listeners: List[RangeListener] = []

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Listeners ----------
    def add_position_listener(self, listener: PositionListener) -> None:
        self._position_listeners.append(listener)

    def add_range_listener(self, listener: RangeListener) -> None:
        self._range_listeners.append(listener)

    # ---------- Core processing ----------
    def submit(self, batch: ScanBatch) -> None:
        with self._lock:
            self._snapshot = batch
            self._fresh = True

    @property
    def snapshot(self) -> Optional[ScanBatch]:
        with self._lock:
            return self._snapshot

    def ranges_for(self, batch: ScanBatch) -> List[RangeEstimate]:
        ranges: List[RangeEstimate] = []
        for obs in dedupe(batch):
            if self.name_filter is not None and obs.name != self.name_filter:
                logger.debug("忽略名称不匹配的观测: %s (%s)", obs.identifier, obs.name)
                continue
            reference = self.registry.lookup(obs.identifier)
            if reference is None:
                logger.debug("未知参考点: %s", obs.identifier)
                continue
            distance = self.signal_model.distance(obs.rssi)
            if distance is None:
                logger.warning("RSSI %s 无法换算距离: %s", obs.rssi, obs.identifier)
                continue
            logger.debug(
                "匹配参考点 %s, RSSI: %s, 距离: %.2f", obs.identifier, obs.rssi, distance
            )
            ranges.append(RangeEstimate(reference=reference, rssi=obs.rssi, distance=distance))
        return ranges

    def evaluate(self) -> Optional[LocationResult]:
        """基于当前快照计算位置；尚无快照时返回 None"""
        with self._lock:
            batch = self._snapshot
            self._fresh = False
        if batch is None:
            return None

        ranges = self.ranges_for(batch)
        for listener in self._range_listeners:
            listener(ranges)

        result = self._locate(batch, ranges)
        for listener in self._position_listeners:
            listener(result)
        return result

    def evaluate_fresh(self) -> Optional[LocationResult]:
        """仅在上次计算后有新批次时计算"""
        with self._lock:
            fresh = self._fresh
        if not fresh:
            return None
        return self.evaluate()

    def process(self, batch: ScanBatch) -> Optional[LocationResult]:
        self.submit(batch)
        return self.evaluate()

    def _locate(self, batch: ScanBatch, ranges: List[RangeEstimate]) -> LocationResult:
        logger.debug("有效距离数: %d", len(ranges))
        if len(ranges) < MIN_REFERENCES:
            return LocationResult.unknown(
                batch, f"有效参考点不足: {len(ranges)}", reference_count=len(ranges)
            )

        position = multilaterate(ranges)
        if position is None:
            r = LocationResult.unknown(batch, "参考点共线或重合，无法定位", len(ranges))
            r.status = LocationResultStatus.DEGENERATE
            return r

        r = LocationResult(
            device_id=batch.device_id,
            status=LocationResultStatus.SUCCESS,
            message="定位成功",
            timestamp=batch.timestamp,
            reference_count=len(ranges),
        )
        r.position = position
        r.accuracy = rms_residual(position, ranges[:MIN_REFERENCES])
        return r

    # ---------- Periodic scan ----------
    def start(self, scan_trigger: Callable[[], None], interval: float = 1.0) -> None:
        """后台线程：每个周期触发一次扫描，有新批次时重新计算"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(scan_trigger, interval), name="scan-aggregator", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, scan_trigger: Callable[[], None], interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                scan_trigger()
            except Exception as e:
                logger.exception("触发扫描出错: %s", e)
            try:
                self.evaluate_fresh()
            except Exception as e:
                logger.exception("位置计算出错: %s", e)
            self._stop_event.wait(interval)
