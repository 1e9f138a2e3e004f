from __future__ import annotations

from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Iterator, Tuple

# 固定的 GATT 标识
RSSI_CHARACTERISTIC_UUID = "12345678-1234-5678-1234-56789abcdef0"
CLIENT_CHARACTERISTIC_CONFIG_UUID = "00002902-0000-1000-8000-00805f9b34fb"
ENABLE_NOTIFICATION_VALUE = b"\x01\x00"


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class ReferencePoint:
    identifier: str
    x: float
    y: float

    def __post_init__(self):
        object.__setattr__(self, "identifier", normalize_identifier(self.identifier))

    @property
    def position(self) -> Position:
        return Position(x=self.x, y=self.y)


@dataclass(frozen=True)
class Observation:
    """单次扫描得到的信号观测（BSSID/MAC + RSSI）"""

    identifier: str
    rssi: int
    timestamp: float = 0.0
    name: Optional[str] = None


@dataclass(frozen=True)
class ScanBatch:
    """
    一个扫描周期内的观测集合，不可变
    """

    device_id: str
    observations: Tuple[Observation, ...] = ()
    timestamp: str = field(default_factory=_now)

    def __len__(self) -> int:
        return len(self.observations)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self.observations)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    @classmethod
    def parse(cls, data_str: str, received_at: float = 0.0) -> Optional["ScanBatch"]:
        """
        解析扫描上报字符串
        格式：id,rssi[,name];id,rssi[,name];...;设备ID
        """
        parts = data_str.strip().split(";")
        if len(parts) < 2:
            return None
        device_id = parts[-1].strip()
        observations: List[Observation] = []
        for item in parts[:-1]:
            fields = [f.strip() for f in item.split(",")]
            if len(fields) not in (2, 3):
                continue
            try:
                rssi = int(fields[1])
            except ValueError:
                continue
            if not fields[0]:
                continue
            name = fields[2] if len(fields) == 3 and fields[2] else None
            observations.append(
                Observation(identifier=fields[0], rssi=rssi, timestamp=received_at, name=name)
            )
        return cls(device_id=device_id, observations=tuple(observations))


@dataclass(frozen=True)
class RangeEstimate:
    reference: ReferencePoint
    rssi: int
    distance: float


class LocationResultStatus(Enum):
    SUCCESS = "success"
    UNKNOWN = "unknown"
    DEGENERATE = "degenerate"


@dataclass
class LocationResult:
    """
    位置计算结果；仅当 status 为 SUCCESS 时带坐标
    """

    device_id: str
    status: LocationResultStatus
    message: str
    timestamp: str

    reference_count: int = 0
    x: Optional[float] = None
    y: Optional[float] = None
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return {k: v for k, v in d.items() if v is not None}

    @classmethod
    def unknown(cls, batch: ScanBatch, message: str, reference_count: int = 0) -> "LocationResult":
        return cls(
            device_id=batch.device_id,
            status=LocationResultStatus.UNKNOWN,
            message=message,
            timestamp=batch.timestamp,
            reference_count=reference_count,
        )

    @property
    def position(self) -> Optional[Position]:
        if self.x is not None and self.y is not None:
            return Position(x=self.x, y=self.y)
        return None

    @position.setter
    def position(self, pos: Position | None) -> None:
        if pos is None:
            self.x = None
            self.y = None
            return
        self.x = pos.x
        self.y = pos.y


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCOVERING_SERVICES = "discovering_services"
    SUBSCRIBING_NOTIFICATIONS = "subscribing_notifications"
    STREAMING = "streaming"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class TargetCharacteristic:
    service_uuid: Optional[str]
    characteristic_uuid: str
    descriptor_uuid: str = CLIENT_CHARACTERISTIC_CONFIG_UUID


DEFAULT_TARGET = TargetCharacteristic(
    service_uuid=None,
    characteristic_uuid=RSSI_CHARACTERISTIC_UUID,
    descriptor_uuid=CLIENT_CHARACTERISTIC_CONFIG_UUID,
)


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    descriptors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GattService:
    uuid: str
    characteristics: Tuple[GattCharacteristic, ...] = ()


@dataclass(frozen=True)
class RssiReading:
    """BLE 通知得到的 RSSI 及其估算距离"""

    rssi: int
    distance: Optional[float]
    timestamp: str = field(default_factory=_now)
