from __future__ import annotations

import logging
import re
import threading
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set

from .exceptions import (
    AdapterDisabled,
    DeviceUnsupported,
    LocatorError,
    MalformedPayload,
    PermissionRequired,
)
from .models import (
    DEFAULT_TARGET,
    ENABLE_NOTIFICATION_VALUE,
    ConnectionState,
    GattService,
    RssiReading,
    TargetCharacteristic,
)
from .signal_model import SignalModel


logger = logging.getLogger(__name__)

GATT_SUCCESS = 0

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
_RSSI_PATTERN = re.compile(r"[+-]?[0-9]+", re.ASCII)

CONNECT_PERMISSIONS: FrozenSet[str] = frozenset({"BLUETOOTH_CONNECT"})

# 合法的状态迁移，其它迁移一律拒绝
TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.DISCOVERING_SERVICES,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.DISCOVERING_SERVICES: {
        ConnectionState.SUBSCRIBING_NOTIFICATIONS,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.SUBSCRIBING_NOTIFICATIONS: {
        ConnectionState.STREAMING,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTING,
    },
    ConnectionState.STREAMING: {ConnectionState.DISCONNECTING},
    ConnectionState.DISCONNECTING: {ConnectionState.DISCONNECTED},
    ConnectionState.FAILED: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTING},
}

# 有异步操作在途的状态；期间的 disconnect 请求在回调到达时执行
IN_FLIGHT_STATES = frozenset(
    {
        ConnectionState.CONNECTING,
        ConnectionState.DISCOVERING_SERVICES,
        ConnectionState.SUBSCRIBING_NOTIFICATIONS,
    }
)

StateListener = Callable[[ConnectionState, ConnectionState], None]
ReadingListener = Callable[[RssiReading], None]
PermissionListener = Callable[[PermissionRequired], None]


class GattTransport(Protocol):
    """GATT 传输层协作方，结果通过 BleSession 的 on_* 回调异步返回"""

    def attach(self, session: "BleSession") -> None: ...

    def connect(self, address: str) -> None: ...

    def discover_services(self) -> None: ...

    def write_descriptor(self, target: TargetCharacteristic, value: bytes) -> None: ...

    def close(self) -> None: ...


def parse_rssi(payload: bytes) -> int:
    """通知数据为 UTF-8 文本形式的 32 位整数 RSSI"""
    try:
        text = bytes(payload).decode("utf-8").strip()
    except UnicodeDecodeError:
        raise MalformedPayload(bytes(payload)) from None
    if not _RSSI_PATTERN.fullmatch(text):
        raise MalformedPayload(bytes(payload))
    value = int(text)
    if not INT32_MIN <= value <= INT32_MAX:
        raise MalformedPayload(bytes(payload))
    return value


class BleSession:
    """
    单个外设的 GATT 会话状态机

    Disconnected -> Connecting -> Connected -> DiscoveringServices
        -> SubscribingNotifications -> Streaming
    任意状态 -> Disconnecting -> Disconnected；失败进入 Failed，需重新 connect。

    所有状态迁移都在同一把锁内完成，传输层回调可以来自任意线程。
    """

    def __init__(
        self,
        transport: GattTransport,
        signal_model: Optional[SignalModel] = None,
        target: TargetCharacteristic = DEFAULT_TARGET,
        permission_checker: Optional[Callable[[], bool]] = None,
        permissions: Iterable[str] = CONNECT_PERMISSIONS,
        connect_timeout: Optional[float] = 10.0,
        discovery_timeout: Optional[float] = 10.0,
    ):
        self.transport = transport
        self.signal_model = signal_model or SignalModel()
        self.target = target
        self.permission_checker = permission_checker or (lambda: True)
        self.permissions = frozenset(permissions)
        self.connect_timeout = connect_timeout
        self.discovery_timeout = discovery_timeout

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._address: Optional[str] = None
        self._pending_address: Optional[str] = None
        self._failure_reason: Optional[str] = None
        self._characteristic: Optional[TargetCharacteristic] = None
        self._last_reading: Optional[RssiReading] = None
        self._disconnect_requested = False
        self._handle_open = False

        self._timer: Optional[threading.Timer] = None
        self._timer_token = 0

        self._state_listeners: List[StateListener] = []
        self._reading_listeners: List[ReadingListener] = []
        self._permission_listeners: List[PermissionListener] = []

        self.transport.attach(self)

    # ---------- Properties ----------
    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def failure_reason(self) -> Optional[str]:
        with self._lock:
            return self._failure_reason

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def characteristic(self) -> Optional[TargetCharacteristic]:
        return self._characteristic

    @property
    def last_reading(self) -> Optional[RssiReading]:
        return self._last_reading

    @property
    def handle_open(self) -> bool:
        with self._lock:
            return self._handle_open

    # ---------- Listeners ----------
    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_reading_listener(self, listener: ReadingListener) -> None:
        self._reading_listeners.append(listener)

    def add_permission_listener(self, listener: PermissionListener) -> None:
        self._permission_listeners.append(listener)

    def _notify(self, listeners, *args) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception as e:
                logger.exception("监听回调出错: %s", e)

    # ---------- Caller API ----------
    def connect(self, address: str) -> bool:
        """
        发起连接；仅在 Disconnected/Failed 状态下接受。
        缺少权限时发出 PermissionRequired 并保持 Disconnected，授权后自动重试。
        """
        with self._lock:
            if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                logger.warning("当前状态 %s 不能发起连接: %s", self._state.value, address)
                return False
            if not self.permission_checker():
                logger.warning("缺少蓝牙连接权限，等待授权: %s", address)
                self._pending_address = address
                self._request_permission()
                return False

            self._pending_address = None
            self._address = address
            self._failure_reason = None
            self._characteristic = None
            self._disconnect_requested = False
            self._transition(ConnectionState.CONNECTING)
            self._arm_timer(self.connect_timeout, ConnectionState.CONNECTING)

            logger.info("连接设备: %s", address)
            self._handle_open = True
            try:
                self.transport.connect(address)
            except (DeviceUnsupported, AdapterDisabled) as e:
                self._fail(str(e))
                raise
            except LocatorError as e:
                self._fail(f"连接失败: {e}")
                return False
            return True

    def disconnect(self) -> None:
        """
        断开连接；异步操作在途时记录请求，待其回调到达后进入 Disconnecting
        """
        with self._lock:
            self._pending_address = None
            if self._state in (ConnectionState.DISCONNECTED, ConnectionState.DISCONNECTING):
                return
            if self._state in IN_FLIGHT_STATES:
                logger.info("断开请求已记录，等待 %s 的回调", self._state.value)
                self._disconnect_requested = True
                return
            self._teardown()

    def permission_granted(self) -> None:
        """权限协作方授权后回调，恢复被权限阻塞的步骤"""
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED and self._pending_address:
                self.connect(self._pending_address)
            elif self._state is ConnectionState.CONNECTED:
                self._start_discovery()
            else:
                logger.debug("授权回调在状态 %s 下无需处理", self._state.value)

    # ---------- Transport callbacks ----------
    def on_connection_state_change(self, connected: bool, status: int = GATT_SUCCESS) -> None:
        with self._lock:
            if connected:
                if self._state is not ConnectionState.CONNECTING:
                    logger.warning("忽略状态 %s 下的连接成功回调", self._state.value)
                    return
                self._cancel_timer()
                if self._disconnect_requested:
                    self._teardown()
                    return
                if status != GATT_SUCCESS:
                    self._fail(f"连接失败, status={status}")
                    return
                logger.info("已连接 GATT 服务: %s", self._address)
                self._transition(ConnectionState.CONNECTED)
                self._start_discovery()
                return

            if self._state in (
                ConnectionState.DISCONNECTED,
                ConnectionState.DISCONNECTING,
                ConnectionState.FAILED,
            ):
                return
            logger.info("与 GATT 服务断开: %s, status=%s", self._address, status)
            if self._state is ConnectionState.CONNECTING and not self._disconnect_requested:
                self._fail(f"连接失败, status={status}")
                return
            self._teardown()

    def on_services_discovered(
        self, services: Iterable[GattService], status: int = GATT_SUCCESS
    ) -> None:
        with self._lock:
            if self._state is not ConnectionState.DISCOVERING_SERVICES:
                logger.warning("忽略状态 %s 下的服务发现回调", self._state.value)
                return
            self._cancel_timer()
            if self._disconnect_requested:
                self._teardown()
                return
            if status != GATT_SUCCESS:
                self._fail(f"服务发现失败, status={status}")
                return

            target = self._resolve_target(services)
            if target is None:
                return
            self._characteristic = target
            self._transition(ConnectionState.SUBSCRIBING_NOTIFICATIONS)
            self._arm_timer(self.discovery_timeout, ConnectionState.SUBSCRIBING_NOTIFICATIONS)
            logger.info("启用 RSSI 特征通知: %s", target.characteristic_uuid)
            try:
                self.transport.write_descriptor(target, ENABLE_NOTIFICATION_VALUE)
            except LocatorError as e:
                self._fail(f"描述符写入失败: {e}")

    def on_descriptor_write(self, status: int = GATT_SUCCESS) -> None:
        with self._lock:
            if self._state is not ConnectionState.SUBSCRIBING_NOTIFICATIONS:
                logger.warning("忽略状态 %s 下的描述符写入回调", self._state.value)
                return
            self._cancel_timer()
            if self._disconnect_requested:
                self._teardown()
                return
            if status != GATT_SUCCESS:
                self._fail(f"描述符写入失败, status={status}")
                return
            self._transition(ConnectionState.STREAMING)

    def on_characteristic_changed(self, uuid: str, value: bytes) -> None:
        with self._lock:
            if self._state is not ConnectionState.STREAMING:
                logger.debug("忽略状态 %s 下的通知数据", self._state.value)
                return
            if self._characteristic is None or (
                uuid.lower() != self._characteristic.characteristic_uuid.lower()
            ):
                logger.warning("收到未知特征的通知: %s", uuid)
                return
            try:
                rssi = parse_rssi(value)
            except MalformedPayload as e:
                logger.warning("RSSI 解析失败: %s", e)
                return

            reading = RssiReading(rssi=rssi, distance=self.signal_model.distance(rssi))
            self._last_reading = reading
            logger.debug("收到 RSSI: %s, 距离: %s", reading.rssi, reading.distance)
            self._notify(self._reading_listeners, reading)

    def on_error(self, error: LocatorError) -> None:
        """传输层异步操作失败"""
        with self._lock:
            if self._state in (
                ConnectionState.DISCONNECTED,
                ConnectionState.DISCONNECTING,
                ConnectionState.FAILED,
            ):
                logger.debug("忽略状态 %s 下的错误: %s", self._state.value, error)
                return
            if self._disconnect_requested:
                self._teardown()
                return
            if self._state is ConnectionState.STREAMING:
                logger.error("通知过程中出错: %s", error)
                self._teardown()
                return
            self._fail(str(error))

    # ---------- Internals ----------
    def _transition(self, new_state: ConnectionState) -> bool:
        old_state = self._state
        if new_state not in TRANSITIONS[old_state]:
            logger.warning("拒绝非法状态迁移: %s -> %s", old_state.value, new_state.value)
            return False
        self._state = new_state
        logger.debug("状态迁移: %s -> %s", old_state.value, new_state.value)
        self._notify(self._state_listeners, old_state, new_state)
        return True

    def _request_permission(self) -> None:
        self._notify(self._permission_listeners, PermissionRequired(self.permissions))

    def _start_discovery(self) -> None:
        if not self.permission_checker():
            logger.warning("缺少蓝牙连接权限，无法发现服务")
            self._request_permission()
            return
        self._transition(ConnectionState.DISCOVERING_SERVICES)
        self._arm_timer(self.discovery_timeout, ConnectionState.DISCOVERING_SERVICES)
        try:
            self.transport.discover_services()
        except LocatorError as e:
            self._fail(f"服务发现失败: {e}")

    def _resolve_target(self, services: Iterable[GattService]) -> Optional[TargetCharacteristic]:
        wanted = self.target.characteristic_uuid.lower()
        wanted_service = self.target.service_uuid.lower() if self.target.service_uuid else None
        descriptor_uuid = self.target.descriptor_uuid.lower()
        for service in services:
            if wanted_service is not None and service.uuid.lower() != wanted_service:
                continue
            for characteristic in service.characteristics:
                if characteristic.uuid.lower() != wanted:
                    continue
                if descriptor_uuid not in {d.lower() for d in characteristic.descriptors}:
                    self._fail(f"特征 {characteristic.uuid} 缺少通知描述符 {descriptor_uuid}")
                    return None
                return TargetCharacteristic(
                    service_uuid=service.uuid,
                    characteristic_uuid=characteristic.uuid,
                    descriptor_uuid=descriptor_uuid,
                )
        self._fail(f"未找到目标特征 {self.target.characteristic_uuid}")
        return None

    def _fail(self, reason: str) -> None:
        self._cancel_timer()
        self._failure_reason = reason
        logger.error("连接失败 (%s): %s", self._address, reason)
        if self._transition(ConnectionState.FAILED):
            self._close_handle()

    def _teardown(self) -> None:
        self._cancel_timer()
        self._transition(ConnectionState.DISCONNECTING)
        self._close_handle()
        self._disconnect_requested = False
        self._characteristic = None
        self._transition(ConnectionState.DISCONNECTED)

    def _close_handle(self) -> None:
        if not self._handle_open:
            return
        self._handle_open = False
        try:
            self.transport.close()
        except LocatorError as e:
            logger.warning("关闭连接出错: %s", e)

    # ---------- Deadlines ----------
    def _arm_timer(self, timeout: Optional[float], state: ConnectionState) -> None:
        self._cancel_timer()
        if timeout is None:
            return
        token = self._timer_token
        self._timer = threading.Timer(timeout, self._on_timeout, args=(token, state, timeout))
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self) -> None:
        self._timer_token += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, token: int, state: ConnectionState, timeout: float) -> None:
        with self._lock:
            if token != self._timer_token or self._state is not state:
                return
            self._timer = None
            if self._disconnect_requested:
                self._teardown()
                return
            self._fail(f"{state.value} 超时 ({timeout}s)")
