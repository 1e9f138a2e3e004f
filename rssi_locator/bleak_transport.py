from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from typing import TYPE_CHECKING, Optional

from bleak import BleakClient
from bleak.exc import BleakError

from .exceptions import AdapterDisabled, DeviceUnsupported, GattError, LocatorError
from .models import GattCharacteristic, GattService, TargetCharacteristic

if TYPE_CHECKING:
    from .ble_session import BleSession


logger = logging.getLogger(__name__)


def map_bleak_error(error: Exception) -> LocatorError:
    """将 bleak 异常归类为会话可识别的错误"""
    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    if "turned off" in lowered or "powered off" in lowered or "not powered" in lowered:
        return AdapterDisabled(message)
    if "no bluetooth adapter" in lowered or "not supported" in lowered:
        return DeviceUnsupported(message)
    return GattError(message)


class BleakGattTransport:
    """
    基于 bleak 的 GATT 传输层
    bleak 为 asyncio 接口，这里在后台线程中运行独立事件循环，
    所有结果通过 BleSession 的回调返回。
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._session: Optional["BleSession"] = None
        self._client: Optional[BleakClient] = None
        self._lock = threading.Lock()
        self._owns_loop = loop is None
        self._loop = loop or asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None
        self._closing: Optional[Future] = None
        if self._owns_loop:
            self._thread = threading.Thread(
                target=self._loop.run_forever, name="bleak-loop", daemon=True
            )
            self._thread.start()

    def attach(self, session: "BleSession") -> None:
        self._session = session

    # ---------- GattTransport ----------
    def connect(self, address: str) -> None:
        with self._lock:
            self._client = BleakClient(address, disconnected_callback=self._on_disconnected)
            client = self._client
        self._submit(self._connect(client))

    def discover_services(self) -> None:
        client = self._require_client()
        self._submit(self._discover(client))

    def write_descriptor(self, target: TargetCharacteristic, value: bytes) -> None:
        # bleak 在 start_notify 内部写入 CCCD，value 固定为启用通知
        client = self._require_client()
        self._submit(self._subscribe(client, target))

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        self._closing = self._submit(self._disconnect(client))

    def shutdown(self) -> None:
        """停止后台事件循环"""
        self.close()
        if self._closing is not None:
            try:
                self._closing.result(timeout=5)
            except FuturesTimeoutError:
                logger.warning("等待断开连接超时")
        if self._owns_loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=5)
                if not self._thread.is_alive():
                    self._loop.close()

    # ---------- Coroutines ----------
    async def _connect(self, client: BleakClient) -> None:
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            self._report(map_bleak_error(e))
            return
        self._session.on_connection_state_change(True)

    async def _discover(self, client: BleakClient) -> None:
        # bleak 在连接时已完成服务发现
        try:
            services = [
                GattService(
                    uuid=service.uuid,
                    characteristics=tuple(
                        GattCharacteristic(
                            uuid=char.uuid,
                            descriptors=tuple(d.uuid for d in char.descriptors),
                        )
                        for char in service.characteristics
                    ),
                )
                for service in client.services
            ]
        except BleakError as e:
            self._report(map_bleak_error(e))
            return
        for service in services:
            logger.debug("Service UUID: %s", service.uuid)
            for char in service.characteristics:
                logger.debug("Characteristic UUID: %s", char.uuid)
        self._session.on_services_discovered(services)

    async def _subscribe(self, client: BleakClient, target: TargetCharacteristic) -> None:
        try:
            await client.start_notify(target.characteristic_uuid, self._on_notify)
        except BleakError as e:
            self._report(GattError(f"启用通知失败: {e}"))
            return
        self._session.on_descriptor_write()

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except BleakError as e:
            logger.warning("断开连接出错: %s", e)

    # ---------- bleak callbacks ----------
    def _on_disconnected(self, client: BleakClient) -> None:
        if self._session is not None:
            self._session.on_connection_state_change(False)

    def _on_notify(self, sender, data: bytearray) -> None:
        self._session.on_characteristic_changed(sender.uuid, bytes(data))

    # ---------- Utils ----------
    def _require_client(self) -> BleakClient:
        with self._lock:
            client = self._client
        if client is None:
            raise GattError("未建立连接")
        return client

    def _report(self, error: LocatorError) -> None:
        logger.error("GATT 操作失败: %s", error)
        if self._session is not None:
            self._session.on_error(error)

    def _submit(self, coro) -> Future:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(self._log_unhandled)
        return future

    @staticmethod
    def _log_unhandled(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("GATT 后台任务异常: %s", error, exc_info=error)
