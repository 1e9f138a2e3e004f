from __future__ import annotations

from typing import FrozenSet, Iterable


class LocatorError(Exception):
    """定位与连接相关错误的基类"""


class PermissionRequired(LocatorError):
    """缺少权限，可恢复；由外部权限协作方处理后调用 permission_granted()"""

    def __init__(self, permissions: Iterable[str], message: str = "missing permissions"):
        self.permissions: FrozenSet[str] = frozenset(permissions)
        super().__init__(f"{message}: {', '.join(sorted(self.permissions))}")


class MalformedPayload(LocatorError):
    """通知数据无法解析为整数 RSSI"""

    def __init__(self, payload: bytes):
        self.payload = payload
        super().__init__(f"malformed RSSI payload: {payload!r}")


class GattError(LocatorError):
    """服务发现或描述符写入失败"""


class DeviceUnsupported(LocatorError):
    """设备不支持蓝牙"""


class AdapterDisabled(LocatorError):
    """蓝牙适配器未开启"""
