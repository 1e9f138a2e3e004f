"""Shared fixtures for rssi_locator tests."""

from __future__ import annotations

import pytest

from rssi_locator.config_manager import ConfigManager
from rssi_locator.models import ReferencePoint
from rssi_locator.reference_registry import ReferenceRegistry
from rssi_locator.signal_model import SignalModel


class FakeTransport:
    """Records every GATT request; tests drive the callbacks by hand."""

    def __init__(self, connect_error: Exception | None = None):
        self.session = None
        self.calls: list[tuple] = []
        self.close_count = 0
        self.connect_error = connect_error

    def attach(self, session) -> None:
        self.session = session

    def connect(self, address: str) -> None:
        self.calls.append(("connect", address))
        if self.connect_error is not None:
            raise self.connect_error

    def discover_services(self) -> None:
        self.calls.append(("discover_services",))

    def write_descriptor(self, target, value: bytes) -> None:
        self.calls.append(("write_descriptor", target.characteristic_uuid, value))

    def close(self) -> None:
        self.close_count += 1
        self.calls.append(("close",))

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def signal_model() -> SignalModel:
    return SignalModel(tx_power=-59.0, path_loss_exponent=2.0)


@pytest.fixture
def registry() -> ReferenceRegistry:
    return ReferenceRegistry(
        [
            ReferencePoint("AC:0B:FB:6F:9D:51", 0.0, 0.0),
            ReferencePoint("52:eb:71:57:2e:e8", 10.0, 0.0),
            ReferencePoint("0e:ae:b2:86:11:c8", 5.0, 10.0),
        ]
    )


@pytest.fixture
def config(tmp_path) -> ConfigManager:
    return ConfigManager(str(tmp_path / "config" / "config.yaml"))


@pytest.fixture
def make_transport():
    return FakeTransport
