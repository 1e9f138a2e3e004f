"""Tests for the BLE GATT session state machine."""

from __future__ import annotations

import threading

import pytest

from rssi_locator.ble_session import BleSession
from rssi_locator.exceptions import AdapterDisabled, GattError, PermissionRequired
from rssi_locator.models import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    ENABLE_NOTIFICATION_VALUE,
    RSSI_CHARACTERISTIC_UUID,
    ConnectionState,
    GattCharacteristic,
    GattService,
)

S = ConnectionState
ADDRESS = "AA:BB:CC:DD:EE:FF"

SERVICES = [
    GattService(
        "0000180f-0000-1000-8000-00805f9b34fb",
        (GattCharacteristic("00002a19-0000-1000-8000-00805f9b34fb", ()),),
    ),
    GattService(
        "12345678-1234-5678-1234-56789abcdef1",
        (
            GattCharacteristic("12345678-1234-5678-1234-56789abcdef2", ()),
            GattCharacteristic(
                RSSI_CHARACTERISTIC_UUID.upper(), (CLIENT_CHARACTERISTIC_CONFIG_UUID,)
            ),
        ),
    ),
]


class Recorder:
    def __init__(self, session: BleSession):
        self.states = [session.state]
        self.readings = []
        self.permissions = []
        session.add_state_listener(lambda old, new: self.states.append(new))
        session.add_reading_listener(self.readings.append)
        session.add_permission_listener(self.permissions.append)


def _session(transport, **kwargs):
    kwargs.setdefault("connect_timeout", None)
    kwargs.setdefault("discovery_timeout", None)
    session = BleSession(transport, **kwargs)
    return session, Recorder(session)


def _stream(session):
    assert session.connect(ADDRESS)
    session.on_connection_state_change(True)
    session.on_services_discovered(SERVICES)
    session.on_descriptor_write()


class TestHappyPath:
    def test_full_sequence(self, transport):
        session, rec = _session(transport)
        assert session.connect(ADDRESS)
        assert session.state is S.CONNECTING
        assert transport.calls == [("connect", ADDRESS)]

        session.on_connection_state_change(True)
        assert session.state is S.DISCOVERING_SERVICES
        assert transport.names() == ["connect", "discover_services"]

        session.on_services_discovered(SERVICES)
        assert session.state is S.SUBSCRIBING_NOTIFICATIONS
        assert transport.calls[-1] == (
            "write_descriptor",
            RSSI_CHARACTERISTIC_UUID.upper(),
            ENABLE_NOTIFICATION_VALUE,
        )
        assert session.characteristic.service_uuid == "12345678-1234-5678-1234-56789abcdef1"

        session.on_descriptor_write()
        assert session.state is S.STREAMING
        assert rec.states == [
            S.DISCONNECTED,
            S.CONNECTING,
            S.CONNECTED,
            S.DISCOVERING_SERVICES,
            S.SUBSCRIBING_NOTIFICATIONS,
            S.STREAMING,
        ]

    def test_descriptor_issue_does_not_start_streaming(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered(SERVICES)
        assert "write_descriptor" in transport.names()
        assert session.state is S.SUBSCRIBING_NOTIFICATIONS
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-60")
        assert session.last_reading is None

    def test_out_of_order_callbacks_never_reach_streaming(self, transport):
        session, rec = _session(transport)
        session.connect(ADDRESS)
        session.on_descriptor_write()
        session.on_services_discovered(SERVICES)
        assert session.state is S.CONNECTING
        session.on_connection_state_change(True)
        session.on_descriptor_write()
        assert session.state is S.DISCOVERING_SERVICES
        assert "write_descriptor" not in transport.names()
        assert S.STREAMING not in rec.states

    def test_only_one_characteristic_subscribed(self, transport):
        session, _ = _session(transport)
        _stream(session)
        assert transport.names().count("write_descriptor") == 1


class TestStreaming:
    def test_reading_is_converted_to_distance(self, transport):
        session, rec = _session(transport)
        _stream(session)
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-79")
        assert len(rec.readings) == 1
        assert rec.readings[0].rssi == -79
        assert rec.readings[0].distance == pytest.approx(10.0)
        assert session.last_reading is rec.readings[0]

    @pytest.mark.parametrize("payload", [b"abc", b"", b"\xff\xfe"])
    def test_malformed_payload_dropped(self, transport, payload):
        session, rec = _session(transport)
        _stream(session)
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, payload)
        assert rec.readings == []
        assert session.state is S.STREAMING

    def test_oversized_payload_dropped(self, transport):
        session, rec = _session(transport)
        _stream(session)
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-" + b"9" * 400)
        assert rec.readings == []
        assert session.state is S.STREAMING
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-60")
        assert [r.rssi for r in rec.readings] == [-60]

    def test_other_characteristic_ignored(self, transport):
        session, rec = _session(transport)
        _stream(session)
        session.on_characteristic_changed("12345678-1234-5678-1234-56789abcdef2", b"-50")
        assert rec.readings == []

    def test_listener_error_does_not_break_session(self, transport):
        session, rec = _session(transport)
        _stream(session)

        def broken(reading):
            raise RuntimeError("display gone")

        session.add_reading_listener(broken)
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-60")
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-61")
        assert [r.rssi for r in rec.readings] == [-60, -61]
        assert session.state is S.STREAMING


class TestFailures:
    def test_connect_error(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(False, status=133)
        assert session.state is S.FAILED
        assert "133" in session.failure_reason
        assert transport.close_count == 1

    def test_characteristic_not_found(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered(SERVICES[:1])
        assert session.state is S.FAILED
        assert RSSI_CHARACTERISTIC_UUID in session.failure_reason
        assert "write_descriptor" not in transport.names()
        assert transport.close_count == 1

    def test_descriptor_missing(self, transport):
        services = [GattService("svc", (GattCharacteristic(RSSI_CHARACTERISTIC_UUID, ()),))]
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered(services)
        assert session.state is S.FAILED

    def test_discovery_gatt_error(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered([], status=129)
        assert session.state is S.FAILED
        assert "129" in session.failure_reason

    def test_descriptor_write_error(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered(SERVICES)
        session.on_descriptor_write(status=3)
        assert session.state is S.FAILED
        assert transport.close_count == 1

    def test_async_transport_error(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_error(GattError("link lost"))
        assert session.state is S.FAILED
        assert session.failure_reason == "link lost"

    def test_failed_is_terminal_until_reconnect(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(False, status=8)
        session.on_connection_state_change(True)
        session.on_services_discovered(SERVICES)
        assert session.state is S.FAILED

        assert session.connect(ADDRESS)
        assert session.state is S.CONNECTING
        assert session.failure_reason is None
        assert transport.names().count("connect") == 2

    def test_adapter_disabled_is_raised(self, make_transport):
        transport = make_transport(connect_error=AdapterDisabled("Bluetooth is turned off"))
        session, _ = _session(transport)
        with pytest.raises(AdapterDisabled):
            session.connect(ADDRESS)
        assert session.state is S.FAILED
        assert "turned off" in session.failure_reason

    def test_gatt_error_on_connect_returns_false(self, make_transport):
        transport = make_transport(connect_error=GattError("device not found"))
        session, _ = _session(transport)
        assert session.connect(ADDRESS) is False
        assert session.state is S.FAILED
        assert "device not found" in session.failure_reason

    def test_connect_rejected_while_active(self, transport):
        session, _ = _session(transport)
        _stream(session)
        assert session.connect("11:22:33:44:55:66") is False
        assert session.state is S.STREAMING
        assert session.address == ADDRESS


class TestPermissions:
    def test_missing_permission_at_connect(self, transport):
        granted = {"value": False}
        session, rec = _session(transport, permission_checker=lambda: granted["value"])
        assert session.connect(ADDRESS) is False
        assert session.state is S.DISCONNECTED
        assert transport.calls == []
        assert len(rec.permissions) == 1
        assert isinstance(rec.permissions[0], PermissionRequired)
        assert "BLUETOOTH_CONNECT" in rec.permissions[0].permissions

        granted["value"] = True
        session.permission_granted()
        assert session.state is S.CONNECTING
        assert transport.calls == [("connect", ADDRESS)]

    def test_missing_permission_at_discovery(self, transport):
        granted = {"value": True}
        session, rec = _session(transport, permission_checker=lambda: granted["value"])
        session.connect(ADDRESS)
        granted["value"] = False
        session.on_connection_state_change(True)
        assert session.state is S.CONNECTED
        assert "discover_services" not in transport.names()
        assert len(rec.permissions) == 1

        granted["value"] = True
        session.permission_granted()
        assert session.state is S.DISCOVERING_SERVICES
        assert "discover_services" in transport.names()


class TestDisconnect:
    def test_disconnect_mid_discovery(self, transport):
        session, rec = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.disconnect()
        assert session.state is S.DISCOVERING_SERVICES

        session.on_services_discovered(SERVICES)
        assert session.state is S.DISCONNECTED
        assert rec.states[-2:] == [S.DISCONNECTING, S.DISCONNECTED]
        assert "write_descriptor" not in transport.names()
        assert transport.close_count == 1
        assert not session.handle_open

        session.disconnect()
        session.on_connection_state_change(False)
        assert transport.close_count == 1

    def test_disconnect_while_connecting(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.disconnect()
        session.on_connection_state_change(True)
        assert session.state is S.DISCONNECTED
        assert "discover_services" not in transport.names()
        assert transport.close_count == 1

    def test_disconnect_while_subscribing(self, transport):
        session, _ = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        session.on_services_discovered(SERVICES)
        session.disconnect()
        session.on_descriptor_write()
        assert session.state is S.DISCONNECTED
        assert transport.close_count == 1

    def test_disconnect_while_streaming(self, transport):
        session, rec = _session(transport)
        _stream(session)
        session.disconnect()
        assert rec.states[-3:] == [S.STREAMING, S.DISCONNECTING, S.DISCONNECTED]
        session.disconnect()
        assert transport.close_count == 1

    def test_peripheral_disconnect(self, transport):
        session, _ = _session(transport)
        _stream(session)
        session.on_connection_state_change(False)
        assert session.state is S.DISCONNECTED
        assert transport.close_count == 1
        session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, b"-50")
        assert session.last_reading is None

    def test_disconnect_after_failure(self, transport):
        session, rec = _session(transport)
        session.connect(ADDRESS)
        session.on_connection_state_change(False, status=133)
        session.disconnect()
        assert session.state is S.DISCONNECTED
        assert transport.close_count == 1

    def test_concurrent_callbacks_and_disconnect(self, transport):
        session, _ = _session(transport)
        _stream(session)
        start = threading.Event()

        def spam():
            start.wait()
            for i in range(200):
                session.on_characteristic_changed(RSSI_CHARACTERISTIC_UUID, str(-50 - i % 30).encode())

        workers = [threading.Thread(target=spam) for _ in range(4)]
        for w in workers:
            w.start()
        start.set()
        session.disconnect()
        for w in workers:
            w.join()
        assert session.state is S.DISCONNECTED
        assert transport.close_count == 1


class TestDeadlines:
    def test_connect_timeout(self, transport):
        failed = threading.Event()
        session, _ = _session(transport, connect_timeout=0.05)
        session.add_state_listener(lambda old, new: new is S.FAILED and failed.set())
        session.connect(ADDRESS)
        assert failed.wait(2.0)
        assert session.state is S.FAILED
        assert "connecting" in session.failure_reason
        assert transport.close_count == 1

    def test_discovery_timeout(self, transport):
        failed = threading.Event()
        session, _ = _session(transport, connect_timeout=0.05, discovery_timeout=0.05)
        session.add_state_listener(lambda old, new: new is S.FAILED and failed.set())
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        assert failed.wait(2.0)
        assert "discovering_services" in session.failure_reason

    def test_timer_cancelled_once_connected(self, transport):
        session, _ = _session(transport, connect_timeout=0.05)
        session.connect(ADDRESS)
        session.on_connection_state_change(True)
        threading.Event().wait(0.15)
        assert session.state is S.DISCOVERING_SERVICES

    def test_timeout_honours_pending_disconnect(self, transport):
        done = threading.Event()
        session, _ = _session(transport, connect_timeout=0.05)
        session.add_state_listener(lambda old, new: new is S.DISCONNECTED and done.set())
        session.connect(ADDRESS)
        session.disconnect()
        assert done.wait(2.0)
        assert session.failure_reason is None
        assert transport.close_count == 1
