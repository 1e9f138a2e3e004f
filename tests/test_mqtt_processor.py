"""Tests for MQTT ingestion and publishing."""

from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from rssi_locator.models import RssiReading
from rssi_locator.mqtt_processor import MQTTScanProcessor, format_reading


@pytest.fixture
def processor(config, registry, signal_model):
    p = MQTTScanProcessor(config, registry=registry, signal_model=signal_model)
    p.client = MagicMock()
    return p


def _msg(payload: str):
    return SimpleNamespace(payload=payload.encode("utf-8"), topic="/device/scan/phone")


def test_position_is_published(processor):
    processor.on_message(
        processor.client,
        None,
        _msg("AC:0B:FB:6F:9D:51,-73;52:EB:71:57:2E:E8,-76;0e:ae:b2:86:11:c8,-75;phone"),
    )
    processor.client.publish.assert_not_called()
    processor.aggregator.evaluate_fresh()
    processor.client.publish.assert_called_once()
    topic, payload = processor.client.publish.call_args[0]
    assert topic == "/device/location/phone"
    fields = payload.split(",")
    assert fields[0] == "phone"
    assert len(fields) == 5
    assert fields[-1] == "3"


def test_unknown_position_is_not_published(processor):
    processor.on_message(processor.client, None, _msg("AC:0B:FB:6F:9D:51,-73;phone"))
    processor.aggregator.evaluate_fresh()
    processor.client.publish.assert_not_called()


def test_garbage_message_is_ignored(processor):
    processor.on_message(processor.client, None, _msg("garbage"))
    processor.on_message(processor.client, None, SimpleNamespace(payload=b"\xff\xfe"))
    assert processor.aggregator.snapshot is None
    processor.client.publish.assert_not_called()


def test_on_connect_subscribes(processor):
    client = MagicMock()
    processor.on_connect(client, None, {}, 0)
    client.subscribe.assert_called_once_with("/device/scan/+")


def test_on_connect_failure_does_not_subscribe(processor):
    client = MagicMock()
    processor.on_connect(client, None, {}, 5)
    client.subscribe.assert_not_called()


def test_publish_reading(processor):
    processor.publish_reading("AA:BB", RssiReading(rssi=-79, distance=10.0))
    processor.client.publish.assert_called_once_with("/device/ble/AA:BB", "-79,10.00")


def test_format_reading_invalid_distance():
    assert format_reading(RssiReading(rssi=-60, distance=None)) == "-60,-1.00"


def test_default_registry_loaded_from_config(config, tmp_path):
    config.config["paths"]["reference_db"] = str(tmp_path / "points.csv")
    p = MQTTScanProcessor(config)
    assert len(p.registry) == 3


def test_request_scan_publishes_to_request_topic(processor):
    processor.request_scan()
    processor.client.publish.assert_called_once_with("/device/scan_request", "scan")


def test_request_scan_without_client_is_noop(config, registry, signal_model):
    p = MQTTScanProcessor(config, registry=registry, signal_model=signal_model)
    p.request_scan()


def test_scan_cycle_uses_configured_interval(config, registry, signal_model):
    config.config["scan"]["interval"] = 0.01
    p = MQTTScanProcessor(config, registry=registry, signal_model=signal_model)
    p.client = MagicMock()
    published = threading.Event()
    p.client.publish.side_effect = lambda topic, payload: (
        topic.startswith("/device/location/") and published.set()
    )
    assert p.scan_interval == 0.01

    p.on_message(
        p.client,
        None,
        _msg("AC:0B:FB:6F:9D:51,-73;52:EB:71:57:2E:E8,-76;0e:ae:b2:86:11:c8,-75;phone"),
    )
    p.start_scan_cycle()
    try:
        assert published.wait(2.0)
    finally:
        p.stop_mqtt_client()
    topics = [c[0][0] for c in p.client.publish.call_args_list]
    assert "/device/scan_request" in topics
    assert topics.count("/device/location/phone") == 1
