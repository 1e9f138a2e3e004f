"""RSSI Locator package.

This package provides:
- ConfigManager: YAML-based configuration management
- SignalModel: log-distance RSSI to distance conversion
- ReferenceRegistry: known reference points (CSV via pandas)
- ScanAggregator: per-cycle join of scan observations and trilateration
- BleSession: GATT session state machine streaming RSSI notifications
- MQTTScanProcessor: MQTT ingestion of scan batches and result publishing
"""

from .config_manager import ConfigManager
from .signal_model import SignalModel
from .reference_registry import ReferenceRegistry
from .aggregator import ScanAggregator
from .ble_session import BleSession
from .mqtt_processor import MQTTScanProcessor

__all__ = [
    "ConfigManager",
    "SignalModel",
    "ReferenceRegistry",
    "ScanAggregator",
    "BleSession",
    "MQTTScanProcessor",
]
