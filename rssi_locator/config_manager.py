from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any, Optional

from .models import RSSI_CHARACTERISTIC_UUID, CLIENT_CHARACTERISTIC_CONFIG_UUID


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except ValueError:
            return v
    return default


def _optional_float(v: str) -> Optional[float]:
    if v.strip().lower() in ("", "none", "null", "off"):
        return None
    return float(v)


DEFAULT_CONFIG_PATH = _env_or_default(
    "RSSI_LOCATOR_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("RSSI_LOCATOR_MQTT_IP", "localhost"),
                "port": _env_or_default("RSSI_LOCATOR_MQTT_PORT", 1883, int),
                "uplink_topic": _env_or_default(
                    "RSSI_LOCATOR_MQTT_UPLINK_TOPIC", "/device/location/{deviceId}"
                ),
                "downlink_topic": _env_or_default(
                    "RSSI_LOCATOR_MQTT_DOWNLINK_TOPIC", "/device/scan/+"
                ),
                "reading_topic": _env_or_default(
                    "RSSI_LOCATOR_MQTT_READING_TOPIC", "/device/ble/{address}"
                ),
                "scan_request_topic": _env_or_default(
                    "RSSI_LOCATOR_MQTT_SCAN_REQUEST_TOPIC", "/device/scan_request"
                ),
            },
            "rssi_model": {
                # 1米处的RSSI值 (dBm)
                "tx_power": _env_or_default("RSSI_LOCATOR_TX_POWER", -59.0, float),
                # 路径损耗指数，室内一般 2~4
                "path_loss_exponent": _env_or_default("RSSI_LOCATOR_PATH_LOSS", 2.0, float),
            },
            "scan": {
                "interval": _env_or_default("RSSI_LOCATOR_SCAN_INTERVAL", 1.0, float),
                "name_filter": _env_or_default("RSSI_LOCATOR_SCAN_NAME_FILTER", None),
            },
            "ble": {
                "characteristic_uuid": _env_or_default(
                    "RSSI_LOCATOR_BLE_CHARACTERISTIC", RSSI_CHARACTERISTIC_UUID
                ),
                "descriptor_uuid": _env_or_default(
                    "RSSI_LOCATOR_BLE_DESCRIPTOR", CLIENT_CHARACTERISTIC_CONFIG_UUID
                ),
                "connect_timeout": _env_or_default(
                    "RSSI_LOCATOR_BLE_CONNECT_TIMEOUT", 10.0, _optional_float
                ),
                "discovery_timeout": _env_or_default(
                    "RSSI_LOCATOR_BLE_DISCOVERY_TIMEOUT", 10.0, _optional_float
                ),
            },
            "paths": {
                "reference_db": _env_or_default(
                    "RSSI_LOCATOR_REFERENCE_DB", os.path.join(".", "config", "reference_points.csv")
                ),
            },
            "logging": {
                "level": _env_or_default("RSSI_LOCATOR_LOG_LEVEL", "INFO"),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError) as e:
            logger.warning("读取配置文件 %s 失败，使用默认配置: %s", self.config_file, e)
            self.config = copy.deepcopy(self.default_config)
            self.save_config()

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            logger.warning("保存配置文件 %s 失败: %s", self.config_file, e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_scan_config(self):
        return self.config["scan"]

    def get_ble_config(self):
        return self.config["ble"]

    def get_logging_config(self):
        return self.config.get("logging", {})

    def get_paths(self):
        return self.config.get("paths", {})

    def get_reference_db_path(self):
        return self.get_paths()["reference_db"]

    def set_rssi_model_config(self, tx_power: float, path_loss_exponent: float):
        self.config["rssi_model"]["tx_power"] = tx_power
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        self.save_config()
