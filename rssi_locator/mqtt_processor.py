from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .aggregator import ScanAggregator
from .config_manager import ConfigManager
from .models import LocationResult, LocationResultStatus, RssiReading, ScanBatch
from .reference_registry import ReferenceRegistry
from .signal_model import SignalModel


logger = logging.getLogger(__name__)


def format_location(result: LocationResult) -> str:
    """上行定位消息：设备ID,x,y,精度,参考点数"""
    accuracy = result.accuracy if result.accuracy is not None else 0.0
    return (
        f"{result.device_id},"
        f"{result.x:.4f},"
        f"{result.y:.4f},"
        f"{accuracy:.2f},"
        f"{result.reference_count}"
    )


def format_reading(reading: RssiReading) -> str:
    distance = reading.distance if reading.distance is not None else -1.0
    return f"{reading.rssi},{distance:.2f}"


class MQTTScanProcessor:
    """订阅扫描上报，计算位置并发布结果"""

    def __init__(
        self,
        config_manager: ConfigManager,
        registry: Optional[ReferenceRegistry] = None,
        signal_model: Optional[SignalModel] = None,
    ):
        self.lock = threading.Lock()
        self.config_manager = config_manager
        self.client: Optional[mqtt.Client] = None

        # 参考点与计算器
        self.registry = registry or ReferenceRegistry.load(
            self.config_manager.get_reference_db_path()
        )
        self.signal_model = signal_model or SignalModel.from_config(self.config_manager)
        scan_config = self.config_manager.get_scan_config()
        self.scan_interval = float(scan_config.get("interval", 1.0))
        self.aggregator = ScanAggregator(
            self.registry, self.signal_model, name_filter=scan_config.get("name_filter")
        )
        self.aggregator.add_position_listener(self.on_location)

    # ---------- Core processing ----------
    def on_location(self, lr: LocationResult) -> None:
        """每个扫描周期的计算结果，定位成功时发布"""
        if lr.status is LocationResultStatus.SUCCESS:
            logger.info(
                "位置计算成功: (%.3f, %.3f), 参考点数: %s, 残差: %.2f",
                lr.x,
                lr.y,
                lr.reference_count,
                lr.accuracy,
            )
            if self.client is not None:
                self.publish_location(lr)
            return
        logger.warning("位置未知: %s", lr.message)

    def request_scan(self) -> None:
        """请求终端发起一次扫描（不等待结果）"""
        if self.client is None:
            return
        topic = self.config_manager.get_mqtt_config().get("scan_request_topic", "/device/scan_request")
        self.client.publish(topic, "scan")

    def start_scan_cycle(self) -> None:
        self.aggregator.start(self.request_scan, interval=self.scan_interval)
        logger.info("扫描周期已启动, 间隔: %.2fs", self.scan_interval)

    # ---------- MQTT ----------
    def start_mqtt_client(self):
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        try:
            mqtt_config = self.config_manager.get_mqtt_config()
            self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever()
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)

    def connect_publisher(self):
        """仅用于发布（BLE 读数），在后台线程中运行网络循环"""
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        mqtt_config = self.config_manager.get_mqtt_config()
        self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
        self.client.loop_start()
        logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])

    def stop_mqtt_client(self):
        self.aggregator.stop(timeout=self.scan_interval + 1.0)
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
                logger.info("MQTT连接已断开")
            except OSError as e:
                logger.error("断开MQTT连接时出错: %s", e)

    def publish_location(self, result: LocationResult) -> None:
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("uplink_topic", "/device/location/{deviceId}")
        self.client.publish(topic.format(deviceId=result.device_id), format_location(result))

    def publish_reading(self, address: str, reading: RssiReading) -> None:
        if self.client is None:
            return
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("reading_topic", "/device/ble/{address}")
        self.client.publish(topic.format(address=address), format_reading(reading))

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info("成功连接到MQTT服务器")
            mqtt_config = self.config_manager.get_mqtt_config()
            topic = mqtt_config.get("downlink_topic", "/device/scan/+")
            client.subscribe(topic)
            logger.info("已订阅主题: %s", topic)
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
            with self.lock:
                batch = ScanBatch.parse(payload, received_at=time.time())
                if batch is None or batch.is_empty:
                    logger.warning("消息解析无有效观测数据: %s", payload)
                    return
                self.aggregator.submit(batch)
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
