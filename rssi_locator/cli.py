from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time

from .ble_session import BleSession
from .config_manager import ConfigManager
from .models import ConnectionState, ScanBatch, TargetCharacteristic
from .mqtt_processor import MQTTScanProcessor
from .reference_registry import ReferenceRegistry
from .aggregator import ScanAggregator
from .signal_model import SignalModel

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def _load_config(args) -> ConfigManager:
    config = ConfigManager(args.config)
    level = args.log_level or config.get_logging_config().get("level", "INFO")
    logging.getLogger().setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return config


def run_mqtt(args):
    config = _load_config(args)
    processor = MQTTScanProcessor(config)
    processor.start_scan_cycle()

    t = threading.Thread(target=processor.start_mqtt_client, daemon=True)
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        processor.stop_mqtt_client()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()


def run_stream(args):
    from .bleak_transport import BleakGattTransport

    config = _load_config(args)
    ble_config = config.get_ble_config()
    transport = BleakGattTransport()
    session = BleSession(
        transport,
        SignalModel.from_config(config),
        target=TargetCharacteristic(
            service_uuid=None,
            characteristic_uuid=ble_config["characteristic_uuid"],
            descriptor_uuid=ble_config["descriptor_uuid"],
        ),
        connect_timeout=ble_config.get("connect_timeout"),
        discovery_timeout=ble_config.get("discovery_timeout"),
    )

    publisher = None
    if args.publish:
        publisher = MQTTScanProcessor(config, registry=ReferenceRegistry())
        publisher.connect_publisher()

    def on_reading(reading):
        if reading.distance is None:
            print(f"RSSI: {reading.rssi} dBm, 估算距离: 无效")
        else:
            print(f"RSSI: {reading.rssi} dBm, 估算距离: {reading.distance:.2f} m")
        if publisher is not None:
            publisher.publish_reading(args.address, reading)

    finished = threading.Event()

    def on_state(old, new):
        if new in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            finished.set()

    session.add_reading_listener(on_reading)
    session.add_state_listener(on_state)

    def handle_sigint(sig, frame):
        session.disconnect()
        finished.set()

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    try:
        if session.connect(args.address):
            finished.wait()
    finally:
        session.disconnect()
        transport.shutdown()
        if publisher is not None:
            publisher.stop_mqtt_client()

    if session.state is ConnectionState.FAILED:
        print(f"连接失败: {session.failure_reason}", file=sys.stderr)
        return 1
    return 0


def run_distance(args):
    config = _load_config(args)
    distance = SignalModel.from_config(config).distance(args.rssi)
    if distance is None:
        print("invalid", file=sys.stderr)
        return 1
    print(f"{distance:.4f}")
    return 0


def run_calibrate(args):
    config = _load_config(args)
    model = SignalModel.from_config(config)
    model.update(args.tx_power, args.path_loss_exponent)
    print(f"tx_power={model.tx_power}, path_loss_exponent={model.path_loss_exponent}")
    return 0


def run_locate(args):
    config = _load_config(args)
    batch = ScanBatch.parse(args.batch, received_at=time.time())
    if batch is None:
        print("无法解析扫描数据", file=sys.stderr)
        return 1
    aggregator = ScanAggregator(
        ReferenceRegistry.load(config.get_reference_db_path()),
        SignalModel.from_config(config),
        name_filter=config.get_scan_config().get("name_filter"),
    )
    result = aggregator.process(batch)
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    return 0


def main(argv=None):
    setup_logging()
    parser = argparse.ArgumentParser(prog="rssi-locator", description="RSSI Locator CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 RSSI_LOCATOR_CONFIG")
    parser.add_argument("--log-level", default=None, help="日志级别，覆盖配置文件")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 服务端监听")
    p_run.set_defaults(func=run_mqtt)

    p_stream = sub.add_parser("stream", help="连接 BLE 外设并持续接收 RSSI")
    p_stream.add_argument("address", help="外设地址")
    p_stream.add_argument("--publish", action="store_true", help="通过 MQTT 发布读数")
    p_stream.set_defaults(func=run_stream)

    p_distance = sub.add_parser("distance", help="RSSI 换算距离")
    p_distance.add_argument("rssi", type=int)
    p_distance.set_defaults(func=run_distance)

    p_calibrate = sub.add_parser("calibrate", help="更新 RSSI 模型参数并写入配置")
    p_calibrate.add_argument("tx_power", type=float, help="1米处的RSSI值 (dBm)")
    p_calibrate.add_argument("path_loss_exponent", type=float, help="路径损耗指数")
    p_calibrate.set_defaults(func=run_calibrate)

    p_locate = sub.add_parser("locate", help="对一次扫描数据计算位置")
    p_locate.add_argument("batch", help="格式: id,rssi[,name];...;设备ID")
    p_locate.set_defaults(func=run_locate)

    args = parser.parse_args(argv)
    # 无子命令/无参数时默认启动服务器
    if not hasattr(args, "func"):
        return run_mqtt(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
