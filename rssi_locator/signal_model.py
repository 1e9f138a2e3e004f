from __future__ import annotations

import math
from typing import Optional

from .config_manager import ConfigManager

DEFAULT_TX_POWER = -59.0
DEFAULT_PATH_LOSS_EXPONENT = 2.0


def rssi_to_distance(
    rssi: float,
    tx_power: float = DEFAULT_TX_POWER,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> Optional[float]:
    """
    对数距离路径损耗模型，返回距离 (单位: 米)
    d = 10 ^ ((tx_power - rssi) / (10 * n))
    n 为 0 或结果溢出时返回 None
    """
    if path_loss_exponent == 0:
        return None
    try:
        exponent = (tx_power - rssi) / (10.0 * path_loss_exponent)
        distance = math.pow(10, exponent)
    except OverflowError:
        return None
    if not math.isfinite(distance):
        return None
    return distance


class SignalModel:
    """RSSI -> 距离 转换，参数来自配置以便按环境重新标定"""

    def __init__(
        self,
        tx_power: float = DEFAULT_TX_POWER,
        path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        config_manager: Optional[ConfigManager] = None,
    ):
        # 1米处的RSSI值 (dBm)
        self.tx_power = float(tx_power)
        # 路径损耗指数
        self.path_loss_exponent = float(path_loss_exponent)
        self.config_manager = config_manager

    @classmethod
    def from_config(cls, config_manager: ConfigManager) -> "SignalModel":
        rssi_config = config_manager.get_rssi_model_config()
        return cls(
            tx_power=rssi_config.get("tx_power", DEFAULT_TX_POWER),
            path_loss_exponent=rssi_config.get("path_loss_exponent", DEFAULT_PATH_LOSS_EXPONENT),
            config_manager=config_manager,
        )

    def update(self, tx_power: float, path_loss_exponent: float) -> None:
        """更新模型参数，有配置时同步保存"""
        self.tx_power = float(tx_power)
        self.path_loss_exponent = float(path_loss_exponent)
        if self.config_manager is not None:
            self.config_manager.set_rssi_model_config(self.tx_power, self.path_loss_exponent)

    def distance(self, rssi: float) -> Optional[float]:
        return rssi_to_distance(rssi, self.tx_power, self.path_loss_exponent)
