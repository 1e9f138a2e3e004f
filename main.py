"""
入口转发

项目以包与 CLI 的形式提供：
  - 包名: rssi_locator
  - CLI: rssi-locator

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `rssi_locator.cli:main`。
"""

import sys

from rssi_locator.cli import main as _cli_main
from rssi_locator.cli import setup_logging as _setup_logging


def main():
    # 确保直接运行也有全局日志输出
    _setup_logging()
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
