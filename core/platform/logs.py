"""Diagnostic logging setup."""
import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def parse_level(level: Union[str, int]) -> int:
    """把配置中的日志级别转换为 logging 常量（未知级别按 INFO 处理）。"""
    if isinstance(level, int):
        return level
    return _LEVELS.get(str(level).strip().lower(), logging.INFO)


def setup_logging(
    level: Union[str, int] = "info",
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """配置根日志：stderr 输出 + 可选文件输出。

    重复调用时会替换之前安装的处理器。

    Args:
        level: 日志级别
        log_file: 日志文件路径（None 表示不写文件）

    Returns:
        根 logger
    """
    root = logging.getLogger()
    root.setLevel(parse_level(level))
    for handler in list(root.handlers):
        if getattr(handler, "_tof_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._tof_handler = True
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._tof_handler = True
        root.addHandler(file_handler)

    return root
