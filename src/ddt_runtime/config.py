"""DDT 环境变量配置管理。

环境变量:
    DDT_ELEVATION_PROGRAM: 提权包装程序
        - 默认 pkexec
        - 用于 elevated=True 的命令启动和取消

    DDT_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    DDT_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 取消运行中的进程（无运行中进程则退出）(默认)
        - exit = 直接退出
        - cancel_then_exit = 先取消进程，第二次才退出

    DDT_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出

    DDT_DRAIN_TIMEOUT: 进程退出后继续读取输出管道的时间（秒）
        - 默认 1.0 秒，限制在 0-30 秒
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from .runtime.elevation import DEFAULT_ELEVATION_PROGRAM, Elevation

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 只取消运行中的进程，不退出（如果没有运行中进程则退出）
    - EXIT: 直接退出
    - CANCEL_THEN_EXIT: 先取消进程，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量，限制在 [low, high] 范围内。"""
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


@dataclass
class Config:
    """DDT 配置。

    Attributes:
        elevation_program: 提权包装程序
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
        drain_timeout: 进程退出后读取剩余输出的时间（秒）
    """

    elevation_program: str = DEFAULT_ELEVATION_PROGRAM
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0
    drain_timeout: float = 1.0

    @property
    def elevation(self) -> Elevation:
        """按配置构造提权包装。"""
        return Elevation(program=self.elevation_program)

    def __repr__(self) -> str:
        return (
            f"Config(elevation_program={self.elevation_program}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window}, "
            f"drain_timeout={self.drain_timeout})"
        )


def _generate_log_file_path() -> str:
    """生成临时目录下带时间戳的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "ddt-runtime"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"ddt_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("DDT_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    elevation_program = os.environ.get("DDT_ELEVATION_PROGRAM", "").strip()

    return Config(
        elevation_program=elevation_program or DEFAULT_ELEVATION_PROGRAM,
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(os.environ.get("DDT_SIGINT_MODE") or "cancel"),
        sigint_double_tap_window=_parse_float(
            os.environ.get("DDT_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
        drain_timeout=_parse_float(os.environ.get("DDT_DRAIN_TIMEOUT"), 1.0, 0.0, 30.0),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
