"""DDT Runtime - 外部安全工具的进程执行与生命周期核心。

环境变量:
    DDT_ELEVATION_PROGRAM: 提权包装程序 (默认 pkexec)
    DDT_LOG_DEBUG: 日志调试模式 (默认 false)
    DDT_SIGINT_MODE: SIGINT 处理模式 (默认 cancel)

用法:
    ddt-run nmap -T3 10.0.0.1
"""

__version__ = "0.1.0"

from .runtime import (
    CancelError,
    CancellationController,
    Classification,
    Command,
    OutputAggregator,
    ProcessHandle,
    ProcessRunner,
    SpawnError,
    TerminationOutcome,
    run_command,
)
from .session import ToolSession

__all__ = [
    "__version__",
    "CancelError",
    "CancellationController",
    "Classification",
    "Command",
    "OutputAggregator",
    "ProcessHandle",
    "ProcessRunner",
    "SpawnError",
    "TerminationOutcome",
    "ToolSession",
    "run_command",
]
