"""信号管理模块。

将宿主进程收到的 OS 信号转换为对运行中子进程的操作：
- SIGINT: 取消运行中的进程（而不是直接退出）
- SIGTERM: 优雅退出（取消所有进程 + 等待终止通知 + 退出）

支持的配置：
- DDT_SIGINT_MODE: cancel | exit | cancel_then_exit
- DDT_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .registry import HandleRegistry

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    管理 SIGINT 和 SIGTERM 信号的处理：
    - 将 SIGINT 转换为"取消运行中进程"操作
    - 将 SIGTERM 转换为"优雅退出"操作

    取消本身是异步的（提权进程需要通过 pkexec 发送 SIGTERM），
    信号处理器只负责在事件循环上调度取消任务。

    Example:
        ```python
        registry = HandleRegistry()
        signal_manager = SignalManager(registry)

        async def main():
            await signal_manager.start()
            try:
                ...
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        registry: 运行中进程的注册表
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        registry: HandleRegistry,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            registry: 运行中进程的注册表
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 关闭时的回调函数
        """
        self.registry = registry

        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_tasks: set[asyncio.Task[int]] = set()

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            signal.signal(signal.SIGINT, lambda sig, frame: self._handle_sigint())
            logger.debug(f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})")

    async def stop(self) -> None:
        """停止信号监听，并等待已调度的取消任务完成。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32":
            signal.signal(signal.SIGINT, signal.default_int_handler)

        if self._cancel_tasks:
            await asyncio.gather(*self._cancel_tasks, return_exceptions=True)

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _schedule_cancel_all(self) -> None:
        """在事件循环上调度取消所有运行中进程。"""
        if self._loop is None:
            logger.warning("SignalManager not started, cannot cancel processes")
            return
        task = self._loop.create_task(self.registry.cancel_all())
        self._cancel_tasks.add(task)
        task.add_done_callback(self._cancel_tasks.discard)

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        根据配置的模式和当前状态决定行为：
        - 如果有运行中进程：取消进程
        - 如果没有运行中进程或模式为 EXIT：请求关闭
        - 如果在双击窗口内再次收到 SIGINT：强制退出
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if time_since_last < self.double_tap_window and self._shutdown_requested:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        if self.sigint_mode == SigintMode.EXIT:
            logger.info("SIGINT received (mode=exit), requesting shutdown")
            self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL:
            if self.registry.has_live_handles():
                logger.info(
                    f"SIGINT received (mode=cancel), cancelling "
                    f"{self.registry.live_count} process(es)"
                )
                self._schedule_cancel_all()
            else:
                logger.info("SIGINT received (mode=cancel), no running process, requesting shutdown")
                self._request_shutdown()

        elif self.sigint_mode == SigintMode.CANCEL_THEN_EXIT:
            if self.registry.has_live_handles():
                logger.info(
                    f"SIGINT received (mode=cancel_then_exit), cancelling "
                    f"{self.registry.live_count} process(es). "
                    f"Press Ctrl+C again within {self.double_tap_window}s to exit."
                )
                self._schedule_cancel_all()
                # 标记为已请求关闭，但不触发实际关闭
                self._shutdown_requested = True
            else:
                logger.info(
                    "SIGINT received (mode=cancel_then_exit), no running process, requesting shutdown"
                )
                self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：取消所有进程并请求关闭。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        if self.registry.has_live_handles():
            self._schedule_cancel_all()
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def _force_shutdown(self) -> None:
        """强制退出。

        设置 force_exit 标志并触发 shutdown event，
        实际退出由调用方在清理完成后执行。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True
        if self.registry.has_live_handles():
            self._schedule_cancel_all()
        self._request_shutdown()

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        if self.registry.has_live_handles():
            self._schedule_cancel_all()
        self._request_shutdown()
