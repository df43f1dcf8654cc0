"""运行中进程的登记与管理模块。

提供进程级别的登记和取消，包括：
- HandleRegistry: 运行中 ProcessHandle 的登记和管理
- 宿主退出时批量取消

每个工具面板各自持有自己的 handle；注册表只是为了在宿主
收到 SIGINT/SIGTERM 时能找到并取消它们，不做排队或编排。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .runtime.cancellation import CancellationController
from .runtime.errors import CancelError
from .runtime.types import ProcessHandle

__all__ = ["HandleRegistry", "HandleInfo"]

logger = logging.getLogger(__name__)


@dataclass
class HandleInfo:
    """登记的进程信息。

    Attributes:
        handle: 进程 handle
        tool: 所属工具名称（如 nmap、dirb）
    """

    handle: ProcessHandle
    tool: str = ""

    def __repr__(self) -> str:
        return f"HandleInfo(tool={self.tool or '-'}, handle={self.handle!r})"


class HandleRegistry:
    """运行中进程的注册表。

    管理所有登记的 handle，提供：
    - 登记和注销
    - 单个/批量取消
    - 运行状态查询

    线程安全：所有操作由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = HandleRegistry(CancellationController())

        handle, _ = await runner.spawn(command, on_data, on_terminate)
        registry.register(handle, tool="nmap")

        if registry.has_live_handles():
            cancelled = await registry.cancel_all()
        ```
    """

    def __init__(self, controller: Optional[CancellationController] = None) -> None:
        """初始化注册表。

        Args:
            controller: 取消控制器（默认使用 pkexec 提权包装）
        """
        self.controller = controller or CancellationController()
        self._handles: Dict[ProcessHandle, HandleInfo] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []

    def register(self, handle: ProcessHandle, tool: str = "") -> None:
        """登记 handle。

        Raises:
            ValueError: 如果 handle 已登记
        """
        if handle in self._handles:
            raise ValueError(f"Handle {handle!r} already registered")

        info = HandleInfo(handle=handle, tool=tool)
        self._handles[handle] = info
        logger.debug(f"Registered handle: {info}")

    def unregister(self, handle: ProcessHandle) -> bool:
        """注销 handle。

        Returns:
            是否成功注销（已登记则返回 True）
        """
        info = self._handles.pop(handle, None)
        if info is None:
            return False

        logger.debug(f"Unregistered handle: {info}")

        # 注册表变空时触发回调
        if not self._handles:
            for callback in list(self._on_empty_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")

        return True

    def get(self, handle: ProcessHandle) -> Optional[HandleInfo]:
        """获取登记信息。"""
        return self._handles.get(handle)

    async def cancel(self, handle: ProcessHandle) -> bool:
        """取消指定 handle 的进程。

        Returns:
            是否成功发起取消
        """
        if handle not in self._handles or not handle.is_live:
            return False
        try:
            await self.controller.cancel(handle)
        except CancelError as e:
            logger.warning(f"Cancel failed: {e}")
            return False
        return True

    async def cancel_all(self) -> int:
        """取消所有运行中且尚未请求取消的进程。

        Returns:
            成功发起取消的数量
        """
        cancelled = 0
        for info in list(self._handles.values()):
            if not info.handle.is_live or info.handle.cancel_requested:
                continue
            if await self.cancel(info.handle):
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} running process(es)")

        return cancelled

    def has_live_handles(self) -> bool:
        """是否存在运行中的进程。"""
        return any(info.handle.is_live for info in self._handles.values())

    @property
    def live_count(self) -> int:
        """运行中的进程数量。"""
        return sum(1 for info in self._handles.values() if info.handle.is_live)

    def list_live(self) -> list[HandleInfo]:
        """列出运行中的进程（按启动时间排序）。"""
        live = [info for info in self._handles.values() if info.handle.is_live]
        return sorted(live, key=lambda x: x.handle.started_at)

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """添加注册表变空时的回调。"""
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """移除注册表变空时的回调。"""
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def cleanup_done(self) -> int:
        """清理已终止但未注销的 handle。

        Returns:
            清理的数量
        """
        done = [info.handle for info in self._handles.values() if info.handle.terminated]
        for handle in done:
            self.unregister(handle)

        if done:
            logger.debug(f"Cleaned up {len(done)} terminated handle(s)")

        return len(done)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, handle: ProcessHandle) -> bool:
        return handle in self._handles
