"""DDT 命令行入口。

运行单个外部命令，实时输出，Ctrl+C 取消：

    ddt-run [--elevated] [--save PATH] [--force] program [args...]

退出码：
    0   Success
    1   Failed（或保存失败）
    2   无法启动（缺少依赖 / SpawnError）
    130 UserCancelled 或强制退出
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys

import anyio

from . import __version__
from .config import get_config
from .registry import HandleRegistry
from .runtime.cancellation import CancellationController
from .runtime.errors import SpawnError
from .runtime.process_runner import ProcessRunner
from .runtime.types import Classification, Command, TerminationOutcome
from .session import ToolSession
from .signal_manager import SignalManager

__all__ = ["build_parser", "run_cli", "main", "exit_status"]

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_NOT_STARTED = 2
EXIT_CANCELLED = 130  # 128 + SIGINT(2)

# 请求关闭后等待终止通知的时间（秒）
SHUTDOWN_GRACE = 5.0


def build_parser() -> argparse.ArgumentParser:
    """构造命令行解析器。"""
    parser = argparse.ArgumentParser(
        prog="ddt-run",
        description="Run an external tool, stream its output and report how it ended.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--elevated",
        action="store_true",
        help="Run through the elevation wrapper (DDT_ELEVATION_PROGRAM, default pkexec)",
    )
    parser.add_argument("--save", metavar="PATH", help="Write the final output to PATH")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite PATH if it already exists",
    )
    parser.add_argument("program", help="Executable to run")
    parser.add_argument("arguments", nargs=argparse.REMAINDER, help="Arguments for the program")
    return parser


def exit_status(outcome: TerminationOutcome) -> int:
    """将终止分类映射为退出码。"""
    if outcome.classification is Classification.SUCCESS:
        return EXIT_SUCCESS
    if outcome.classification is Classification.USER_CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


async def run_cli(args: argparse.Namespace) -> int:
    """运行一次命令并返回退出码。"""
    config = get_config()
    logger.info(f"Starting ddt-run: {config}")

    command = Command(args.program, tuple(args.arguments), elevated=args.elevated)
    runner = ProcessRunner(elevation=config.elevation, drain_timeout=config.drain_timeout)
    registry = HandleRegistry(CancellationController(config.elevation))
    session = ToolSession(
        args.program,
        dependencies=[args.program],
        runner=runner,
        registry=registry,
        on_data=lambda chunk: print(chunk, flush=True),
    )

    missing = await session.check_dependencies()
    if missing:
        print(f"Missing dependencies: {', '.join(missing)}", file=sys.stderr)
        return EXIT_NOT_STARTED

    signal_manager = SignalManager(registry)
    wait_task: asyncio.Task[TerminationOutcome] | None = None
    shutdown_watcher: asyncio.Task[None] | None = None

    try:
        await signal_manager.start()

        try:
            await session.start(command)
        except SpawnError as e:
            print(str(e), file=sys.stderr)
            return EXIT_NOT_STARTED

        wait_task = asyncio.create_task(session.wait(), name="ddt-wait")
        shutdown_watcher = asyncio.create_task(
            signal_manager.wait_for_shutdown(), name="shutdown-watcher"
        )
        await asyncio.wait({wait_task, shutdown_watcher}, return_when=asyncio.FIRST_COMPLETED)

        if not wait_task.done():
            logger.info("Shutdown requested while the process is running, cancelling")
            await registry.cancel_all()
            with anyio.move_on_after(SHUTDOWN_GRACE):
                await asyncio.shield(wait_task)
            if not wait_task.done():
                # 强制终止，仍然会产生终止通知
                await runner.aclose()

        outcome = await wait_task
        print(outcome.message, flush=True)

    finally:
        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher
        await signal_manager.stop()
        await runner.aclose()

    if args.save:
        try:
            path = await session.save(args.save, confirm_overwrite=args.force)
        except FileExistsError as e:
            print(f"{e} (use --force to replace it)", file=sys.stderr)
            return EXIT_FAILED
        logger.info(f"Output saved to {path}")

    if signal_manager.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
        return EXIT_CANCELLED

    return exit_status(outcome)


def _configure_logging() -> None:
    """配置日志输出。"""
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 第三方库保持 WARNING，只对 ddt_runtime 命名空间启用详细日志
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("ddt_runtime").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """主入口点。"""
    args = build_parser().parse_args(argv)
    _configure_logging()
    sys.exit(asyncio.run(run_cli(args)))


if __name__ == "__main__":
    main()
