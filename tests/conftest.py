"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from ddt_runtime.runtime.elevation import Elevation  # noqa: E402
from ddt_runtime.runtime.process_runner import ProcessRunner  # noqa: E402

IS_WINDOWS = sys.platform == "win32"

# 假的提权包装：记录调用参数，然后直接执行（不真正提权）。
# kill 走 sh 内建命令，避免依赖 procps。
_FAKE_WRAPPER = """#!/bin/sh
printf '%s\\n' "$*" >> "{log}"
if [ "{deny}" = "1" ]; then
  echo "Error executing command as another user: Not authorized" >&2
  exit 127
fi
if [ "$1" = "kill" ]; then
  for last; do :; done
  kill -TERM "$last"
  exit $?
fi
exec "$@"
"""


def _write_wrapper(directory: Path, name: str, deny: bool) -> Path:
    log = directory / f"{name}.log"
    script = directory / name
    script.write_text(_FAKE_WRAPPER.format(log=log, deny="1" if deny else "0"))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


class FakeWrapper:
    """假提权包装的路径和调用日志。"""

    def __init__(self, script: Path) -> None:
        self.script = script
        self.log = script.parent / f"{script.name}.log"

    @property
    def elevation(self) -> Elevation:
        return Elevation(program=str(self.script))

    @property
    def calls(self) -> list[str]:
        if not self.log.exists():
            return []
        return self.log.read_text().splitlines()


@pytest.fixture
def runner() -> ProcessRunner:
    """使用较短超时的 ProcessRunner。"""
    return ProcessRunner(drain_timeout=0.5, term_timeout=0.5, kill_timeout=0.3)


@pytest.fixture
def fake_wrapper(tmp_path: Path) -> FakeWrapper:
    """允许执行的假提权包装。"""
    if IS_WINDOWS:
        pytest.skip("POSIX shell required")
    return FakeWrapper(_write_wrapper(tmp_path, "fake-pkexec", deny=False))


@pytest.fixture
def denying_wrapper(tmp_path: Path) -> FakeWrapper:
    """拒绝授权的假提权包装（退出码 127）。"""
    if IS_WINDOWS:
        pytest.skip("POSIX shell required")
    return FakeWrapper(_write_wrapper(tmp_path, "deny-pkexec", deny=True))


@pytest.fixture
def clean_env(monkeypatch):
    """移除所有 DDT_* 环境变量。"""
    for key in list(os.environ):
        if key.startswith("DDT_"):
            monkeypatch.delenv(key, raising=False)


# 就绪标记之前输出一整行超过 StreamReader 上限的内容，然后挂起。
_NOISY_WRAPPER = """#!/bin/sh
head -c 70000 /dev/zero | tr '\\0' x
exec sleep 30
"""


@pytest.fixture
def noisy_wrapper(tmp_path: Path) -> FakeWrapper:
    """输出超长行且不打印就绪标记的假提权包装。"""
    if IS_WINDOWS:
        pytest.skip("POSIX shell required")
    script = tmp_path / "noisy-pkexec"
    script.write_text(_NOISY_WRAPPER)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return FakeWrapper(script)
