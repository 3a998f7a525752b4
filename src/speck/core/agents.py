"""转换 agent 的能力抽象。

流水线从不关心文件是如何生成的，只读取 agent 自行报告的 AgentResult。
CommandAgent 把一个外部命令包装成 agent：输出目录通过环境变量传入，
执行前后对比输出目录即可得到写入的文件列表。
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from speck.core.staging_types import AgentResult, FileCategory, StagingOutputDirs
from speck.utils.files import iter_files

# 每个环境变量对应的输出目录
OUTPUT_DIR_ENV = {
    "SPECK_SCRIPTS_DIR": FileCategory.SCRIPTS,
    "SPECK_COMMANDS_DIR": FileCategory.COMMANDS,
    "SPECK_AGENTS_DIR": FileCategory.AGENTS,
    "SPECK_SKILLS_DIR": FileCategory.SKILLS,
}

# agent 1 改写脚本；agent 2 改写命令、agent 定义与 skill
AGENT1_CATEGORIES = (FileCategory.SCRIPTS,)
AGENT2_CATEGORIES = (FileCategory.COMMANDS, FileCategory.AGENTS, FileCategory.SKILLS)


@runtime_checkable
class TransformAgent(Protocol):
    """向暂存输出目录写入文件并报告结果的外部协作者。"""

    name: str

    def run(self, output_dirs: StagingOutputDirs) -> AgentResult:
        ...


def _resolve_bin(name: str) -> str:
    resolved = shutil.which(name)
    return resolved if resolved else name


def _snapshot(dirs: Sequence[Path]) -> dict[Path, tuple[int, int]]:
    snapshot: dict[Path, tuple[int, int]] = {}
    for root in dirs:
        for path in iter_files(root):
            stat = path.stat()
            snapshot[path] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


class CommandAgent:
    """以子进程方式运行的 agent。

    属性：
        name：agent 名称（用于日志与错误信息）
        command：命令行（字符串按 shell 规则拆分）
        categories：该 agent 负责的输出目录；SPECK_OUTPUT_DIR 指向第一个
        timeout：超时时间（秒），None 表示不限制
        cwd：工作目录（默认当前目录）
    """

    def __init__(
        self,
        name: str,
        command: str | Sequence[str],
        categories: Sequence[FileCategory],
        timeout: float | None = None,
        cwd: Path | None = None,
    ) -> None:
        if not categories:
            raise ValueError("categories 不能为空")
        self.name = name
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.categories = tuple(categories)
        self.timeout = timeout
        self.cwd = cwd

    def _build_env(self, output_dirs: StagingOutputDirs) -> dict[str, str]:
        env = dict(os.environ)
        for var, category in OUTPUT_DIR_ENV.items():
            env[var] = str(output_dirs.for_category(category))
        env["SPECK_OUTPUT_DIR"] = str(output_dirs.for_category(self.categories[0]))
        return env

    def run(self, output_dirs: StagingOutputDirs) -> AgentResult:
        """运行命令并报告写入的文件。"""
        if not self.command:
            return AgentResult(success=False, error=f"{self.name}: 未配置命令")

        watched = [output_dirs.for_category(c) for c in self.categories]
        before = _snapshot(watched)
        cmd = [_resolve_bin(self.command[0]), *self.command[1:]]
        started = time.monotonic()

        def _elapsed_ms() -> float:
            return round((time.monotonic() - started) * 1000, 1)

        try:
            completed = subprocess.run(
                cmd,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._build_env(output_dirs),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return AgentResult(
                success=False,
                duration=_elapsed_ms(),
                error=f"{self.name}: 找不到可执行文件 {self.command[0]}",
            )
        except subprocess.TimeoutExpired:
            return AgentResult(
                success=False,
                duration=_elapsed_ms(),
                error=f"{self.name}: 执行超时（{self.timeout}s）",
            )

        after = _snapshot(watched)
        written = sorted(str(path) for path, sig in after.items() if before.get(path) != sig)

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            detail = stderr.splitlines()[-1] if stderr else "无错误输出"
            return AgentResult(
                success=False,
                files_written=written,
                duration=_elapsed_ms(),
                error=f"{self.name}: 退出码 {completed.returncode}：{detail}",
            )

        return AgentResult(success=True, files_written=written, duration=_elapsed_ms())
