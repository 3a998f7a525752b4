"""暂存转换流水线的异常类型。

底层的 staging_manager 函数直接抛出这些异常；
transform 编排层负责捕获并转换为 OrchestrationResult。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from speck.core.staging_types import FileConflict


class StagingError(Exception):
    """暂存相关错误的基础异常。"""

    pass


class AlreadyStagingError(StagingError):
    """已存在（进行中或遗留的）暂存目录。"""

    def __init__(self, existing: list[str]) -> None:
        self.existing = list(existing)
        super().__init__(
            "已存在暂存目录："
            + ", ".join(self.existing)
            + "。请先提交或回滚（speck transform recover <dir> <commit|rollback>）"
        )


class AgentFailureError(StagingError):
    """Agent 报告执行失败，总会触发自动回滚。"""

    def __init__(self, agent: int, agent_error: str | None) -> None:
        self.agent = agent
        self.agent_error = agent_error or "Unknown error"
        super().__init__(f"Agent {agent} failed: {self.agent_error}")


class ConflictError(StagingError):
    """暂存期间生产文件被修改，阻止提交（除非强制）。"""

    def __init__(self, conflicts: list["FileConflict"]) -> None:
        self.conflicts = list(conflicts)
        super().__init__(
            f"File conflicts detected: {len(self.conflicts)} file(s) "
            "modified since staging started"
        )


class FilesystemError(StagingError):
    """创建、移动或删除过程中的 I/O 失败。"""

    pass


class InvalidTransitionError(StagingError):
    """非法的暂存状态迁移。"""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"非法状态迁移：{current} -> {target}")


class StagingNotFoundError(StagingError):
    """暂存目录或 staging.json 不存在（已提交/已回滚或已损坏）。"""

    pass


class ConfigError(StagingError):
    """config.yaml 内容不合法（非映射，或生产区域越出项目根目录）。"""

    pass


class StagingLockedError(StagingError):
    """另一个进程正在初始化暂存。"""

    def __init__(self, lock_path: str, holder: str = "") -> None:
        self.lock_path = lock_path
        self.holder = holder
        detail = f"（{holder}）" if holder else ""
        super().__init__(f"另一个转换正在初始化{detail}：{lock_path}")
