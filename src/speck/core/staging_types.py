"""暂存转换流水线的数据模型。

staging.json 使用 camelCase 键名，便于与命令脚本交换；
Python 侧统一使用 dataclass，并通过 to_dict / from_dict 序列化。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

STAGING_METADATA_FILE = "staging.json"


class StagingStatus(Enum):
    """一次暂存转换尝试的状态。"""

    STAGING = "staging"
    AGENT1_COMPLETE = "agent1-complete"
    AGENT2_COMPLETE = "agent2-complete"
    READY = "ready"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"

    @property
    def is_terminal(self) -> bool:
        return not STATUS_TRANSITIONS[self]


# 每个状态允许迁移到的下一状态；空集合表示终止状态
STATUS_TRANSITIONS: dict[StagingStatus, frozenset[StagingStatus]] = {
    StagingStatus.STAGING: frozenset(
        {StagingStatus.AGENT1_COMPLETE, StagingStatus.ROLLED_BACK}
    ),
    StagingStatus.AGENT1_COMPLETE: frozenset(
        {StagingStatus.AGENT2_COMPLETE, StagingStatus.ROLLED_BACK}
    ),
    StagingStatus.AGENT2_COMPLETE: frozenset(
        {StagingStatus.READY, StagingStatus.ROLLED_BACK}
    ),
    StagingStatus.READY: frozenset(
        {StagingStatus.COMMITTING, StagingStatus.ROLLED_BACK}
    ),
    StagingStatus.COMMITTING: frozenset(
        {StagingStatus.COMMITTED, StagingStatus.ROLLED_BACK}
    ),
    StagingStatus.COMMITTED: frozenset(),
    StagingStatus.ROLLED_BACK: frozenset(),
}


def validate_status_transition(current: StagingStatus, target: StagingStatus) -> bool:
    """校验状态迁移是否允许。

    状态只能沿 staging -> agent1-complete -> agent2-complete -> ready
    -> committing -> committed 前进；任意非终止状态都可以迁移到 rolled-back。

    参数：
        current：当前状态
        target：目标状态

    返回：
        迁移合法则为 True，否则为 False
    """
    return target in STATUS_TRANSITIONS[current]


class FileCategory(Enum):
    """暂存目录下的子目录，每个对应一个生产区域。"""

    SCRIPTS = "scripts"
    COMMANDS = "commands"
    AGENTS = "agents"
    SKILLS = "skills"


class ConflictKind(Enum):
    """文件冲突类型。"""

    MODIFIED = "modified"  # mtime 或大小与基线不同
    DELETED = "deleted"    # 基线中存在，现在不存在
    CREATED = "created"    # 基线中不存在，现在出现在待覆盖路径上


@dataclass(frozen=True)
class FileBaseline:
    """单个生产文件在暂存开始时的快照。

    属性：
        exists：文件是否存在
        mtime：修改时间（纳秒），不存在时为 None
        size：文件大小（字节），不存在时为 None
    """

    exists: bool
    mtime: int | None = None
    size: int | None = None

    @classmethod
    def capture(cls, path: Path) -> "FileBaseline":
        """读取文件当前状态。"""
        try:
            stat = path.stat()
        except FileNotFoundError:
            return cls(exists=False)
        return cls(exists=True, mtime=stat.st_mtime_ns, size=stat.st_size)

    def to_dict(self) -> dict[str, Any]:
        return {"exists": self.exists, "mtime": self.mtime, "size": self.size}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileBaseline":
        try:
            return cls(
                exists=bool(data["exists"]),
                mtime=data["mtime"],
                size=data["size"],
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"无效的文件基线：{data!r}") from exc


@dataclass(frozen=True)
class ProductionBaseline:
    """暂存开始时生产区域的完整快照，创建后不再修改。

    属性：
        files：相对项目根目录的 POSIX 路径 -> FileBaseline
        captured_at：快照时间（ISO 格式）
    """

    files: dict[str, FileBaseline] = field(default_factory=dict)
    captured_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": {path: info.to_dict() for path, info in self.files.items()},
            "capturedAt": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProductionBaseline":
        files_data = data.get("files", {})
        if not isinstance(files_data, dict):
            raise ValueError("productionBaseline.files 必须是对象")
        return cls(
            files={path: FileBaseline.from_dict(info) for path, info in files_data.items()},
            captured_at=str(data.get("capturedAt", "")),
        )


@dataclass(frozen=True)
class AgentResult:
    """外部 agent 自行报告的执行结果。

    属性：
        success：是否成功
        files_written：写入的文件路径列表
        duration：耗时（毫秒）
        error：失败原因
    """

    success: bool
    files_written: list[str] = field(default_factory=list)
    duration: float = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "filesWritten": list(self.files_written),
            "error": self.error,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentResult":
        try:
            return cls(
                success=bool(data["success"]),
                files_written=[str(p) for p in data.get("filesWritten", [])],
                duration=data.get("duration", 0),
                error=data.get("error"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"无效的 agent 结果：{data!r}") from exc


@dataclass(frozen=True)
class AgentResults:
    """两个 agent 的结果，每个只会被写入一次。"""

    agent1: AgentResult | None = None
    agent2: AgentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent1": self.agent1.to_dict() if self.agent1 else None,
            "agent2": self.agent2.to_dict() if self.agent2 else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentResults":
        agent1 = data.get("agent1")
        agent2 = data.get("agent2")
        return cls(
            agent1=AgentResult.from_dict(agent1) if agent1 else None,
            agent2=AgentResult.from_dict(agent2) if agent2 else None,
        )


@dataclass(frozen=True)
class StagingMetadata:
    """持久化在 staging.json 中的暂存元数据。

    属性：
        status：当前状态
        start_time：暂存开始时间（ISO 格式）
        target_version：目标上游版本
        previous_version：上一次成功转换的版本（首次转换为 None）
        agent_results：agent 执行结果
        production_baseline：生产区域基线快照
    """

    status: StagingStatus
    start_time: str
    target_version: str
    previous_version: str | None = None
    agent_results: AgentResults = field(default_factory=AgentResults)
    production_baseline: ProductionBaseline = field(default_factory=ProductionBaseline)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典以便 JSON 序列化。"""
        return {
            "status": self.status.value,
            "startTime": self.start_time,
            "targetVersion": self.target_version,
            "previousVersion": self.previous_version,
            "agentResults": self.agent_results.to_dict(),
            "productionBaseline": self.production_baseline.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagingMetadata":
        """从 staging.json 内容创建实例。

        异常：
            ValueError：缺少必填字段或字段取值非法
        """
        if not isinstance(data, dict):
            raise ValueError("staging.json 顶层必须是对象")
        missing = [
            key
            for key in ("status", "startTime", "targetVersion", "agentResults", "productionBaseline")
            if key not in data
        ]
        if missing:
            raise ValueError(f"staging.json 缺少字段：{', '.join(missing)}")

        return cls(
            status=StagingStatus(data["status"]),
            start_time=str(data["startTime"]),
            target_version=str(data["targetVersion"]),
            previous_version=data.get("previousVersion"),
            agent_results=AgentResults.from_dict(data["agentResults"] or {}),
            production_baseline=ProductionBaseline.from_dict(data["productionBaseline"] or {}),
        )


@dataclass(frozen=True)
class StagingOutputDirs:
    """agent 需要写入的暂存输出目录。"""

    scripts_dir: Path
    commands_dir: Path
    agents_dir: Path
    skills_dir: Path

    def for_category(self, category: FileCategory) -> Path:
        return {
            FileCategory.SCRIPTS: self.scripts_dir,
            FileCategory.COMMANDS: self.commands_dir,
            FileCategory.AGENTS: self.agents_dir,
            FileCategory.SKILLS: self.skills_dir,
        }[category]


@dataclass(frozen=True)
class StagingContext:
    """一次转换尝试的句柄。

    root_dir 唯一标识一棵进行中的暂存树；目录被删除后该上下文即失效。
    """

    root_dir: Path
    target_version: str
    metadata: StagingMetadata
    project_root: Path

    @property
    def scripts_dir(self) -> Path:
        return self.category_dir(FileCategory.SCRIPTS)

    @property
    def commands_dir(self) -> Path:
        return self.category_dir(FileCategory.COMMANDS)

    @property
    def agents_dir(self) -> Path:
        return self.category_dir(FileCategory.AGENTS)

    @property
    def skills_dir(self) -> Path:
        return self.category_dir(FileCategory.SKILLS)

    @property
    def metadata_path(self) -> Path:
        return self.root_dir / STAGING_METADATA_FILE

    @property
    def status(self) -> StagingStatus:
        return self.metadata.status

    def category_dir(self, category: FileCategory) -> Path:
        return self.root_dir / category.value


@dataclass(frozen=True)
class StagedFile:
    """暂存树中的一个文件及其对应的生产路径。"""

    staging_path: Path
    production_path: Path
    category: FileCategory
    relative_path: str


@dataclass(frozen=True)
class FileConflict:
    """暂存期间被外部修改的生产文件。

    属性：
        path：相对项目根目录的路径
        baseline_mtime：基线 mtime（纳秒），基线中不存在则为 None
        current_mtime：当前 mtime（纳秒），文件已删除则为 None
        kind：冲突类型
    """

    path: str
    baseline_mtime: int | None
    current_mtime: int | None
    kind: ConflictKind = ConflictKind.MODIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "baselineMtime": self.baseline_mtime,
            "currentMtime": self.current_mtime,
            "kind": self.kind.value,
        }


@dataclass
class OrchestrationResult:
    """编排函数的统一返回值；预期内的失败不会以异常形式抛出。"""

    success: bool
    context: StagingContext | None = None
    error: str | None = None
    files_committed: list[str] | None = None
    conflicts: list[FileConflict] | None = None
    message: str | None = None
    info: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """转换为 CLI 输出用的字典。"""
        result: dict[str, Any] = {"success": self.success}
        if self.context is not None:
            result["rootDir"] = str(self.context.root_dir)
            result["targetVersion"] = self.context.target_version
            result["status"] = self.context.status.value
        if self.info is not None:
            result["info"] = self.info
        if self.error:
            result["error"] = self.error
        if self.message:
            result["message"] = self.message
        if self.files_committed is not None:
            result["filesCommitted"] = list(self.files_committed)
        if self.conflicts is not None:
            result["conflicts"] = [c.to_dict() for c in self.conflicts]
        return result
