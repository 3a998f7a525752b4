"""上游转换的暂存编排。

在两个 agent 运行前后管理暂存生命周期：

1. initialize_staging：创建暂存树并捕获生产基线
2. get_staging_output_dirs：告诉 agent 应写入的目录
3. record_agent1_complete / record_agent2_complete：推进状态；agent 失败则自动回滚
4. commit_staging_to_production / rollback_staging_changes：提交或放弃

这里的函数不会因预期内的失败抛出异常，而是返回 OrchestrationResult(success=False)。
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from pathlib import Path

import yaml

from speck.core.agents import TransformAgent
from speck.core.config import Config, load_project_config
from speck.core.errors import (
    AgentFailureError,
    AlreadyStagingError,
    ConflictError,
    InvalidTransitionError,
    StagingError,
    StagingLockedError,
)
from speck.core.history import (
    TransformationHistoryError,
    TransformationStatus,
    add_transformation_entry,
    get_latest_transformed_version,
)
from speck.core.staging_manager import (
    acquire_init_lock,
    capture_production_baseline,
    commit_staging,
    create_staging_directory,
    detect_file_conflicts,
    detect_orphaned_staging,
    inspect_staging,
    load_staging_context,
    refresh_context,
    release_init_lock,
    rollback_staging,
    update_staging_status,
)
from speck.core.staging_types import (
    AgentResult,
    OrchestrationResult,
    StagingContext,
    StagingOutputDirs,
    StagingStatus,
)
from speck.utils.files import remove_tree, resolve_project_root
from speck.version import is_version_gte

logger = logging.getLogger(__name__)


class RecoveryAction(Enum):
    """遗留暂存树的处理方式。"""

    COMMIT = "commit"
    ROLLBACK = "rollback"
    INSPECT = "inspect"


def _previous_version(project_root: Path, config: Config) -> str | None:
    try:
        return get_latest_transformed_version(config.transform.history_path(project_root))
    except TransformationHistoryError as exc:
        logger.warning("忽略无法读取的转换历史：%s", exc)
        return None


def _record_history(
    context: StagingContext,
    status: TransformationStatus,
    commit_sha: str = "",
    error_details: str | None = None,
) -> None:
    """写入转换历史；失败只记录警告，不影响已完成的提交或回滚。"""
    project_root = context.project_root
    try:
        add_transformation_entry(
            load_project_config(project_root).transform.history_path(project_root),
            context.target_version,
            commit_sha,
            status,
            error_details=error_details,
        )
    except (TransformationHistoryError, StagingError, OSError, yaml.YAMLError) as exc:
        logger.warning("无法写入转换历史（%s %s）：%s", context.target_version, status.value, exc)


# ============================================================================
# 初始化
# ============================================================================


def initialize_staging(target_version: str, project_root: Path | None = None) -> OrchestrationResult:
    """为一次转换创建暂存树并捕获生产基线。

    只要存在任何版本的暂存树（进行中或遗留的）就拒绝开始新的尝试。
    检查与创建在初始化锁内完成，并发的初始化只有一个能成功。

    参数：
        target_version：要转换到的上游版本
        project_root：项目根目录（默认向上查找 .speck，找不到则使用当前目录）

    返回：
        成功时 context 为状态 staging 的 StagingContext
    """
    root = resolve_project_root(project_root)

    try:
        config = load_project_config(root)
        lock_path = acquire_init_lock(config.transform.staging_root(root), target_version)
        try:
            existing = detect_orphaned_staging(root, config)
            if existing:
                raise AlreadyStagingError([str(p) for p in existing])

            previous = _previous_version(root, config)
            if previous and not is_version_gte(target_version, previous):
                logger.warning("目标版本 %s 不高于上次转换的版本 %s", target_version, previous)

            context = create_staging_directory(root, target_version, previous, config)
            try:
                context = capture_production_baseline(context, config)
            except Exception:
                remove_tree(context.root_dir)
                raise
        finally:
            release_init_lock(lock_path)
    except (AlreadyStagingError, StagingLockedError) as exc:
        return OrchestrationResult(success=False, error=str(exc))
    except (StagingError, OSError, ValueError, yaml.YAMLError) as exc:
        return OrchestrationResult(success=False, error=f"Failed to initialize staging: {exc}")

    logger.info("已初始化暂存：%s -> %s", target_version, context.root_dir)
    return OrchestrationResult(success=True, context=context)


def get_staging_output_dirs(context: StagingContext) -> StagingOutputDirs:
    """返回 agent 需要写入的暂存目录（纯函数，无 I/O）。"""
    return StagingOutputDirs(
        scripts_dir=context.scripts_dir,
        commands_dir=context.commands_dir,
        agents_dir=context.agents_dir,
        skills_dir=context.skills_dir,
    )


# ============================================================================
# Agent 完成记录
# ============================================================================


def _record_agent_complete(context: StagingContext, result: AgentResult, agent: int) -> OrchestrationResult:
    expected = StagingStatus.STAGING if agent == 1 else StagingStatus.AGENT1_COMPLETE
    target = StagingStatus.AGENT1_COMPLETE if agent == 1 else StagingStatus.AGENT2_COMPLETE

    failure = None if result.success else AgentFailureError(agent, result.error)

    try:
        context = refresh_context(context)
    except StagingError as exc:
        error = f"Failed to record Agent {agent} completion: {exc}"
        if failure is not None:
            error = f"{failure}; {error}"
        return OrchestrationResult(success=False, error=error)

    if failure is not None:
        logger.error("%s，自动回滚", failure)
        rollback = rollback_staging_changes(context, str(failure))
        _record_history(context, TransformationStatus.FAILED, error_details=str(failure))
        error = str(failure) if rollback.success else f"{failure}; {rollback.error}"
        return OrchestrationResult(success=False, error=error)

    metadata = context.metadata
    already_recorded = (
        metadata.agent_results.agent1 if agent == 1 else metadata.agent_results.agent2
    ) is not None
    if metadata.status is not expected or already_recorded:
        exc = InvalidTransitionError(metadata.status.value, target.value)
        return OrchestrationResult(
            success=False,
            context=context,
            error=f"Failed to record Agent {agent} completion: {exc}",
        )

    agent_results = replace(metadata.agent_results, **{f"agent{agent}": result})
    context = replace(context, metadata=replace(metadata, agent_results=agent_results))

    try:
        context = update_staging_status(context, target)
        if agent == 2:
            context = update_staging_status(context, StagingStatus.READY)
    except (StagingError, OSError) as exc:
        error = f"Failed to record Agent {agent} completion: {exc}"
        rollback_staging_changes(context, error)
        return OrchestrationResult(success=False, error=error)

    logger.info(
        "Agent %d 完成：%d 个文件，耗时 %sms",
        agent,
        len(result.files_written),
        result.duration,
    )
    return OrchestrationResult(success=True, context=context)


def record_agent1_complete(context: StagingContext, result: AgentResult) -> OrchestrationResult:
    """记录 Agent 1（脚本改写）的结果。

    失败时立即回滚整个暂存树，返回的结果中不再包含可继续使用的 context。
    """
    return _record_agent_complete(context, result, agent=1)


def record_agent2_complete(context: StagingContext, result: AgentResult) -> OrchestrationResult:
    """记录 Agent 2（命令/agent/skill 改写）的结果，成功后状态变为 ready。"""
    return _record_agent_complete(context, result, agent=2)


# ============================================================================
# 提交与回滚
# ============================================================================


def commit_staging_to_production(
    context: StagingContext,
    force: bool = False,
    commit_sha: str = "",
) -> OrchestrationResult:
    """检测冲突后将暂存文件提交到生产目录。

    存在冲突且未强制时返回冲突列表，生产目录与暂存树都保持不变，便于检查后重试。
    状态为 committing 时继续一次被中断的提交（已移动的文件必然改变了生产 mtime，
    因此不再检测冲突）。提交成功后在转换历史中记录 transformed 条目。

    参数：
        context：状态为 ready 的暂存上下文
        force：即使存在冲突也提交
        commit_sha：上游提交 SHA，写入转换历史

    返回：
        成功时 files_committed 为所有已提交的生产路径
    """
    try:
        context = refresh_context(context)
    except StagingError as exc:
        return OrchestrationResult(success=False, error=f"Commit failed: {exc}")

    status = context.metadata.status
    if status not in (StagingStatus.READY, StagingStatus.COMMITTING):
        return OrchestrationResult(
            success=False,
            context=context,
            error=f"Cannot commit: staging status is '{status.value}', need 'ready'",
        )

    try:
        config = load_project_config(context.project_root)
        if status is StagingStatus.READY:
            conflicts = detect_file_conflicts(context, config=config)
            if conflicts and not force:
                error = ConflictError(conflicts)
                logger.warning("%s", error)
                return OrchestrationResult(
                    success=False,
                    context=context,
                    conflicts=conflicts,
                    error=str(error),
                )
            if conflicts:
                logger.warning("强制提交：覆盖 %d 个冲突文件", len(conflicts))

        committed, files = commit_staging(context, config)
    except (StagingError, OSError, yaml.YAMLError) as exc:
        return OrchestrationResult(success=False, context=context, error=f"Commit failed: {exc}")

    _record_history(committed, TransformationStatus.TRANSFORMED, commit_sha)
    return OrchestrationResult(success=True, context=committed, files_committed=files)


def rollback_staging_changes(context: StagingContext, reason: str) -> OrchestrationResult:
    """放弃暂存树，不触碰生产目录。

    可在任何状态下调用；暂存树已不存在时同样返回成功。
    reason 写入日志与结果消息。
    """
    logger.info("回滚暂存 %s：%s", context.target_version, reason)
    try:
        rolled_back = rollback_staging(context)
    except (StagingError, OSError) as exc:
        return OrchestrationResult(success=False, error=f"Rollback failed: {exc}")

    return OrchestrationResult(
        success=True,
        context=rolled_back,
        message=f"Rolled back: {reason}" if reason else "Rolled back",
    )


# ============================================================================
# 遗留暂存恢复
# ============================================================================


def check_for_orphaned_staging(project_root: Path | None = None) -> list[Path]:
    """列出磁盘上已存在的暂存树。"""
    return detect_orphaned_staging(resolve_project_root(project_root))


def get_orphan_info(staging_dir: Path, project_root: Path | None = None) -> dict | None:
    """返回遗留暂存树的版本、状态、开始时间与文件统计；无效目录返回 None。"""
    context = load_staging_context(staging_dir, project_root)
    if context is None:
        return None
    return inspect_staging(context)


def recover_orphaned_staging(
    staging_dir: Path,
    action: RecoveryAction | str,
    project_root: Path | None = None,
    force: bool = False,
) -> OrchestrationResult:
    """按指定方式处理一棵遗留的暂存树。

    commit 允许的状态：agent2-complete（先推进到 ready）、ready、committing；
    committed 表示提交已完成但暂存树未删除，只做清理。
    """
    action = RecoveryAction(action)
    staging_dir = Path(staging_dir)
    context = load_staging_context(staging_dir, project_root)

    if context is None:
        if action is RecoveryAction.ROLLBACK and staging_dir.is_dir():
            try:
                remove_tree(staging_dir)
            except OSError as exc:
                return OrchestrationResult(success=False, error=f"Rollback failed: {exc}")
            return OrchestrationResult(success=True, message="Removed corrupted staging directory")
        return OrchestrationResult(
            success=False,
            error=f"Invalid or corrupted staging directory: {staging_dir}",
        )

    if action is RecoveryAction.ROLLBACK:
        return rollback_staging_changes(context, "Manual orphan recovery")

    if action is RecoveryAction.INSPECT:
        return OrchestrationResult(success=True, context=context, info=inspect_staging(context))

    status = context.metadata.status
    if status is StagingStatus.COMMITTED:
        try:
            remove_tree(context.root_dir)
        except OSError as exc:
            return OrchestrationResult(success=False, context=context, error=f"Commit failed: {exc}")
        _record_history(context, TransformationStatus.TRANSFORMED)
        return OrchestrationResult(success=True, context=context, files_committed=[])

    if status is StagingStatus.AGENT2_COMPLETE:
        try:
            context = update_staging_status(context, StagingStatus.READY)
        except (StagingError, OSError) as exc:
            return OrchestrationResult(success=False, context=context, error=f"Commit failed: {exc}")
        status = StagingStatus.READY

    if status not in (StagingStatus.READY, StagingStatus.COMMITTING):
        return OrchestrationResult(
            success=False,
            context=context,
            error=f"Cannot commit: staging status is '{status.value}', need 'ready' or 'agent2-complete'",
        )

    return commit_staging_to_production(context, force=force)


# ============================================================================
# 完整流水线
# ============================================================================


def _run_agent(agent: TransformAgent, output_dirs: StagingOutputDirs) -> AgentResult:
    try:
        return agent.run(output_dirs)
    except Exception as exc:  # agent 是外部黑盒，异常一律视为失败
        logger.exception("Agent %s 抛出异常", getattr(agent, "name", agent))
        return AgentResult(success=False, error=f"{getattr(agent, 'name', 'agent')} raised: {exc}")


def run_transformation(
    target_version: str,
    agent1: TransformAgent,
    agent2: TransformAgent,
    project_root: Path | None = None,
    force: bool = False,
    commit_sha: str = "",
) -> OrchestrationResult:
    """依次驱动 初始化 -> agent 1 -> agent 2 -> 提交。

    agent 2 依赖 agent 1 的输出，两者严格按顺序运行。
    提交成功后在转换历史中记录 transformed 条目。
    """
    init = initialize_staging(target_version, project_root)
    if not init.success or init.context is None:
        return init
    context = init.context

    for agent, recorder in ((agent1, record_agent1_complete), (agent2, record_agent2_complete)):
        result = _run_agent(agent, get_staging_output_dirs(context))
        recorded = recorder(context, result)
        if not recorded.success or recorded.context is None:
            return recorded
        context = recorded.context

    return commit_staging_to_production(context, force=force, commit_sha=commit_sha)
