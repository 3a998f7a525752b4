"""暂存目录管理模块。

负责暂存树的创建、基线快照、状态持久化、冲突检测、提交与回滚。
暂存树位于 <staging-root>/<version>/，结构如下：

    staging.json   持久化的 StagingMetadata
    scripts/       -> .speck/scripts
    commands/      -> .claude/commands
    agents/        -> .claude/agents
    skills/        -> .claude/skills

磁盘上的暂存目录本身就是“存在进行中的转换”的标记：
进程崩溃后重新读取 staging.json 即可恢复状态。
<staging-root>/.init.lock 只在初始化期间存在，保证同一时刻只有一个初始化在检查并创建暂存树。
本模块的函数以异常报告错误，见 speck.core.errors。
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from speck.core.config import Config, ConflictScope, load_project_config
from speck.core.errors import (
    AlreadyStagingError,
    FilesystemError,
    InvalidTransitionError,
    StagingError,
    StagingLockedError,
    StagingNotFoundError,
)
from speck.core.staging_types import (
    STAGING_METADATA_FILE,
    ConflictKind,
    FileBaseline,
    FileCategory,
    FileConflict,
    ProductionBaseline,
    StagedFile,
    StagingContext,
    StagingMetadata,
    StagingStatus,
    validate_status_transition,
)
from speck.utils.files import (
    find_project_root,
    iter_files,
    move_file,
    remove_tree,
    to_posix_relative,
)

logger = logging.getLogger(__name__)

INIT_LOCK_FILE = ".init.lock"
INIT_LOCK_TIMEOUT_MINUTES = 10


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _resolve_config(context: StagingContext, config: Config | None) -> Config:
    return config if config is not None else load_project_config(context.project_root)


def _validate_version_key(version: str) -> None:
    """版本号会作为目录名使用，不能包含路径分隔符。"""
    if not version or version.strip() != version:
        raise StagingError(f"无效的版本号：{version!r}")
    if version in (".", "..") or "/" in version or "\\" in version:
        raise StagingError(f"版本号不能包含路径分隔符：{version!r}")


# ============================================================================
# 元数据持久化
# ============================================================================


def write_metadata(root_dir: Path, metadata: StagingMetadata) -> None:
    """原子写入 staging.json（临时文件 + os.replace）。"""
    path = root_dir / STAGING_METADATA_FILE
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def read_metadata(root_dir: Path) -> StagingMetadata:
    """读取 staging.json。

    异常：
        StagingNotFoundError：暂存目录或 staging.json 不存在
        StagingError：内容损坏
    """
    path = root_dir / STAGING_METADATA_FILE
    if not path.exists():
        raise StagingNotFoundError(f"暂存目录不存在或缺少 {STAGING_METADATA_FILE}：{root_dir}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return StagingMetadata.from_dict(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise StagingError(f"{path} 已损坏：{exc}") from exc


def refresh_context(context: StagingContext) -> StagingContext:
    """以磁盘上的 staging.json 为准刷新上下文。"""
    return replace(context, metadata=read_metadata(context.root_dir))


# ============================================================================
# 初始化锁
# ============================================================================


def _lock_expired(lock_path: Path, timeout_minutes: int) -> bool:
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    return age > timeout_minutes * 60


def _lock_holder(lock_path: Path) -> str:
    try:
        info = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return ""
    if not isinstance(info, dict):
        return ""
    return f"{info.get('targetVersion', '?')}, pid {info.get('pid', '?')}@{info.get('hostname', '?')}"


def acquire_init_lock(
    staging_root: Path,
    version: str,
    timeout_minutes: int = INIT_LOCK_TIMEOUT_MINUTES,
) -> Path:
    """独占地创建 <staging-root>/.init.lock。

    锁只覆盖“检查已有暂存树 + 创建新暂存树”这一段，
    使不同版本的并发初始化无法同时通过检查。
    超过 timeout_minutes 未释放的锁视为崩溃遗留，会被清理后重新获取。

    返回：
        锁文件路径，交给 release_init_lock 释放

    异常：
        StagingLockedError：锁被占用且未超时
        FilesystemError：无法创建暂存根目录或锁文件
    """
    lock_path = staging_root / INIT_LOCK_FILE
    try:
        staging_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(f"无法创建暂存根目录 {staging_root}：{exc}") from exc

    info = {
        "targetVersion": version,
        "pid": os.getpid(),
        "hostname": socket.gethostname(),
        "startedAt": _now_iso(),
    }

    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if not _lock_expired(lock_path, timeout_minutes):
                raise StagingLockedError(str(lock_path), _lock_holder(lock_path)) from None
            logger.warning("清理过期的初始化锁 %s", lock_path)
            lock_path.unlink(missing_ok=True)
            continue
        except OSError as exc:
            raise FilesystemError(f"无法创建初始化锁 {lock_path}：{exc}") from exc

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info, f, ensure_ascii=False, indent=2)
        logger.debug("已获取初始化锁 %s", lock_path)
        return lock_path

    raise StagingLockedError(str(lock_path), _lock_holder(lock_path))


def release_init_lock(lock_path: Path) -> None:
    lock_path.unlink(missing_ok=True)
    logger.debug("已释放初始化锁 %s", lock_path)


# ============================================================================
# 创建与基线
# ============================================================================


def create_staging_directory(
    project_root: Path,
    version: str,
    previous_version: str | None = None,
    config: Config | None = None,
) -> StagingContext:
    """创建暂存目录及其子目录，并写入初始的 staging.json。

    参数：
        project_root：项目根目录
        version：目标上游版本（同时作为目录名）
        previous_version：上一次成功转换的版本
        config：项目配置（默认从 .speck/config.yaml 读取）

    返回：
        状态为 staging 的 StagingContext

    异常：
        AlreadyStagingError：同版本的暂存目录已存在
        FilesystemError：目录创建失败
    """
    _validate_version_key(version)
    project_root = Path(project_root).resolve()
    if config is None:
        config = load_project_config(project_root)

    staging_root = config.transform.staging_root(project_root)
    root_dir = staging_root / version

    try:
        staging_root.mkdir(parents=True, exist_ok=True)
        root_dir.mkdir(exist_ok=False)
    except FileExistsError as exc:
        raise AlreadyStagingError([str(root_dir)]) from exc
    except OSError as exc:
        raise FilesystemError(f"无法创建暂存目录 {root_dir}：{exc}") from exc

    metadata = StagingMetadata(
        status=StagingStatus.STAGING,
        start_time=_now_iso(),
        target_version=version,
        previous_version=previous_version,
    )

    try:
        for category in FileCategory:
            (root_dir / category.value).mkdir()
        write_metadata(root_dir, metadata)
    except OSError as exc:
        remove_tree(root_dir)
        raise FilesystemError(f"无法初始化暂存目录 {root_dir}：{exc}") from exc

    logger.debug("已创建暂存目录 %s", root_dir)
    return StagingContext(
        root_dir=root_dir,
        target_version=version,
        metadata=metadata,
        project_root=project_root,
    )


def capture_production_baseline(
    context: StagingContext,
    config: Config | None = None,
) -> StagingContext:
    """记录所有生产区域中现有文件的 mtime 与大小，并持久化。

    只允许在 staging 状态下执行；基线一旦写入便不再修改。
    """
    if context.metadata.status is not StagingStatus.STAGING:
        raise InvalidTransitionError(context.metadata.status.value, "capture-baseline")

    config = _resolve_config(context, config)
    files: dict[str, FileBaseline] = {}

    for category in FileCategory:
        production_dir = config.transform.production_dir(context.project_root, category)
        for path in iter_files(production_dir):
            key = to_posix_relative(path, context.project_root)
            files[key] = FileBaseline.capture(path)

    baseline = ProductionBaseline(files=files, captured_at=_now_iso())
    metadata = replace(context.metadata, production_baseline=baseline)
    write_metadata(context.root_dir, metadata)

    logger.debug("已捕获生产基线：%d 个文件", len(files))
    return replace(context, metadata=metadata)


def update_staging_status(context: StagingContext, status: StagingStatus) -> StagingContext:
    """迁移并持久化暂存状态。

    异常：
        InvalidTransitionError：迁移不被允许
    """
    current = context.metadata.status
    if not validate_status_transition(current, status):
        raise InvalidTransitionError(current.value, status.value)

    metadata = replace(context.metadata, status=status)
    write_metadata(context.root_dir, metadata)
    logger.debug("暂存状态 %s -> %s（%s）", current.value, status.value, context.target_version)
    return replace(context, metadata=metadata)


# ============================================================================
# 暂存文件
# ============================================================================


def list_staged_files(context: StagingContext, config: Config | None = None) -> list[StagedFile]:
    """列出暂存树中的所有文件（含嵌套目录）及其生产路径。"""
    config = _resolve_config(context, config)
    staged: list[StagedFile] = []

    for category in FileCategory:
        category_dir = context.category_dir(category)
        production_dir = config.transform.production_dir(context.project_root, category)
        for path in iter_files(category_dir):
            relative = to_posix_relative(path, category_dir)
            staged.append(
                StagedFile(
                    staging_path=path,
                    production_path=production_dir / relative,
                    category=category,
                    relative_path=relative,
                )
            )

    return staged


def generate_file_manifest(context: StagingContext, config: Config | None = None) -> list[dict[str, Any]]:
    """生成提交清单：每个暂存文件将被新增还是覆盖。"""
    manifest: list[dict[str, Any]] = []
    for staged in list_staged_files(context, config):
        manifest.append({
            "category": staged.category.value,
            "relativePath": staged.relative_path,
            "stagingPath": str(staged.staging_path),
            "productionPath": str(staged.production_path),
            "action": "overwrite" if staged.production_path.exists() else "create",
        })
    return manifest


# ============================================================================
# 冲突检测
# ============================================================================


def _compare_baseline(path: str, before: FileBaseline, now: FileBaseline) -> FileConflict | None:
    if before.exists and not now.exists:
        return FileConflict(path, before.mtime, None, ConflictKind.DELETED)
    if not before.exists and now.exists:
        return FileConflict(path, None, now.mtime, ConflictKind.CREATED)
    if before.exists and (before.mtime != now.mtime or before.size != now.size):
        return FileConflict(path, before.mtime, now.mtime, ConflictKind.MODIFIED)
    return None


def detect_file_conflicts(
    context: StagingContext,
    scope: ConflictScope | None = None,
    config: Config | None = None,
) -> list[FileConflict]:
    """将生产文件的当前状态与基线比较，找出暂存期间被外部修改的文件。

    staged 范围：检查将被覆盖的每个生产文件，以及基线中已被删除的文件。
    all 范围：额外检查基线中的所有文件。

    返回：
        按路径排序的全部冲突（而不只是第一个）
    """
    config = _resolve_config(context, config)
    if scope is None:
        scope = config.transform.conflict_scope

    project_root = context.project_root
    baseline = context.metadata.production_baseline.files

    candidates: set[str] = {
        to_posix_relative(staged.production_path, project_root)
        for staged in list_staged_files(context, config)
    }
    if scope is ConflictScope.ALL:
        candidates.update(baseline)
    else:
        candidates.update(
            path
            for path, info in baseline.items()
            if info.exists and not (project_root / path).exists()
        )

    missing = FileBaseline(exists=False)
    conflicts: list[FileConflict] = []
    for path in sorted(candidates):
        conflict = _compare_baseline(
            path,
            baseline.get(path, missing),
            FileBaseline.capture(project_root / path),
        )
        if conflict is not None:
            conflicts.append(conflict)

    if conflicts:
        logger.debug("检测到 %d 个冲突：%s", len(conflicts), [c.path for c in conflicts])
    return conflicts


# ============================================================================
# 提交与回滚
# ============================================================================


def commit_staging(
    context: StagingContext,
    config: Config | None = None,
) -> tuple[StagingContext, list[str]]:
    """将所有暂存文件移动到生产目录并删除暂存树。

    要求状态为 ready；状态为 committing 时视为继续一次被中断的提交。
    一旦开始移动就会坚持到全部完成，不做逐文件回退。

    返回：
        (状态为 committed 的上下文, 已提交的生产路径列表)

    异常：
        InvalidTransitionError：状态不是 ready / committing
        FilesystemError：移动或删除失败（暂存树保留，状态为 committing）
    """
    config = _resolve_config(context, config)
    current = context.metadata.status

    if current is StagingStatus.READY:
        context = update_staging_status(context, StagingStatus.COMMITTING)
    elif current is not StagingStatus.COMMITTING:
        raise InvalidTransitionError(current.value, StagingStatus.COMMITTING.value)

    committed: list[str] = []
    for staged in list_staged_files(context, config):
        try:
            move_file(staged.staging_path, staged.production_path)
        except OSError as exc:
            raise FilesystemError(
                f"移动 {staged.staging_path} -> {staged.production_path} 失败：{exc}"
            ) from exc
        committed.append(str(staged.production_path))

    context = update_staging_status(context, StagingStatus.COMMITTED)
    try:
        remove_tree(context.root_dir)
    except OSError as exc:
        raise FilesystemError(f"无法删除暂存目录 {context.root_dir}：{exc}") from exc

    logger.info("已提交 %d 个文件到生产目录（%s）", len(committed), context.target_version)
    return context, committed


def rollback_staging(context: StagingContext) -> StagingContext:
    """删除暂存树，不触碰生产目录。

    无论当前状态如何都会删除；目录已不存在时直接返回（幂等）。
    删除前先把 rolled-back 写入 staging.json，便于中途失败后识别。

    异常：
        FilesystemError：删除失败
    """
    rolled_back = replace(
        context,
        metadata=replace(context.metadata, status=StagingStatus.ROLLED_BACK),
    )

    if not context.root_dir.exists():
        logger.debug("暂存目录已不存在，跳过回滚：%s", context.root_dir)
        return rolled_back

    try:
        persisted = read_metadata(context.root_dir)
    except StagingError:
        persisted = None

    # 同一版本目录已被新的转换尝试重新创建，不属于该上下文
    if persisted is not None and persisted.start_time != context.metadata.start_time:
        logger.warning("暂存目录 %s 属于另一次转换尝试，跳过回滚", context.root_dir)
        return rolled_back

    try:
        if persisted is not None and not persisted.status.is_terminal:
            write_metadata(
                context.root_dir,
                replace(persisted, status=StagingStatus.ROLLED_BACK),
            )
        remove_tree(context.root_dir)
    except OSError as exc:
        raise FilesystemError(f"无法删除暂存目录 {context.root_dir}：{exc}") from exc

    return rolled_back


# ============================================================================
# 遗留暂存检测
# ============================================================================


def detect_orphaned_staging(project_root: Path, config: Config | None = None) -> list[Path]:
    """列出暂存根目录下所有已存在的暂存树（进行中或遗留的）。"""
    project_root = Path(project_root).resolve()
    if config is None:
        config = load_project_config(project_root)

    staging_root = config.transform.staging_root(project_root)
    if not staging_root.is_dir():
        return []
    return sorted(p for p in staging_root.iterdir() if p.is_dir())


def load_staging_context(
    staging_dir: Path,
    project_root: Path | None = None,
) -> StagingContext | None:
    """从磁盘重新打开一棵暂存树；目录无效或 staging.json 损坏时返回 None。"""
    staging_dir = Path(staging_dir).resolve()
    try:
        metadata = read_metadata(staging_dir)
    except StagingError as exc:
        logger.warning("无法加载暂存目录 %s：%s", staging_dir, exc)
        return None

    if project_root is None:
        project_root = find_project_root(staging_dir) or Path.cwd()

    return StagingContext(
        root_dir=staging_dir,
        target_version=metadata.target_version,
        metadata=metadata,
        project_root=Path(project_root).resolve(),
    )


def inspect_staging(context: StagingContext, config: Config | None = None) -> dict[str, Any]:
    """汇总暂存树的状态与文件统计。"""
    staged = list_staged_files(context, config)
    counts = {category.value: 0 for category in FileCategory}
    for item in staged:
        counts[item.category.value] += 1
    counts["total"] = len(staged)

    metadata = context.metadata
    return {
        "rootDir": str(context.root_dir),
        "targetVersion": metadata.target_version,
        "previousVersion": metadata.previous_version,
        "status": metadata.status.value,
        "startTime": metadata.start_time,
        "files": counts,
        "agentResults": metadata.agent_results.to_dict(),
        "baselineFiles": len(metadata.production_baseline.files),
    }
