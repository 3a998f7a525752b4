"""speck transform: 暂存式上游转换。

用法:
    speck transform init <version>          # 创建暂存树并捕获生产基线
    speck transform dirs [--env]            # 输出 agent 应写入的暂存目录
    speck transform record 1|2 [--failed]   # 记录 agent 结果
    speck transform commit [--force]        # 检测冲突并提交
    speck transform rollback                # 放弃暂存树
    speck transform status                  # 查看暂存状态
    speck transform recover <dir> <action>  # 处理遗留暂存树
    speck transform run <version> ...       # 以外部命令运行完整流水线
    speck transform history                 # 查看转换历史
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Any, List, NoReturn, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from speck.core.agents import AGENT1_CATEGORIES, AGENT2_CATEGORIES, OUTPUT_DIR_ENV, CommandAgent
from speck.core.config import load_project_config
from speck.core.errors import StagingError
from speck.core.history import TransformationHistoryError, read_history
from speck.core.staging_manager import generate_file_manifest, inspect_staging, load_staging_context
from speck.core.staging_types import AgentResult, OrchestrationResult, StagingContext, StagingOutputDirs
from speck.core.transform import (
    RecoveryAction,
    check_for_orphaned_staging,
    commit_staging_to_production,
    get_staging_output_dirs,
    initialize_staging,
    record_agent1_complete,
    record_agent2_complete,
    recover_orphaned_staging,
    rollback_staging_changes,
    run_transformation,
)
from speck.ui.display import (
    format_status,
    show_conflict_table,
    show_history_table,
    show_manifest_table,
    show_staging_panel,
)
from speck.ui.prompts import confirm_action
from speck.utils.files import resolve_project_root

app = typer.Typer(help="暂存式上游转换（两阶段 agent + 原子提交）", no_args_is_help=True)
console = Console()

JSON_OPTION_HELP = "以 JSON 格式输出"


def _echo_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2))


def _fail(message: str, json_output: bool = False) -> NoReturn:
    if json_output:
        _echo_json({"success": False, "error": message})
    else:
        console.print(f"[red]错误：[/red] {message}")
    raise typer.Exit(1)


def _dirs_to_dict(dirs: StagingOutputDirs) -> dict[str, str]:
    return {
        "scriptsDir": str(dirs.scripts_dir),
        "commandsDir": str(dirs.commands_dir),
        "agentsDir": str(dirs.agents_dir),
        "skillsDir": str(dirs.skills_dir),
    }


def _print_dirs(dirs: StagingOutputDirs) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column()
    for var, category in OUTPUT_DIR_ENV.items():
        table.add_row(var, str(dirs.for_category(category)))
    console.print(table)


def _list_staging(project_root: Path, json_output: bool) -> list[Path]:
    try:
        return check_for_orphaned_staging(project_root)
    except (StagingError, yaml.YAMLError) as exc:
        _fail(f"无法读取配置：{exc}", json_output)


def _load_active_context(project_root: Path, json_output: bool) -> StagingContext:
    """返回唯一一棵进行中的暂存树。"""
    staging_dirs = _list_staging(project_root, json_output)
    if not staging_dirs:
        _fail("没有进行中的转换，请先运行 speck transform init <version>", json_output)
    if len(staging_dirs) > 1:
        listed = ", ".join(str(p) for p in staging_dirs)
        _fail(f"存在多个暂存目录：{listed}，请使用 speck transform recover 逐个处理", json_output)

    context = load_staging_context(staging_dirs[0], project_root)
    if context is None:
        _fail(
            f"暂存目录已损坏：{staging_dirs[0]}，"
            f"可运行 speck transform recover {staging_dirs[0]} rollback 删除",
            json_output,
        )
    return context


def _finish(result: OrchestrationResult, json_output: bool, success_text: str) -> None:
    """统一输出编排结果；失败时以退出码 1 结束。"""
    if json_output:
        _echo_json(result.to_dict())
        if not result.success:
            raise typer.Exit(1)
        return

    if result.success:
        console.print(f"[green]✓[/green] {success_text}")
        if result.message:
            console.print(f"[dim]{result.message}[/dim]")
        if result.files_committed:
            for path in result.files_committed:
                console.print(f"  [dim]{path}[/dim]")
        return

    if result.conflicts:
        show_conflict_table(console, result.conflicts)
        console.print("[yellow]检查冲突文件后重试，或使用 --force 覆盖[/yellow]")
    console.print(f"[red]错误：[/red] {result.error}")
    raise typer.Exit(1)


@app.command("init")
def init_command(
    version: str = typer.Argument(..., help="目标上游版本"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """创建暂存树并捕获生产基线。"""
    result = initialize_staging(version, resolve_project_root())

    if json_output:
        data = result.to_dict()
        if result.context is not None:
            data["outputDirs"] = _dirs_to_dict(get_staging_output_dirs(result.context))
        _echo_json(data)
        if not result.success:
            raise typer.Exit(1)
        return

    if not result.success or result.context is None:
        _fail(result.error or "初始化失败")

    console.print(f"[green]✓[/green] 已为版本 [bold]{version}[/bold] 初始化暂存")
    console.print(f"[dim]基线文件：{len(result.context.metadata.production_baseline.files)}[/dim]")
    _print_dirs(get_staging_output_dirs(result.context))


@app.command("dirs")
def dirs_command(
    env: bool = typer.Option(False, "--env", help="输出可 eval 的 export 语句"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """输出 agent 应写入的暂存目录。"""
    context = _load_active_context(resolve_project_root(), json_output)
    dirs = get_staging_output_dirs(context)

    if json_output:
        _echo_json(_dirs_to_dict(dirs))
    elif env:
        for var, category in OUTPUT_DIR_ENV.items():
            typer.echo(f"export {var}={shlex.quote(str(dirs.for_category(category)))}")
    else:
        _print_dirs(dirs)


@app.command("record")
def record_command(
    agent: int = typer.Argument(..., min=1, max=2, help="agent 编号（1 或 2）"),
    failed: bool = typer.Option(False, "--failed", help="agent 执行失败"),
    files: Optional[List[str]] = typer.Option(None, "--file", "-f", help="写入的文件（可重复）"),
    duration: float = typer.Option(0, "--duration", help="耗时（毫秒）"),
    error: Optional[str] = typer.Option(None, "--error", help="失败原因"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """记录 agent 执行结果；失败会自动回滚。"""
    context = _load_active_context(resolve_project_root(), json_output)
    result = AgentResult(
        success=not failed,
        files_written=list(files or []),
        duration=duration,
        error=(error or "unknown error") if failed else None,
    )

    recorder = record_agent1_complete if agent == 1 else record_agent2_complete
    outcome = recorder(context, result)

    status = format_status(outcome.context.status.value) if outcome.context else ""
    _finish(outcome, json_output, f"已记录 Agent {agent} 结果 {status}".rstrip())


@app.command("commit")
def commit_command(
    force: bool = typer.Option(False, "--force", help="存在冲突时仍然提交（覆盖外部修改）"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
    commit_sha: str = typer.Option("", "--commit-sha", help="上游提交 SHA（写入转换历史）"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """检测冲突并将暂存文件提交到生产目录。"""
    context = _load_active_context(resolve_project_root(), json_output)

    if not json_output:
        show_manifest_table(console, generate_file_manifest(context))

    result = commit_staging_to_production(context, commit_sha=commit_sha)

    if not result.success and result.conflicts and force:
        if not yes and not json_output:
            show_conflict_table(console, result.conflicts)
            confirmed = confirm_action(
                console,
                f"以上 {len(result.conflicts)} 个文件在暂存期间被外部修改，强制提交将覆盖这些修改。",
                warning=True,
            )
            if not confirmed:
                console.print("[yellow]已取消提交，暂存树保持不变[/yellow]")
                raise typer.Exit(1)
        result = commit_staging_to_production(result.context or context, force=True, commit_sha=commit_sha)

    count = len(result.files_committed or [])
    _finish(result, json_output, f"已提交 {count} 个文件")


@app.command("rollback")
def rollback_command(
    reason: str = typer.Option("Manual rollback", "--reason", "-r", help="回滚原因"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """放弃暂存树，生产目录保持不变。"""
    context = _load_active_context(resolve_project_root(), json_output)

    if not yes and not json_output:
        confirmed = confirm_action(
            console,
            f"将删除版本 {context.target_version} 的暂存树及其中所有文件。",
            warning=True,
        )
        if not confirmed:
            raise typer.Exit(1)

    _finish(rollback_staging_changes(context, reason), json_output, "已回滚")


@app.command("status")
def status_command(
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """查看所有暂存树的状态。"""
    project_root = resolve_project_root()
    entries: list[dict[str, Any]] = []

    for staging_dir in _list_staging(project_root, json_output):
        context = load_staging_context(staging_dir, project_root)
        if context is None:
            entries.append({"rootDir": str(staging_dir), "status": "corrupted"})
        else:
            entries.append(inspect_staging(context))

    if json_output:
        _echo_json({"staging": entries})
        return

    if not entries:
        console.print("[dim]没有进行中的转换[/dim]")
        return

    for info in entries:
        if info["status"] == "corrupted":
            console.print(f"[red]×[/red] 已损坏的暂存目录：{info['rootDir']}")
        else:
            show_staging_panel(console, info)


@app.command("recover")
def recover_command(
    staging_dir: Path = typer.Argument(..., help="遗留暂存目录"),
    action: RecoveryAction = typer.Argument(..., help="处理方式：commit / rollback / inspect"),
    force: bool = typer.Option(False, "--force", help="提交时忽略冲突"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """处理之前中断的转换遗留下来的暂存树。"""
    project_root = resolve_project_root()
    if not staging_dir.is_absolute():
        staging_dir = project_root / staging_dir

    if action is RecoveryAction.ROLLBACK and not yes and not json_output:
        if not confirm_action(console, f"将删除暂存目录 {staging_dir}。", warning=True):
            raise typer.Exit(1)

    result = recover_orphaned_staging(staging_dir, action, project_root, force=force)

    if action is RecoveryAction.INSPECT and result.success and not json_output:
        show_staging_panel(console, result.info or {})
        return

    text = {
        RecoveryAction.COMMIT: f"已提交 {len(result.files_committed or [])} 个文件",
        RecoveryAction.ROLLBACK: "已删除遗留暂存目录",
        RecoveryAction.INSPECT: "检查完成",
    }[action]
    _finish(result, json_output, text)


@app.command("run")
def run_command(
    version: str = typer.Argument(..., help="目标上游版本"),
    agent1_cmd: str = typer.Option(..., "--agent1-cmd", help="Agent 1（脚本改写）命令"),
    agent2_cmd: str = typer.Option(..., "--agent2-cmd", help="Agent 2（命令/agent/skill 改写）命令"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="单个 agent 超时时间（秒）"),
    force: bool = typer.Option(False, "--force", help="存在冲突时仍然提交"),
    commit_sha: str = typer.Option("", "--commit-sha", help="上游提交 SHA（写入转换历史）"),
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """以外部命令运行完整流水线：初始化、两个 agent、提交。"""
    project_root = resolve_project_root()
    agent1 = CommandAgent("agent1", agent1_cmd, AGENT1_CATEGORIES, timeout=timeout, cwd=project_root)
    agent2 = CommandAgent("agent2", agent2_cmd, AGENT2_CATEGORIES, timeout=timeout, cwd=project_root)

    if json_output:
        result = run_transformation(version, agent1, agent2, project_root, force, commit_sha)
    else:
        with console.status(f"[bold green]正在转换到 {version}...[/bold green]"):
            result = run_transformation(version, agent1, agent2, project_root, force, commit_sha)

    count = len(result.files_committed or [])
    _finish(result, json_output, f"已转换到 {version}，提交 {count} 个文件")


@app.command("history")
def history_command(
    json_output: bool = typer.Option(False, "--json", help=JSON_OPTION_HELP),
) -> None:
    """查看上游转换历史。"""
    project_root = resolve_project_root()
    try:
        config = load_project_config(project_root)
        history = read_history(config.transform.history_path(project_root))
    except (TransformationHistoryError, StagingError, yaml.YAMLError) as exc:
        _fail(str(exc), json_output)

    if json_output:
        _echo_json(history.to_dict())
    else:
        show_history_table(console, history)
