"""基于 Rich 的转换状态展示组件。"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from speck.core.history import TransformationHistory
from speck.core.staging_types import FileConflict

# 状态颜色
STATUS_COLORS = {
    "staging": "yellow",
    "agent1-complete": "yellow",
    "agent2-complete": "yellow",
    "ready": "green",
    "committing": "magenta",
    "committed": "blue",
    "rolled-back": "dim",
    "transformed": "green",
    "failed": "red",
    "partial": "yellow",
}

# 状态显示名称
STATUS_NAMES = {
    "staging": "暂存中",
    "agent1-complete": "Agent 1 完成",
    "agent2-complete": "Agent 2 完成",
    "ready": "待提交",
    "committing": "提交中",
    "committed": "已提交",
    "rolled-back": "已回滚",
}

CONFLICT_NAMES = {
    "modified": "已修改",
    "deleted": "已删除",
    "created": "新出现",
}


def get_status_color(status: str) -> str:
    return STATUS_COLORS.get(status, "white")


def format_status(status: str) -> str:
    """返回带颜色的状态文本。"""
    color = get_status_color(status)
    return f"[{color}]{STATUS_NAMES.get(status, status)}[/{color}]"


def show_staging_panel(console: Console, info: dict[str, Any]) -> None:
    """显示一棵暂存树的概要。

    参数：
        console: Rich 控制台实例
        info: inspect_staging 返回的字典
    """
    files = info.get("files", {})
    lines = [
        f"[cyan]目标版本：[/cyan] [bold]{info.get('targetVersion')}[/bold]",
        f"[cyan]上一版本：[/cyan] {info.get('previousVersion') or '-'}",
        f"[cyan]状态：[/cyan] {format_status(str(info.get('status')))}",
        f"[cyan]开始时间：[/cyan] {info.get('startTime')}",
        f"[cyan]暂存目录：[/cyan] [dim]{info.get('rootDir')}[/dim]",
        f"[cyan]基线文件：[/cyan] {info.get('baselineFiles', 0)}",
    ]

    counts = ", ".join(f"{name} {count}" for name, count in files.items() if name != "total")
    lines.append(f"[cyan]暂存文件：[/cyan] {files.get('total', 0)}（{counts}）")

    for key, label in (("agent1", "Agent 1"), ("agent2", "Agent 2")):
        result = (info.get("agentResults") or {}).get(key)
        if result is None:
            lines.append(f"[cyan]{label}：[/cyan] [dim]未完成[/dim]")
        elif result.get("success"):
            lines.append(
                f"[cyan]{label}：[/cyan] [green]√[/green] "
                f"{len(result.get('filesWritten', []))} 个文件，{result.get('duration', 0)}ms"
            )
        else:
            lines.append(f"[cyan]{label}：[/cyan] [red]× {result.get('error')}[/red]")

    console.print(Panel("\n".join(lines), title="[bold]暂存转换[/bold]", border_style="cyan"))


def show_conflict_table(console: Console, conflicts: list[FileConflict]) -> None:
    """以表格形式列出所有冲突文件。"""
    table = Table(title=f"文件冲突（{len(conflicts)}）", title_style="bold red")
    table.add_column("路径", style="cyan")
    table.add_column("类型", style="yellow")
    table.add_column("基线 mtime", style="dim", justify="right")
    table.add_column("当前 mtime", style="dim", justify="right")

    for conflict in conflicts:
        table.add_row(
            conflict.path,
            CONFLICT_NAMES.get(conflict.kind.value, conflict.kind.value),
            str(conflict.baseline_mtime) if conflict.baseline_mtime is not None else "-",
            str(conflict.current_mtime) if conflict.current_mtime is not None else "-",
        )

    console.print(table)


def show_manifest_table(console: Console, manifest: list[dict[str, Any]]) -> None:
    """显示提交清单。"""
    if not manifest:
        console.print("[dim]暂存树中没有文件[/dim]")
        return

    table = Table(title="提交清单")
    table.add_column("类别", style="cyan")
    table.add_column("文件")
    table.add_column("操作", justify="center")

    for item in manifest:
        action = item["action"]
        style = "yellow" if action == "overwrite" else "green"
        label = "覆盖" if action == "overwrite" else "新增"
        table.add_row(item["category"], item["relativePath"], f"[{style}]{label}[/{style}]")

    console.print(table)


def show_history_table(console: Console, history: TransformationHistory) -> None:
    """显示转换历史（最新在前）。"""
    if not history.entries:
        console.print("[dim]尚无转换记录[/dim]")
        return

    table = Table(title=f"转换历史（最新：{history.latest_version or '-'}）")
    table.add_column("版本", style="cyan")
    table.add_column("状态")
    table.add_column("时间", style="dim")
    table.add_column("提交", style="dim")
    table.add_column("拆分决策", justify="right")

    for entry in history.entries:
        color = get_status_color(entry.status.value)
        table.add_row(
            entry.version,
            f"[{color}]{entry.status.value}[/{color}]",
            entry.timestamp,
            entry.commit_sha[:8] if entry.commit_sha else "-",
            str(len(entry.mappings)),
        )

    console.print(table)
