"""终端 UI 的交互提示组件。"""

from __future__ import annotations

import sys

import readchar
from rich.console import Console
from rich.panel import Panel

_CANCEL_KEYS = (readchar.key.ESC, readchar.key.CTRL_C)
_ENTER_KEYS = (readchar.key.ENTER, "\r", "\n")


def _read_choice(default: bool) -> tuple[bool, bool]:
    """读取按键直到得到明确选择，返回 (选择, 是否为默认值)。"""
    while True:
        try:
            key = readchar.readkey()
        except KeyboardInterrupt:
            return False, False

        if key.lower() == "y":
            return True, False
        if key.lower() == "n" or key in _CANCEL_KEYS:
            return False, False
        if key in _ENTER_KEYS:
            return default, True


def confirm_action(
    console: Console,
    message: str,
    default: bool = False,
    warning: bool = False,
) -> bool:
    """提示用户确认一个会改动暂存树或生产目录的操作。

    标准输入不是终端时（管道、CI、CliRunner）不等待按键，直接返回 default，
    因此破坏性操作在非交互环境下需要显式传入 --yes。

    参数：
        console: Rich 控制台实例
        message: 要展示的确认提示消息
        default: 默认选择（True=是，False=否）
        warning: 是否以警告样式展示（危险操作）

    返回：
        用户确认则返回 True，否则返回 False
    """
    style, title = ("yellow", "警告") if warning else ("cyan", "确认")
    hint = "[Y/n]" if default else "[y/N]"
    console.print(
        Panel(
            f"[bold {style}]{title}[/bold {style}]\n\n{message}\n\n[dim]继续？ {hint}[/dim]",
            border_style=style,
            padding=(1, 2),
        )
    )

    if not sys.stdin.isatty():
        choice = "继续" if default else "取消"
        console.print(f"[dim]非交互终端，按默认选择{choice}（使用 --yes 跳过确认）[/dim]")
        return default

    confirmed, by_default = _read_choice(default)
    suffix = "（默认）" if by_default else ""
    if confirmed:
        console.print(f"[green]√ 已确认{suffix}[/green]")
    else:
        console.print(f"[yellow]× 已取消{suffix}[/yellow]")
    return confirmed
