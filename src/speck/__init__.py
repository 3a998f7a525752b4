"""speck: 暂存式上游转换流水线 CLI 工具。"""

import logging
import os

import typer
from rich.console import Console
from rich.logging import RichHandler

from speck.commands import transform as transform_cmd
from speck.version import CONFIG_VERSION, HISTORY_SCHEMA_VERSION, PACKAGE_VERSION

__version__ = PACKAGE_VERSION

DEBUG_ENV = "SPECK_DEBUG"
LOG_LEVEL_ENV = "SPECK_LOG_LEVEL"

app = typer.Typer(
    name="speck",
    help="暂存式上游转换流水线：两阶段 agent 生成、冲突检测与原子提交",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


def _resolve_log_level(verbose: bool) -> int:
    if verbose or os.environ.get(DEBUG_ENV, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    name = os.environ.get(LOG_LEVEL_ENV, "").upper()
    level = logging.getLevelName(name) if name else logging.WARNING
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(verbose: bool = False) -> None:
    """日志统一输出到 stderr，避免污染 --json 输出。"""
    logging.basicConfig(
        level=_resolve_log_level(verbose),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", "-v", help="显示版本信息"),
    verbose: bool = typer.Option(False, "--verbose", help="输出调试日志"),
) -> None:
    """speck: 把上游版本安全地转换进本地 .speck / .claude 目录。"""
    if version:
        console.print(f"[bold]speck[/bold] 版本 {__version__}")
        console.print(f"config {CONFIG_VERSION} | history schema {HISTORY_SCHEMA_VERSION}")
        raise typer.Exit()
    configure_logging(verbose)


# 注册命令
app.add_typer(transform_cmd.app, name="transform", help="暂存式上游转换")


def main() -> None:
    """CLI 入口。"""
    app()


if __name__ == "__main__":
    main()
