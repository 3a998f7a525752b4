"""基于 Rich 的终端 UI 组件。"""

from speck.ui.display import (
    STATUS_COLORS,
    STATUS_NAMES,
    format_status,
    get_status_color,
    show_conflict_table,
    show_history_table,
    show_manifest_table,
    show_staging_panel,
)
from speck.ui.prompts import confirm_action

__all__ = [
    # 主题与常量
    "STATUS_COLORS",
    "STATUS_NAMES",
    # 展示函数
    "format_status",
    "get_status_color",
    "show_conflict_table",
    "show_history_table",
    "show_manifest_table",
    "show_staging_panel",
    # 交互提示函数
    "confirm_action",
]
