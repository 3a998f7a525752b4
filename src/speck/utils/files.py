"""speck 的文件系统工具。

本模块提供项目根目录定位、目录遍历与文件移动等辅助函数。
"""

from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path
from typing import Iterator, Optional

SPECK_DIR_NAME = ".speck"
CLAUDE_DIR_NAME = ".claude"


def find_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """通过查找 .speck 目录来定位项目根目录。

    参数：
        start_path: 搜索起始目录（默认：当前目录）

    返回：
        找到则返回项目根目录路径，否则返回 None
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    # 向上查找，直到找到 .speck 目录或到达文件系统根目录
    while current != current.parent:
        if (current / SPECK_DIR_NAME).is_dir():
            return current
        current = current.parent

    if (current / SPECK_DIR_NAME).is_dir():
        return current

    return None


def resolve_project_root(project_root: Optional[Path] = None) -> Path:
    """返回显式给出的项目根目录；否则向上查找，找不到则使用当前目录。"""
    if project_root is not None:
        return Path(project_root).resolve()
    found = find_project_root()
    return found if found is not None else Path.cwd().resolve()


def get_speck_dir(project_root: Path) -> Path:
    """获取 .speck 目录路径。"""
    return project_root / SPECK_DIR_NAME


def get_config_path(project_root: Path) -> Path:
    """获取 config.yaml 文件路径。

    参数：
        project_root: 项目根目录

    返回：
        config.yaml 文件路径
    """
    return get_speck_dir(project_root) / "config.yaml"


def iter_files(root: Path) -> Iterator[Path]:
    """递归遍历目录下的所有文件（按路径排序）。

    目录不存在时不产生任何结果。
    """
    if not root.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def to_posix_relative(path: Path, base: Path) -> str:
    """返回 path 相对 base 的 POSIX 风格路径字符串。"""
    return path.relative_to(base).as_posix()


def move_file(src: Path, dest: Path) -> None:
    """将文件移动到目标路径，必要时创建父目录并覆盖已有文件。

    同一文件系统内使用 os.replace；跨设备时退化为复制后删除源文件。

    异常：
        OSError：移动失败
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(src, dest)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.copy2(src, dest)
        src.unlink()


def remove_tree(path: Path) -> bool:
    """删除目录树。

    返回：
        实际删除了目录返回 True；目录本就不存在返回 False

    异常：
        OSError：删除失败
    """
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
