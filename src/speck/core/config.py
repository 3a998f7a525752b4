"""speck 的配置管理。

该模块提供配置的加载、保存与管理能力。
它负责处理 .speck/config.yaml，并为所有设置提供默认值；
配置文件不存在时使用全部默认值。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from speck.core.errors import ConfigError
from speck.core.staging_types import FileCategory
from speck.utils.files import CLAUDE_DIR_NAME, SPECK_DIR_NAME, get_config_path
from speck.version import CONFIG_VERSION

STAGING_DIR_ENV = "SPECK_STAGING_DIR"

DEFAULT_STAGING_DIR = f"{SPECK_DIR_NAME}/.transform-staging"
DEFAULT_HISTORY_FILE = f"{SPECK_DIR_NAME}/transformation-history.json"

# 暂存子目录 -> 生产区域（相对项目根目录）
DEFAULT_AREAS: dict[str, str] = {
    FileCategory.SCRIPTS.value: f"{SPECK_DIR_NAME}/scripts",
    FileCategory.COMMANDS.value: f"{CLAUDE_DIR_NAME}/commands",
    FileCategory.AGENTS.value: f"{CLAUDE_DIR_NAME}/agents",
    FileCategory.SKILLS.value: f"{CLAUDE_DIR_NAME}/skills",
}


def _validate_area(name: str, path: str) -> str:
    """生产区域必须是项目根目录内的相对路径。"""
    relative = Path(path)
    if relative.is_absolute() or ".." in relative.parts:
        raise ConfigError(f"transform.areas.{name} 必须是项目内的相对路径：{path}")
    return str(path)


class ConflictScope(Enum):
    """冲突检测范围。"""

    STAGED = "staged"  # 只检查将被覆盖的文件，以及已被删除的基线文件
    ALL = "all"        # 检查基线中的所有文件


@dataclass
class TransformConfig:
    """上游转换的暂存配置。

    属性：
        staging_dir：暂存根目录（相对项目根目录）
        conflict_scope：冲突检测范围
        history_file：转换历史文件（相对项目根目录）
        areas：暂存子目录到生产区域的映射
    """

    staging_dir: str = DEFAULT_STAGING_DIR
    conflict_scope: ConflictScope = ConflictScope.STAGED
    history_file: str = DEFAULT_HISTORY_FILE
    areas: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_AREAS))

    def production_dir(self, project_root: Path, category: FileCategory) -> Path:
        """获取某个类别对应的生产目录。"""
        relative = self.areas.get(category.value, DEFAULT_AREAS[category.value])
        return project_root / relative

    def staging_root(self, project_root: Path) -> Path:
        """获取暂存根目录；环境变量 SPECK_STAGING_DIR 优先。"""
        override = os.environ.get(STAGING_DIR_ENV)
        if override:
            return project_root / override
        return project_root / self.staging_dir

    def history_path(self, project_root: Path) -> Path:
        return project_root / self.history_file

    def to_dict(self) -> dict[str, Any]:
        """转换为字典以便 YAML 序列化。"""
        return {
            "staging_dir": self.staging_dir,
            "conflict_scope": self.conflict_scope.value,
            "history_file": self.history_file,
            "areas": dict(self.areas),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformConfig":
        """从字典创建实例；未知的 conflict_scope 回退为 staged。

        异常：
            ConfigError：areas 中的路径为绝对路径或包含 ..
        """
        try:
            scope = ConflictScope(data.get("conflict_scope", ConflictScope.STAGED.value))
        except ValueError:
            scope = ConflictScope.STAGED

        areas = dict(DEFAULT_AREAS)
        areas_data = data.get("areas") or {}
        if isinstance(areas_data, dict):
            for name, path in areas_data.items():
                if name in DEFAULT_AREAS and path:
                    areas[name] = _validate_area(name, str(path))

        return cls(
            staging_dir=data.get("staging_dir", DEFAULT_STAGING_DIR),
            conflict_scope=scope,
            history_file=data.get("history_file", DEFAULT_HISTORY_FILE),
            areas=areas,
        )


@dataclass
class Config:
    """speck 的主配置。

    属性：
        version：配置文件格式版本
        project_name：项目名称
        transform：上游转换配置
    """

    version: str = CONFIG_VERSION
    project_name: str = "my-project"
    transform: TransformConfig = field(default_factory=TransformConfig)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project_name": self.project_name,
            "transform": self.transform.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        transform_data = data.get("transform") or {}
        if not isinstance(transform_data, dict):
            raise ConfigError("配置项 transform 必须是映射")
        return cls(
            version=str(data.get("version", CONFIG_VERSION)),
            project_name=data.get("project_name", "my-project"),
            transform=TransformConfig.from_dict(transform_data),
        )


def load_config(config_path: Path) -> Config:
    """从 YAML 文件加载配置。

    参数：
        config_path：config.yaml 文件路径

    返回：
        加载后的 Config 实例（缺失字段使用默认值）

    异常：
        FileNotFoundError：配置文件不存在
        yaml.YAMLError：配置文件不是合法的 YAML
        ConfigError：顶层不是映射，或字段取值不合法
    """
    if not config_path.exists():
        raise FileNotFoundError(f"未找到配置文件：{config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射：{config_path}")

    return Config.from_dict(data)


def load_project_config(project_root: Path) -> Config:
    """加载项目配置；配置文件不存在时返回默认配置。"""
    try:
        return load_config(get_config_path(project_root))
    except FileNotFoundError:
        return Config()


def save_config(config: Config, config_path: Path) -> None:
    """将配置保存到 YAML 文件。

    异常：
        OSError：无法写入文件
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            config.to_dict(),
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
