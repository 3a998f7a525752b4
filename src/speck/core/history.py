"""上游转换历史（.speck/transformation-history.json）。

记录每个上游版本的转换结果及拆分决策（上游源文件 -> 生成的产物），
便于增量转换时沿用之前的决策。条目按时间倒序存放（最新在前）。
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from speck.version import HISTORY_SCHEMA_VERSION

logger = logging.getLogger(__name__)


class TransformationHistoryError(Exception):
    """转换历史文件无法读取或格式不合法。"""

    pass


class TransformationStatus(Enum):
    TRANSFORMED = "transformed"
    FAILED = "failed"
    PARTIAL = "partial"


class ArtifactType(Enum):
    COMMAND = "command"
    AGENT = "agent"
    SKILL = "skill"
    SCRIPT = "script"


@dataclass
class FactoringMapping:
    """一次拆分决策：上游源文件映射到生成的产物。"""

    source: str
    generated: str
    type: ArtifactType
    description: str | None = None
    rationale: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "source": self.source,
            "generated": self.generated,
            "type": self.type.value,
        }
        if self.description:
            result["description"] = self.description
        if self.rationale:
            result["rationale"] = self.rationale
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FactoringMapping":
        return cls(
            source=data["source"],
            generated=data["generated"],
            type=ArtifactType(data["type"]),
            description=data.get("description"),
            rationale=data.get("rationale"),
        )


@dataclass
class TransformationEntry:
    """单个上游版本的转换记录。"""

    version: str
    timestamp: str
    commit_sha: str
    status: TransformationStatus
    mappings: list[FactoringMapping] = field(default_factory=list)
    error_details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "version": self.version,
            "timestamp": self.timestamp,
            "commitSha": self.commit_sha,
            "status": self.status.value,
            "mappings": [m.to_dict() for m in self.mappings],
        }
        if self.error_details:
            result["errorDetails"] = self.error_details
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransformationEntry":
        return cls(
            version=data["version"],
            timestamp=data["timestamp"],
            commit_sha=data.get("commitSha", ""),
            status=TransformationStatus(data["status"]),
            mappings=[FactoringMapping.from_dict(m) for m in data.get("mappings", [])],
            error_details=data.get("errorDetails"),
        )


@dataclass
class TransformationHistory:
    """完整的转换历史。"""

    schema_version: str = HISTORY_SCHEMA_VERSION
    latest_version: str = ""
    entries: list[TransformationEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "latestVersion": self.latest_version,
            "entries": [e.to_dict() for e in self.entries],
        }

    def get_entry(self, version: str) -> TransformationEntry | None:
        for entry in self.entries:
            if entry.version == version:
                return entry
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_history(history_path: Path) -> TransformationHistory:
    """读取转换历史；文件不存在时返回空历史。

    异常：
        TransformationHistoryError：JSON 非法、schema 版本不支持或字段缺失
    """
    if not history_path.exists():
        return TransformationHistory()

    try:
        data = json.loads(history_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise TransformationHistoryError(f"无法读取转换历史 {history_path}：{exc}") from exc

    if not isinstance(data, dict):
        raise TransformationHistoryError(f"转换历史格式不合法：{history_path}")

    schema_version = data.get("schemaVersion")
    if schema_version != HISTORY_SCHEMA_VERSION:
        raise TransformationHistoryError(
            f"不支持的转换历史 schema 版本：{schema_version!r}（期望 {HISTORY_SCHEMA_VERSION}）"
        )

    try:
        entries = [TransformationEntry.from_dict(e) for e in data.get("entries", [])]
    except (KeyError, TypeError, ValueError) as exc:
        raise TransformationHistoryError(f"转换历史条目不合法：{exc}") from exc

    return TransformationHistory(
        schema_version=schema_version,
        latest_version=str(data.get("latestVersion", "")),
        entries=entries,
    )


def write_history(history_path: Path, history: TransformationHistory) -> None:
    """原子写入转换历史。"""
    history_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = history_path.with_suffix(history_path.suffix + ".tmp")
    tmp.write_text(json.dumps(history.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, history_path)


def add_transformation_entry(
    history_path: Path,
    version: str,
    commit_sha: str,
    status: TransformationStatus | str,
    mappings: list[FactoringMapping] | None = None,
    error_details: str | None = None,
) -> TransformationEntry:
    """添加（或替换）某个版本的转换记录，并放到最前面。

    状态为 transformed 时同步更新 latestVersion。
    """
    status = TransformationStatus(status)
    history = read_history(history_path)
    history.entries = [e for e in history.entries if e.version != version]

    entry = TransformationEntry(
        version=version,
        timestamp=_now_iso(),
        commit_sha=commit_sha,
        status=status,
        mappings=list(mappings or []),
        error_details=error_details,
    )
    history.entries.insert(0, entry)
    if status is TransformationStatus.TRANSFORMED:
        history.latest_version = version

    write_history(history_path, history)
    logger.debug("记录转换历史：%s (%s)", version, status.value)
    return entry


def update_transformation_status(
    history_path: Path,
    version: str,
    status: TransformationStatus | str,
    error_details: str | None = None,
) -> None:
    """更新已有条目的状态。

    异常：
        TransformationHistoryError：该版本没有记录
    """
    status = TransformationStatus(status)
    history = read_history(history_path)
    entry = history.get_entry(version)
    if entry is None:
        raise TransformationHistoryError(f"转换历史中没有版本 {version}")

    entry.status = status
    if error_details is not None:
        entry.error_details = error_details
    if status is TransformationStatus.TRANSFORMED:
        history.latest_version = version

    write_history(history_path, history)


def add_factoring_mapping(history_path: Path, version: str, mapping: FactoringMapping) -> None:
    """为某个版本追加一条拆分决策。

    异常：
        TransformationHistoryError：该版本没有记录
    """
    history = read_history(history_path)
    entry = history.get_entry(version)
    if entry is None:
        raise TransformationHistoryError(f"转换历史中没有版本 {version}")

    entry.mappings.append(mapping)
    write_history(history_path, history)


def get_previous_factoring_decision(history_path: Path, source: str) -> FactoringMapping | None:
    """查找某个上游源文件最近一次的拆分决策。"""
    history = read_history(history_path)
    for entry in history.entries:
        for mapping in entry.mappings:
            if mapping.source == source:
                return mapping
    return None


def get_latest_transformed_version(history_path: Path) -> str | None:
    """返回最近一次成功转换的版本；没有则返回 None。"""
    history = read_history(history_path)
    for entry in history.entries:
        if entry.status is TransformationStatus.TRANSFORMED:
            return entry.version
    return None
