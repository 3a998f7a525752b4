"""Test helper utilities."""

from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Iterable

import yaml

from speck.core.staging_manager import update_staging_status
from speck.core.staging_types import AgentResult, StagingContext, StagingOutputDirs, StagingStatus


def assert_contains_any(text: str, candidates: Iterable[str]) -> None:
    """Assert that at least one candidate substring exists in text."""
    candidates = list(candidates)
    if not any(candidate in text for candidate in candidates):
        raise AssertionError(f"Expected one of {candidates} to be in text, got: {text}")


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def write_yaml(path: Path, data: Any) -> None:
    """Write YAML content to a path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            data,
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )


def touch_later(path: Path, seconds: int = 5) -> None:
    """Move a file's mtime forward so the change is visible on coarse clocks."""
    stat = path.stat()
    later = stat.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(stat.st_atime_ns, later))


def stage_file(directory: Path, relative: str, content: str) -> Path:
    path = directory / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def advance_to(context: StagingContext, *statuses: StagingStatus) -> StagingContext:
    for status in statuses:
        context = update_staging_status(context, status)
    return context


def python_command(code: str) -> list[str]:
    """Command line that runs a Python snippet with the current interpreter."""
    return [sys.executable, "-c", code]


def python_command_line(code: str) -> str:
    return " ".join(shlex.quote(part) for part in python_command(code))


class WritingAgent:
    """In-process agent that writes fixed files into one staging directory."""

    def __init__(self, name: str, attr: str, files: dict[str, str]) -> None:
        self.name = name
        self.attr = attr
        self.files = files
        self.calls = 0

    def run(self, output_dirs: StagingOutputDirs) -> AgentResult:
        self.calls += 1
        target = getattr(output_dirs, self.attr)
        written = [str(stage_file(target, rel, content)) for rel, content in self.files.items()]
        return AgentResult(success=True, files_written=written, duration=1.0)


class FailingAgent:
    def __init__(self, name: str, error: str = "boom", raise_exc: bool = False) -> None:
        self.name = name
        self.error = error
        self.raise_exc = raise_exc

    def run(self, output_dirs: StagingOutputDirs) -> AgentResult:
        if self.raise_exc:
            raise RuntimeError(self.error)
        return AgentResult(success=False, error=self.error)
