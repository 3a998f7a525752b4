"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
from typer.testing import CliRunner

# Add src directory to Python path for tests
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from speck import app  # noqa: E402
from speck.core.config import STAGING_DIR_ENV, DEFAULT_AREAS  # noqa: E402
from speck.core.staging_types import FileCategory  # noqa: E402
from speck.utils.files import get_speck_dir  # noqa: E402


@dataclass
class StagingProject:
    """Test helper to build minimal speck project structures."""

    root: Path

    @property
    def speck_dir(self) -> Path:
        return get_speck_dir(self.root)

    @property
    def staging_root(self) -> Path:
        return self.speck_dir / ".transform-staging"

    @property
    def history_path(self) -> Path:
        return self.speck_dir / "transformation-history.json"

    def production_dir(self, category: FileCategory) -> Path:
        return self.root / DEFAULT_AREAS[category.value]

    def init_structure(self) -> None:
        self.speck_dir.mkdir(parents=True, exist_ok=True)
        for category in FileCategory:
            self.production_dir(category).mkdir(parents=True, exist_ok=True)

    def write(self, relative: str, content: str) -> Path:
        """Write a file relative to the project root."""
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def staging_dir(self, version: str) -> Path:
        return self.staging_root / version


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (STAGING_DIR_ENV, "SPECK_DEBUG", "SPECK_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def invoke(cli_runner: CliRunner):
    def _invoke(args: list[str], cwd: Path | None = None):
        if cwd is None:
            return cli_runner.invoke(app, args)
        original = Path.cwd()
        os.chdir(cwd)
        try:
            return cli_runner.invoke(app, args)
        finally:
            os.chdir(original)

    return _invoke


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> StagingProject:
    proj = StagingProject(root=tmp_path.resolve())
    proj.init_structure()
    monkeypatch.chdir(proj.root)
    return proj


@pytest.fixture
def project_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    def _factory(init_structure: bool = True) -> StagingProject:
        proj = StagingProject(root=tmp_path.resolve())
        if init_structure:
            proj.init_structure()
        monkeypatch.chdir(proj.root)
        return proj

    return _factory


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(item.fspath))
        if "tests" not in path.parts:
            continue
        try:
            tests_index = path.parts.index("tests")
        except ValueError:
            continue
        if len(path.parts) <= tests_index + 1:
            continue
        group = path.parts[tests_index + 1]
        if group in {"unit", "cli", "integration"}:
            item.add_marker(getattr(pytest.mark, group))
