"""Tests for the staging directory manager."""

import os
from dataclasses import replace
from pathlib import Path

import pytest

from helpers import advance_to, read_json, stage_file, touch_later
from speck.core.config import ConflictScope
from speck.core.errors import (
    AlreadyStagingError,
    InvalidTransitionError,
    StagingError,
    StagingLockedError,
    StagingNotFoundError,
)
from speck.core.staging_manager import (
    INIT_LOCK_FILE,
    acquire_init_lock,
    capture_production_baseline,
    commit_staging,
    create_staging_directory,
    detect_file_conflicts,
    detect_orphaned_staging,
    generate_file_manifest,
    inspect_staging,
    list_staged_files,
    load_staging_context,
    read_metadata,
    release_init_lock,
    rollback_staging,
    update_staging_status,
)
from speck.core.staging_types import (
    ConflictKind,
    FileCategory,
    StagingContext,
    StagingStatus,
)

READY_PATH = (
    StagingStatus.AGENT1_COMPLETE,
    StagingStatus.AGENT2_COMPLETE,
    StagingStatus.READY,
)


@pytest.fixture
def context(project) -> StagingContext:
    project.write(".speck/scripts/existing.ts", "old script")
    project.write(".claude/commands/plan.md", "old plan")
    ctx = create_staging_directory(project.root, "2.1.0", previous_version="2.0.0")
    return capture_production_baseline(ctx)


class TestCreateStagingDirectory:
    def test_creates_tree_and_metadata(self, project) -> None:
        ctx = create_staging_directory(project.root, "2.1.0")

        assert ctx.root_dir == project.staging_dir("2.1.0")
        for category in FileCategory:
            assert (ctx.root_dir / category.value).is_dir()

        data = read_json(ctx.metadata_path)
        assert data["status"] == "staging"
        assert data["targetVersion"] == "2.1.0"
        assert data["previousVersion"] is None
        assert data["agentResults"] == {"agent1": None, "agent2": None}

    def test_same_version_twice_raises(self, project) -> None:
        create_staging_directory(project.root, "2.1.0")
        with pytest.raises(AlreadyStagingError) as exc_info:
            create_staging_directory(project.root, "2.1.0")
        assert "recover" in str(exc_info.value)

    @pytest.mark.parametrize("version", ["", "../evil", "a/b", ".."])
    def test_rejects_unsafe_version(self, project, version: str) -> None:
        with pytest.raises(StagingError):
            create_staging_directory(project.root, version)

    def test_env_override_staging_root(self, project, monkeypatch) -> None:
        monkeypatch.setenv("SPECK_STAGING_DIR", "tmp/staging")
        ctx = create_staging_directory(project.root, "1.0.0")
        assert ctx.root_dir == project.root / "tmp" / "staging" / "1.0.0"


class TestInitLock:
    def test_acquire_writes_holder_and_release_removes(self, project) -> None:
        lock = acquire_init_lock(project.staging_root, "2.0.0")

        assert lock == project.staging_root / INIT_LOCK_FILE
        info = read_json(lock)
        assert info["targetVersion"] == "2.0.0"
        assert info["pid"] == os.getpid()

        release_init_lock(lock)
        assert not lock.exists()
        release_init_lock(lock)

    def test_second_acquire_is_refused(self, project) -> None:
        acquire_init_lock(project.staging_root, "2.0.0")

        with pytest.raises(StagingLockedError) as exc_info:
            acquire_init_lock(project.staging_root, "2.1.0")

        assert "2.0.0" in str(exc_info.value)

    def test_expired_lock_is_taken_over(self, project) -> None:
        lock = acquire_init_lock(project.staging_root, "2.0.0")
        old = lock.stat().st_mtime - 3600
        os.utime(lock, (old, old))

        taken = acquire_init_lock(project.staging_root, "2.1.0", timeout_minutes=10)

        assert read_json(taken)["targetVersion"] == "2.1.0"

    def test_corrupt_fresh_lock_still_blocks(self, project) -> None:
        project.staging_root.mkdir(parents=True)
        (project.staging_root / INIT_LOCK_FILE).write_text("", encoding="utf-8")

        with pytest.raises(StagingLockedError):
            acquire_init_lock(project.staging_root, "2.1.0")

    def test_lock_file_is_not_a_staging_tree(self, project) -> None:
        acquire_init_lock(project.staging_root, "2.0.0")
        assert detect_orphaned_staging(project.root) == []


class TestBaseline:
    def test_captures_existing_production_files(self, project, context) -> None:
        files = context.metadata.production_baseline.files
        assert set(files) == {".speck/scripts/existing.ts", ".claude/commands/plan.md"}
        existing = project.root / ".speck/scripts/existing.ts"
        assert files[".speck/scripts/existing.ts"].mtime == existing.stat().st_mtime_ns
        assert read_metadata(context.root_dir).production_baseline == context.metadata.production_baseline

    def test_baseline_only_in_staging_status(self, context) -> None:
        ready = advance_to(context, StagingStatus.AGENT1_COMPLETE)
        with pytest.raises(InvalidTransitionError):
            capture_production_baseline(ready)


class TestStatusPersistence:
    def test_valid_transition_is_persisted(self, context) -> None:
        updated = update_staging_status(context, StagingStatus.AGENT1_COMPLETE)
        assert updated.status is StagingStatus.AGENT1_COMPLETE
        assert read_metadata(context.root_dir).status is StagingStatus.AGENT1_COMPLETE

    def test_invalid_transition_raises_and_keeps_disk(self, context) -> None:
        with pytest.raises(InvalidTransitionError):
            update_staging_status(context, StagingStatus.READY)
        assert read_metadata(context.root_dir).status is StagingStatus.STAGING

    def test_read_metadata_missing(self, tmp_path: Path) -> None:
        with pytest.raises(StagingNotFoundError):
            read_metadata(tmp_path / "nowhere")

    def test_read_metadata_corrupt(self, context) -> None:
        context.metadata_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StagingError):
            read_metadata(context.root_dir)


class TestStagedFiles:
    def test_nested_paths_map_to_production(self, project, context) -> None:
        stage_file(context.skills_dir, "review/SKILL.md", "skill")
        stage_file(context.scripts_dir, "check.ts", "check")

        staged = {s.relative_path: s for s in list_staged_files(context)}
        assert staged["review/SKILL.md"].production_path == project.root / ".claude/skills/review/SKILL.md"
        assert staged["check.ts"].category is FileCategory.SCRIPTS

    def test_manifest_marks_create_and_overwrite(self, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        stage_file(context.agents_dir, "helper.md", "agent")

        actions = {m["relativePath"]: m["action"] for m in generate_file_manifest(context)}
        assert actions == {"existing.ts": "overwrite", "helper.md": "create"}


class TestConflictDetection:
    def test_no_conflicts_when_untouched(self, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        assert detect_file_conflicts(context) == []

    def test_modified_file(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        touch_later(project.root / ".speck/scripts/existing.ts")

        conflicts = detect_file_conflicts(context)
        assert [c.path for c in conflicts] == [".speck/scripts/existing.ts"]
        assert conflicts[0].kind is ConflictKind.MODIFIED
        assert conflicts[0].current_mtime != conflicts[0].baseline_mtime

    def test_size_change_counts_as_modified(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        path = project.root / ".speck/scripts/existing.ts"
        before = path.stat()
        path.write_text("a much longer script body", encoding="utf-8")
        os.utime(path, ns=(before.st_atime_ns, before.st_mtime_ns))
        conflicts = detect_file_conflicts(context)
        assert [c.kind for c in conflicts] == [ConflictKind.MODIFIED]

    def test_deleted_baseline_file(self, project, context) -> None:
        (project.root / ".claude/commands/plan.md").unlink()
        conflicts = detect_file_conflicts(context)
        assert [(c.path, c.kind) for c in conflicts] == [
            (".claude/commands/plan.md", ConflictKind.DELETED)
        ]

    def test_created_at_staged_target(self, project, context) -> None:
        stage_file(context.commands_dir, "new.md", "staged")
        project.write(".claude/commands/new.md", "written by someone else")
        conflicts = detect_file_conflicts(context)
        assert [(c.path, c.kind) for c in conflicts] == [
            (".claude/commands/new.md", ConflictKind.CREATED)
        ]

    def test_scope_staged_ignores_untargeted_files(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        touch_later(project.root / ".claude/commands/plan.md")

        assert detect_file_conflicts(context, scope=ConflictScope.STAGED) == []
        conflicts = detect_file_conflicts(context, scope=ConflictScope.ALL)
        assert [c.path for c in conflicts] == [".claude/commands/plan.md"]

    def test_reports_every_conflict_sorted(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        stage_file(context.commands_dir, "plan.md", "new")
        touch_later(project.root / ".speck/scripts/existing.ts")
        touch_later(project.root / ".claude/commands/plan.md")

        paths = [c.path for c in detect_file_conflicts(context)]
        assert paths == [".claude/commands/plan.md", ".speck/scripts/existing.ts"]


class TestCommit:
    def test_requires_ready(self, context) -> None:
        with pytest.raises(InvalidTransitionError):
            commit_staging(context)
        assert context.root_dir.exists()

    def test_moves_files_and_removes_tree(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new script")
        stage_file(context.skills_dir, "review/SKILL.md", "skill")
        ready = advance_to(context, *READY_PATH)

        committed, files = commit_staging(ready)

        assert committed.status is StagingStatus.COMMITTED
        assert sorted(files) == sorted([
            str(project.root / ".speck/scripts/existing.ts"),
            str(project.root / ".claude/skills/review/SKILL.md"),
        ])
        assert project.read(".speck/scripts/existing.ts") == "new script"
        assert project.read(".claude/skills/review/SKILL.md") == "skill"
        assert project.read(".claude/commands/plan.md") == "old plan"
        assert not context.root_dir.exists()

    def test_resumes_interrupted_commit(self, project, context) -> None:
        stage_file(context.scripts_dir, "a.ts", "a")
        stage_file(context.scripts_dir, "b.ts", "b")
        committing = advance_to(context, *READY_PATH, StagingStatus.COMMITTING)
        # 模拟中断：第一个文件已移动
        (context.scripts_dir / "a.ts").replace(project.root / ".speck/scripts/a.ts")

        _, files = commit_staging(committing)

        assert files == [str(project.root / ".speck/scripts/b.ts")]
        assert project.read(".speck/scripts/a.ts") == "a"
        assert project.read(".speck/scripts/b.ts") == "b"
        assert not context.root_dir.exists()


class TestRollback:
    def test_removes_tree_and_keeps_production(self, project, context) -> None:
        stage_file(context.scripts_dir, "existing.ts", "new")
        rolled_back = rollback_staging(context)

        assert rolled_back.status is StagingStatus.ROLLED_BACK
        assert not context.root_dir.exists()
        assert project.read(".speck/scripts/existing.ts") == "old script"

    def test_is_idempotent(self, context) -> None:
        rollback_staging(context)
        rolled_back = rollback_staging(context)
        assert rolled_back.status is StagingStatus.ROLLED_BACK

    def test_does_not_remove_newer_attempt(self, project, context) -> None:
        rollback_staging(context)
        newer = create_staging_directory(project.root, "2.1.0")

        rollback_staging(context)

        assert newer.root_dir.exists()
        assert read_metadata(newer.root_dir).start_time == newer.metadata.start_time

    def test_stale_context_still_removes_same_attempt(self, context) -> None:
        stale = replace(context, metadata=replace(context.metadata, status=StagingStatus.READY))
        rollback_staging(stale)
        assert not context.root_dir.exists()


class TestOrphans:
    def test_detect_lists_every_staging_dir(self, project) -> None:
        assert detect_orphaned_staging(project.root) == []
        create_staging_directory(project.root, "1.0.0")
        create_staging_directory(project.root, "1.1.0")
        assert detect_orphaned_staging(project.root) == [
            project.staging_dir("1.0.0"),
            project.staging_dir("1.1.0"),
        ]

    def test_load_context_from_disk(self, project, context) -> None:
        loaded = load_staging_context(context.root_dir)
        assert loaded is not None
        assert loaded.project_root == project.root
        assert loaded.metadata == context.metadata

    def test_load_context_corrupt_returns_none(self, context) -> None:
        context.metadata_path.write_text("[]", encoding="utf-8")
        assert load_staging_context(context.root_dir) is None

    def test_inspect_counts_files(self, context) -> None:
        stage_file(context.scripts_dir, "a.ts", "a")
        stage_file(context.commands_dir, "x/y.md", "y")

        info = inspect_staging(context)
        assert info["targetVersion"] == "2.1.0"
        assert info["previousVersion"] == "2.0.0"
        assert info["status"] == "staging"
        assert info["files"] == {"scripts": 1, "commands": 1, "agents": 0, "skills": 0, "total": 2}
        assert info["baselineFiles"] == 2
