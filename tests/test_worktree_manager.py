from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from automode_mcp.config import AutomodeSettings
from automode_mcp.errors import VcsErrorKind, WorktreeError
from automode_mcp.features import Feature
from automode_mcp.worktrees import (
    ReleaseOutcome,
    WorktreeManager,
    classify_git_error,
    parse_worktree_list,
    read_metadata,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


def _branch_exists(cwd: Path, branch: str) -> bool:
    result = subprocess.run(
        ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=cwd
    )
    return result.returncode == 0


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    _git(project, "init", "-q")
    _git(project, "config", "user.email", "dev@example.com")
    _git(project, "config", "user.name", "Dev")
    _git(project, "config", "commit.gpgsign", "false")
    (project / "README.md").write_text("hello\n", encoding="utf-8")
    _git(project, "add", "README.md")
    _git(project, "commit", "-q", "-m", "initial")
    return project.resolve()


def _feature(feature_id: str, **kwargs) -> Feature:
    return Feature(id=feature_id, description=f"Implement {feature_id}", **kwargs)


def test_classify_git_error() -> None:
    assert classify_git_error("fatal: not a git repository") is VcsErrorKind.NOT_A_REPOSITORY
    assert (
        classify_git_error("fatal: Unable to create '/x/.git/index.lock': File exists.")
        is VcsErrorKind.REGISTRY_CONTENTION
    )
    assert (
        classify_git_error("fatal: 'feature/a' is already checked out at '/tmp/a'")
        is VcsErrorKind.BRANCH_IN_USE
    )
    assert (
        classify_git_error("fatal: a branch named 'feature/a' already exists")
        is VcsErrorKind.BRANCH_EXISTS
    )
    assert classify_git_error("CONFLICT (content): Merge conflict") is VcsErrorKind.MERGE_CONFLICT
    assert classify_git_error("something else") is VcsErrorKind.COMMAND_FAILED


def test_parse_worktree_list() -> None:
    output = "\n".join(
        [
            "worktree /repo",
            "HEAD abc123",
            "branch refs/heads/main",
            "",
            "worktree /repo/.worktrees/feature-a",
            "HEAD def456",
            "branch refs/heads/feature/a",
            "",
            "worktree /repo/.worktrees/stale",
            "HEAD 000000",
            "detached",
            "prunable gitdir file points to non-existent location",
        ]
    )

    entries = parse_worktree_list(output)

    assert [entry.is_main for entry in entries] == [True, False, False]
    assert entries[0].branch == "main"
    assert entries[1].branch == "feature/a"
    assert entries[1].path == Path("/repo/.worktrees/feature-a")
    assert entries[2].detached and entries[2].prunable


def test_branch_for_uses_prefix_or_existing_branch() -> None:
    manager = WorktreeManager(branch_prefix="auto/")

    assert manager.branch_for(_feature("f1")) == "auto/f1"
    assert manager.branch_for(_feature("f2", branch_name="custom/x")) == "custom/x"
    assert WorktreeManager(branch_prefix="").branch_for(_feature("f3")) == "f3"


def test_from_settings_reads_init_script_timeout(monkeypatch) -> None:
    monkeypatch.setenv("AUTOMODE_INIT_SCRIPT_TIMEOUT", "45")
    assert WorktreeManager.from_settings(AutomodeSettings()).init_script_timeout == 45.0

    monkeypatch.setenv("AUTOMODE_INIT_SCRIPT_TIMEOUT", "0")
    assert WorktreeManager.from_settings(AutomodeSettings()).init_script_timeout is None


@requires_git
def test_acquire_creates_then_reuses_worktree(repo: Path) -> None:
    manager = WorktreeManager(init_script=None)
    feature = _feature("f1")

    async def scenario():
        first = await manager.acquire(repo, feature)
        second = await manager.acquire(repo, feature)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.created is True
    assert first.branch == "feature/f1"
    assert first.path == repo / ".worktrees" / "feature-f1"
    assert (first.path / "README.md").exists()
    assert _git(first.path, "rev-parse", "--abbrev-ref", "HEAD") == "feature/f1"
    assert second.created is False
    assert second.path == first.path
    assert read_metadata(repo, "feature/f1") is not None


@requires_git
def test_acquire_copies_shared_files_and_runs_init_script_once(repo: Path) -> None:
    automaker = repo / ".automaker"
    automaker.mkdir()
    (automaker / "app_spec.txt").write_text("spec\n", encoding="utf-8")
    (automaker / "worktree-init.sh").write_text(
        'echo "$AUTOMAKER_BRANCH" >> init-ran.txt\n', encoding="utf-8"
    )
    manager = WorktreeManager()

    handle = asyncio.run(manager.acquire(repo, _feature("f2")))

    assert (handle.path / ".automaker" / "app_spec.txt").read_text(encoding="utf-8") == "spec\n"
    assert (handle.path / "init-ran.txt").read_text(encoding="utf-8").strip() == "feature/f2"
    metadata = read_metadata(repo, "feature/f2")
    assert metadata.init_script_status == "success"
    assert metadata.init_script_ran is True

    asyncio.run(manager._run_init_script(repo, "feature/f2", handle.path))
    assert (handle.path / "init-ran.txt").read_text(encoding="utf-8").count("feature/f2") == 1


@requires_git
def test_failing_init_script_does_not_block_acquire(repo: Path) -> None:
    automaker = repo / ".automaker"
    automaker.mkdir()
    (automaker / "worktree-init.sh").write_text("echo boom\nexit 3\n", encoding="utf-8")
    manager = WorktreeManager()

    handle = asyncio.run(manager.acquire(repo, _feature("f3")))

    assert handle.path.is_dir()
    metadata = read_metadata(repo, "feature/f3")
    assert metadata.init_script_status == "failed"
    assert metadata.init_script_error == "boom"


@requires_git
def test_slow_init_script_is_killed_after_timeout(repo: Path) -> None:
    automaker = repo / ".automaker"
    automaker.mkdir()
    (automaker / "worktree-init.sh").write_text("exec sleep 30\n", encoding="utf-8")
    manager = WorktreeManager(init_script_timeout=0.2)

    async def scenario():
        loop = asyncio.get_running_loop()
        began = loop.time()
        handle = await manager.acquire(repo, _feature("slow"))
        return handle, loop.time() - began

    handle, elapsed = asyncio.run(scenario())

    assert elapsed < 10
    assert handle.path.is_dir()
    metadata = read_metadata(repo, "feature/slow")
    assert metadata.init_script_status == "failed"
    assert "timed out" in metadata.init_script_error


@requires_git
def test_os_errors_during_setup_become_worktree_errors(repo: Path, monkeypatch) -> None:
    manager = WorktreeManager(init_script=None)

    def read_only(project, worktree):
        raise PermissionError(13, "Permission denied", str(worktree))

    monkeypatch.setattr(manager, "_copy_shared_files", read_only)

    with pytest.raises(WorktreeError) as excinfo:
        asyncio.run(manager.acquire(repo, _feature("locked")))

    assert excinfo.value.kind is VcsErrorKind.COMMAND_FAILED
    assert "feature/locked" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, PermissionError)


@requires_git
def test_acquire_errors(repo: Path, tmp_path: Path) -> None:
    manager = WorktreeManager(init_script=None)
    plain = tmp_path / "plain"
    plain.mkdir()
    main_branch = _git(repo, "rev-parse", "--abbrev-ref", "HEAD")

    with pytest.raises(WorktreeError) as not_repo:
        asyncio.run(manager.acquire(plain, _feature("f4")))
    assert not_repo.value.kind is VcsErrorKind.NOT_A_REPOSITORY

    with pytest.raises(WorktreeError) as in_use:
        asyncio.run(manager.acquire(repo, _feature("f5", branch_name=main_branch)))
    assert in_use.value.kind is VcsErrorKind.BRANCH_IN_USE


@requires_git
def test_release_policies(repo: Path) -> None:
    keeper = WorktreeManager(init_script=None)
    remover = WorktreeManager(init_script=None, remove_on_failure=True)

    async def scenario():
        done = await keeper.acquire(repo, _feature("ok"))
        await keeper.release(done, ReleaseOutcome.COMPLETED)
        failed = await keeper.acquire(repo, _feature("bad"))
        await keeper.release(failed, ReleaseOutcome.FAILED, error="agent crashed")
        dropped = await remover.acquire(repo, _feature("gone"))
        await remover.release(dropped, ReleaseOutcome.CANCELLED, error="cancelled: user")
        return done, failed, dropped

    done, failed, dropped = asyncio.run(scenario())

    assert done.path.is_dir()
    assert failed.path.is_dir()
    assert read_metadata(repo, "feature/bad").last_error == "agent crashed"
    assert not dropped.path.exists()
    assert _branch_exists(repo, "feature/gone")
    assert read_metadata(repo, "feature/gone").last_error == "cancelled: user"


@requires_git
def test_merge_commits_pending_work_and_release_removes_branch(repo: Path) -> None:
    manager = WorktreeManager(init_script=None)

    async def scenario():
        handle = await manager.acquire(repo, _feature("m1"))
        (handle.path / "feature.txt").write_text("done\n", encoding="utf-8")
        head = await manager.merge(repo, handle.branch, message="Merge feature m1")
        await manager.release(handle, ReleaseOutcome.MERGED)
        return handle, head

    handle, head = asyncio.run(scenario())

    assert (repo / "feature.txt").read_text(encoding="utf-8") == "done\n"
    assert head == _git(repo, "rev-parse", "HEAD")
    assert _git(repo, "log", "-1", "--format=%s") == "Merge feature m1"
    assert not handle.path.exists()
    assert not _branch_exists(repo, "feature/m1")
    assert read_metadata(repo, "feature/m1") is None


@requires_git
def test_squash_merge(repo: Path) -> None:
    manager = WorktreeManager(init_script=None)

    async def scenario():
        handle = await manager.acquire(repo, _feature("s1"))
        (handle.path / "squashed.txt").write_text("one\n", encoding="utf-8")
        return await manager.merge(repo, handle.branch, squash=True, message="Squash s1")

    head = asyncio.run(scenario())

    assert (repo / "squashed.txt").exists()
    assert head == _git(repo, "rev-parse", "HEAD")
    assert _git(repo, "log", "-1", "--format=%s") == "Squash s1"
    assert _git(repo, "rev-list", "--count", "HEAD") == "2"


@requires_git
def test_merge_conflict_is_aborted(repo: Path) -> None:
    manager = WorktreeManager(init_script=None)

    async def scenario():
        handle = await manager.acquire(repo, _feature("c1"))
        (handle.path / "README.md").write_text("branch change\n", encoding="utf-8")
        (repo / "README.md").write_text("main change\n", encoding="utf-8")
        _git(repo, "commit", "-q", "-am", "main edit")
        await manager.merge(repo, handle.branch)

    with pytest.raises(WorktreeError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.kind is VcsErrorKind.MERGE_CONFLICT
    assert not (repo / ".git" / "MERGE_HEAD").exists()
    assert (repo / "README.md").read_text(encoding="utf-8") == "main change\n"


@requires_git
def test_remove_unknown_worktree_returns_false(repo: Path) -> None:
    manager = WorktreeManager(init_script=None)

    assert asyncio.run(manager.remove_worktree(repo, "feature/none")) is False
