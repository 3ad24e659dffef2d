from __future__ import annotations

import json
from pathlib import Path

from automode_mcp.worktrees import (
    WorktreeMetadata,
    WorktreePRInfo,
    delete_metadata,
    read_all_metadata,
    read_metadata,
    update_init_script_status,
    update_pr_info,
    write_metadata,
)
from automode_mcp.worktrees.metadata import annotate_error, metadata_dir


def test_metadata_lives_under_sanitized_branch_dir(tmp_path: Path) -> None:
    write_metadata(tmp_path, "feature/login", WorktreeMetadata(branch="feature/login"))

    path = tmp_path / ".automaker" / "worktrees" / "feature-login" / "worktree.json"
    assert path.exists()
    record = json.loads(path.read_text(encoding="utf-8"))
    assert record["branch"] == "feature/login"
    assert "createdAt" in record
    assert metadata_dir(tmp_path, "feature/login") == path.parent


def test_read_missing_and_corrupt_metadata(tmp_path: Path) -> None:
    assert read_metadata(tmp_path, "feature/none") is None

    target = metadata_dir(tmp_path, "feature/bad")
    target.mkdir(parents=True)
    (target / "worktree.json").write_text("{not json", encoding="utf-8")

    assert read_metadata(tmp_path, "feature/bad") is None
    assert read_all_metadata(tmp_path) == {}


def test_pr_and_init_script_updates_merge(tmp_path: Path) -> None:
    update_init_script_status(tmp_path, "feature/a", "running")
    running = read_metadata(tmp_path, "feature/a")
    assert running is not None
    assert running.init_script_status == "running"
    assert running.init_script_ran is None

    update_pr_info(
        tmp_path,
        "feature/a",
        WorktreePRInfo(number=7, url="https://example.invalid/pr/7", title="Feature A"),
    )
    update_init_script_status(tmp_path, "feature/a", "failed", "exit 2")

    record = read_metadata(tmp_path, "feature/a")
    assert record is not None
    assert record.pr is not None and record.pr.number == 7
    assert record.init_script_status == "failed"
    assert record.init_script_ran is True
    assert record.init_script_error == "exit 2"

    stored = json.loads((metadata_dir(tmp_path, "feature/a") / "worktree.json").read_text())
    assert stored["initScriptStatus"] == "failed"
    assert stored["pr"]["number"] == 7


def test_read_all_and_delete(tmp_path: Path) -> None:
    write_metadata(tmp_path, "feature/one", WorktreeMetadata(branch="feature/one"))
    annotate_error(tmp_path, "feature/two", "agent crashed")

    records = read_all_metadata(tmp_path)
    assert set(records) == {"feature/one", "feature/two"}
    assert records["feature/two"].last_error == "agent crashed"

    delete_metadata(tmp_path, "feature/one")
    assert set(read_all_metadata(tmp_path)) == {"feature/two"}
    delete_metadata(tmp_path, "feature/never")
