"""Per-branch worktree metadata stored under ``.automaker/worktrees``."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..features.store import AUTOMAKER_DIR, atomic_write_json
from .naming import sanitize_branch_name

logger = logging.getLogger(__name__)

METADATA_FILE = "worktree.json"

InitScriptStatus = Literal["running", "success", "failed"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class WorktreePRInfo(_CamelModel):
    number: int
    url: str
    title: str
    state: str = "open"
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class WorktreeMetadata(_CamelModel):
    """Durable record describing one feature branch's worktree."""

    branch: str
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    pr: WorktreePRInfo | None = None
    init_script_ran: bool | None = None
    init_script_status: InitScriptStatus | None = None
    init_script_error: str | None = None
    last_error: str | None = None

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def metadata_root(project_path: Path | str) -> Path:
    return Path(project_path) / AUTOMAKER_DIR / "worktrees"


def metadata_dir(project_path: Path | str, branch: str) -> Path:
    return metadata_root(project_path) / sanitize_branch_name(branch)


def _load(path: Path) -> WorktreeMetadata | None:
    try:
        return WorktreeMetadata.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("Unreadable worktree metadata", extra={"path": str(path), "error": str(exc)})
        return None


def read_metadata(project_path: Path | str, branch: str) -> WorktreeMetadata | None:
    return _load(metadata_dir(project_path, branch) / METADATA_FILE)


def write_metadata(project_path: Path | str, branch: str, metadata: WorktreeMetadata) -> None:
    atomic_write_json(metadata_dir(project_path, branch) / METADATA_FILE, metadata.to_record())


def delete_metadata(project_path: Path | str, branch: str) -> None:
    shutil.rmtree(metadata_dir(project_path, branch), ignore_errors=True)


def read_all_metadata(project_path: Path | str) -> dict[str, WorktreeMetadata]:
    """Return every readable metadata record keyed by branch name."""

    root = metadata_root(project_path)
    if not root.is_dir():
        return {}
    records: dict[str, WorktreeMetadata] = {}
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue
        metadata = _load(entry / METADATA_FILE)
        if metadata is not None:
            records[metadata.branch] = metadata
    return records


def _read_or_new(project_path: Path | str, branch: str) -> WorktreeMetadata:
    return read_metadata(project_path, branch) or WorktreeMetadata(branch=branch)


def update_pr_info(project_path: Path | str, branch: str, pr: WorktreePRInfo) -> WorktreeMetadata:
    metadata = _read_or_new(project_path, branch)
    metadata.pr = pr
    write_metadata(project_path, branch, metadata)
    return metadata


def update_init_script_status(
    project_path: Path | str,
    branch: str,
    status: InitScriptStatus,
    error: str | None = None,
) -> WorktreeMetadata:
    metadata = _read_or_new(project_path, branch)
    metadata.init_script_status = status
    metadata.init_script_error = error
    if status != "running":
        metadata.init_script_ran = True
    write_metadata(project_path, branch, metadata)
    return metadata


def annotate_error(project_path: Path | str, branch: str, error: str | None) -> WorktreeMetadata:
    metadata = _read_or_new(project_path, branch)
    metadata.last_error = error
    write_metadata(project_path, branch, metadata)
    return metadata


__all__ = [
    "InitScriptStatus",
    "METADATA_FILE",
    "WorktreeMetadata",
    "WorktreePRInfo",
    "annotate_error",
    "delete_metadata",
    "metadata_dir",
    "metadata_root",
    "read_all_metadata",
    "read_metadata",
    "update_init_script_status",
    "update_pr_info",
    "write_metadata",
]
