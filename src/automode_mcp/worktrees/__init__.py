"""Worktree isolation: one git worktree per running feature."""

from .manager import (
    ReleaseOutcome,
    WorktreeEntry,
    WorktreeHandle,
    WorktreeManager,
    classify_git_error,
    parse_worktree_list,
)
from .metadata import (
    WorktreeMetadata,
    WorktreePRInfo,
    delete_metadata,
    read_all_metadata,
    read_metadata,
    update_init_script_status,
    update_pr_info,
    write_metadata,
)
from .naming import sanitize_branch_name

__all__ = [
    "ReleaseOutcome",
    "WorktreeEntry",
    "WorktreeHandle",
    "WorktreeManager",
    "WorktreeMetadata",
    "WorktreePRInfo",
    "classify_git_error",
    "delete_metadata",
    "parse_worktree_list",
    "read_all_metadata",
    "read_metadata",
    "sanitize_branch_name",
    "update_init_script_status",
    "update_pr_info",
    "write_metadata",
]
