"""Git worktree isolation for running features."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Sequence

from ..config import AutomodeSettings
from ..errors import VcsErrorKind, WorktreeError
from ..features.models import Feature
from ..features.store import AUTOMAKER_DIR
from . import metadata as meta
from .naming import sanitize_branch_name

logger = logging.getLogger(__name__)

# Project files mirrored into each new worktree so agents see the same context.
_SHARED_AUTOMAKER_FILES = ("app_spec.txt", "categories.json")

_CONTENTION_MARKERS = ("index.lock", "could not lock", "unable to create", "is locked")


class ReleaseOutcome(str, Enum):
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MERGED = "merged"


@dataclass(slots=True)
class WorktreeHandle:
    """A worktree reserved for one feature run."""

    project_path: Path
    branch: str
    path: Path
    created: bool = False


@dataclass(slots=True)
class WorktreeEntry:
    """One record from ``git worktree list --porcelain``."""

    path: Path
    head: str | None = None
    branch: str | None = None
    is_main: bool = False
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def classify_git_error(stderr: str) -> VcsErrorKind:
    text = stderr.lower()
    if "not a git repository" in text:
        return VcsErrorKind.NOT_A_REPOSITORY
    if any(marker in text for marker in _CONTENTION_MARKERS):
        return VcsErrorKind.REGISTRY_CONTENTION
    if "already checked out" in text or "is already used by worktree" in text:
        return VcsErrorKind.BRANCH_IN_USE
    if "already exists" in text:
        return VcsErrorKind.BRANCH_EXISTS
    if "conflict" in text or "automatic merge failed" in text:
        return VcsErrorKind.MERGE_CONFLICT
    return VcsErrorKind.COMMAND_FAILED


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    current: WorktreeEntry | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            current = WorktreeEntry(path=Path(line[len("worktree "):]), is_main=not entries)
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current.bare = True
        elif line == "detached":
            current.detached = True
        elif line.startswith("prunable"):
            current.prunable = True
    return entries


class WorktreeManager:
    """Creates, retains and removes one git worktree per feature branch.

    Worktree registry mutations (add, remove, prune, merge) are serialized per
    repository with an ``asyncio.Lock``. A failure caused by git's own lock
    files is retried once before surfacing as ``REGISTRY_CONTENTION``.
    """

    def __init__(
        self,
        *,
        branch_prefix: str = "feature",
        worktree_dir: str = ".worktrees",
        init_script: str | None = ".automaker/worktree-init.sh",
        remove_on_failure: bool = False,
        init_script_timeout: float | None = 300.0,
        git_executable: str = "git",
        contention_retry_delay: float = 0.2,
    ) -> None:
        self.branch_prefix = branch_prefix.strip("/")
        self.worktree_dir = worktree_dir
        self.init_script = init_script
        self.remove_on_failure = remove_on_failure
        self.init_script_timeout = init_script_timeout or None
        self._git = git_executable
        self._contention_retry_delay = contention_retry_delay
        self._locks: dict[Path, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: AutomodeSettings) -> "WorktreeManager":
        return cls(
            branch_prefix=settings.branch_prefix,
            worktree_dir=settings.worktree_dir,
            init_script=settings.init_script or None,
            remove_on_failure=settings.remove_worktree_on_failure,
            init_script_timeout=settings.init_script_timeout,
        )

    def _lock_for(self, project_path: Path) -> asyncio.Lock:
        lock = self._locks.get(project_path)
        if lock is None:
            lock = self._locks[project_path] = asyncio.Lock()
        return lock

    def branch_for(self, feature: Feature) -> str:
        if feature.branch_name:
            return feature.branch_name
        if self.branch_prefix:
            return f"{self.branch_prefix}/{feature.id}"
        return feature.id

    def worktree_path(self, project_path: Path | str, branch: str) -> Path:
        return Path(project_path) / self.worktree_dir / sanitize_branch_name(branch)

    async def _exec(self, args: Sequence[str], cwd: Path) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorktreeError(VcsErrorKind.COMMAND_FAILED, f"git executable not found: {exc}") from exc
        except NotADirectoryError as exc:
            raise WorktreeError(VcsErrorKind.NOT_A_REPOSITORY, f"{cwd} is not a directory") from exc
        stdout, stderr = await process.communicate()
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _run_git(self, args: Sequence[str], cwd: Path, *, retry_contention: bool = False) -> str:
        attempts = 2 if retry_contention else 1
        for attempt in range(1, attempts + 1):
            returncode, stdout, stderr = await self._exec(args, cwd)
            if returncode == 0:
                return stdout
            kind = classify_git_error(stderr)
            if kind is VcsErrorKind.REGISTRY_CONTENTION and attempt < attempts:
                logger.info(
                    "Git registry locked, retrying",
                    extra={"git_args": list(args), "cwd": str(cwd)},
                )
                await asyncio.sleep(self._contention_retry_delay)
                continue
            message = stderr.strip() or stdout.strip() or f"git {' '.join(args)} failed"
            raise WorktreeError(kind, message, stderr=stderr)
        raise AssertionError("unreachable")

    async def _ensure_repository(self, project_path: Path) -> None:
        if not project_path.is_dir():
            raise WorktreeError(VcsErrorKind.NOT_A_REPOSITORY, f"{project_path} does not exist")
        returncode, _, stderr = await self._exec(["rev-parse", "--git-dir"], project_path)
        if returncode != 0:
            raise WorktreeError(
                VcsErrorKind.NOT_A_REPOSITORY,
                f"{project_path} is not a git repository",
                stderr=stderr,
            )

    async def _branch_exists(self, project_path: Path, branch: str) -> bool:
        returncode, _, _ = await self._exec(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], project_path
        )
        return returncode == 0

    async def list_worktrees(self, project_path: Path | str) -> list[WorktreeEntry]:
        project = Path(project_path).resolve()
        output = await self._run_git(["worktree", "list", "--porcelain"], project)
        return parse_worktree_list(output)

    async def find_worktree_for_branch(self, project_path: Path | str, branch: str) -> Path | None:
        """Return the linked (non-main) worktree path that has ``branch`` checked out."""

        for entry in await self.list_worktrees(project_path):
            if entry.branch == branch and not entry.is_main and not entry.prunable:
                return entry.path
        return None

    async def acquire(self, project_path: Path | str, feature: Feature) -> WorktreeHandle:
        """Reserve the worktree for ``feature``, creating it when needed.

        Filesystem failures while preparing the worktree surface as
        ``WorktreeError`` with ``COMMAND_FAILED``.
        """

        project = Path(project_path).resolve()
        branch = self.branch_for(feature)
        try:
            return await self._acquire(project, branch, feature)
        except OSError as exc:
            raise WorktreeError(
                VcsErrorKind.COMMAND_FAILED, f"Could not prepare worktree for '{branch}': {exc}"
            ) from exc

    async def _acquire(self, project: Path, branch: str, feature: Feature) -> WorktreeHandle:

        async with self._lock_for(project):
            await self._ensure_repository(project)
            entries = parse_worktree_list(
                await self._run_git(["worktree", "list", "--porcelain"], project)
            )
            if entries and entries[0].branch == branch:
                raise WorktreeError(
                    VcsErrorKind.BRANCH_IN_USE,
                    f"Branch '{branch}' is checked out in the main worktree",
                )
            for entry in entries[1:]:
                if entry.branch != branch:
                    continue
                if entry.path.is_dir() and not entry.prunable:
                    logger.debug(
                        "Reusing worktree", extra={"branch": branch, "path": str(entry.path)}
                    )
                    return WorktreeHandle(project_path=project, branch=branch, path=entry.path)
                await self._run_git(["worktree", "prune"], project, retry_contention=True)

            path = self.worktree_path(project, branch)
            path.parent.mkdir(parents=True, exist_ok=True)
            if await self._branch_exists(project, branch):
                args = ["worktree", "add", str(path), branch]
            else:
                args = ["worktree", "add", "-b", branch, str(path), "HEAD"]
            await self._run_git(args, project, retry_contention=True)

        logger.info(
            "Created worktree",
            extra={"feature_id": feature.id, "branch": branch, "path": str(path)},
        )
        self._copy_shared_files(project, path)
        if meta.read_metadata(project, branch) is None:
            meta.write_metadata(project, branch, meta.WorktreeMetadata(branch=branch))
        await self._run_init_script(project, branch, path)
        return WorktreeHandle(project_path=project, branch=branch, path=path, created=True)

    def _copy_shared_files(self, project: Path, worktree: Path) -> None:
        source = project / AUTOMAKER_DIR
        target = worktree / AUTOMAKER_DIR
        for name in _SHARED_AUTOMAKER_FILES:
            if (source / name).is_file() and not (target / name).exists():
                target.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source / name, target / name)

    async def _run_init_script(self, project: Path, branch: str, worktree: Path) -> None:
        if not self.init_script:
            return
        script = project / self.init_script
        if not script.is_file():
            return
        existing = meta.read_metadata(project, branch)
        if existing is not None and existing.init_script_ran:
            return

        meta.update_init_script_status(project, branch, "running")
        env = dict(os.environ)
        env.update(
            {
                "AUTOMAKER_PROJECT_PATH": str(project),
                "AUTOMAKER_WORKTREE_PATH": str(worktree),
                "AUTOMAKER_BRANCH": branch,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                "sh",
                str(script),
                cwd=str(worktree),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            meta.update_init_script_status(project, branch, "failed", str(exc))
            logger.warning(
                "Worktree init script could not start", extra={"branch": branch, "error": str(exc)}
            )
            return
        try:
            output, _ = await asyncio.wait_for(process.communicate(), self.init_script_timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            error = f"init script timed out after {self.init_script_timeout:g}s"
            meta.update_init_script_status(project, branch, "failed", error)
            logger.warning(
                "Worktree init script timed out",
                extra={"branch": branch, "timeout": self.init_script_timeout},
            )
            return
        if process.returncode == 0:
            meta.update_init_script_status(project, branch, "success")
            return
        error = output.decode("utf-8", errors="replace").strip()[-2000:] or (
            f"init script exited with {process.returncode}"
        )
        meta.update_init_script_status(project, branch, "failed", error)
        logger.warning(
            "Worktree init script failed",
            extra={"branch": branch, "returncode": process.returncode},
        )

    async def release(
        self,
        handle: WorktreeHandle,
        outcome: ReleaseOutcome,
        *,
        error: str | None = None,
        force_remove: bool | None = None,
    ) -> None:
        """Apply the retention policy for a finished run.

        Successful and approval-pending runs keep their worktree. Failed or
        cancelled runs keep it with an error annotation unless removal is
        requested. Merged runs drop the worktree, its metadata and the branch.
        Cleanup problems are logged, never raised.
        """

        outcome = ReleaseOutcome(outcome)
        project = handle.project_path
        try:
            if outcome in (ReleaseOutcome.COMPLETED, ReleaseOutcome.WAITING_APPROVAL):
                record = meta.read_metadata(project, handle.branch)
                if record is not None and record.last_error:
                    meta.annotate_error(project, handle.branch, None)
                return

            if outcome is ReleaseOutcome.MERGED:
                await self.remove_worktree(project, handle.branch, delete_branch=True, force=True)
                meta.delete_metadata(project, handle.branch)
                return

            meta.annotate_error(project, handle.branch, error or outcome.value)
            remove = self.remove_on_failure if force_remove is None else force_remove
            if remove:
                await self.remove_worktree(project, handle.branch, force=True)
        except (WorktreeError, OSError) as exc:
            logger.warning(
                "Worktree cleanup failed",
                extra={"branch": handle.branch, "outcome": outcome.value, "error": str(exc)},
            )

    async def remove_worktree(
        self,
        project_path: Path | str,
        branch: str,
        *,
        delete_branch: bool = False,
        force: bool = False,
    ) -> bool:
        """Remove the worktree for ``branch``; branch deletion is best effort."""

        project = Path(project_path).resolve()
        removed = False
        async with self._lock_for(project):
            entries = parse_worktree_list(
                await self._run_git(["worktree", "list", "--porcelain"], project)
            )
            for entry in entries[1:]:
                if entry.branch != branch:
                    continue
                args = ["worktree", "remove", str(entry.path)]
                if force:
                    args.insert(2, "--force")
                if entry.path.exists():
                    await self._run_git(args, project, retry_contention=True)
                else:
                    await self._run_git(["worktree", "prune"], project, retry_contention=True)
                removed = True

            if delete_branch:
                returncode, _, stderr = await self._exec(["branch", "-D", branch], project)
                if returncode != 0:
                    logger.warning(
                        "Branch deletion failed",
                        extra={"branch": branch, "error": stderr.strip()},
                    )
        if removed:
            logger.info("Removed worktree", extra={"branch": branch, "project": str(project)})
        return removed

    async def commit_pending(self, worktree: Path, message: str) -> bool:
        """Commit uncommitted changes in ``worktree``; returns False when clean."""

        await self._run_git(["add", "-A", "--", ".", f":(exclude){AUTOMAKER_DIR}"], worktree)
        returncode, _, _ = await self._exec(["diff", "--cached", "--quiet"], worktree)
        if returncode == 0:
            return False
        await self._run_git(["commit", "-m", message], worktree)
        return True

    async def merge(
        self,
        project_path: Path | str,
        branch: str,
        *,
        squash: bool = False,
        message: str | None = None,
    ) -> str:
        """Merge ``branch`` into the main worktree and return the new HEAD."""

        project = Path(project_path).resolve()
        message = message or f"Merge {branch}"

        worktree = await self.find_worktree_for_branch(project, branch)
        if worktree is not None:
            await self.commit_pending(worktree, f"{message} (pending changes)")

        async with self._lock_for(project):
            await self._ensure_repository(project)
            if squash:
                args = ["merge", "--squash", branch]
            else:
                args = ["merge", "--no-ff", "--no-edit", "-m", message, branch]
            try:
                await self._run_git(args, project)
                if squash:
                    returncode, _, _ = await self._exec(["diff", "--cached", "--quiet"], project)
                    if returncode != 0:
                        await self._run_git(["commit", "-m", message], project)
            except WorktreeError as exc:
                abort = ["reset", "--merge"] if squash else ["merge", "--abort"]
                returncode, _, stderr = await self._exec(abort, project)
                if returncode != 0:
                    logger.warning(
                        "Merge abort failed", extra={"branch": branch, "error": stderr.strip()}
                    )
                if exc.kind is VcsErrorKind.MERGE_CONFLICT or "conflict" in str(exc).lower():
                    raise WorktreeError(
                        VcsErrorKind.MERGE_CONFLICT,
                        f"Merge of '{branch}' has conflicts",
                        stderr=exc.stderr,
                    ) from exc
                raise
            head = await self._run_git(["rev-parse", "HEAD"], project)

        logger.info("Merged branch", extra={"branch": branch, "squash": squash})
        return head.strip()

    def read_metadata(self, project_path: Path | str, branch: str) -> meta.WorktreeMetadata | None:
        return meta.read_metadata(project_path, branch)

    def write_metadata(
        self, project_path: Path | str, branch: str, metadata: meta.WorktreeMetadata
    ) -> None:
        meta.write_metadata(project_path, branch, metadata)

    def delete_metadata(self, project_path: Path | str, branch: str) -> None:
        meta.delete_metadata(project_path, branch)

    def read_all_metadata(self, project_path: Path | str) -> dict[str, meta.WorktreeMetadata]:
        return meta.read_all_metadata(project_path)

    def update_pr_info(
        self, project_path: Path | str, branch: str, pr: meta.WorktreePRInfo
    ) -> meta.WorktreeMetadata:
        return meta.update_pr_info(project_path, branch, pr)


__all__ = [
    "ReleaseOutcome",
    "WorktreeEntry",
    "WorktreeHandle",
    "WorktreeManager",
    "classify_git_error",
    "parse_worktree_list",
]
