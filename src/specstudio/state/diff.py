from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from specstudio.errors import DiffUnavailableError, NotARepositoryError

logger = logging.getLogger(__name__)

DIFF_HEADER_PREFIX = "diff --git"


@dataclass(frozen=True, slots=True)
class DiffResult:
    diff: str
    files_changed: int


class DiffProvider(Protocol):
    def get_diff(self, working_directory: Path) -> DiffResult: ...


def count_changed_files(diff: str) -> int:
    return sum(1 for line in diff.splitlines() if line.startswith(DIFF_HEADER_PREFIX))


class GitDiffProvider:
    """Read-only view of a workspace's uncommitted changes."""

    def __init__(self, *, include_untracked: bool = True) -> None:
        self.include_untracked = include_untracked

    @staticmethod
    def _run_git(
        working_directory: Path, args: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=working_directory,
                text=True,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                env={**os.environ, "GIT_PAGER": "cat", "NO_COLOR": "1"},
            )
        except OSError as exc:
            raise DiffUnavailableError(f"Failed to run git: {exc}") from exc
        if check and proc.returncode != 0:
            raise DiffUnavailableError(
                f"git {args[0]} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def _is_git_repo(self, working_directory: Path) -> bool:
        proc = self._run_git(working_directory, ["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _has_head(self, working_directory: Path) -> bool:
        proc = self._run_git(working_directory, ["rev-parse", "--verify", "HEAD"], check=False)
        return proc.returncode == 0

    def _untracked_diff(self, working_directory: Path) -> str:
        listing = self._run_git(
            working_directory, ["ls-files", "--others", "--exclude-standard", "-z"]
        )
        parts: list[str] = []
        for path in listing.stdout.split("\0"):
            if not path:
                continue
            # --no-index exits 1 when the files differ, which is always the case here.
            proc = self._run_git(
                working_directory,
                ["diff", "--no-index", "--", os.devnull, path],
                check=False,
            )
            if proc.returncode not in (0, 1):
                raise DiffUnavailableError(
                    f"git diff failed for untracked file {path}: {proc.stderr.strip()}"
                )
            parts.append(proc.stdout)
        return "".join(parts)

    def get_diff(self, working_directory: Path) -> DiffResult:
        cwd = Path(working_directory)
        if not cwd.is_dir():
            raise DiffUnavailableError(f"Working directory does not exist: {cwd}")
        if not self._is_git_repo(cwd):
            raise NotARepositoryError(f"Not a git repository: {cwd}")

        if self._has_head(cwd):
            diff = self._run_git(cwd, ["diff", "HEAD"]).stdout
        else:
            diff = self._run_git(cwd, ["diff", "--cached"]).stdout
        if self.include_untracked:
            diff += self._untracked_diff(cwd)

        files_changed = count_changed_files(diff)
        logger.debug("Diff for %s: %d file(s) changed", cwd, files_changed)
        return DiffResult(diff=diff, files_changed=files_changed)
