"""Best-effort git queries used for run provenance and surgical undo."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 30


@dataclass(slots=True)
class GitState:
    """Git availability and HEAD at one point in time."""

    git_available: bool
    in_git_repo: bool
    head: str | None


def git_available() -> bool:
    return shutil.which("git") is not None


def _git(work_dir: Path, *args: str) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            ["git", *args],  # noqa: S607
            cwd=work_dir,
            capture_output=True,
            text=True,
            check=False,
            timeout=_GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as error:
        logger.debug("git %s failed in %s: %s", " ".join(args), work_dir, error)
        return None


def capture_git_state(work_dir: Path) -> GitState:
    if not git_available():
        return GitState(git_available=False, in_git_repo=False, head=None)
    inside = _git(work_dir, "rev-parse", "--is-inside-work-tree")
    if inside is None or inside.returncode != 0 or inside.stdout.strip() != "true":
        return GitState(git_available=True, in_git_repo=False, head=None)
    head = _git(work_dir, "rev-parse", "HEAD")
    head_sha = head.stdout.strip() if head is not None and head.returncode == 0 else None
    return GitState(git_available=True, in_git_repo=True, head=head_sha or None)


def commit_count_between(work_dir: Path, head_before: str | None, head_after: str | None) -> int:
    if not head_before or not head_after or head_before == head_after:
        return 0
    completed = _git(work_dir, "rev-list", "--count", f"{head_before}..{head_after}")
    if completed is None or completed.returncode != 0:
        return 0
    raw = completed.stdout.strip()
    return int(raw) if raw.isdigit() else 0


def file_exists_at(work_dir: Path, revision: str, path: str) -> bool:
    """True when `path`, relative to `work_dir`, exists in `revision`."""

    # "rev:./path" resolves against the cwd; "rev:path" would resolve from the top level.
    completed = _git(work_dir, "cat-file", "-e", f"{revision}:./{path}")
    return completed is not None and completed.returncode == 0


def diff_is_clean(work_dir: Path, revision: str, path: str) -> bool:
    """True when the working copy of `path` matches `revision`."""

    completed = _git(work_dir, "diff", "--quiet", revision, "--", path)
    return completed is not None and completed.returncode == 0


def checkout_file(work_dir: Path, revision: str, path: str) -> None:
    completed = _git(work_dir, "checkout", revision, "--", path)
    if completed is None or completed.returncode != 0:
        stderr = completed.stderr.strip() if completed is not None else "git unavailable"
        raise RuntimeError(f"git checkout {revision} -- {path} failed: {stderr}")
