# git_facts.py
# Small, focused wrapper around the Git CLI.
# Run metadata (sha, branch, actor, repository) and changed-file lists for
# trigger path filters all come from here; nothing else shells out to git.

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository that contains `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Short name of the checked-out branch.

    Returns an empty string on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return "" if name == "HEAD" else name


def user_name(cwd: Optional[str | Path] = None) -> str:
    return _git(["config", "user.name"], cwd)


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def repository_name(cwd: Optional[str | Path] = None) -> str:
    """
    `owner/name` derived from the origin remote, falling back to the
    directory name of the repository root.
    """
    try:
        url = remote_url("origin", cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return repo_root(cwd).name
    tail = url.rstrip("/").removesuffix(".git")
    tail = tail.replace(":", "/")
    parts = [p for p in tail.split("/") if p]
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are staged, unstaged or untracked changes."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files, sorted."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


@dataclass(frozen=True)
class GitFacts:
    """What the run context needs to know about the checkout."""
    sha: str = ""
    branch: str = ""
    actor: str = ""
    repository: str = ""
    root: Optional[Path] = None
    changed_files: Optional[List[str]] = field(default=None)


def collect(cwd: Optional[str | Path] = None, compare_ref: str = "origin/main") -> GitFacts:
    """
    Gather run metadata from the repository at `cwd`.

    Outside a repository (or without git) every field is left empty and
    `changed_files` is None, which disables path filtering.
    """
    try:
        root = repo_root(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return GitFacts()

    def attempt(fn, *args) -> str:
        try:
            return fn(*args, cwd=root)
        except (subprocess.CalledProcessError, FileNotFoundError):
            return ""

    return GitFacts(
        sha=attempt(head_sha),
        branch=attempt(current_branch),
        actor=attempt(user_name),
        repository=attempt(repository_name),
        root=root,
        changed_files=detect_changes(root, compare_ref),
    )


def detect_changes(root: Path, compare_ref: str = "origin/main") -> Optional[List[str]]:
    """
    Changed files for trigger path filters.

    A dirty tree reports its uncommitted files. A clean tree is compared
    against the merge-base with `compare_ref`, then HEAD~1. With no usable
    base (first commit) every tracked file counts as changed.
    """
    try:
        if is_dirty(root):
            return working_tree_changes(root)
        for base in _bases(root, compare_ref):
            try:
                return changed_files(base, "HEAD", cwd=root)
            except subprocess.CalledProcessError:
                continue
        return _lines(_git(["ls-files"], root))
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def _bases(root: Path, compare_ref: str) -> List[str]:
    bases = []
    try:
        bases.append(merge_base(compare_ref, cwd=root))
    except subprocess.CalledProcessError:
        pass
    bases.append("HEAD~1")
    return bases
