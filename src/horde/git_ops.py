"""Git operations shared by doctor checks and repairs.

Functions raise RuntimeError on failure (message carries git's stderr),
except the ``*_quiet`` / predicate helpers, which are best-effort and log.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Literal

from horde.settings import DEFAULT_COMMAND_TIMEOUT

log = logging.getLogger(__name__)

FileStatus = Literal["untracked", "tracked-clean", "tracked-modified", "unknown"]

DEFAULT_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"


def run_git(
    args: list[str], cwd: str | Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> subprocess.CompletedProcess[str]:
    """Run ``git -C cwd ...`` without raising on a non-zero exit.

    Raises RuntimeError only when git cannot be started or times out.
    """
    command = ["git", "-C", str(cwd), *args]
    log.debug("Running %s", " ".join(command))
    try:
        return subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise RuntimeError("git is not installed") from None
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"git {args[0]} timed out after {timeout:g}s in {cwd}") from None


def git(args: list[str], cwd: str | Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
    """Run git and return stripped stdout. Raises RuntimeError on failure."""
    result = run_git(args, cwd, timeout=timeout)
    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise RuntimeError(f"git {' '.join(args)} failed in {cwd}: {detail}")
    return result.stdout.strip()


def git_ok(args: list[str], cwd: str | Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    try:
        return run_git(args, cwd, timeout=timeout).returncode == 0
    except RuntimeError as exc:
        log.debug("%s", exc)
        return False


def resolve_git_dir(repo: Path) -> Path | None:
    """Return the git directory of a clone, following a ``gitdir:`` file for worktrees."""
    dot_git = repo / ".git"
    if dot_git.is_dir():
        return dot_git
    if dot_git.is_file():
        try:
            content = dot_git.read_text().strip()
        except OSError:
            return None
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:"):].strip())
            return target if target.is_absolute() else (repo / target).resolve()
    return None


def current_branch(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
    """Current branch name; empty string for a detached HEAD."""
    return git(["branch", "--show-current"], repo, timeout=timeout)


def status_porcelain(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
    return git(["status", "--porcelain"], repo, timeout=timeout)


def has_uncommitted_changes(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    return bool(status_porcelain(repo, timeout=timeout))


def checkout(repo: Path, branch: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    git(["checkout", branch], repo, timeout=timeout)


def pull_rebase_quiet(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    """``git pull --rebase``; failures are logged, not raised."""
    try:
        git(["pull", "--rebase"], repo, timeout=timeout)
    except RuntimeError as exc:
        log.warning("Pull after checkout failed in %s: %s", repo, exc)


def fetch_quiet(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    """``git fetch --quiet``; used for measurement only, failures are ignored."""
    try:
        result = run_git(["fetch", "--quiet"], repo, timeout=timeout)
    except RuntimeError as exc:
        log.debug("Fetch skipped for %s: %s", repo, exc)
        return
    if result.returncode != 0:
        log.debug("Fetch failed for %s: %s", repo, result.stderr.strip())


def commits_behind(
    repo: Path, upstream: str = "origin/main", *, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> int:
    output = git(["rev-list", "--count", f"HEAD..{upstream}"], repo, timeout=timeout)
    try:
        return int(output)
    except ValueError:
        raise RuntimeError(f"unexpected rev-list output in {repo}: {output!r}") from None


def ref_exists(repo: Path, ref: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    return git_ok(["rev-parse", "--verify", "--quiet", ref], repo, timeout=timeout)


def diff_names(
    repo: Path, revision_range: str, pathspecs: list[str],
    *, timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> list[str]:
    output = git(["diff", "--name-only", revision_range, "--", *pathspecs], repo, timeout=timeout)
    return [line for line in output.splitlines() if line.strip()]


def worktree_remove(
    repo: Path, worktree: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> None:
    """``git worktree remove`` without --force; git refuses worktrees holding local changes."""
    git(["worktree", "remove", str(worktree)], repo, timeout=timeout)


def config_get(repo: Path, key: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str | None:
    """Value of a git config key, or None when unset."""
    result = run_git(["config", "--get", key], repo, timeout=timeout)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def config_set(
    repo: Path, key: str, value: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> None:
    git(["config", key, value], repo, timeout=timeout)


def read_tree_update(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    """Re-apply sparse-checkout patterns to the working tree."""
    git(["read-tree", "-mu", "HEAD"], repo, timeout=timeout)


def status_ok(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    return git_ok(["status"], repo, timeout=timeout)


def file_status(path: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> FileStatus:
    """Classify a file by git status: untracked, tracked-clean, tracked-modified or unknown."""
    directory = path.parent
    name = path.name
    try:
        if run_git(["rev-parse", "--git-dir"], directory, timeout=timeout).returncode != 0:
            return "unknown"
        listed = run_git(["ls-files", name], directory, timeout=timeout)
        if listed.returncode != 0:
            return "unknown"
        if not listed.stdout.strip():
            return "untracked"
        if run_git(["diff", "--quiet", name], directory, timeout=timeout).returncode != 0:
            return "tracked-modified"
        staged = run_git(["diff", "--cached", "--quiet", name], directory, timeout=timeout)
        if staged.returncode != 0:
            return "tracked-modified"
    except RuntimeError as exc:
        log.debug("git status unavailable for %s: %s", path, exc)
        return "unknown"
    return "tracked-clean"


# -- sparse checkout --

# Agent context files that must not be checked out into worker clones.
SPARSE_EXCLUDED = (".claude", "CLAUDE.md", "CLAUDE.local.md", ".mcp.json")
SPARSE_PATTERNS = ("/*", "!/.claude/", "!/CLAUDE.md", "!/CLAUDE.local.md", "!/.mcp.json")


def sparse_checkout_file(repo: Path) -> Path | None:
    git_dir = resolve_git_dir(repo)
    if git_dir is None:
        return None
    return git_dir / "info" / "sparse-checkout"


def sparse_checkout_configured(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    """True when core.sparseCheckout is on and every required pattern is listed."""
    if config_get(repo, "core.sparseCheckout", timeout=timeout) != "true":
        return False
    path = sparse_checkout_file(repo)
    if path is None:
        return False
    try:
        lines = {line.strip() for line in path.read_text().splitlines()}
    except OSError:
        return False
    return all(pattern in lines for pattern in SPARSE_PATTERNS)


def dirty_paths(
    repo: Path, pathspecs: list[str], *, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> list[str]:
    """Paths among ``pathspecs`` that are untracked or carry local modifications."""
    args = ["status", "--porcelain", "--untracked-files=all", "--", *pathspecs]
    result = run_git(args, repo, timeout=timeout)
    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise RuntimeError(f"git {' '.join(args)} failed in {repo}: {detail}")
    # Unstripped: the leading space of " M path" is part of the status code.
    dirty = []
    for line in result.stdout.splitlines():
        if len(line) > 3:
            dirty.append(line[3:].strip().strip('"'))
    return dirty


def configure_sparse_checkout(repo: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    """Enable sparse checkout with the agent-context exclusions and re-apply it."""
    path = sparse_checkout_file(repo)
    if path is None:
        raise RuntimeError(f"{repo} is not a git clone")
    config_set(repo, "core.sparseCheckout", "true", timeout=timeout)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{pattern}\n" for pattern in SPARSE_PATTERNS))
    read_tree_update(repo, timeout=timeout)
