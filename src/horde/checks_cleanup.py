"""Cleanup checks over project clones: branches, relics-sync leftovers, divergence, clan state."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from horde import git_ops
from horde.checks_common import Check, CheckContext, CheckResult
from horde.layout import (
    find_all_warbands,
    list_clan_workers,
    relative_to_root,
    warband_clones,
    write_json_file,
)

log = logging.getLogger(__name__)

MAIN_BRANCHES = ("main", "master")
RELICS_SYNC_BRANCH = "relics-sync"
CODE_EXTENSIONS = frozenset({".go", ".py", ".md", ".toml", ".json", ".yaml", ".yml", ".tmpl"})


def persistent_role_dirs(town_root: Path) -> list[Path]:
    """Clan workers plus witness and forge clones; raiders are ephemeral and excluded."""
    dirs: list[Path] = []
    for warband in find_all_warbands(town_root):
        dirs.extend(
            warband_clones(town_root, warband, kinds=("clan", "witness", "forge"))
        )
    return [path for path in dirs if (path / ".git").exists()]


class PersistentRoleBranchesCheck(Check):
    name = "persistent-role-branches"
    description = "Detect clan/witness/forge not on main branch"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.off_main: list[Path] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.off_main = []
        dirs = persistent_role_dirs(ctx.town_root)
        if not dirs:
            return self.ok("No persistent role directories found")

        details = []
        for path in dirs:
            try:
                branch = git_ops.current_branch(path, timeout=ctx.timeout)
            except RuntimeError as exc:
                log.debug("Skipping %s: %s", path, exc)
                continue
            if branch in MAIN_BRANCHES:
                continue
            self.off_main.append(path)
            details.append(
                f"{relative_to_root(path, ctx.town_root)} (on {branch or 'detached HEAD'})"
            )

        if not self.off_main:
            return self.ok(f"All {len(dirs)} persistent roles on main branch")
        return self.warning(
            f"{len(self.off_main)} persistent role(s) not on main branch",
            details=details,
            fix_hint=(
                "Run 'hd doctor --fix' to switch to main, "
                "or manually: git checkout main && git pull"
            ),
        )

    def repair(self, ctx: CheckContext) -> None:
        blocked = []
        for path in self.off_main:
            if git_ops.has_uncommitted_changes(path, timeout=ctx.timeout):
                blocked.append(relative_to_root(path, ctx.town_root))
                continue
            log.info("Switching %s to main", path)
            git_ops.checkout(path, "main", timeout=ctx.timeout)
            git_ops.pull_rebase_quiet(path, timeout=ctx.timeout)
        if blocked:
            raise RuntimeError(
                f"uncommitted changes, commit or stash first: {', '.join(blocked)}"
            )


def is_code_file(path: str) -> bool:
    return Path(path).suffix in CODE_EXTENSIONS


class RelicsSyncOrphansCheck(Check):
    name = "relics-sync-orphans"
    description = "Detect orphaned code on relics-sync branch"
    category = "Cleanup"

    def detect(self, ctx: CheckContext) -> CheckResult:
        clan_dir = None
        for warband in find_all_warbands(ctx.town_root):
            workers = list_clan_workers(ctx.town_root, warband)
            if workers:
                clan_dir = ctx.town_root / warband / "clan" / workers[0]
                break
        if clan_dir is None:
            return self.ok("No clan directories found")

        if not git_ops.ref_exists(clan_dir, RELICS_SYNC_BRANCH, timeout=ctx.timeout):
            return self.ok("No relics-sync branch (single-clone setup)")

        try:
            changed = git_ops.diff_names(
                clan_dir,
                f"main..{RELICS_SYNC_BRANCH}",
                [".", ":(exclude).relics"],
                timeout=ctx.timeout,
            )
        except RuntimeError as exc:
            return self.warning(
                f"Could not diff main..{RELICS_SYNC_BRANCH}", details=[str(exc)]
            )

        orphaned = [path for path in changed if is_code_file(path)]
        if not changed:
            return self.ok("No orphaned code on relics-sync")
        if not orphaned:
            return self.ok("No orphaned code on relics-sync (only non-code files differ)")
        return self.warning(
            f"{len(orphaned)} file(s) on relics-sync not in main",
            details=orphaned,
            fix_hint=f"Review with: git diff main..{RELICS_SYNC_BRANCH} -- <file>",
        )


class CloneDivergenceCheck(Check):
    name = "clone-divergence"
    description = "Detect clones significantly behind origin/main"
    category = "Cleanup"

    def detect(self, ctx: CheckContext) -> CheckResult:
        clones = []
        for warband in find_all_warbands(ctx.town_root):
            clones.extend(warband_clones(ctx.town_root, warband))
        if not clones:
            return self.ok("No clones found")

        warn_at = ctx.settings.divergence_warning
        error_at = ctx.settings.divergence_error
        checked = 0
        warnings: list[str] = []
        critical: list[str] = []
        for clone in clones:
            if not (clone / ".git").exists():
                continue
            try:
                branch = git_ops.current_branch(clone, timeout=ctx.timeout)
            except RuntimeError as exc:
                log.debug("Skipping %s: %s", clone, exc)
                continue
            # Feature branches are expected to diverge.
            if branch not in MAIN_BRANCHES:
                continue
            checked += 1
            git_ops.fetch_quiet(clone, timeout=ctx.timeout)
            try:
                behind = git_ops.commits_behind(clone, timeout=ctx.timeout)
            except RuntimeError as exc:
                log.debug("Cannot measure divergence of %s: %s", clone, exc)
                continue
            rel = relative_to_root(clone, ctx.town_root)
            if behind > error_at:
                critical.append(f"{rel}: {behind} commits behind origin/main (EMERGENCY)")
            elif behind > warn_at:
                warnings.append(f"{rel}: {behind} commits behind origin/main")

        hint = "Run 'git pull --rebase' in affected directories"
        if critical:
            return self.error(
                f"{len(critical)} clone(s) critically diverged",
                details=critical + warnings,
                fix_hint=hint,
            )
        if warnings:
            return self.warning(
                f"{len(warnings)} clone(s) behind origin/main", details=warnings, fix_hint=hint
            )
        if checked == 0:
            return self.ok("No valid git clones found")
        return self.ok(f"All {checked} clones in sync with origin/main")


# -- clan workspaces --


def clan_state_issues(path: Path) -> list[str]:
    """Problems with a clan worker's ``state.json``. A missing file is fine."""
    try:
        raw = path.read_text()
    except FileNotFoundError:
        return []
    except OSError as exc:
        return [f"cannot read state.json: {exc}"]
    try:
        state = json.loads(raw)
    except json.JSONDecodeError:
        return ["invalid JSON in state.json"]
    if not isinstance(state, dict):
        return ["invalid JSON in state.json"]
    missing = [f"missing {key}" for key in ("name", "warband", "clone_path") if not state.get(key)]
    return [", ".join(missing)] if missing else []


def clan_state_document(clone: Path, warband: str, worker: str) -> dict[str, Any]:
    now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "name": worker,
        "warband": warband,
        "clone_path": str(clone),
        "branch": "main",
        "created_at": now,
        "updated_at": now,
    }


class ClanStateCheck(Check):
    name = "clan-state"
    description = "Validate clan worker state.json files"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.invalid: list[tuple[str, str, Path]] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.invalid = []
        total = 0
        details = []
        for warband in find_all_warbands(ctx.town_root):
            for worker in list_clan_workers(ctx.town_root, warband):
                total += 1
                clone = ctx.town_root / warband / "clan" / worker
                issues = clan_state_issues(clone / "state.json")
                if issues:
                    self.invalid.append((warband, worker, clone))
                    details.extend(f"{warband}/{worker}: {issue}" for issue in issues)

        if total == 0:
            return self.ok("No clan workspaces found")
        if not self.invalid:
            return self.ok(f"All {total} clan state files valid")
        return self.warning(
            f"{len(self.invalid)} clan workspace(s) with invalid state.json",
            details=details,
            fix_hint="Run 'hd doctor --fix' to regenerate state files",
        )

    def repair(self, ctx: CheckContext) -> None:
        for warband, worker, clone in self.invalid:
            if not clan_state_issues(clone / "state.json"):
                continue
            log.info("Regenerating state.json for %s/%s", warband, worker)
            write_json_file(clone / "state.json", clan_state_document(clone, warband, worker))


def cross_warband_worktrees(town_root: Path) -> list[tuple[str, str, str, str]]:
    """``(warband, dir_name, source_warband, worker)`` for worktrees named ``<source>-<worker>``."""
    found = []
    for warband in find_all_warbands(town_root):
        for name in list_clan_workers(town_root, warband):
            # Worktrees have a .git file; regular clones have a .git directory.
            if not (town_root / warband / "clan" / name / ".git").is_file():
                continue
            source, sep, worker = name.partition("-")
            if sep and source and worker:
                found.append((warband, name, source, worker))
    return found


class ClanWorktreesCheck(Check):
    name = "clan-worktrees"
    description = "Detect stale cross-warband worktrees in clan directories"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.stale: list[tuple[str, str, str, str]] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.stale = cross_warband_worktrees(ctx.town_root)
        if not self.stale:
            return self.ok("No cross-warband worktrees in clan directories")
        return self.warning(
            f"{len(self.stale)} cross-warband worktree(s) in clan directories",
            details=[
                f"{warband}/clan/{name} (from {source}/clan/{worker})"
                for warband, name, source, worker in self.stale
            ],
            fix_hint=(
                "Run 'hd doctor --fix' to remove, "
                "or use 'hd clan remove <name> --purge'"
            ),
        )

    def repair(self, ctx: CheckContext) -> None:
        errors = []
        for warband, name, _source, _worker in self.stale:
            worktree = ctx.town_root / warband / "clan" / name
            if not worktree.exists():
                continue
            rel = f"{warband}/clan/{name}"
            try:
                dirty = git_ops.has_uncommitted_changes(worktree, timeout=ctx.timeout)
            except RuntimeError as exc:
                errors.append(f"{rel}: {exc}")
                continue
            if dirty:
                errors.append(f"{rel}: uncommitted changes, commit or stash first")
                continue
            repo = ctx.town_root / warband / "warchief" / "warband"
            try:
                git_ops.worktree_remove(repo, worktree, timeout=ctx.timeout)
            except RuntimeError as exc:
                errors.append(f"{rel}: {exc}")
        if errors:
            raise RuntimeError("; ".join(errors))
