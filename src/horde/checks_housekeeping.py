"""Housekeeping checks: warband settings directories, .runtime gitignores and legacy dirs."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from horde import git_ops
from horde.checks_common import Check, CheckContext, CheckResult
from horde.layout import find_all_warbands, list_clan_workers, relative_to_root

log = logging.getLogger(__name__)

RUNTIME_PATTERN = ".runtime"
_RUNTIME_LINE = ".runtime/"


class WarbandSettingsCheck(Check):
    name = "warband-settings"
    description = "Check that warbands have settings/ directory"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.missing: list[Path] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = []
        warbands = find_all_warbands(ctx.town_root)
        if not warbands:
            return self.ok("No warbands found")
        self.missing = [
            ctx.town_root / warband / "settings"
            for warband in warbands
            if not (ctx.town_root / warband / "settings").exists()
        ]
        if not self.missing:
            return self.ok(f"All {len(warbands)} warband(s) have settings/ directory")
        return self.warning(
            f"{len(self.missing)} warband(s) missing settings/ directory",
            details=[
                f"Missing: {relative_to_root(path.parent, ctx.town_root)}/settings/"
                for path in self.missing
            ],
            fix_hint="Run 'hd doctor --fix' to create missing directories",
        )

    def repair(self, ctx: CheckContext) -> None:
        for path in self.missing:
            path.mkdir(parents=True, exist_ok=True)


def gitignore_has_pattern(path: Path, pattern: str = RUNTIME_PATTERN) -> bool:
    """True when a .gitignore lists ``pattern`` (optionally anchored, globbed or slashed)."""
    accepted = {
        pattern,
        f"{pattern}/",
        f"/{pattern}",
        f"/{pattern}/",
        f"**/{pattern}",
        f"**/{pattern}/",
    }
    try:
        lines = path.read_text().splitlines()
    except OSError:
        return False
    return any(line.strip() in accepted for line in lines)


def append_gitignore_line(path: Path, line: str) -> None:
    existing = ""
    if path.exists():
        existing = path.read_text()
    if existing and not existing.endswith("\n"):
        existing += "\n"
    path.write_text(f"{existing}{line}\n")


class RuntimeGitignoreCheck(Check):
    name = "runtime-gitignore"
    description = "Check that .runtime/ directories are gitignored"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.missing: list[Path] = []

    def _locations(self, ctx: CheckContext) -> list[tuple[Path, str]]:
        locations = [
            (ctx.town_root / ".gitignore", "Encampment .gitignore missing .runtime/ pattern")
        ]
        for warband in find_all_warbands(ctx.town_root):
            for worker in list_clan_workers(ctx.town_root, warband):
                clone = ctx.town_root / warband / "clan" / worker
                rel = relative_to_root(clone, ctx.town_root)
                locations.append(
                    (clone / ".gitignore", f"{rel} .gitignore missing .runtime/ pattern")
                )
        return locations

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = []
        issues = []
        for path, issue in self._locations(ctx):
            if not gitignore_has_pattern(path):
                self.missing.append(path)
                issues.append(issue)
        if not issues:
            return self.ok(".runtime/ properly gitignored")
        return self.warning(
            f"{len(issues)} location(s) missing .runtime gitignore",
            details=issues,
            fix_hint="Run 'hd doctor --fix' or add '.runtime/' to .gitignore files",
        )

    def repair(self, ctx: CheckContext) -> None:
        for path in self.missing:
            if gitignore_has_pattern(path):
                continue
            status = git_ops.file_status(path, timeout=ctx.timeout) if path.exists() else None
            if status == "tracked-modified":
                ctx.notify(f"Warning: {path}: has local modifications, skipping")
                continue
            log.info("Adding %s to %s", _RUNTIME_LINE, path)
            append_gitignore_line(path, _RUNTIME_LINE)


class LegacyHordeCheck(Check):
    name = "legacy-horde"
    description = "Check for old .horde/ directories that should be migrated"
    category = "Cleanup"
    can_fix = True

    def __init__(self) -> None:
        self.legacy_dirs: list[Path] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.legacy_dirs = []
        found = []
        if (ctx.town_root / ".horde").is_dir():
            self.legacy_dirs.append(ctx.town_root / ".horde")
            found.append(".horde/ (encampment root)")
        for warband in find_all_warbands(ctx.town_root):
            legacy = ctx.town_root / warband / ".horde"
            if legacy.is_dir():
                self.legacy_dirs.append(legacy)
                found.append(f"{warband}/.horde/")
        if not found:
            return self.ok("No legacy .horde/ directories found")
        return self.warning(
            f"{len(found)} legacy .horde/ directory(ies) found",
            details=found,
            fix_hint="Run 'hd doctor --fix' to remove after verifying migration is complete",
        )

    def repair(self, ctx: CheckContext) -> None:
        for directory in self.legacy_dirs:
            if directory.is_dir():
                log.info("Removing legacy directory %s", directory)
                shutil.rmtree(directory)
