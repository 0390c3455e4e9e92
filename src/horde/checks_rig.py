"""Per-warband checks, enabled with ``hd doctor --warband NAME``."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from horde import git_ops
from horde.checks_common import (
    RELICS_SKIPPED,
    Check,
    CheckContext,
    CheckResult,
    RelicsCheck,
    RelicsFactory,
)
from horde.layout import list_clan_workers, list_raiders, raider_clone_path, warband_clones
from horde.paths import REDIRECT_FILE_NAME, RELICS_DIR_NAME, WARBAND_REDIRECT_TARGET
from horde.relics import (
    RELICS_CUSTOM_TYPES,
    RelicsError,
    RelicsUnavailable,
    get_prefix_for_warband,
    resolve_relics_dir,
)
from horde.session import RAIDER_BRANCH_PREFIX

log = logging.getLogger(__name__)

REQUIRED_EXCLUDES = ("raiders/", "witness/", "forge/", "warchief/")
RELICS_DATA_FILES = ("issues.jsonl", "issues.db", "config.yaml")


class RigCheck(Check):
    """A check that needs ``ctx.warband``; reports an error when none was given."""

    category = "Rig"

    def detect(self, ctx: CheckContext) -> CheckResult:
        if ctx.warband_path is None:
            return self.error("No warband specified")
        return self.detect_warband(ctx, ctx.warband_path)

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        raise NotImplementedError


def _read_lines(path: Path) -> list[str]:
    try:
        return path.read_text().splitlines()
    except OSError:
        return []


def _rel(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


class WarbandIsGitRepoCheck(RigCheck):
    name = "warband-is-git-repo"
    description = "Verify warband has a valid warchief/warband git clone"

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        clone = warband_path / "warchief" / "warband"
        dot_git = clone / ".git"
        if not dot_git.exists():
            return self.error(
                "No warchief/warband clone found",
                details=[f"Missing: {dot_git}"],
                fix_hint="Clone the repository to warchief/warband/",
            )
        try:
            git_ops.status_porcelain(clone, timeout=ctx.timeout)
        except RuntimeError as exc:
            return self.error(
                "git status failed on warchief/warband",
                details=[f"Error: {exc}"],
                fix_hint="Check git configuration and repository integrity",
            )
        kind = "worktree" if dot_git.is_file() else "clone"
        return self.ok(f"Valid warchief/warband {kind}")


class GitExcludeCheck(RigCheck):
    name = "git-exclude-configured"
    description = "Check .git/info/exclude has Horde directories"
    can_fix = True

    def __init__(self) -> None:
        self.missing: list[str] = []
        self.exclude_path: Path | None = None

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        self.missing = []
        self.exclude_path = None
        git_dir = git_ops.resolve_git_dir(warband_path / "warchief" / "warband")
        if git_dir is None:
            return self.warning(
                "No warchief/warband clone found",
                fix_hint="Run warband-is-git-repo check first",
            )
        self.exclude_path = git_dir / "info" / "exclude"
        existing = {
            line.strip()
            for line in _read_lines(self.exclude_path)
            if line.strip() and not line.strip().startswith("#")
        }
        self.missing = [entry for entry in REQUIRED_EXCLUDES if entry not in existing]
        if not self.missing:
            return self.ok("Git exclude properly configured")
        return self.warning(
            f"{len(self.missing)} Horde directories not excluded",
            details=[f"Missing: {', '.join(self.missing)}"],
            fix_hint="Run 'hd doctor --fix' to add missing entries",
        )

    def repair(self, ctx: CheckContext) -> None:
        if not self.missing or self.exclude_path is None:
            return
        self.exclude_path.parent.mkdir(parents=True, exist_ok=True)
        existing = self.exclude_path.read_text() if self.exclude_path.exists() else ""
        header = "# Horde directories\n" if not existing else "\n# Horde directories\n"
        if existing and not existing.endswith("\n"):
            existing += "\n"
        entries = "".join(f"{entry}\n" for entry in self.missing)
        self.exclude_path.write_text(existing + header + entries)


class HooksPathCheck(RigCheck):
    name = "hooks-path-configured"
    description = "Check core.hooksPath is set for all clones"
    can_fix = True

    def __init__(self) -> None:
        self.unconfigured: list[Path] = []

    def _clones(self, ctx: CheckContext, warband_path: Path) -> list[Path]:
        clones = [warband_path / "warchief" / "warband", warband_path / "forge" / "warband"]
        warband = warband_path.name
        clones += [warband_path / "clan" / n for n in list_clan_workers(ctx.town_root, warband)]
        clones += [warband_path / "raiders" / n for n in list_raiders(ctx.town_root, warband)]
        return clones

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        self.unconfigured = []
        for clone in self._clones(ctx, warband_path):
            if not (clone / ".git").exists() or not (clone / ".githooks").exists():
                continue
            if git_ops.config_get(clone, "core.hooksPath", timeout=ctx.timeout) != ".githooks":
                self.unconfigured.append(clone)
        if not self.unconfigured:
            return self.ok("All clones have hooks configured")
        return self.warning(
            f"{len(self.unconfigured)} clone(s) missing hooks configuration",
            details=[_rel(clone, warband_path) for clone in self.unconfigured],
            fix_hint="Run 'hd doctor --fix' to configure hooks",
        )

    def repair(self, ctx: CheckContext) -> None:
        for clone in self.unconfigured:
            try:
                git_ops.config_set(clone, "core.hooksPath", ".githooks", timeout=ctx.timeout)
            except RuntimeError as exc:
                raise RuntimeError(f"failed to configure hooks for {clone}: {exc}") from exc


class SparseCheckoutCheck(RigCheck):
    name = "sparse-checkout"
    description = "Verify sparse checkout excludes agent context files from clones"
    can_fix = True

    def __init__(self) -> None:
        self.unconfigured: list[Path] = []

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        self.unconfigured = []
        clones = [
            clone
            for clone in warband_clones(ctx.town_root, warband_path.name)
            if (clone / ".git").exists()
        ]
        if not clones:
            return self.ok("No git repos found to check")
        self.unconfigured = [
            clone
            for clone in clones
            if not git_ops.sparse_checkout_configured(clone, timeout=ctx.timeout)
        ]
        if not self.unconfigured:
            return self.ok(f"All {len(clones)} repo(s) have sparse checkout configured")
        return self.error(
            f"{len(self.unconfigured)} repo(s) missing sparse checkout configuration",
            details=[_rel(clone, warband_path) for clone in self.unconfigured],
            fix_hint="Run 'hd doctor --fix' to configure sparse checkout",
        )

    def repair(self, ctx: CheckContext) -> None:
        refused = []
        for clone in self.unconfigured:
            dirty = git_ops.dirty_paths(clone, list(git_ops.SPARSE_EXCLUDED), timeout=ctx.timeout)
            if dirty:
                refused.append(f"{clone}: {', '.join(sorted(dirty))}")
                continue
            git_ops.configure_sparse_checkout(clone, timeout=ctx.timeout)
        if refused:
            raise RuntimeError(
                "files that sparse checkout would hide are untracked or modified; "
                "manually remove or commit them first: " + "; ".join(refused)
            )


class BareRepoRefspecCheck(Check):
    name = "bare-repo-refspec"
    description = "Verify bare repo has correct refspec for worktrees"
    category = "Rig"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        if ctx.warband_path is None:
            return self.ok("No warband specified, skipping bare repo check")
        bare = ctx.warband_path / ".repo.git"
        if not bare.exists():
            return self.ok("No shared bare repo found (using individual clones)")
        refspec = git_ops.config_get(bare, "remote.origin.fetch", timeout=ctx.timeout)
        if refspec is None:
            return self.error(
                "Bare repo missing remote.origin.fetch refspec",
                details=[
                    "Worktrees cannot fetch or see origin/* refs without this config",
                    "This breaks forge merge operations and causes stale origin/main",
                ],
                fix_hint="Run 'hd doctor --fix' to configure the refspec",
            )
        if refspec != git_ops.DEFAULT_REFSPEC:
            return self.warning(
                "Bare repo has non-standard refspec",
                details=[f"Current: {refspec}", f"Expected: {git_ops.DEFAULT_REFSPEC}"],
                fix_hint="Run 'hd doctor --fix' to update the refspec",
            )
        return self.ok("Bare repo refspec configured correctly")

    def repair(self, ctx: CheckContext) -> None:
        if ctx.warband_path is None:
            return
        bare = ctx.warband_path / ".repo.git"
        if not bare.exists():
            return
        try:
            git_ops.config_set(
                bare, "remote.origin.fetch", git_ops.DEFAULT_REFSPEC, timeout=ctx.timeout
            )
        except RuntimeError as exc:
            raise RuntimeError(f"setting refspec: {exc}") from exc


class _AgentHomeCheck(RigCheck):
    """Witness and forge homes: the directory, its warband clone and a drums inbox."""

    role = ""
    title = ""
    can_fix = True

    def __init__(self) -> None:
        self.needs_create = False
        self.needs_clone = False
        self.needs_mail = False

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        home = warband_path / self.role
        self.needs_create = self.needs_clone = self.needs_mail = False
        issues = []
        if not home.exists():
            issues.append(f"Missing: {self.role}/")
            self.needs_create = True
        else:
            if not (home / "warband" / ".git").exists():
                issues.append(f"Missing: {self.role}/warband/ (git clone)")
                self.needs_clone = True
            if not (home / "drums" / "inbox.jsonl").exists():
                issues.append(f"Missing: {self.role}/drums/inbox.jsonl")
                self.needs_mail = True
        if not issues:
            return self.ok(f"{self.title} structure exists")
        return self.warning(
            f"{self.title} structure incomplete",
            details=issues,
            fix_hint="Run 'hd doctor --fix' to create missing structure",
        )

    def repair(self, ctx: CheckContext) -> None:
        if ctx.warband_path is None:
            return
        home = ctx.warband_path / self.role
        if self.needs_create or self.needs_mail:
            (home / "drums").mkdir(parents=True, exist_ok=True)
            inbox = home / "drums" / "inbox.jsonl"
            if not inbox.exists():
                inbox.write_text("")
        if self.needs_clone:
            raise RuntimeError(f"cannot auto-create {self.role}/warband/ clone (requires repo URL)")


class WitnessExistsCheck(_AgentHomeCheck):
    name = "witness-exists"
    description = "Verify witness/ directory structure exists"
    role = "witness"
    title = "Witness"


class ForgeExistsCheck(_AgentHomeCheck):
    name = "forge-exists"
    description = "Verify forge/ directory structure exists"
    role = "forge"
    title = "Forge"


class WarchiefCloneExistsCheck(RigCheck):
    name = "warchief-clone-exists"
    description = "Verify warchief/warband/ git clone exists"
    can_fix = True

    def __init__(self) -> None:
        self.needs_create = False
        self.needs_clone = False

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        self.needs_create = self.needs_clone = False
        issues = []
        if not (warband_path / "warchief").exists():
            issues.append("Missing: warchief/")
            self.needs_create = True
        elif not (warband_path / "warchief" / "warband" / ".git").exists():
            issues.append("Missing: warchief/warband/ (git clone)")
            self.needs_clone = True
        if not issues:
            return self.ok("Warchief clone exists")
        return self.warning(
            "Warchief structure incomplete",
            details=issues,
            fix_hint="Run 'hd doctor --fix' to create structure (clone requires repo URL)",
        )

    def repair(self, ctx: CheckContext) -> None:
        if ctx.warband_path is None:
            return
        if self.needs_create:
            (ctx.warband_path / "warchief").mkdir(parents=True, exist_ok=True)
        if self.needs_create or self.needs_clone:
            raise RuntimeError("cannot auto-create warchief/warband/ clone (requires repo URL)")


class RaiderClonesCheck(RigCheck):
    name = "raider-clones-valid"
    description = "Verify raider directories are valid git clones"

    def detect_warband(self, ctx: CheckContext, warband_path: Path) -> CheckResult:
        if not (warband_path / "raiders").is_dir():
            return self.ok("No raiders/ directory (none deployed)")

        issues: list[str] = []
        warnings: list[str] = []
        valid = 0
        for raider in list_raiders(ctx.town_root, warband_path.name):
            clone = raider_clone_path(ctx.town_root, warband_path.name, raider)
            if not (clone / ".git").exists():
                issues.append(f"{raider}: not a git clone")
                continue
            try:
                dirty = git_ops.status_porcelain(clone, timeout=ctx.timeout)
            except RuntimeError:
                issues.append(f"{raider}: git status failed")
                continue
            if dirty:
                warnings.append(f"{raider}: has uncommitted changes")
            try:
                branch = git_ops.current_branch(clone, timeout=ctx.timeout)
            except RuntimeError as exc:
                log.debug("Branch lookup failed for %s: %s", clone, exc)
            else:
                if not branch.startswith(RAIDER_BRANCH_PREFIX):
                    warnings.append(
                        f"{raider}: on branch '{branch}' (expected {RAIDER_BRANCH_PREFIX}*)"
                    )
            valid += 1

        if issues:
            return self.error(
                f"{len(issues)} raider(s) invalid",
                details=issues + warnings,
                fix_hint="Cannot auto-fix (data loss risk)",
            )
        if warnings:
            return self.warning(f"{valid} raider(s) valid, {len(warnings)} warning(s)", warnings)
        if not valid:
            return self.ok("No raiders deployed")
        return self.ok(f"{valid} raider(s) valid")


class RelicsConfigCheck(RelicsCheck):
    name = "relics-config-valid"
    description = "Verify relics configuration if .relics/ exists"
    category = "Rig"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.needs_sync = False

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.needs_sync = False
        if ctx.warband_path is None:
            return self.error("No warband specified")
        if not (ctx.warband_path / RELICS_DIR_NAME).exists():
            return self.ok("No .relics/ directory (relics not configured)")
        client = self.relics(ctx, ctx.warband_path)
        try:
            client.stats()
        except RelicsUnavailable:
            return self.ok(RELICS_SKIPPED)
        except RelicsError as exc:
            return self.error(
                "rl command failed",
                details=[f"Error: {exc}"],
                fix_hint="Check relics installation and .relics/ configuration",
            )
        try:
            client.sync_status()
        except RelicsError as exc:
            message = str(exc)
            if "out of sync" in message or "behind" in message:
                self.needs_sync = True
                return self.warning(
                    "Relics out of sync",
                    details=[message],
                    fix_hint="Run 'hd doctor --fix' or 'rl sync' to synchronize",
                )
            log.debug("rl sync --status failed in %s: %s", ctx.warband_path, exc)
        return self.ok("Relics configured and in sync")

    def repair(self, ctx: CheckContext) -> None:
        if not self.needs_sync or ctx.warband_path is None:
            return
        try:
            self.relics(ctx, ctx.warband_path).sync()
        except RelicsError as exc:
            raise RuntimeError(f"rl sync failed: {exc}") from exc


def has_relics_data(relics_dir: Path) -> bool:
    return any((relics_dir / name).exists() for name in RELICS_DATA_FILES)


class RelicsRedirectCheck(RelicsCheck):
    name = "relics-redirect"
    description = "Verify warband-level relics redirect for tracked relics"
    category = "Rig"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        if ctx.warband_path is None:
            return self.ok("No warband specified (skipping redirect check)")
        tracked = ctx.warband_path / "warchief" / "warband" / RELICS_DIR_NAME
        local = ctx.warband_path / RELICS_DIR_NAME
        redirect = local / REDIRECT_FILE_NAME

        if not tracked.exists():
            if not local.exists():
                return self.error(
                    "No .relics directory found at warband root",
                    details=[
                        "Relics database not initialized for this warband",
                        "This prevents issue tracking for this warband",
                    ],
                    fix_hint=f"Run 'hd doctor --fix --warband {ctx.warband}' to initialize relics",
                )
            return self.ok("Warband uses local relics (no redirect needed)")

        if not redirect.exists():
            if has_relics_data(local):
                return self.error(
                    "Conflicting local relics found with tracked relics",
                    details=[
                        "Tracked relics exist at: warchief/warband/.relics",
                        "Local relics with data exist at: .relics/",
                        "Fix will remove local relics and create redirect to tracked relics",
                    ],
                    fix_hint=f"Run 'hd doctor --fix --warband {ctx.warband}' to fix",
                )
            return self.error(
                "Missing warband-level relics redirect for tracked relics",
                details=[
                    "Tracked relics exist at: warchief/warband/.relics",
                    "Missing redirect at: .relics/redirect",
                    "Without this redirect, rl commands from warband root won't find relics",
                ],
                fix_hint="Run 'hd doctor --fix' to create the redirect",
            )

        try:
            target = redirect.read_text().strip()
        except OSError as exc:
            return self.warning(f"Could not read redirect file: {exc}")
        if target != WARBAND_REDIRECT_TARGET:
            return self.error(
                f'Redirect points to "{target}", expected {WARBAND_REDIRECT_TARGET}',
                fix_hint=f"Run 'hd doctor --fix --warband {ctx.warband}' to correct the redirect",
            )
        return self.ok("Warband-level relics redirect is correctly configured")

    def repair(self, ctx: CheckContext) -> None:
        if ctx.warband_path is None or ctx.warband is None:
            return
        tracked = ctx.warband_path / "warchief" / "warband" / RELICS_DIR_NAME
        local = ctx.warband_path / RELICS_DIR_NAME

        if not tracked.exists() and not local.exists():
            self._init_local(ctx, ctx.warband_path, ctx.warband)
            return
        if not tracked.exists():
            return

        # Drops a self-referencing redirect before deciding what to keep.
        resolve_relics_dir(ctx.warband_path, remove_circular=True)
        if local.exists() and not (local / REDIRECT_FILE_NAME).exists() and has_relics_data(local):
            log.info("Removing conflicting local relics at %s", local)
            shutil.rmtree(local)
        local.mkdir(parents=True, exist_ok=True)
        (local / REDIRECT_FILE_NAME).write_text(f"{WARBAND_REDIRECT_TARGET}\n")

    def _init_local(self, ctx: CheckContext, warband_path: Path, warband: str) -> None:
        prefix = get_prefix_for_warband(ctx.town_root, warband)
        local = warband_path / RELICS_DIR_NAME
        local.mkdir(parents=True, exist_ok=True)
        client = self.relics(ctx, warband_path)
        try:
            client.init(prefix)
        except RelicsError as exc:
            log.warning("rl init failed in %s (%s), writing minimal config", warband_path, exc)
            (local / "config.yaml").write_text(f"prefix: {prefix}\n")
            return
        try:
            client.config_set("types.custom", RELICS_CUSTOM_TYPES)
        except RelicsError as exc:
            log.debug("Registering custom types failed in %s: %s", warband_path, exc)


def rig_checks(relics: RelicsFactory | None = None) -> list[Check]:
    return [
        WarbandIsGitRepoCheck(),
        GitExcludeCheck(),
        HooksPathCheck(),
        SparseCheckoutCheck(),
        BareRepoRefspecCheck(),
        WitnessExistsCheck(),
        ForgeExistsCheck(),
        WarchiefCloneExistsCheck(),
        RaiderClonesCheck(),
        RelicsConfigCheck(relics),
        RelicsRedirectCheck(relics),
    ]
