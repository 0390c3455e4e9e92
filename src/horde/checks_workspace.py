"""Core checks: encampment config files, global state and the encampment git repo."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from horde import git_ops
from horde.checks_common import Check, CheckContext, CheckResult
from horde.layout import (
    WARBANDS_SCHEMA,
    ConfigError,
    empty_warbands_registry,
    encampment_config_issues,
    encampment_config_path,
    read_json_file,
    save_warbands_registry,
    schema_errors,
    warbands_registry_path,
)
from horde.paths import config_dir, state_dir

log = logging.getLogger(__name__)

_ENCAMPMENT_JSON = "warchief/encampment.json"
_WARBANDS_JSON = "warchief/warbands.json"
_MAIN_BRANCHES = ("main", "master")
_SHELL_MARKER = "Horde Integration"


class EncampmentConfigExistsCheck(Check):
    name = "encampment-config-exists"
    description = "Check that warchief/encampment.json exists"
    category = "Core"

    def detect(self, ctx: CheckContext) -> CheckResult:
        if not encampment_config_path(ctx.town_root).exists():
            return self.error(
                f"{_ENCAMPMENT_JSON} not found",
                fix_hint="Run 'hd install' to initialize workspace",
            )
        return self.ok(f"{_ENCAMPMENT_JSON} exists")


class EncampmentConfigValidCheck(Check):
    name = "encampment-config-valid"
    description = "Check that warchief/encampment.json is valid with required fields"
    category = "Core"

    def detect(self, ctx: CheckContext) -> CheckResult:
        path = encampment_config_path(ctx.town_root)
        try:
            document = read_json_file(path)
        except ConfigError as exc:
            return self.error(
                f"{_ENCAMPMENT_JSON} is not valid JSON",
                details=[str(exc)],
                fix_hint=f"Fix JSON syntax in {_ENCAMPMENT_JSON}",
            )
        except OSError as exc:
            return self.error(f"Cannot read {_ENCAMPMENT_JSON}", details=[str(exc)])

        issues = encampment_config_issues(document)
        if issues:
            return self.error(
                f"{_ENCAMPMENT_JSON} has invalid fields",
                details=issues,
                fix_hint=f"Fix the field values in {_ENCAMPMENT_JSON}",
            )
        return self.ok(
            f"{_ENCAMPMENT_JSON} valid (name={document['name']}, version={document['version']})"
        )


class WarbandsRegistryExistsCheck(Check):
    name = "warbands-registry-exists"
    description = "Check that warchief/warbands.json exists"
    category = "Core"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        if not warbands_registry_path(ctx.town_root).exists():
            return self.warning(
                f"{_WARBANDS_JSON} not found (no warbands registered)",
                fix_hint="Run 'hd doctor --fix' to create empty warbands.json",
            )
        return self.ok(f"{_WARBANDS_JSON} exists")

    def repair(self, ctx: CheckContext) -> None:
        if warbands_registry_path(ctx.town_root).exists():
            return
        save_warbands_registry(ctx.town_root, empty_warbands_registry())


class WarbandsRegistryValidCheck(Check):
    name = "warbands-registry-valid"
    description = "Check that registered warbands exist on disk"
    category = "Core"
    can_fix = True

    def __init__(self) -> None:
        self._missing: list[str] = []

    def _load(self, ctx: CheckContext) -> Any:
        return read_json_file(warbands_registry_path(ctx.town_root))

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._missing = []
        try:
            document = self._load(ctx)
        except FileNotFoundError:
            return self.ok("No warbands.json (skipping validation)")
        except ConfigError as exc:
            return self.error(
                f"{_WARBANDS_JSON} is not valid JSON",
                details=[str(exc)],
                fix_hint=f"Fix JSON syntax in {_WARBANDS_JSON}",
            )
        except OSError as exc:
            return self.error(f"Cannot read {_WARBANDS_JSON}", details=[str(exc)])

        errors = schema_errors(document, WARBANDS_SCHEMA)
        if errors:
            return self.error(
                f"{_WARBANDS_JSON} does not match the registry schema",
                details=errors,
                fix_hint=f"Fix the structure of {_WARBANDS_JSON}",
            )

        warbands = document.get("warbands") or {}
        if not warbands:
            return self.ok("No warbands registered")

        self._missing = sorted(name for name in warbands if not (ctx.town_root / name).exists())
        if self._missing:
            return self.warning(
                f"{len(self._missing)} of {len(warbands)} registered warband(s) missing",
                details=[f"Missing warband directory: {name}/" for name in self._missing],
                fix_hint="Run 'hd doctor --fix' to remove missing warbands from registry",
            )
        return self.ok(f"All {len(warbands)} registered warband(s) exist")

    def repair(self, ctx: CheckContext) -> None:
        if not self._missing:
            return
        document = self._load(ctx)
        warbands = document.get("warbands") or {}
        for name in self._missing:
            if not (ctx.town_root / name).exists():
                warbands.pop(name, None)
        document["warbands"] = warbands
        save_warbands_registry(ctx.town_root, document)


class WarchiefExistsCheck(Check):
    name = "warchief-exists"
    description = "Check that warchief/ directory exists with required files"
    category = "Core"

    def detect(self, ctx: CheckContext) -> CheckResult:
        warchief = ctx.town_root / "warchief"
        if not warchief.exists():
            return self.error(
                "warchief/ directory not found",
                fix_hint="Run 'hd install' to initialize workspace",
            )
        if not warchief.is_dir():
            return self.error(
                "warchief exists but is not a directory",
                fix_hint="Remove warchief file and run 'hd install'",
            )
        missing = [name for name in ("encampment.json",) if not (warchief / name).exists()]
        if missing:
            return self.warning("warchief/ exists but missing expected files", details=missing)
        return self.ok("warchief/ directory exists with required files")


# -- global state --


def shell_rc_path() -> Path:
    """Startup file of the user's shell (zsh or bash, from ``$SHELL``)."""
    shell = os.path.basename(os.environ.get("SHELL", ""))
    if shell == "zsh":
        return Path.home() / ".zshrc"
    return Path.home() / ".bashrc"


def has_shell_integration(rc_path: Path) -> bool:
    try:
        return _SHELL_MARKER in rc_path.read_text()
    except OSError:
        return False


class GlobalStateCheck(Check):
    name = "global-state"
    description = "Validates Horde global state and shell integration"
    category = "Core"

    def detect(self, ctx: CheckContext) -> CheckResult:
        path = state_dir() / "state.json"
        try:
            state = read_json_file(path)
        except FileNotFoundError:
            return self.warning("Global state not initialized", fix_hint="Run: hd enable")
        except (ConfigError, OSError) as exc:
            return self.error("Cannot read global state", details=[str(exc)])
        if not isinstance(state, dict):
            return self.error("Cannot read global state", details=[f"{path}: not a JSON object"])

        details: list[str] = []
        warnings: list[str] = []
        errors: list[str] = []

        enabled = bool(state.get("enabled"))
        if enabled:
            details.append("Horde: enabled")
        else:
            details.append("Horde: disabled")
            warnings.append("Horde is disabled globally")
        if state.get("version"):
            details.append(f"Version: {state['version']}")
        if state.get("machine_id"):
            details.append(f"Machine ID: {state['machine_id']}")

        rc_path = shell_rc_path()
        integrated = has_shell_integration(rc_path)
        if integrated:
            details.append(f"Shell integration: installed ({rc_path})")
        else:
            warnings.append("Shell integration not installed")

        if (config_dir() / "shell-hook.sh").exists():
            details.append("Hook script: present")
        elif integrated:
            errors.append("Hook script missing but shell integration installed")

        if errors:
            return self.error(errors[0], details=details, fix_hint="Run: hd install --shell")
        if warnings:
            hint = "Run: hd enable" if not enabled else "Run: hd install --shell"
            return self.warning(warnings[0], details=details, fix_hint=hint)
        return self.ok("Global state healthy", details=details)


# -- encampment git repo --


class EncampmentGitCheck(Check):
    name = "encampment-git"
    description = "Verify the encampment root .git, when present, is a directory"
    category = "Core"

    def detect(self, ctx: CheckContext) -> CheckResult:
        dot_git = ctx.town_root / ".git"
        if not dot_git.exists():
            return self.ok(
                "Encampment root is not under version control (optional)",
                details=["Run 'git init' in your encampment root to back up its configuration"],
            )
        if not dot_git.is_dir():
            return self.warning(
                "Encampment root .git is not a directory",
                details=[
                    "Expected .git to be a directory, but it's a file",
                    "This may indicate a git worktree or submodule configuration",
                ],
            )
        return self.ok("Encampment root is under version control")


class EncampmentRootBranchCheck(Check):
    name = "encampment-root-branch"
    description = "Verify encampment root is on main branch"
    category = "Core"
    can_fix = True

    _hint = "Run 'hd doctor --fix' or manually: git checkout main in the encampment root"

    def __init__(self) -> None:
        self._branch: str | None = None

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._branch = None
        try:
            result = git_ops.run_git(
                ["branch", "--show-current"], ctx.town_root, timeout=ctx.timeout
            )
        except RuntimeError as exc:
            return self.ok("Encampment root branch not checked (skipped)", details=[str(exc)])
        if result.returncode != 0:
            return self.ok("Encampment root is not a git repository (skipped)")

        branch = result.stdout.strip()
        self._branch = branch
        if not branch:
            return self.warning(
                "Encampment root is in detached HEAD state",
                details=[
                    "The encampment root should be on the main branch",
                    "Detached HEAD can cause hd commands to fail",
                ],
                fix_hint=self._hint,
            )
        if branch in _MAIN_BRANCHES:
            return self.ok(f"Encampment root is on {branch} branch")
        return self.error(
            f"Encampment root is on wrong branch: {branch}",
            details=[
                "The encampment root must stay on main branch",
                f"Currently on: {branch}",
                "This can cause hd commands to fail (missing warbands.json, etc.)",
            ],
            fix_hint=self._hint,
        )

    def repair(self, ctx: CheckContext) -> None:
        if self._branch is None or self._branch in _MAIN_BRANCHES:
            return
        if git_ops.has_uncommitted_changes(ctx.town_root, timeout=ctx.timeout):
            raise RuntimeError(
                "cannot switch to main: uncommitted changes in encampment root "
                "(stash or commit first)"
            )
        try:
            git_ops.checkout(ctx.town_root, "main", timeout=ctx.timeout)
        except RuntimeError:
            log.debug("No main branch in %s, trying master", ctx.town_root)
            git_ops.checkout(ctx.town_root, "master", timeout=ctx.timeout)


def workspace_checks() -> list[Check]:
    return [
        EncampmentConfigExistsCheck(),
        EncampmentConfigValidCheck(),
        WarbandsRegistryExistsCheck(),
        WarbandsRegistryValidCheck(),
        WarchiefExistsCheck(),
    ]
