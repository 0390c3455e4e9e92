"""Config checks for agent Claude configuration: settings, session hooks, commands, priming."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from horde import git_ops
from horde.checks_common import Check, CheckContext, CheckResult
from horde.layout import (
    find_all_warbands,
    is_reserved_name,
    list_clan_workers,
    list_raiders,
    schema_errors,
)
from horde.paths import RELICS_DIR_NAME
from horde.relics import contains_flag, resolve_relics_dir
from horde.session import (
    clan_session_name,
    forge_session_name,
    raider_session_name,
    shaman_session_name,
    warchief_session_name,
    witness_session_name,
)
from horde.templates import (
    RALLY_MD,
    SETTINGS_SCHEMA,
    command_names,
    commands_dir,
    missing_commands,
    provision_commands,
    provision_rally_md,
    write_settings,
    write_warchief_claude_md,
)
from horde.tmux import SessionController, TmuxError, TmuxSessions

log = logging.getLogger(__name__)

# Roles whose session is restarted when their settings are rewritten.
_RESTARTABLE_ROLES = frozenset({"witness", "forge", "shaman", "warchief"})

_STATUS_NOTES: dict[git_ops.FileStatus, str] = {
    "untracked": "wrong location, untracked (safe to delete)",
    "tracked-clean": "wrong location, tracked but unmodified (safe to delete)",
    "tracked-modified": "wrong location, tracked with local modifications (manual review needed)",
    "unknown": "wrong location (inside source repo)",
}


@dataclass
class SettingsFile:
    path: Path
    role: str
    warband: str = ""
    session: str = ""
    wrong_location: bool = False
    git_status: git_ops.FileStatus = "unknown"
    missing: list[str] = field(default_factory=list)


def find_settings_files(town_root: Path) -> list[SettingsFile]:
    """Every agent ``settings.json`` (and root-level CLAUDE.md) under the encampment."""
    files: list[SettingsFile] = []
    for stale in (town_root / ".claude" / "settings.json", town_root / "CLAUDE.md"):
        if stale.is_file():
            target = "warchief/CLAUDE.md"
            if stale.suffix == ".json":
                target = "warchief/.claude/settings.json"
            files.append(
                SettingsFile(
                    path=stale,
                    role="warchief",
                    session=warchief_session_name(),
                    wrong_location=True,
                    missing=[f"should be at {target}, not encampment root"],
                )
            )

    for role, session in (("warchief", warchief_session_name()), ("shaman", shaman_session_name())):
        path = town_root / role / ".claude" / "settings.json"
        if path.is_file():
            files.append(SettingsFile(path=path, role=role, session=session))

    try:
        entries = sorted(entry for entry in town_root.iterdir() if entry.is_dir())
    except OSError:
        return files

    for entry in entries:
        warband = entry.name
        if is_reserved_name(warband):
            continue
        for role, session in (
            ("witness", witness_session_name(warband)),
            ("forge", forge_session_name(warband)),
        ):
            correct = entry / role / ".claude" / "settings.json"
            if correct.is_file():
                files.append(
                    SettingsFile(path=correct, role=role, warband=warband, session=session)
                )
            inside_clone = entry / role / "warband" / ".claude" / "settings.json"
            if inside_clone.is_file():
                files.append(
                    SettingsFile(
                        path=inside_clone,
                        role=role,
                        warband=warband,
                        session=session,
                        wrong_location=True,
                    )
                )

        shared_clan = entry / "clan" / ".claude" / "settings.json"
        if shared_clan.is_file():
            files.append(SettingsFile(path=shared_clan, role="clan", warband=warband))
        for worker in list_clan_workers(town_root, warband):
            path = entry / "clan" / worker / ".claude" / "settings.json"
            if path.is_file():
                files.append(
                    SettingsFile(
                        path=path,
                        role="clan",
                        warband=warband,
                        session=clan_session_name(warband, worker),
                        wrong_location=True,
                    )
                )

        shared_raiders = entry / "raiders" / ".claude" / "settings.json"
        if shared_raiders.is_file():
            files.append(SettingsFile(path=shared_raiders, role="raider", warband=warband))
        for raider in list_raiders(town_root, warband):
            for path in (
                entry / "raiders" / raider / ".claude" / "settings.json",
                entry / "raiders" / raider / warband / ".claude" / "settings.json",
            ):
                if path.is_file():
                    files.append(
                        SettingsFile(
                            path=path,
                            role="raider",
                            warband=warband,
                            session=raider_session_name(warband, raider),
                            wrong_location=True,
                        )
                    )
    return files


def _hook_commands(hooks: dict[str, Any], event: str) -> list[str]:
    commands = []
    groups = hooks.get(event)
    if not isinstance(groups, list):
        return commands
    for group in groups:
        if not isinstance(group, dict) or not isinstance(group.get("hooks"), list):
            continue
        for hook in group["hooks"]:
            if isinstance(hook, dict) and isinstance(hook.get("command"), str):
                commands.append(hook["command"])
    return commands


def _hook_has_pattern(hooks: dict[str, Any], event: str, pattern: str) -> bool:
    return any(pattern in command for command in _hook_commands(hooks, event))


def settings_problems(path: Path) -> list[str]:
    """What a correctly-located settings.json is missing; empty when it is complete."""
    try:
        document = json.loads(path.read_text())
    except OSError:
        return ["unreadable"]
    except json.JSONDecodeError:
        return ["invalid JSON"]
    if not isinstance(document, dict):
        return ["invalid JSON"]

    problems = [
        f"invalid structure ({message})" for message in schema_errors(document, SETTINGS_SCHEMA)
    ]
    if not document.get("enabledPlugins"):
        problems.append("enabledPlugins")
    hooks = document.get("hooks")
    if not isinstance(hooks, dict):
        return problems + ["hooks"]
    if not _hook_has_pattern(hooks, "SessionStart", "PATH="):
        problems.append("PATH export")
    if not _hook_has_pattern(hooks, "SessionStart", "hd signal shaman session-started"):
        problems.append("shaman signal")
    if not _hook_has_pattern(hooks, "Stop", "hd costs record"):
        problems.append("Stop hook")
    return problems


class ClaudeSettingsCheck(Check):
    name = "claude-settings"
    description = "Verify Claude settings.json files match expected templates"
    category = "Config"
    can_fix = True

    def __init__(self, sessions: SessionController | None = None) -> None:
        self._sessions = sessions
        self._stale: list[SettingsFile] = []

    def _controller(self, ctx: CheckContext) -> SessionController:
        return self._sessions or TmuxSessions(timeout=ctx.timeout)

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._stale = []
        details: list[str] = []
        has_modified = False
        for settings in find_settings_files(ctx.town_root):
            if settings.wrong_location:
                settings.git_status = git_ops.file_status(settings.path, timeout=ctx.timeout)
                has_modified = has_modified or settings.git_status == "tracked-modified"
                self._stale.append(settings)
                details.append(f"{settings.path}: {_STATUS_NOTES[settings.git_status]}")
                continue
            settings.missing = settings_problems(settings.path)
            if settings.missing:
                self._stale.append(settings)
                details.append(f"{settings.path}: missing {', '.join(settings.missing)}")

        if not self._stale:
            return self.ok("All Claude settings.json files are up to date")
        hint = "Run 'hd doctor --fix' to update settings and restart affected agents"
        if has_modified:
            hint = (
                "Run 'hd doctor --fix' to fix safe issues. "
                "Files with local modifications require manual review."
            )
        return self.error(
            f"Found {len(self._stale)} stale Claude config file(s)",
            details=details,
            fix_hint=hint,
        )

    def repair(self, ctx: CheckContext) -> None:
        errors: list[str] = []
        rewritten: list[SettingsFile] = []
        root_settings_moved = False

        for settings in self._stale:
            if settings.wrong_location and settings.git_status == "tracked-modified":
                ctx.notify(f"Warning: {settings.path}: has local modifications, skipping")
                continue
            try:
                settings.path.unlink(missing_ok=True)
            except OSError as exc:
                errors.append(f"failed to delete {settings.path}: {exc}")
                continue
            claude_dir = settings.path.parent
            if claude_dir.name == ".claude":
                try:
                    claude_dir.rmdir()
                except OSError:
                    log.debug("Leaving non-empty %s in place", claude_dir)

            if settings.wrong_location:
                if settings.path.parent == ctx.town_root / ".claude":
                    write_settings(ctx.town_root / "warchief", "warchief")
                    root_settings_moved = True
                elif settings.path == ctx.town_root / "CLAUDE.md":
                    try:
                        write_warchief_claude_md(ctx.town_root)
                    except OSError as exc:
                        errors.append(f"failed to create warchief/CLAUDE.md: {exc}")
                    root_settings_moved = True
                continue

            try:
                write_settings(claude_dir.parent, settings.role)
            except OSError as exc:
                errors.append(f"failed to recreate settings for {settings.path}: {exc}")
                continue
            rewritten.append(settings)

        if root_settings_moved:
            ctx.notify(
                "Encampment-root settings were moved. "
                "Restart agents to pick up new config: hd up --restart"
            )
        self._cycle_sessions(ctx, rewritten)

        if errors:
            raise RuntimeError("; ".join(errors))

    def _cycle_sessions(self, ctx: CheckContext, rewritten: list[SettingsFile]) -> None:
        sessions = [s.session for s in rewritten if s.session and s.role in _RESTARTABLE_ROLES]
        if not sessions:
            return
        if not ctx.restart_sessions:
            ctx.notify(
                "Settings rewritten; running agents keep the old config in memory until restarted "
                f"({', '.join(sessions)}). Use --restart-sessions or 'hd up --restart'."
            )
            return
        controller = self._controller(ctx)
        for session in sessions:
            try:
                if controller.has_session(session):
                    controller.kill_session(session)
            except TmuxError as exc:
                log.warning("Could not restart %s: %s", session, exc)


# -- session hooks --


_HOOK_EVENTS = ('"SessionStart"', '"PreCompact"', '"UserPromptSubmit"', '"Stop"', '"Notification"')


def _uses_session_passthrough(content: str, event: str) -> bool:
    marker = f'"{event}"'
    _, found, section = content.partition(marker)
    if not found:
        return True
    end = len(section)
    for other in _HOOK_EVENTS:
        if other == marker:
            continue
        index = section.find(other)
        if 0 < index < end:
            end = index
    section = section[:end]
    if "session-start.sh" in section:
        return True
    if "hd rally" in section:
        return contains_flag(section, "--hook")
    return True


def session_hook_problems(path: Path) -> list[str]:
    try:
        content = path.read_text()
    except OSError:
        return []
    problems = []
    for event in ("SessionStart", "PreCompact"):
        if event in content and not _uses_session_passthrough(content, event):
            problems.append(
                f"{event} uses bare 'hd rally' - add --hook flag or use session-start.sh"
            )
    return problems


def hook_settings_files(town_root: Path) -> list[Path]:
    files = []
    town_settings = town_root / ".claude" / "settings.json"
    if town_settings.is_file():
        files.append(town_settings)
    for warband in find_all_warbands(town_root):
        root = town_root / warband
        candidates = [
            root / ".claude" / "settings.json",
            root / "warchief" / "warband" / ".claude" / "settings.json",
            root / "witness" / ".claude" / "settings.json",
            root / "witness" / "warband" / ".claude" / "settings.json",
            root / "forge" / ".claude" / "settings.json",
            root / "forge" / "warband" / ".claude" / "settings.json",
        ]
        candidates.extend(
            root / "clan" / worker / ".claude" / "settings.json"
            for worker in list_clan_workers(town_root, warband)
        )
        for raider in list_raiders(town_root, warband):
            raider_dir = root / "raiders" / raider
            nested = raider_dir / warband / ".claude" / "settings.json"
            candidates.append(
                nested if nested.is_file() else raider_dir / ".claude" / "settings.json"
            )
        files.extend(path for path in candidates if path.is_file())
    return files


class SessionHookCheck(Check):
    name = "session-hooks"
    description = "Check that settings.json hooks use session-start.sh or --hook flag"
    category = "Config"

    def detect(self, ctx: CheckContext) -> CheckResult:
        issues = []
        files = hook_settings_files(ctx.town_root)
        for path in files:
            rel = path.relative_to(ctx.town_root).as_posix()
            issues.extend(f"{rel}: {problem}" for problem in session_hook_problems(path))
        if not issues:
            return self.ok(
                f"All {len(files)} settings.json file(s) use proper session_id passthrough"
            )
        return self.warning(
            f"{len(issues)} hook issue(s) found across settings.json files",
            details=issues,
            fix_hint=(
                "Update hooks to use 'hd rally --hook' or "
                "'bash ~/.claude/hooks/session-start.sh' for session_id passthrough"
            ),
        )


# -- slash commands --


class CommandsCheck(Check):
    name = "commands-provisioned"
    description = "Check .claude/commands/ is provisioned at encampment level"
    category = "Config"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        missing = missing_commands(ctx.town_root)
        if not missing:
            return self.ok(
                f"Encampment-level slash commands provisioned ({', '.join(command_names())})"
            )
        return self.warning(
            f"Missing encampment-level slash commands: {', '.join(missing)}",
            details=[
                f"Expected at: {commands_dir(ctx.town_root)}/",
                "All agents inherit encampment-level commands via directory traversal",
            ],
            fix_hint="Run 'hd doctor --fix' to provision missing commands",
        )

    def repair(self, ctx: CheckContext) -> None:
        written = provision_commands(ctx.town_root)
        if written:
            log.info("Provisioned slash commands: %s", ", ".join(written))


# -- priming --


CLAUDE_MD_MAX_LINES = 30
AGENTS_MD_MAX_LINES = 20


@dataclass
class PrimingIssue:
    location: str
    description: str
    # Relics directory that should hold RALLY.md; None when a person must act.
    relics_dir: Path | None = None


def _line_count(path: Path) -> int:
    try:
        return len(path.read_text().splitlines())
    except OSError:
        return 0


def _oversized(path: Path, limit: int) -> str:
    lines = _line_count(path) if path.is_file() else 0
    if lines <= limit:
        return ""
    return f"{path.name} has {lines} lines (should be <{limit} for bootstrap pointer)"


def agent_priming_issues(town_root: Path, location: str) -> list[PrimingIssue]:
    """Hook and bootstrap-file problems for the agent home at ``town_root/location``."""
    home = town_root / location
    issues = []
    try:
        document = json.loads((home / ".claude" / "settings.json").read_text())
    except (OSError, json.JSONDecodeError):
        document = None
    if isinstance(document, dict):
        hooks = document.get("hooks")
        if not isinstance(hooks, dict) or not _hook_has_pattern(hooks, "SessionStart", "hd rally"):
            issues.append(PrimingIssue(location, "SessionStart hook missing 'hd rally'"))
    for name, limit in (("CLAUDE.md", CLAUDE_MD_MAX_LINES), ("AGENTS.md", AGENTS_MD_MAX_LINES)):
        problem = _oversized(home / name, limit)
        if problem:
            issues.append(PrimingIssue(location, problem))
    return issues


def warband_priming_issues(town_root: Path, warband: str) -> list[PrimingIssue]:
    root = town_root / warband
    issues = []
    if not (root / RELICS_DIR_NAME / RALLY_MD).is_file():
        issues.append(
            PrimingIssue(
                warband,
                "Missing .relics/RALLY.md (Horde context fallback)",
                root / RELICS_DIR_NAME,
            )
        )
    problem = _oversized(root / "AGENTS.md", AGENTS_MD_MAX_LINES)
    if problem:
        issues.append(PrimingIssue(warband, problem))
    for role in ("witness", "forge"):
        if (root / role).is_dir():
            issues.extend(agent_priming_issues(town_root, f"{warband}/{role}"))

    workers = [f"clan/{name}" for name in list_clan_workers(town_root, warband)]
    workers += [f"raiders/{name}" for name in list_raiders(town_root, warband)]
    for worker in workers:
        # Workers share the warband's relics through a redirect.
        relics_dir = resolve_relics_dir(root / worker)
        if not (relics_dir / RALLY_MD).is_file():
            issues.append(
                PrimingIssue(
                    f"{warband}/{worker}", "Missing RALLY.md (Horde context fallback)", relics_dir
                )
            )
    return issues


class PrimingCheck(Check):
    """Agents get their context from ``hd rally``; RALLY.md is the fallback when the hook fails."""

    name = "priming"
    description = "Verify priming subsystem is correctly configured"
    category = "Config"
    can_fix = True

    def __init__(self) -> None:
        self.issues: list[PrimingIssue] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.issues = agent_priming_issues(ctx.town_root, "warchief")
        if (ctx.town_root / "shaman").is_dir():
            self.issues.extend(agent_priming_issues(ctx.town_root, "shaman"))
        for warband in find_all_warbands(ctx.town_root):
            if (ctx.town_root / warband / RELICS_DIR_NAME).is_dir():
                self.issues.extend(warband_priming_issues(ctx.town_root, warband))

        if not self.issues:
            return self.ok("Priming subsystem is correctly configured")
        fixable = sum(1 for issue in self.issues if issue.relics_dir is not None)
        return self.error(
            f"Found {len(self.issues)} priming issue(s)",
            details=[f"{issue.location}: {issue.description}" for issue in self.issues],
            fix_hint=f"Run 'hd doctor --fix' to fix {fixable} issue(s)" if fixable else None,
        )

    def repair(self, ctx: CheckContext) -> None:
        errors = []
        for issue in self.issues:
            if issue.relics_dir is None:
                continue
            try:
                written = provision_rally_md(issue.relics_dir)
            except OSError as exc:
                errors.append(f"{issue.location}: {exc}")
                continue
            if written:
                log.info("Provisioned %s", written)
        if errors:
            raise RuntimeError("; ".join(errors))
