"""Checks over running agents: session environments, orphaned sessions and stray processes."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

from horde.agent_env import identity_env
from horde.checks_common import Check, CheckContext, CheckResult
from horde.layout import session_warbands
from horde.session import (
    SessionNameError,
    is_clan_session,
    is_horde_session,
    parse_session_name,
    shaman_session_name,
    warchief_session_name,
)
from horde.tmux import EnvReader, SessionController, TmuxError, TmuxSessions

log = logging.getLogger(__name__)


class EnvVarsCheck(Check):
    name = "env-vars"
    description = "Verify tmux session environment variables match expected values"
    category = "Config"

    def __init__(self, reader: EnvReader | None = None) -> None:
        self._reader = reader

    def detect(self, ctx: CheckContext) -> CheckResult:
        reader = self._reader or TmuxSessions(timeout=ctx.timeout)
        try:
            sessions = reader.list_sessions()
        except TmuxError:
            return self.ok("No tmux sessions running")

        horde_sessions = [session for session in sessions if is_horde_session(session)]
        if not horde_sessions:
            return self.ok("No Horde sessions running")

        mismatches: list[str] = []
        relics_dir_warnings: list[str] = []
        checked = 0
        for session in horde_sessions:
            try:
                identity = parse_session_name(session)
            except SessionNameError:
                continue
            expected = identity_env(identity, ctx.town_root)
            try:
                actual = reader.get_all_environment(session)
            except TmuxError as exc:
                mismatches.append(f"{session}: could not read env vars: {exc}")
                continue
            checked += 1
            for key, value in expected.items():
                if key not in actual:
                    mismatches.append(f'{session}: missing {key} (expected "{value}")')
                elif actual[key] != value:
                    mismatches.append(f'{session}: {key}="{actual[key]}" (expected "{value}")')
            if actual.get("RELICS_DIR"):
                relics_dir_warnings.append(
                    f'{session}: RELICS_DIR="{actual["RELICS_DIR"]}" (breaks prefix routing)'
                )

        if relics_dir_warnings:
            details = list(relics_dir_warnings)
            if mismatches:
                details += ["", "Other env var issues:", *mismatches]
            details += [
                "",
                "RELICS_DIR overrides prefix-based routing and breaks multi-warband lookups.",
            ]
            return self.warning(
                f"Found RELICS_DIR set in {len(relics_dir_warnings)} session(s)",
                details=details,
                fix_hint="Remove RELICS_DIR from session environment: hd shutdown && hd up",
            )

        if not mismatches:
            return self.ok(f"All {checked} session(s) have correct environment variables")
        return self.warning(
            f"Found {len(mismatches)} env var mismatch(es) across {checked} session(s)",
            details=[
                *mismatches,
                "",
                "Note: Mismatched session env vars won't affect running Claude "
                "until sessions restart.",
            ],
            fix_hint="Run 'hd shutdown && hd up' to restart sessions with correct env vars",
        )


def is_valid_session(session: str, warbands: set[str]) -> bool:
    """A Horde session is valid when it names a town agent or a role in a known warband."""
    if session in (warchief_session_name(), shaman_session_name()):
        return True
    try:
        identity = parse_session_name(session)
    except SessionNameError:
        return False
    if identity.role in ("warchief", "shaman"):
        return False
    return identity.warband in warbands


class OrphanSessionCheck(Check):
    name = "orphan-sessions"
    description = "Detect orphaned tmux sessions"
    category = "Cleanup"
    can_fix = True

    def __init__(self, sessions: SessionController | None = None) -> None:
        self._sessions = sessions
        self.orphans: list[str] = []

    def _controller(self, ctx: CheckContext) -> SessionController:
        return self._sessions or TmuxSessions(timeout=ctx.timeout)

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.orphans = []
        try:
            sessions = self._controller(ctx).list_sessions()
        except TmuxError:
            return self.ok("No tmux sessions running")

        horde_sessions = [session for session in sessions if is_horde_session(session)]
        if not horde_sessions:
            return self.ok("No Horde sessions running")

        warbands = session_warbands(ctx.town_root)
        self.orphans = [s for s in horde_sessions if not is_valid_session(s, warbands)]
        if not self.orphans:
            return self.ok(f"All {len(horde_sessions)} Horde session(s) are valid")

        details = [f"Orphan: {session}" for session in self.orphans]
        protected = [session for session in self.orphans if is_clan_session(session)]
        if protected:
            details.append(f"Clan sessions are never killed automatically ({len(protected)})")
        return self.warning(
            f"Found {len(self.orphans)} orphaned session(s)",
            details=details,
            fix_hint="Run 'hd doctor --fix' to kill orphaned sessions",
        )

    def repair(self, ctx: CheckContext) -> None:
        controller = self._controller(ctx)
        errors = []
        for session in self.orphans:
            if is_clan_session(session):
                log.info("Not killing clan session %s", session)
                continue
            try:
                controller.kill_session(session)
            except TmuxError as exc:
                errors.append(f"failed to kill {session}: {exc}")
        if errors:
            raise RuntimeError("; ".join(errors))


# -- processes --


RUNTIME_PROCESS_NAMES = frozenset({"claude"})


@dataclass(frozen=True)
class Process:
    pid: int
    ppid: int
    command: str


ProcessLister = Callable[[float], list[Process]]


def parse_ps_output(output: str) -> list[Process]:
    """Parse ``ps -eo pid=,ppid=,comm=`` lines; malformed lines are skipped."""
    processes = []
    for line in output.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        processes.append(Process(pid=pid, ppid=ppid, command=parts[2].strip()))
    return processes


def list_processes(timeout: float) -> list[Process]:
    """Snapshot of the process table. Raises RuntimeError when ``ps`` fails."""
    try:
        result = subprocess.run(
            ["ps", "-eo", "pid=,ppid=,comm="],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise RuntimeError("ps is not installed") from None
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"ps timed out after {timeout:g}s") from None
    if result.returncode != 0:
        raise RuntimeError(result.stderr.strip() or f"ps exited {result.returncode}")
    return parse_ps_output(result.stdout)


def _base_command(command: str) -> str:
    return command.rsplit("/", 1)[-1]


def processes_outside_tmux(processes: list[Process]) -> list[Process]:
    """Runtime processes with no ``tmux`` process among their ancestors."""
    by_pid = {process.pid: process for process in processes}
    stray = []
    for process in processes:
        if _base_command(process.command) not in RUNTIME_PROCESS_NAMES:
            continue
        seen: set[int] = set()
        parent = by_pid.get(process.ppid)
        inside_tmux = False
        while parent is not None and parent.pid not in seen:
            if _base_command(parent.command).startswith("tmux"):
                inside_tmux = True
                break
            seen.add(parent.pid)
            parent = by_pid.get(parent.ppid)
        if not inside_tmux:
            stray.append(process)
    return stray


class OrphanProcessCheck(Check):
    name = "orphan-processes"
    description = "Detect runtime processes outside tmux"
    category = "Cleanup"

    def __init__(self, processes: ProcessLister | None = None) -> None:
        self._processes = processes or list_processes

    def detect(self, ctx: CheckContext) -> CheckResult:
        try:
            processes = self._processes(ctx.timeout)
        except RuntimeError as exc:
            return self.ok("Process list unavailable (skipped)", details=[str(exc)])
        stray = processes_outside_tmux(processes)
        if not stray:
            return self.ok("No runtime processes outside tmux")
        return self.warning(
            f"Found {len(stray)} runtime process(es) outside tmux",
            details=[
                "These processes are not managed by a Horde session",
                "They may be user-started sessions or leftovers from a crashed agent",
                *(f"PID {process.pid}: {process.command}" for process in stray),
            ],
        )
