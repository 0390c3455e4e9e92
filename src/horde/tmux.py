"""tmux helpers used to inspect and reconcile agent sessions.

Every call is bounded by a timeout and raises :class:`TmuxError` on failure,
including "no server running", which callers usually treat as "no sessions".
"""

from __future__ import annotations

import logging
import subprocess
from typing import Protocol

from horde.settings import DEFAULT_COMMAND_TIMEOUT

log = logging.getLogger(__name__)


class TmuxError(RuntimeError):
    """A tmux command failed, timed out, or tmux is not installed."""


class SessionLister(Protocol):
    def list_sessions(self) -> list[str]: ...


class EnvReader(SessionLister, Protocol):
    def get_all_environment(self, session: str) -> dict[str, str]: ...


class SessionController(SessionLister, Protocol):
    def has_session(self, session: str) -> bool: ...

    def kill_session(self, session: str) -> None: ...


def _tmux(*args: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
    try:
        result = subprocess.run(
            ["tmux", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise TmuxError("tmux is not installed") from None
    except subprocess.TimeoutExpired:
        raise TmuxError(f"tmux {args[0]} timed out after {timeout:g}s") from None
    if result.returncode != 0:
        raise TmuxError(result.stderr.strip() or f"tmux {args[0]} exited {result.returncode}")
    return result.stdout


def list_sessions(*, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> list[str]:
    output = _tmux("list-sessions", "-F", "#{session_name}", timeout=timeout)
    return [line.strip() for line in output.splitlines() if line.strip()]


def has_session(session: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    try:
        _tmux("has-session", "-t", f"={session}", timeout=timeout)
    except TmuxError:
        return False
    return True


def kill_session(session: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    log.info("Killing tmux session %s", session)
    _tmux("kill-session", "-t", f"={session}", timeout=timeout)


def parse_environment(output: str) -> dict[str, str]:
    """Parse ``show-environment`` output; ``-KEY`` (unset) lines are dropped."""
    env: dict[str, str] = {}
    for line in output.splitlines():
        if not line or line.startswith("-"):
            continue
        key, sep, value = line.partition("=")
        if sep:
            env[key] = value
    return env


def show_environment(session: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> dict[str, str]:
    return parse_environment(_tmux("show-environment", "-t", session, timeout=timeout))


class TmuxSessions:
    """Live tmux server adapter for checks that accept a session lister or env reader."""

    def __init__(self, *, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def list_sessions(self) -> list[str]:
        return list_sessions(timeout=self.timeout)

    def get_all_environment(self, session: str) -> dict[str, str]:
        return show_environment(session, timeout=self.timeout)

    def kill_session(self, session: str) -> None:
        kill_session(session, timeout=self.timeout)

    def has_session(self, session: str) -> bool:
        return has_session(session, timeout=self.timeout)
