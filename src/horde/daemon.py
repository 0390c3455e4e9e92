"""Liveness probe and restart for the encampment daemon."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path

log = logging.getLogger(__name__)

HD_BINARY = "hd"


def pid_path(town_root: Path) -> Path:
    return town_root / "daemon" / "daemon.pid"


def _pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except ProcessLookupError:
        return False
    except OSError:
        return False
    return True


def daemon_pid(town_root: Path) -> int | None:
    """PID of the running daemon, or None when no live process owns the PID file."""
    path = pid_path(town_root)
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if _pid_is_alive(pid) else None


def restart_daemon(town_root: Path, timeout: float) -> None:
    """Stop and relaunch the daemon when it is running; a stopped daemon is left alone."""
    if daemon_pid(town_root) is None:
        return
    log.info("Restarting daemon in %s", town_root)
    try:
        result = subprocess.run(
            [HD_BINARY, "daemon", "stop"],
            cwd=str(town_root),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise RuntimeError(f"{HD_BINARY} is not installed") from None
    except subprocess.TimeoutExpired:
        log.warning("%s daemon stop timed out after %gs", HD_BINARY, timeout)
    else:
        if result.returncode != 0:
            log.warning("%s daemon stop failed: %s", HD_BINARY, result.stderr.strip())
    time.sleep(0.5)

    try:
        subprocess.Popen(
            [HD_BINARY, "daemon", "run"],
            cwd=str(town_root),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise RuntimeError(f"failed to restart daemon: {exc}") from exc
