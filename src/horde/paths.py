"""Canonical filesystem paths for horde configuration, state and encampments."""

from __future__ import annotations

import os
from pathlib import Path

ENCAMPMENT_MARKER = Path("warchief") / "encampment.json"
WARBANDS_REGISTRY = Path("warchief") / "warbands.json"
SCOUT_CONFIG = Path("warchief") / "daemon-scout-config.json"

RELICS_DIR_NAME = ".relics"
ROUTES_FILE_NAME = "routes.jsonl"
REDIRECT_FILE_NAME = "redirect"

# Contents of <warband>/.relics/redirect when the warband defers to its tracked clone.
WARBAND_REDIRECT_TARGET = "warchief/warband/.relics"


def _xdg_dir(env_var: str, *default_parts: str) -> Path:
    base = os.environ.get(env_var)
    if base:
        return Path(base).expanduser() / "horde"
    return Path.home().joinpath(*default_parts, "horde")


def state_dir() -> Path:
    """Directory holding ``state.json`` (``$XDG_STATE_HOME/horde``)."""
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def config_dir() -> Path:
    """Directory holding ``doctor.toml`` and ``shell-hook.sh`` (``$XDG_CONFIG_HOME/horde``)."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def cache_dir() -> Path:
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def is_encampment_root(path: Path) -> bool:
    return (path / ENCAMPMENT_MARKER).is_file()


def find_encampment_root(start: Path | None = None) -> Path | None:
    """Locate the encampment root.

    ``HD_ROOT`` wins when it points at an encampment; otherwise walk up from
    ``start`` (default: the current directory) to the first directory that
    contains ``warchief/encampment.json``.
    """
    env_root = os.environ.get("HD_ROOT")
    if env_root:
        candidate = Path(env_root).expanduser().resolve()
        if is_encampment_root(candidate):
            return candidate

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if is_encampment_root(candidate):
            return candidate
    return None


def town_relics_dir(town_root: Path) -> Path:
    return town_root / RELICS_DIR_NAME


def routes_path(town_root: Path) -> Path:
    return town_root / RELICS_DIR_NAME / ROUTES_FILE_NAME
