"""Embedded assets provisioned into an encampment.

Assets live under ``horde/assets`` and are read through importlib.resources:
agent ``settings.json`` templates, the warchief ``CLAUDE.md``, encampment
slash commands, the RALLY.md context fallback, role prompt templates and
ritual definitions.
"""

from __future__ import annotations

import json
import tomllib
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

AUTONOMOUS_ROLES = frozenset({"raider", "witness", "forge", "shaman"})

ROLE_PROMPT_TEMPLATES = ("shaman.md.tmpl", "witness.md.tmpl", "forge.md.tmpl")

_HOOK_GROUP_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["hooks"],
        "properties": {
            "matcher": {"type": "string"},
            "hooks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["type", "command"],
                    "properties": {
                        "type": {"const": "command"},
                        "command": {"type": "string"},
                    },
                },
            },
        },
    },
}

SETTINGS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "enabledPlugins": {"type": ["array", "object"]},
        "hooks": {
            "type": "object",
            "properties": {
                "SessionStart": _HOOK_GROUP_SCHEMA,
                "PreCompact": _HOOK_GROUP_SCHEMA,
                "UserPromptSubmit": _HOOK_GROUP_SCHEMA,
                "Stop": _HOOK_GROUP_SCHEMA,
            },
        },
    },
}


def _assets() -> Traversable:
    return resources.files("horde") / "assets"


def _asset_files(subdir: str, suffix: str = "") -> dict[str, Traversable]:
    folder = _assets() / subdir
    return {
        entry.name: entry
        for entry in sorted(folder.iterdir(), key=lambda e: e.name)
        if entry.is_file() and entry.name.endswith(suffix)
    }


# -- settings.json --


def settings_template_name(role: str) -> str:
    kind = "autonomous" if role in AUTONOMOUS_ROLES else "interactive"
    return f"settings-{kind}.json"


def settings_template(role: str) -> dict[str, Any]:
    text = (_assets() / "settings" / settings_template_name(role)).read_text()
    return json.loads(text)


def write_settings(claude_dir_parent: Path, role: str) -> Path:
    """Write ``<claude_dir_parent>/.claude/settings.json`` from the role's template."""
    target = claude_dir_parent / ".claude" / "settings.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings_template(role), indent=2) + "\n")
    return target


# -- warchief CLAUDE.md --


def warchief_claude_md() -> str:
    return (_assets() / "warchief" / "CLAUDE.md").read_text()


def write_warchief_claude_md(town_root: Path) -> Path:
    target = town_root / "warchief" / "CLAUDE.md"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(warchief_claude_md())
    return target


# -- RALLY.md --


RALLY_MD = "RALLY.md"


def rally_md() -> str:
    return (_assets() / "relics" / RALLY_MD).read_text()


def provision_rally_md(relics_dir: Path) -> Path | None:
    """Write ``RALLY.md`` into ``relics_dir``; an existing file is kept."""
    target = relics_dir / RALLY_MD
    if target.exists():
        return None
    relics_dir.mkdir(parents=True, exist_ok=True)
    target.write_text(rally_md())
    return target


# -- slash commands --


def command_names() -> list[str]:
    return [name.removesuffix(".md") for name in _asset_files("commands", ".md")]


def commands_dir(town_root: Path) -> Path:
    return town_root / ".claude" / "commands"


def missing_commands(town_root: Path) -> list[str]:
    directory = commands_dir(town_root)
    return [name for name in command_names() if not (directory / f"{name}.md").is_file()]


def provision_commands(town_root: Path) -> list[str]:
    """Copy missing slash commands; existing files are left untouched."""
    directory = commands_dir(town_root)
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for filename, asset in _asset_files("commands", ".md").items():
        target = directory / filename
        if target.exists():
            continue
        target.write_text(asset.read_text())
        written.append(filename.removesuffix(".md"))
    return written


# -- role prompt templates --


def role_prompts_dir(town_root: Path, warband: str) -> Path:
    return town_root / warband / "warchief" / "warband" / "internal" / "templates" / "roles"


def missing_role_prompts(town_root: Path, warband: str) -> list[str]:
    directory = role_prompts_dir(town_root, warband)
    return [name for name in ROLE_PROMPT_TEMPLATES if not (directory / name).is_file()]


def provision_role_prompts(town_root: Path, warband: str) -> list[str]:
    directory = role_prompts_dir(town_root, warband)
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for name in ROLE_PROMPT_TEMPLATES:
        target = directory / name
        if target.exists():
            continue
        target.write_text((_assets() / "roles" / name).read_text())
        written.append(name)
    return written


# -- rituals --


def rituals_dir(town_root: Path) -> Path:
    return town_root / ".relics" / "rituals"


def ritual_names() -> list[str]:
    return list(_asset_files("rituals", ".ritual.toml"))


def ritual_problems(town_root: Path) -> dict[str, str]:
    """``filename -> problem`` for rituals that are missing or not valid TOML."""
    directory = rituals_dir(town_root)
    problems: dict[str, str] = {}
    for name in ritual_names():
        path = directory / name
        if not path.is_file():
            problems[name] = "missing"
            continue
        try:
            with path.open("rb") as handle:
                tomllib.load(handle)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            problems[name] = f"unreadable ({exc})"
    return problems


def provision_rituals(town_root: Path, names: list[str] | None = None) -> list[str]:
    """Write the named rituals (default: all) from embedded assets."""
    directory = rituals_dir(town_root)
    directory.mkdir(parents=True, exist_ok=True)
    assets = _asset_files("rituals", ".ritual.toml")
    written = []
    for name in names if names is not None else list(assets):
        asset = assets.get(name)
        if asset is None:
            continue
        (directory / name).write_text(asset.read_text())
        written.append(name)
    return written
