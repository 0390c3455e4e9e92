"""On-disk encampment model: config files, warband discovery and clone enumeration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from horde.paths import ENCAMPMENT_MARKER, SCOUT_CONFIG, WARBANDS_REGISTRY

log = logging.getLogger(__name__)

RESERVED_NAMES = frozenset({"warchief", "shaman", "daemon", "docs", ".relics", ".git"})
WARBAND_MARKERS = ("clan", "raiders", "witness", "forge")

ENCAMPMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"type": "string"},
        "version": {"type": "integer"},
        "name": {"type": "string"},
    },
}

WARBANDS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["warbands"],
    "properties": {
        "version": {"type": "integer"},
        "warbands": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "git_url": {"type": "string"},
                    "local_repo": {"type": "string"},
                    "added_at": {"type": "string"},
                    "relics": {
                        "type": "object",
                        "properties": {
                            "repo": {"type": "string"},
                            "prefix": {"type": "string"},
                        },
                    },
                },
            },
        },
    },
}


class ConfigError(ValueError):
    """A JSON config file exists but cannot be parsed."""


def schema_errors(document: Any, schema: dict[str, Any]) -> list[str]:
    """Human-readable jsonschema violations, ``path: message`` per line."""
    validator = Draft202012Validator(schema)
    messages = []
    for error in sorted(validator.iter_errors(document), key=lambda e: list(e.absolute_path)):
        location = ".".join(str(part) for part in error.absolute_path) or "<root>"
        messages.append(f"{location}: {error.message}")
    return messages


def read_json_file(path: Path) -> Any:
    """Load JSON. Raises FileNotFoundError, OSError or ConfigError."""
    text = path.read_text()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None


def write_json_file(path: Path, document: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2) + "\n")


# -- encampment.json --


def encampment_config_issues(document: Any) -> list[str]:
    """Field-level problems with an ``encampment.json`` document."""
    if not isinstance(document, dict):
        return ["top-level value must be a JSON object"]
    issues = []
    if document.get("type") != "encampment":
        issues.append(f"type should be 'encampment', got '{document.get('type', '')}'")
    version = document.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version == 0:
        issues.append("version field is missing or zero")
    name = document.get("name")
    if not isinstance(name, str) or not name:
        issues.append("name field is missing or empty")
    for message in schema_errors(document, ENCAMPMENT_SCHEMA):
        if message.split(":", 1)[0] not in ("type", "version", "name"):
            issues.append(message)
    return issues


def encampment_config_path(town_root: Path) -> Path:
    return town_root / ENCAMPMENT_MARKER


# -- warbands.json --


def warbands_registry_path(town_root: Path) -> Path:
    return town_root / WARBANDS_REGISTRY


def load_warbands_registry(town_root: Path) -> dict[str, Any] | None:
    """Parsed ``warchief/warbands.json``, or None when the file does not exist.

    Raises ConfigError when the file is malformed or fails schema validation.
    """
    path = warbands_registry_path(town_root)
    try:
        document = read_json_file(path)
    except FileNotFoundError:
        return None
    errors = schema_errors(document, WARBANDS_SCHEMA)
    if errors:
        raise ConfigError(f"{path}: {'; '.join(errors)}")
    return document


def save_warbands_registry(town_root: Path, document: dict[str, Any]) -> None:
    write_json_file(warbands_registry_path(town_root), document)


def empty_warbands_registry() -> dict[str, Any]:
    return {"version": 1, "warbands": {}}


def registered_warbands(town_root: Path) -> dict[str, dict[str, Any]]:
    """``name -> entry`` from warbands.json; empty when missing or unreadable."""
    try:
        document = load_warbands_registry(town_root)
    except (ConfigError, OSError) as exc:
        log.debug("Ignoring unreadable warbands registry: %s", exc)
        return {}
    if not document:
        return {}
    return dict(document.get("warbands") or {})


def registered_prefix(entry: dict[str, Any]) -> str:
    relics = entry.get("relics") or {}
    prefix = relics.get("prefix") if isinstance(relics, dict) else ""
    return (prefix or "").removesuffix("-")


# -- warband discovery --


def is_reserved_name(name: str) -> bool:
    return name.startswith(".") or name in RESERVED_NAMES


def _subdirs(path: Path) -> list[Path]:
    try:
        return sorted(entry for entry in path.iterdir() if entry.is_dir())
    except OSError:
        return []


def find_all_warbands(town_root: Path) -> list[str]:
    """Warbands on disk (holding clan/raiders/witness/forge) plus those in warbands.json."""
    found: set[str] = set()
    for entry in _subdirs(town_root):
        if is_reserved_name(entry.name):
            continue
        if any((entry / marker).is_dir() for marker in WARBAND_MARKERS):
            found.add(entry.name)
    for name in registered_warbands(town_root):
        if not is_reserved_name(name) and (town_root / name).is_dir():
            found.add(name)
    return sorted(found)


def session_warbands(town_root: Path) -> set[str]:
    """Warbands that may own running sessions.

    Requires ``warchief/`` at the root; otherwise the same set as
    :func:`find_all_warbands`, so a warband running only witness and forge
    still owns its sessions.
    """
    if not (town_root / "warchief").is_dir():
        return set()
    return set(find_all_warbands(town_root))


def list_clan_workers(town_root: Path, warband: str) -> list[str]:
    return [
        entry.name
        for entry in _subdirs(town_root / warband / "clan")
        if not entry.name.startswith(".")
    ]


def list_raiders(town_root: Path, warband: str) -> list[str]:
    return [
        entry.name
        for entry in _subdirs(town_root / warband / "raiders")
        if not entry.name.startswith(".")
    ]


def raider_clone_path(town_root: Path, warband: str, raider: str) -> Path:
    """``raiders/<n>/<warband>`` when present, else the raider directory itself."""
    base = town_root / warband / "raiders" / raider
    nested = base / warband
    return nested if nested.is_dir() else base


def warband_clones(
    town_root: Path,
    warband: str,
    kinds: tuple[str, ...] = ("warchief", "witness", "forge", "clan", "raiders"),
) -> list[Path]:
    """Project clones of a warband in canonical order, existing directories only."""
    root = town_root / warband
    clones: list[Path] = []
    for kind in kinds:
        if kind in ("warchief", "witness", "forge"):
            candidate = root / kind / "warband"
            if candidate.is_dir():
                clones.append(candidate)
        elif kind == "clan":
            clones.extend(root / "clan" / name for name in list_clan_workers(town_root, warband))
        elif kind == "raiders":
            clones.extend(
                raider_clone_path(town_root, warband, name)
                for name in list_raiders(town_root, warband)
            )
    return clones


def relative_to_root(path: Path, town_root: Path) -> str:
    try:
        return path.relative_to(town_root).as_posix()
    except ValueError:
        return str(path)


# -- daemon scout config --

SCOUT_CONFIG_TYPE = "daemon-scout-config"
SCOUT_CONFIG_VERSION = 1

SCOUT_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"enum": [SCOUT_CONFIG_TYPE, ""]},
        "version": {"type": "integer", "maximum": SCOUT_CONFIG_VERSION},
        "heartbeat": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "interval": {"type": "string"},
            },
        },
        "patrols": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "enabled": {"type": "boolean"},
                    "interval": {"type": "string"},
                    "agent": {"type": "string"},
                },
            },
        },
    },
}


def scout_config_path(town_root: Path) -> Path:
    return town_root / SCOUT_CONFIG


def default_scout_config() -> dict[str, Any]:
    return {
        "type": SCOUT_CONFIG_TYPE,
        "version": SCOUT_CONFIG_VERSION,
        "heartbeat": {"enabled": True, "interval": "3m"},
        "patrols": {
            "shaman": {"enabled": True, "interval": "5m", "agent": "shaman"},
            "witness": {"enabled": True, "interval": "5m", "agent": "witness"},
            "forge": {"enabled": True, "interval": "5m", "agent": "forge"},
        },
    }


def load_scout_config(town_root: Path) -> dict[str, Any]:
    """Parsed daemon scout config. Raises FileNotFoundError, OSError or ConfigError."""
    path = scout_config_path(town_root)
    document = read_json_file(path)
    errors = schema_errors(document, SCOUT_CONFIG_SCHEMA)
    if errors:
        raise ConfigError(f"{path}: {'; '.join(errors)}")
    return document


def ensure_scout_config(town_root: Path) -> bool:
    """Write the default scout config unless one exists. Returns True when written."""
    path = scout_config_path(town_root)
    if path.exists():
        return False
    write_json_file(path, default_scout_config())
    return True
