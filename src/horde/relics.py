"""Relics issue-store helpers: routes, redirects, record ids and the ``rl`` CLI.

Functions that wrap ``rl`` raise :class:`RelicsError` subclasses so callers
can tell "record missing" from "tool missing" from "tool failed".
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypedDict

from horde.paths import REDIRECT_FILE_NAME, RELICS_DIR_NAME, ROUTES_FILE_NAME
from horde.settings import DEFAULT_COMMAND_TIMEOUT

log = logging.getLogger(__name__)

RL_BINARY = "rl"
TOWN_PREFIX = "hq"
DEFAULT_WARBAND_PREFIX = "hd"

# Custom record types every relics store must register.
RELICS_CUSTOM_TYPES = "agent,role,warband,raid,slot,queue"
RELICS_CUSTOM_TYPES_LIST = tuple(RELICS_CUSTOM_TYPES.split(","))

ROLE_LABEL = "gt:role"
STATUS_PINNED = "pinned"
STATUS_CLOSED = "closed"
STATUS_IN_PROGRESS = "in_progress"

_MAX_REDIRECT_DEPTH = 3


class RelicsError(RuntimeError):
    """An ``rl`` invocation failed."""


class RelicsNotFound(RelicsError):
    """The requested record does not exist."""


class RelicsUnavailable(RelicsError):
    """The ``rl`` binary is not installed or timed out."""


class Issue(TypedDict, total=False):
    id: str
    title: str
    description: str
    status: str
    issue_type: str
    assignee: str
    labels: list[str]
    updated_at: str


# -- routes --


@dataclass(frozen=True)
class Route:
    prefix: str
    path: str

    def to_json(self) -> str:
        return json.dumps({"prefix": self.prefix, "path": self.path}, separators=(",", ":"))


def load_routes(relics_dir: Path) -> list[Route]:
    """Load ``routes.jsonl`` from a relics directory.

    A missing file yields an empty list. Blank lines, ``#`` comments,
    malformed JSON and entries with an empty prefix or path are skipped.
    """
    try:
        text = (relics_dir / ROUTES_FILE_NAME).read_text()
    except FileNotFoundError:
        return []

    routes: list[Route] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict):
            continue
        prefix = data.get("prefix")
        path = data.get("path")
        if isinstance(prefix, str) and isinstance(path, str) and prefix and path:
            routes.append(Route(prefix=prefix, path=path))
    return routes


def write_routes(relics_dir: Path, routes: list[Route]) -> None:
    """Overwrite ``routes.jsonl`` with one compact JSON object per line."""
    content = "".join(f"{route.to_json()}\n" for route in routes)
    (relics_dir / ROUTES_FILE_NAME).write_text(content)


def append_route(relics_dir: Path, route: Route) -> None:
    """Add a route, or update the path of an existing route with the same prefix."""
    routes = load_routes(relics_dir)
    for index, existing in enumerate(routes):
        if existing.prefix == route.prefix:
            routes[index] = route
            break
    else:
        routes.append(route)
    write_routes(relics_dir, routes)


def remove_route(relics_dir: Path, prefix: str) -> None:
    routes = [route for route in load_routes(relics_dir) if route.prefix != prefix]
    write_routes(relics_dir, routes)


def find_conflicting_prefixes(relics_dir: Path) -> dict[str, list[str]]:
    """Return ``prefix -> paths`` for every prefix claimed by more than one route."""
    by_prefix: dict[str, list[str]] = {}
    for route in load_routes(relics_dir):
        by_prefix.setdefault(route.prefix, []).append(route.path)
    return {prefix: paths for prefix, paths in by_prefix.items() if len(paths) > 1}


def get_prefix_for_warband(town_root: Path, warband: str) -> str:
    """Prefix (without trailing hyphen) routed to ``warband``; ``hd`` when unknown."""
    for route in load_routes(town_root / RELICS_DIR_NAME):
        if route.path.split("/", 1)[0] == warband:
            return route.prefix.removesuffix("-")
    return DEFAULT_WARBAND_PREFIX


def extract_prefix(record_id: str) -> str:
    """``ap-qtsup.16`` -> ``ap-``; empty when there is no usable prefix."""
    index = record_id.find("-")
    if index <= 0:
        return ""
    return record_id[: index + 1]


# -- redirects --


def resolve_relics_dir(work_dir: Path, *, remove_circular: bool = False) -> Path:
    """Return the relics directory for ``work_dir``, following redirect files.

    ``<work_dir>/.relics/redirect`` holds a path relative to ``work_dir``.
    Chains are followed up to three hops. A redirect that points back at its
    own directory is ignored, and deleted when ``remove_circular`` is set.
    """
    relics_dir = work_dir / RELICS_DIR_NAME
    redirect_path = relics_dir / REDIRECT_FILE_NAME
    target = _read_redirect(redirect_path)
    if not target:
        return relics_dir

    resolved = _clean_join(work_dir, target)
    if resolved == _clean(relics_dir):
        log.warning("Circular redirect in %s (points to itself), ignoring it", redirect_path)
        if remove_circular:
            try:
                redirect_path.unlink()
            except OSError as exc:
                log.warning("Could not remove errant redirect file %s: %s", redirect_path, exc)
        return relics_dir

    return _follow_redirects(resolved, _MAX_REDIRECT_DEPTH)


def _follow_redirects(relics_dir: Path, depth: int) -> Path:
    if depth <= 0:
        log.warning("Redirect chain too deep at %s, stopping", relics_dir)
        return relics_dir
    redirect_path = relics_dir / REDIRECT_FILE_NAME
    target = _read_redirect(redirect_path)
    if not target:
        return relics_dir
    resolved = _clean_join(relics_dir.parent, target)
    if resolved == relics_dir:
        log.warning("Circular redirect in %s, stopping", redirect_path)
        return relics_dir
    return _follow_redirects(resolved, depth - 1)


def _read_redirect(path: Path) -> str:
    try:
        return path.read_text().strip()
    except OSError:
        return ""


def _clean(path: Path) -> Path:
    return Path(os.path.normpath(path))


def _clean_join(base: Path, relative: str) -> Path:
    return _clean(base / relative)


# -- record identifiers --


def town_agent_id(role: str) -> str:
    """``hq-warchief`` / ``hq-shaman``."""
    return f"{TOWN_PREFIX}-{role}"


def role_record_id(role: str) -> str:
    return f"{TOWN_PREFIX}-{role}-role"


def agent_record_id(prefix: str, warband: str, role: str, name: str = "") -> str:
    """Agent record id: ``prefix-role``, ``prefix-warband-role`` or ``prefix-warband-role-name``."""
    if not warband:
        return f"{prefix}-{role}"
    if not name:
        return f"{prefix}-{warband}-{role}"
    return f"{prefix}-{warband}-{role}-{name}"


def warband_record_id(prefix: str, warband: str) -> str:
    """Warband identity record, e.g. ``hd-warband-horde``."""
    return f"{prefix}-warband-{warband}"


@dataclass(frozen=True)
class RoleRecordDef:
    id: str
    title: str
    description: str


ROLE_RECORD_DEFS: tuple[RoleRecordDef, ...] = (
    RoleRecordDef(
        role_record_id("warchief"),
        "Warchief Role",
        "Role definition for Warchief agents. Global coordinator for cross-warband work.",
    ),
    RoleRecordDef(
        role_record_id("shaman"),
        "Shaman Role",
        "Role definition for Shaman agents. Daemon beacon for heartbeats and monitoring.",
    ),
    RoleRecordDef(
        role_record_id("dog"),
        "Dog Role",
        "Role definition for Dog agents. Encampment-level workers for cross-warband tasks.",
    ),
    RoleRecordDef(
        role_record_id("witness"),
        "Witness Role",
        "Role definition for Witness agents. Per-warband worker monitor with progressive nudging.",
    ),
    RoleRecordDef(
        role_record_id("forge"),
        "Forge Role",
        "Role definition for Forge agents. Merge queue processor with verification gates.",
    ),
    RoleRecordDef(
        role_record_id("raider"),
        "Raider Role",
        "Role definition for Raider agents. Ephemeral workers for batch work dispatch.",
    ),
    RoleRecordDef(
        role_record_id("clan"),
        "Clan Role",
        "Role definition for Clan agents. Persistent user-managed workspaces.",
    ),
)


# -- description fields --


def _parse_key_values(description: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for raw_line in description.splitlines():
        line = raw_line.strip()
        key, sep, value = line.partition(":")
        if not sep:
            continue
        value = value.strip()
        if not value or value == "null":
            continue
        fields[key.strip().lower().replace("-", "_")] = value
    return fields


_ATTACHMENT_KEYS = {
    "attached_molecule": "attached_molecule",
    "attached_totem": "attached_molecule",
    "attachedmolecule": "attached_molecule",
    "attached_at": "attached_at",
    "attachedat": "attached_at",
    "attached_args": "attached_args",
    "attachedargs": "attached_args",
    "dispatched_by": "dispatched_by",
    "dispatchedby": "dispatched_by",
}


def parse_attachment_fields(description: str) -> dict[str, str]:
    """Attachment fields (``attached_molecule`` etc.) found in a record description."""
    fields: dict[str, str] = {}
    for key, value in _parse_key_values(description).items():
        canonical = _ATTACHMENT_KEYS.get(key)
        if canonical:
            fields[canonical] = value
    return fields


def strip_attachment_fields(description: str) -> str:
    """Return ``description`` without any attachment field lines."""
    kept = []
    for line in description.splitlines():
        key, sep, _ = line.strip().partition(":")
        if sep and key.strip().lower().replace("-", "_") in _ATTACHMENT_KEYS:
            continue
        kept.append(line)
    return "\n".join(kept).strip("\n")


def parse_role_config(description: str) -> dict[str, str]:
    """Role-record configuration lines (``stuck_threshold: 2h`` and friends)."""
    return _parse_key_values(description)


def format_agent_description(
    summary: str, *, role: str, warband: str = "", agent_state: str = "idle"
) -> str:
    lines = [summary, "", f"role_type: {role}"]
    if warband:
        lines.append(f"warband: {warband}")
    lines.append(f"agent_state: {agent_state}")
    lines.append(f"role_bead: {role_record_id(role)}")
    return "\n".join(lines)


def format_warband_description(warband: str, *, repo: str = "", prefix: str = "") -> str:
    lines = [f"Warband identity bead for {warband}.", ""]
    if repo:
        lines.append(f"repo: {repo}")
    if prefix:
        lines.append(f"prefix: {prefix}")
    lines.append("state: active")
    return "\n".join(lines)


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")


def parse_duration(value: str) -> float | None:
    """Parse ``1h30m`` style durations into seconds; ``None`` when invalid."""
    text = value.strip()
    if not text:
        return None
    position = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            return None
        amount = float(match.group(1))
        total += amount * {"h": 3600, "m": 60, "s": 1}[match.group(2)]
        position = match.end()
    if position != len(text):
        return None
    return total


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


# -- rl CLI output parsing --


def parse_config_output(output: str) -> str:
    """First non-empty line of ``rl config get`` output that is not a ``Note:`` line."""
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line and not line.startswith("Note:"):
            return line
    return ""


def contains_flag(text: str, flag: str) -> bool:
    """True when ``flag`` appears as a complete flag (not a prefix of a longer one)."""
    start = 0
    while True:
        index = text.find(flag, start)
        if index < 0:
            return False
        end = index + len(flag)
        if end == len(text) or text[end] in ('"', " ", "'", "\n", "\t"):
            return True
        start = index + 1


def has_label(issue: Issue | dict[str, Any], label: str) -> bool:
    labels = issue.get("labels") or []
    return label in labels


def _decode_json(output: str) -> Any:
    text = output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # Skip informational lines that precede the JSON payload.
        for marker in ("[", "{"):
            index = text.find(marker)
            if index > 0:
                try:
                    return json.loads(text[index:])
                except json.JSONDecodeError:
                    continue
        raise


class RelicsClient:
    """Thin wrapper around the ``rl`` CLI, run from ``work_dir``."""

    def __init__(self, work_dir: Path, *, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.work_dir = Path(work_dir)
        self.timeout = timeout

    def _invoke(self, args: tuple[str, ...]) -> subprocess.CompletedProcess[str]:
        command = [RL_BINARY, *args]
        log.debug("Running %s in %s", " ".join(command), self.work_dir)
        try:
            return subprocess.run(
                command,
                cwd=str(self.work_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise RelicsUnavailable(f"{RL_BINARY} is not installed") from None
        except subprocess.TimeoutExpired:
            raise RelicsUnavailable(
                f"{RL_BINARY} {' '.join(args)} timed out after {self.timeout:g}s"
            ) from None
        except NotADirectoryError:
            raise RelicsError(f"{self.work_dir} is not a directory") from None

    def run(self, *args: str) -> str:
        """Run ``rl`` and return stdout; raise on failure."""
        result = self._invoke(args)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            command = f"{RL_BINARY} {' '.join(args)}"
            if "not found" in message.lower() or "no issue" in message.lower():
                raise RelicsNotFound(message or f"{command}: not found")
            raise RelicsError(message or f"{command} exited {result.returncode}")
        return result.stdout

    def run_json(self, *args: str) -> Any:
        output = self.run(*args)
        try:
            return _decode_json(output)
        except json.JSONDecodeError as exc:
            raise RelicsError(f"parsing {RL_BINARY} {args[0]} output: {exc}") from None

    def show(self, record_id: str) -> Issue:
        data = self.run_json("show", record_id, "--json")
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise RelicsNotFound(f"{record_id}: not found")
        return data  # type: ignore[return-value]

    def exists(self, record_id: str) -> bool:
        try:
            self.show(record_id)
        except RelicsNotFound:
            return False
        return True

    def list_issues(
        self, *, issue_type: str | None = None, status: str | None = None
    ) -> list[Issue]:
        args = ["list"]
        if issue_type:
            args.append(f"--type={issue_type}")
        if status:
            args.append(f"--status={status}")
        args.append("--json")
        data = self.run_json(*args)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def create(
        self,
        *,
        issue_type: str,
        title: str,
        description: str = "",
        record_id: str | None = None,
        labels: list[str] | None = None,
        priority: int | None = None,
    ) -> None:
        args = ["create", f"--type={issue_type}"]
        if record_id:
            args.append(f"--id={record_id}")
        args.append(f"--title={title}")
        if description:
            args.append(f"--description={description}")
        if labels:
            args.append(f"--labels={','.join(labels)}")
        if priority is not None:
            args.append(f"--priority={priority}")
        self.run(*args)

    def add_label(self, record_id: str, label: str) -> None:
        self.run("label", "add", record_id, label)

    def update_description(self, record_id: str, description: str) -> None:
        self.run("update", record_id, f"--description={description}")

    def close(self, record_id: str, reason: str) -> None:
        self.run("close", record_id, f"--reason={reason}")

    def config_get(self, key: str) -> str:
        return parse_config_output(self.run("config", "get", key))

    def config_set(self, key: str, value: str) -> None:
        self.run("config", "set", key, value)

    def init(self, prefix: str) -> None:
        self.run("init", "--prefix", prefix)

    def sync(self, *, from_main: bool = False) -> None:
        if from_main:
            self.run("sync", "--from-main")
        else:
            self.run("sync")

    def sync_status(self) -> str:
        return self.run("sync", "--status")

    def stats(self) -> Any:
        return self.run_json("stats", "--json")

    def migrate_update_repo_id(self) -> None:
        self.run("migrate", "--update-repo-id")

    def doctor(self) -> Any:
        """``rl doctor --json``; it exits non-zero on findings, so stdout is parsed anyway."""
        result = self._invoke(("doctor", "--json"))
        try:
            return _decode_json(result.stdout)
        except json.JSONDecodeError as exc:
            detail = result.stderr.strip() or str(exc)
            raise RelicsError(f"parsing {RL_BINARY} doctor output: {detail}") from None

    def role_config(self, role_id: str) -> dict[str, str]:
        """Parsed configuration of a role record; empty when the record is missing."""
        try:
            issue = self.show(role_id)
        except RelicsNotFound:
            return {}
        return parse_role_config(issue.get("description", "") or "")
