"""Shared test fixtures: throwaway encampments and in-memory stand-ins for rl/tmux/ps."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from horde.checks_common import CheckContext
from horde.relics import (
    STATUS_CLOSED,
    Issue,
    RelicsNotFound,
    RelicsUnavailable,
    parse_role_config,
)
from horde.settings import DoctorSettings
from horde.tmux import TmuxError


def write_json(path: Path, document: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2) + "\n")
    return path


def make_encampment(root: Path) -> Path:
    """Minimal encampment: encampment.json, an empty warbands.json and an empty .relics/."""
    write_json(
        root / "warchief" / "encampment.json",
        {"type": "encampment", "version": 2, "name": "t"},
    )
    write_json(root / "warchief" / "warbands.json", {"version": 1, "warbands": {}})
    (root / ".relics").mkdir(parents=True)
    return root


def register_warband(root: Path, name: str, prefix: str = "", git_url: str = "") -> None:
    path = root / "warchief" / "warbands.json"
    document = json.loads(path.read_text())
    entry: dict[str, object] = {}
    if git_url:
        entry["git_url"] = git_url
    if prefix:
        entry["relics"] = {"prefix": prefix}
    document["warbands"][name] = entry
    write_json(path, document)


def write_routes(root: Path, *routes: tuple[str, str]) -> None:
    lines = "".join(
        json.dumps({"prefix": prefix, "path": path}, separators=(",", ":")) + "\n"
        for prefix, path in routes
    )
    (root / ".relics" / "routes.jsonl").write_text(lines)


class FakeRelicsStore:
    """In-memory ``rl``: one record table shared by every working directory.

    Calling the store with ``(work_dir, timeout)`` returns a client, so the
    store itself is a relics factory for any :class:`RelicsCheck`.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict] = {}
        self.config: dict[str, str] = {}
        self.calls: list[tuple[str, Path, tuple]] = []
        self.doctor_report: object = {"checks": []}
        self.sync_status_error: Exception | None = None
        self.unavailable = False

    def __call__(self, work_dir: Path, timeout: float) -> FakeRelicsClient:
        return FakeRelicsClient(self, Path(work_dir))

    def add(self, record_id: str, work_dir: Path | None = None, **fields: object) -> None:
        record: dict = {"id": record_id, "status": "open", "labels": [], **fields}
        if work_dir is not None:
            record["_dir"] = str(work_dir)
        self.records[record_id] = record

    def called(self, name: str) -> list[tuple[Path, tuple]]:
        return [(work_dir, args) for call, work_dir, args in self.calls if call == name]


class FakeRelicsClient:
    def __init__(self, store: FakeRelicsStore, work_dir: Path) -> None:
        self.store = store
        self.work_dir = work_dir

    def _call(self, name: str, *args: object) -> None:
        if self.store.unavailable:
            raise RelicsUnavailable("rl is not installed")
        self.store.calls.append((name, self.work_dir, args))

    def show(self, record_id: str) -> Issue:
        self._call("show", record_id)
        record = self.store.records.get(record_id)
        if record is None:
            raise RelicsNotFound(f"Error: issue {record_id} not found")
        return dict(record)  # type: ignore[return-value]

    def exists(self, record_id: str) -> bool:
        try:
            self.show(record_id)
        except RelicsNotFound:
            return False
        return True

    def list_issues(
        self, *, issue_type: str | None = None, status: str | None = None
    ) -> list[Issue]:
        self._call("list_issues", issue_type, status)
        return [
            dict(record)  # type: ignore[misc]
            for record in self.store.records.values()
            if record.get("_dir") == str(self.work_dir)
            and (issue_type is None or record.get("issue_type") == issue_type)
            and (status is None or record.get("status") == status)
        ]

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
        self._call("create", issue_type, title, record_id)
        new_id = record_id or f"hq-{len(self.store.records) + 1}"
        self.store.add(
            new_id,
            self.work_dir,
            issue_type=issue_type,
            title=title,
            description=description,
            labels=list(labels or []),
            priority=priority,
        )

    def add_label(self, record_id: str, label: str) -> None:
        self._call("add_label", record_id, label)
        self.store.records[record_id]["labels"].append(label)

    def update_description(self, record_id: str, description: str) -> None:
        self._call("update_description", record_id, description)
        self.store.records[record_id]["description"] = description

    def close(self, record_id: str, reason: str) -> None:
        self._call("close", record_id, reason)
        self.store.records[record_id]["status"] = STATUS_CLOSED

    def config_get(self, key: str) -> str:
        self._call("config_get", key)
        return self.store.config.get(key, "")

    def config_set(self, key: str, value: str) -> None:
        self._call("config_set", key, value)
        self.store.config[key] = value

    def init(self, prefix: str) -> None:
        self._call("init", prefix)

    def sync(self, *, from_main: bool = False) -> None:
        self._call("sync", from_main)

    def sync_status(self) -> str:
        self._call("sync_status")
        if self.store.sync_status_error is not None:
            raise self.store.sync_status_error
        return ""

    def stats(self) -> dict:
        self._call("stats")
        return {}

    def migrate_update_repo_id(self) -> None:
        self._call("migrate_update_repo_id")

    def doctor(self) -> object:
        self._call("doctor")
        return self.store.doctor_report

    def role_config(self, role_id: str) -> dict[str, str]:
        self._call("role_config", role_id)
        record = self.store.records.get(role_id)
        if record is None:
            return {}
        return parse_role_config(record.get("description", ""))


class FakeTmux:
    """Session controller and environment reader over a fixed session list."""

    def __init__(
        self,
        sessions: list[str] | None = None,
        environments: dict[str, dict[str, str]] | None = None,
        *,
        running: bool = True,
    ) -> None:
        self.sessions = list(sessions or [])
        self.environments = environments or {}
        self.running = running
        self.killed: list[str] = []

    def list_sessions(self) -> list[str]:
        if not self.running:
            raise TmuxError("no server running on /tmp/tmux-0/default")
        return list(self.sessions)

    def has_session(self, session: str) -> bool:
        return session in self.sessions

    def kill_session(self, session: str) -> None:
        self.killed.append(session)
        self.sessions.remove(session)

    def get_all_environment(self, session: str) -> dict[str, str]:
        return dict(self.environments.get(session, {}))


def no_processes(timeout: float) -> list:
    return []


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch) -> Path:
    """Point HOME and the XDG directories into tmp_path; never see the real encampment."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_STATE_HOME", str(home / ".local" / "state"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    monkeypatch.setenv("SHELL", "/bin/bash")
    monkeypatch.delenv("HD_ROOT", raising=False)
    return home


@pytest.fixture()
def healthy_global_state(isolated_home: Path) -> Path:
    """Enabled global state with bash integration and the hook script installed."""
    write_json(isolated_home / ".local" / "state" / "horde" / "state.json", {"enabled": True})
    (isolated_home / ".bashrc").write_text("# >>> Horde Integration >>>\n")
    hook = isolated_home / ".config" / "horde" / "shell-hook.sh"
    hook.parent.mkdir(parents=True)
    hook.write_text("#!/bin/sh\n")
    return isolated_home


@pytest.fixture()
def encampment(tmp_path: Path) -> Path:
    return make_encampment(tmp_path / "town")


@pytest.fixture()
def relics_store() -> FakeRelicsStore:
    return FakeRelicsStore()


@pytest.fixture()
def notices() -> list[str]:
    return []


@pytest.fixture()
def make_ctx(encampment: Path, notices: list[str]):
    """Build a CheckContext over the fixture encampment; notify() appends to ``notices``."""

    def _make(**overrides) -> CheckContext:
        values = {
            "town_root": encampment,
            "settings": DoctorSettings(command_timeout=5.0),
            "notify": notices.append,
        }
        values.update(overrides)
        return CheckContext(**values)

    return _make
