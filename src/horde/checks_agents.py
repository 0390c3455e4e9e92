"""Agent and warband identity records in the relics store, and repository fingerprints."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from horde.checks_common import (
    RELICS_SKIPPED,
    CheckContext,
    CheckResult,
    RelicsCheck,
    RelicsFactory,
)
from horde.daemon import restart_daemon
from horde.layout import list_clan_workers, registered_warbands
from horde.paths import town_relics_dir
from horde.relics import (
    RelicsClient,
    RelicsError,
    RelicsUnavailable,
    agent_record_id,
    format_agent_description,
    format_warband_description,
    load_routes,
    resolve_relics_dir,
    town_agent_id,
    warband_record_id,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedWarband:
    """A warband reached through a routes.jsonl entry."""

    name: str
    prefix: str
    path: str


def routed_warbands(town_root: Path) -> list[RoutedWarband]:
    """Warbands named by the first path segment of each non-encampment route.

    The first route wins when several share a warband.
    """
    seen: dict[str, RoutedWarband] = {}
    for route in load_routes(town_relics_dir(town_root)):
        name = route.path.split("/")[0]
        if not name or name == "." or name in seen:
            continue
        seen[name] = RoutedWarband(name=name, prefix=route.prefix.rstrip("-"), path=route.path)
    return list(seen.values())


@dataclass(frozen=True)
class AgentRecord:
    record_id: str
    role: str
    warband: str
    summary: str
    work_dir: Path


def expected_agent_records(town_root: Path) -> list[AgentRecord]:
    """Records every agent should have: the two town agents, then witness, forge and clan."""
    records = [
        AgentRecord(
            town_agent_id("shaman"),
            "shaman",
            "",
            "Shaman (daemon beacon) - receives mechanical heartbeats, "
            "runs encampment plugins and monitoring.",
            town_root,
        ),
        AgentRecord(
            town_agent_id("warchief"),
            "warchief",
            "",
            "Warchief - global coordinator, handles cross-warband communication and escalations.",
            town_root,
        ),
    ]
    for warband in routed_warbands(town_root):
        work_dir = town_root / warband.path
        records.append(
            AgentRecord(
                agent_record_id(warband.prefix, warband.name, "witness"),
                "witness",
                warband.name,
                f"Witness for {warband.name} - monitors raider health and progress.",
                work_dir,
            )
        )
        records.append(
            AgentRecord(
                agent_record_id(warband.prefix, warband.name, "forge"),
                "forge",
                warband.name,
                f"Forge for {warband.name} - processes merge queue.",
                work_dir,
            )
        )
        for worker in list_clan_workers(town_root, warband.name):
            records.append(
                AgentRecord(
                    agent_record_id(warband.prefix, warband.name, "clan", worker),
                    "clan",
                    warband.name,
                    f"Clan worker {worker} in {warband.name} - "
                    "human-managed persistent workspace.",
                    work_dir,
                )
            )
    return records


def _record_exists(client: RelicsClient, record_id: str) -> bool:
    """True when the record can be shown. Raises RelicsUnavailable when ``rl`` is missing."""
    try:
        return client.exists(record_id)
    except RelicsUnavailable:
        raise
    except RelicsError as exc:
        log.debug("Treating %s as missing: %s", record_id, exc)
        return False


class AgentRelicsCheck(RelicsCheck):
    name = "agent-relics-exist"
    description = "Verify agent relics exist for all agents"
    category = "Rig"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.missing: list[AgentRecord] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = []
        try:
            expected = expected_agent_records(ctx.town_root)
        except OSError as exc:
            return self.warning("Could not load routes.jsonl", details=[str(exc)])

        for record in expected:
            try:
                exists = _record_exists(self.relics(ctx, record.work_dir), record.record_id)
            except RelicsUnavailable:
                return self.ok(RELICS_SKIPPED)
            if not exists:
                self.missing.append(record)

        if not self.missing:
            return self.ok(f"All {len(expected)} agent relics exist")
        return self.warning(
            f"{len(self.missing)} agent bead(s) missing",
            details=[record.record_id for record in self.missing],
            fix_hint="Run 'hd doctor --fix' to create missing agent relics",
        )

    def repair(self, ctx: CheckContext) -> None:
        for record in self.missing:
            client = self.relics(ctx, record.work_dir)
            if _record_exists(client, record.record_id):
                continue
            try:
                client.create(
                    issue_type="agent",
                    record_id=record.record_id,
                    title=record.record_id,
                    description=format_agent_description(
                        record.summary, role=record.role, warband=record.warband
                    ),
                )
            except RelicsError as exc:
                raise RuntimeError(f"creating {record.record_id}: {exc}") from exc


class WarbandRelicsCheck(RelicsCheck):
    name = "warband-relics-exist"
    description = "Verify warband identity relics exist for all warbands"
    category = "Rig"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.missing: list[RoutedWarband] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = []
        try:
            warbands = routed_warbands(ctx.town_root)
        except OSError as exc:
            return self.warning("Could not load routes.jsonl", details=[str(exc)])
        if not warbands:
            return self.ok("No warbands to check")

        for warband in warbands:
            client = self.relics(ctx, ctx.town_root / warband.path)
            try:
                exists = _record_exists(client, warband_record_id(warband.prefix, warband.name))
            except RelicsUnavailable:
                return self.ok(RELICS_SKIPPED)
            if not exists:
                self.missing.append(warband)

        if not self.missing:
            return self.ok(f"All {len(warbands)} warband identity relics exist")
        return self.error(
            f"{len(self.missing)} warband identity bead(s) missing",
            details=[warband_record_id(w.prefix, w.name) for w in self.missing],
            fix_hint="Run 'hd doctor --fix' to create missing warband identity relics",
        )

    def repair(self, ctx: CheckContext) -> None:
        registry = registered_warbands(ctx.town_root)
        for warband in self.missing:
            record_id = warband_record_id(warband.prefix, warband.name)
            client = self.relics(ctx, ctx.town_root / warband.path)
            if _record_exists(client, record_id):
                continue
            git_url = (registry.get(warband.name) or {}).get("git_url", "")
            try:
                client.create(
                    issue_type="warband",
                    record_id=record_id,
                    title=warband.name,
                    description=format_warband_description(
                        warband.name, repo=git_url, prefix=warband.prefix
                    ),
                )
            except RelicsError as exc:
                raise RuntimeError(f"creating {record_id}: {exc}") from exc


# -- repository fingerprint --

FINGERPRINT_CHECK = "Repo Fingerprint"

DaemonRestarter = Callable[[Path, float], None]


class RepoFingerprintCheck(RelicsCheck):
    name = "repo-fingerprint"
    description = "Verify relics database has valid repository fingerprint"
    category = "Infrastructure"
    can_fix = True

    def __init__(
        self,
        relics: RelicsFactory | None = None,
        restart: DaemonRestarter | None = None,
    ) -> None:
        super().__init__(relics)
        self._restart = restart or restart_daemon
        self.needs_migration: Path | None = None

    def _locations(self, ctx: CheckContext) -> list[tuple[Path, str]]:
        locations = []
        if town_relics_dir(ctx.town_root).is_dir():
            locations.append((ctx.town_root, "encampment"))
        if ctx.warband_path is not None:
            relics_dir = resolve_relics_dir(ctx.warband_path)
            if relics_dir.is_dir():
                locations.append((relics_dir.parent, f"warband {ctx.warband}"))
        return locations

    def _check_location(self, ctx: CheckContext, work_dir: Path, location: str) -> CheckResult:
        try:
            report = self.relics(ctx, work_dir).doctor()
        except RelicsError as exc:
            log.debug("rl doctor unavailable in %s: %s", work_dir, exc)
            return self.ok(f"Skipped {location} (rl doctor unavailable)")
        checks = report.get("checks") if isinstance(report, dict) else None
        for entry in checks or []:
            if not isinstance(entry, dict) or entry.get("name") != FINGERPRINT_CHECK:
                continue
            status = entry.get("status")
            message = entry.get("message", "")
            details = [entry["detail"]] if entry.get("detail") else None
            hint = "Run 'hd doctor --fix' or 'rl migrate --update-repo-id'"
            if status == "ok":
                return self.ok(f"Fingerprint verified in {location} ({message})")
            if status == "warning":
                self.needs_migration = work_dir
                return self.warning(
                    f"Fingerprint issue in {location}: {message}", details=details, fix_hint=hint
                )
            if status == "error":
                self.needs_migration = work_dir
                return self.error(
                    f"Fingerprint error in {location}: {message}", details=details, fix_hint=hint
                )
        return self.ok(f"Fingerprint check not applicable for {location}")

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.needs_migration = None
        for work_dir, location in self._locations(ctx):
            result = self._check_location(ctx, work_dir, location)
            if result["status"] != "ok":
                return result
        return self.ok("Repository fingerprints verified")

    def repair(self, ctx: CheckContext) -> None:
        if self.needs_migration is None:
            return
        try:
            self.relics(ctx, self.needs_migration).migrate_update_repo_id()
        except RelicsError as exc:
            raise RuntimeError(f"rl migrate --update-repo-id failed: {exc}") from exc
        self._restart(ctx.town_root, ctx.timeout)
