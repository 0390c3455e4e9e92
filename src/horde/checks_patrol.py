"""Patrol checks: scout totems, daemon wiring, stuck wisps, plugins, role prompts and rituals."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from horde.checks_common import (
    RELICS_SKIPPED,
    Check,
    CheckContext,
    CheckResult,
    RelicsCheck,
    RelicsFactory,
)
from horde.layout import (
    ConfigError,
    ensure_scout_config,
    load_scout_config,
    load_warbands_registry,
    relative_to_root,
    scout_config_path,
)
from horde.relics import (
    STATUS_IN_PROGRESS,
    RelicsError,
    RelicsUnavailable,
    format_duration,
    parse_duration,
    resolve_relics_dir,
    role_record_id,
)
from horde.templates import (
    missing_role_prompts,
    provision_role_prompts,
    provision_rituals,
    ritual_problems,
)

log = logging.getLogger(__name__)

SCOUT_TOTEMS: dict[str, str] = {
    "Shaman Scout": (
        "Warchief's daemon scout loop for handling callbacks, health checks, and cleanup."
    ),
    "Witness Scout": "Per-warband worker monitor scout loop with progressive nudging.",
    "Forge Scout": "Merge queue processor scout loop with verification gates.",
}

DEFAULT_STUCK_THRESHOLD = 3600.0


def registered_warband_names(town_root: Path) -> list[str]:
    """Warbands listed in warbands.json. Raises ConfigError or OSError when unreadable."""
    document = load_warbands_registry(town_root)
    if not document:
        return []
    return sorted(document.get("warbands") or {})


def discover_warbands(check: Check, ctx: CheckContext) -> tuple[list[str], CheckResult | None]:
    """Registered warbands, or an error result when warbands.json cannot be read."""
    try:
        return registered_warband_names(ctx.town_root), None
    except (ConfigError, OSError) as exc:
        return [], check.error("Failed to discover warbands", details=[str(exc)])


class ScoutTotemsCheck(RelicsCheck):
    name = "scout-totems-exist"
    description = "Check if scout totems exist for each warband"
    category = "Patrol"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.missing: dict[str, list[str]] = {}

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = {}
        warbands, failure = discover_warbands(self, ctx)
        if failure:
            return failure
        if not warbands:
            return self.ok("No warbands configured")

        details = []
        for warband in warbands:
            client = self.relics(ctx, ctx.town_root / warband)
            try:
                totems = client.list_issues(issue_type="totem")
            except RelicsUnavailable:
                return self.ok(RELICS_SKIPPED)
            except RelicsError as exc:
                log.debug("Listing totems in %s failed: %s", warband, exc)
                totems = []
            titles = {issue.get("title", "") for issue in totems}
            missing = [title for title in SCOUT_TOTEMS if title not in titles]
            if missing:
                self.missing[warband] = missing
                details.append(f"{warband}: missing {', '.join(missing)}")

        if details:
            return self.warning(
                f"{len(self.missing)} warband(s) missing scout totems",
                details=details,
                fix_hint="Run 'hd doctor --fix' to create missing scout totems",
            )
        return self.ok(f"All {len(warbands)} warband(s) have scout totems")

    def repair(self, ctx: CheckContext) -> None:
        for warband, missing in self.missing.items():
            client = self.relics(ctx, ctx.town_root / warband)
            for title in missing:
                try:
                    client.create(
                        issue_type="totem",
                        title=title,
                        description=SCOUT_TOTEMS[title],
                        priority=2,
                    )
                except RelicsError as exc:
                    raise RuntimeError(f"creating {title} in {warband}: {exc}") from exc


class ScoutHooksWiredCheck(Check):
    name = "scout-hooks-wired"
    description = "Check if hooks trigger scout execution"
    category = "Patrol"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        rel = relative_to_root(scout_config_path(ctx.town_root), ctx.town_root)
        try:
            config = load_scout_config(ctx.town_root)
        except FileNotFoundError:
            return self.warning(
                f"{rel} not found",
                fix_hint=(
                    "Run 'hd doctor --fix' to create default config, "
                    "or 'hd daemon start' to start the daemon"
                ),
            )
        except (ConfigError, OSError) as exc:
            return self.error("Failed to read daemon config", details=[str(exc)])

        patrols = config.get("patrols") or {}
        if patrols:
            return self.ok(f"Daemon configured with {len(patrols)} scout(s)")
        heartbeat = config.get("heartbeat") or {}
        if heartbeat.get("enabled"):
            return self.ok("Daemon heartbeat enabled (triggers patrols)")
        return self.warning(
            f"Configure patrols in {rel} or run 'hd daemon start'",
            fix_hint="Run 'hd doctor --fix' to create default config",
        )

    def repair(self, ctx: CheckContext) -> None:
        ensure_scout_config(ctx.town_root)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        stamp = datetime.fromisoformat(value)
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=UTC)
    return stamp


def stuck_wisps(issues_path: Path, warband: str, threshold: float, now: datetime) -> list[str]:
    """``in_progress`` records in issues.jsonl not updated within ``threshold`` seconds."""
    try:
        lines = issues_path.read_text().splitlines()
    except OSError:
        return []
    stuck = []
    for line in lines:
        if not line.strip():
            continue
        try:
            issue = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(issue, dict) or issue.get("status") != STATUS_IN_PROGRESS:
            continue
        updated = _parse_timestamp(str(issue.get("updated_at") or ""))
        if updated is None:
            continue
        if (now - updated).total_seconds() > threshold:
            stuck.append(
                f"{warband}: {issue.get('id', '')} ({issue.get('title', '')}) - "
                f"stale since {updated.strftime('%Y-%m-%d %H:%M')}"
            )
    return stuck


class ScoutNotStuckCheck(RelicsCheck):
    name = "scout-not-stuck"
    description = "Check for stuck scout wisps (>1h in_progress)"
    category = "Patrol"

    def stuck_threshold(self, ctx: CheckContext) -> float:
        """Threshold from the shaman role record (``stuck_threshold``), else one hour."""
        try:
            config = self.relics(ctx).role_config(role_record_id("shaman"))
        except RelicsError as exc:
            log.debug("Using default stuck threshold: %s", exc)
            return DEFAULT_STUCK_THRESHOLD
        parsed = parse_duration(config.get("stuck_threshold", ""))
        return parsed if parsed else DEFAULT_STUCK_THRESHOLD

    def detect(self, ctx: CheckContext) -> CheckResult:
        warbands, failure = discover_warbands(self, ctx)
        if failure:
            return failure
        if not warbands:
            return self.ok("No warbands configured")

        threshold = self.stuck_threshold(ctx)
        now = datetime.now(UTC)
        stuck: list[str] = []
        for warband in warbands:
            relics_dir = resolve_relics_dir(ctx.town_root / warband)
            stuck.extend(stuck_wisps(relics_dir / "issues.jsonl", warband, threshold, now))

        if stuck:
            return self.warning(
                f"{len(stuck)} stuck scout wisp(s) found (>{format_duration(threshold)})",
                details=stuck,
                fix_hint=(
                    "Manual review required - wisps may need to be burned or sessions restarted"
                ),
            )
        return self.ok("No stuck scout wisps found")


class ScoutPluginsCheck(Check):
    name = "scout-plugins-accessible"
    description = "Check if plugin directories exist and are readable"
    category = "Patrol"
    can_fix = True

    def __init__(self) -> None:
        self.missing: list[Path] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = []
        candidates = [ctx.town_root / "plugins"]
        try:
            candidates += [
                ctx.town_root / warband / "plugins"
                for warband in registered_warband_names(ctx.town_root)
            ]
        except (ConfigError, OSError) as exc:
            log.debug("Skipping warband plugin dirs: %s", exc)
        self.missing = [path for path in candidates if not path.exists()]
        if self.missing:
            return self.warning(
                f"{len(self.missing)} plugin directory(ies) missing",
                details=[str(path) for path in self.missing],
                fix_hint="Run 'hd doctor --fix' to create missing directories",
            )
        return self.ok("All plugin directories accessible")

    def repair(self, ctx: CheckContext) -> None:
        for path in self.missing:
            path.mkdir(parents=True, exist_ok=True)


class ScoutRolePromptsCheck(Check):
    name = "scout-roles-have-prompts"
    description = "Check if internal/templates/roles/*.md.tmpl exist for each scout role"
    category = "Patrol"
    can_fix = True

    def __init__(self) -> None:
        self.missing: dict[str, list[str]] = {}

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.missing = {}
        warbands, failure = discover_warbands(self, ctx)
        if failure:
            return failure
        if not warbands:
            return self.ok("No warbands configured")

        details = []
        for warband in warbands:
            missing = missing_role_prompts(ctx.town_root, warband)
            if missing:
                self.missing[warband] = missing
                details.extend(f"{warband}: {name}" for name in missing)
        if details:
            return self.warning(
                f"{len(details)} role prompt template(s) missing",
                details=details,
                fix_hint="Run 'hd doctor --fix' to copy embedded templates to warband repos",
            )
        return self.ok("All scout role prompt templates found")

    def repair(self, ctx: CheckContext) -> None:
        for warband in self.missing:
            provision_role_prompts(ctx.town_root, warband)


class RitualsCheck(Check):
    name = "rituals"
    description = "Check that required ritual definitions are provisioned"
    category = "Patrol"
    can_fix = True

    def __init__(self) -> None:
        self.problems: dict[str, str] = {}

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.problems = ritual_problems(ctx.town_root)
        if not self.problems:
            return self.ok("All rituals provisioned")
        return self.warning(
            f"{len(self.problems)} ritual(s) missing or invalid",
            details=[
                f".relics/rituals/{name}: {problem}" for name, problem in self.problems.items()
            ],
            fix_hint="Run 'hd doctor --fix' to re-provision rituals",
        )

    def repair(self, ctx: CheckContext) -> None:
        if self.problems:
            provision_rituals(ctx.town_root, list(self.problems))


def patrol_checks(relics: RelicsFactory | None = None) -> list[Check]:
    return [
        ScoutTotemsCheck(relics),
        ScoutHooksWiredCheck(),
        ScoutNotStuckCheck(relics),
        ScoutPluginsCheck(),
        ScoutRolePromptsCheck(),
    ]
