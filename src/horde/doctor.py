"""Check registry and runner for ``hd doctor``."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal, TypedDict

from horde.checks_agents import AgentRelicsCheck, RepoFingerprintCheck, WarbandRelicsCheck
from horde.checks_claude import (
    ClaudeSettingsCheck,
    CommandsCheck,
    PrimingCheck,
    SessionHookCheck,
)
from horde.checks_cleanup import (
    ClanStateCheck,
    ClanWorktreesCheck,
    CloneDivergenceCheck,
    PersistentRoleBranchesCheck,
    RelicsSyncOrphansCheck,
)
from horde.checks_common import (
    CATEGORIES,
    STATUS_RANK,
    Category,
    Check,
    CheckContext,
    CheckResult,
    RelicsFactory,
    Status,
)
from horde.checks_hooks import (
    HookAttachmentValidCheck,
    HookSingletonCheck,
    OrphanedAttachmentsCheck,
)
from horde.checks_housekeeping import LegacyHordeCheck, RuntimeGitignoreCheck, WarbandSettingsCheck
from horde.checks_patrol import RitualsCheck, patrol_checks
from horde.checks_relics import (
    CustomTypesCheck,
    PrefixConflictCheck,
    PrefixMismatchCheck,
    RelicsDatabaseCheck,
    RoleLabelCheck,
    RoleRelicsCheck,
    RoutesCheck,
    WarbandRoutesJsonlCheck,
)
from horde.checks_rig import rig_checks
from horde.checks_sessions import (
    EnvVarsCheck,
    OrphanProcessCheck,
    OrphanSessionCheck,
    ProcessLister,
)
from horde.checks_workspace import (
    EncampmentGitCheck,
    EncampmentRootBranchCheck,
    GlobalStateCheck,
    workspace_checks,
)
from horde.tmux import EnvReader, SessionController

log = logging.getLogger(__name__)

Mode = Literal["detect", "fix", "dry-run"]
MODES: tuple[Mode, ...] = ("detect", "fix", "dry-run")

FIX_WOULD = "would fix"
FIX_DONE = "fixed"
SKIP_MANUAL = "skipped (manual fix required)"
SKIP_CONFIG = "skipped (disabled in doctor.toml)"
SKIP_FLAG = "skipped (--skip-fix)"
SKIP_DETECT_FAILED = "skipped (detection failed)"


class Counts(TypedDict):
    ok: int
    warnings: int
    errors: int
    fixed: int
    skipped: int


class DoctorReport(TypedDict):
    mode: Mode
    town_root: str
    warband: str | None
    status: Status
    summary: str
    counts: Counts
    checks: list[CheckResult]


def default_checks(
    *,
    warband: str | None = None,
    relics: RelicsFactory | None = None,
    sessions: SessionController | None = None,
    env_reader: EnvReader | None = None,
    processes: ProcessLister | None = None,
) -> list[Check]:
    """Every check in registration order; Rig checks only when a warband is named.

    The keyword arguments replace the real ``rl``/``tmux``/``ps`` probes.
    """
    checks: list[Check] = [
        *workspace_checks(),
        GlobalStateCheck(),
        EncampmentGitCheck(),
        EncampmentRootBranchCheck(),
        RepoFingerprintCheck(relics),
        RelicsDatabaseCheck(relics),
        CustomTypesCheck(relics),
        RoleLabelCheck(relics),
        RitualsCheck(),
        PrefixConflictCheck(),
        PrefixMismatchCheck(),
        RoutesCheck(),
        WarbandRoutesJsonlCheck(),
        OrphanSessionCheck(sessions),
        OrphanProcessCheck(processes),
        PersistentRoleBranchesCheck(),
        RelicsSyncOrphansCheck(),
        CloneDivergenceCheck(),
        EnvVarsCheck(env_reader),
        *patrol_checks(relics),
        AgentRelicsCheck(relics),
        WarbandRelicsCheck(relics),
        RoleRelicsCheck(relics),
        WarbandSettingsCheck(),
        SessionHookCheck(),
        RuntimeGitignoreCheck(),
        LegacyHordeCheck(),
        ClaudeSettingsCheck(sessions),
        PrimingCheck(),
        ClanStateCheck(),
        ClanWorktreesCheck(),
        CommandsCheck(),
        HookAttachmentValidCheck(relics),
        HookSingletonCheck(relics),
        OrphanedAttachmentsCheck(relics),
    ]
    if warband:
        checks.extend(rig_checks(relics))
    return checks


def select_checks(checks: list[Check], names: Iterable[str]) -> list[Check]:
    """Restrict ``checks`` to ``names``, keeping registration order.

    Raises ValueError for names that match no registered check.
    """
    wanted = set(names)
    if not wanted:
        return checks
    unknown = wanted - {check.name for check in checks}
    if unknown:
        raise ValueError(f"Unknown check(s): {', '.join(sorted(unknown))}")
    return [check for check in checks if check.name in wanted]


def checks_by_category(checks: list[Check]) -> dict[Category, list[Check]]:
    buckets: dict[Category, list[Check]] = {category: [] for category in CATEGORIES}
    for check in checks:
        buckets[check.category].append(check)
    return {category: members for category, members in buckets.items() if members}


def _detect_or_raise(check: Check, ctx: CheckContext) -> tuple[CheckResult, bool]:
    """Run one detection; any exception becomes a warning naming the check.

    The flag is True when detection raised.
    """
    try:
        result = check.detect(ctx)
    except Exception as exc:
        log.debug("Check %s raised", check.name, exc_info=True)
        return check.warning(f"check raised {type(exc).__name__}: {exc}"), True
    result.setdefault("category", check.category)
    return result, False


def _detect(check: Check, ctx: CheckContext) -> CheckResult:
    return _detect_or_raise(check, ctx)[0]


def _skip_reason(
    check: Check, ctx: CheckContext, skip_fix: frozenset[str], raised: bool
) -> str | None:
    if raised:
        return SKIP_DETECT_FAILED
    if not check.can_fix:
        return SKIP_MANUAL
    if check.name in skip_fix:
        return SKIP_FLAG
    if check.name in ctx.settings.skip_fix:
        return SKIP_CONFIG
    return None


def _repair(check: Check, ctx: CheckContext, result: CheckResult) -> CheckResult:
    """Apply one repair and re-detect; the returned result carries the fix annotation."""
    try:
        check.repair(ctx)
    except Exception as exc:
        log.warning("Repair of %s failed: %s", check.name, exc)
        failed: CheckResult = {**result}
        failed["details"] = [*result.get("details", []), f"fix error: {exc}"]
        failed["fix"] = f"fix failed: {exc}"
        return failed

    fresh = _detect(check, ctx)
    if fresh["status"] == "ok":
        fresh["fix"] = FIX_DONE
    else:
        fresh["fix"] = f"fix failed: still {fresh['status']}: {fresh['message']}"
    return fresh


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "ok"
    return max(statuses, key=lambda s: STATUS_RANK[s])


def _count(results: list[CheckResult]) -> Counts:
    counts: Counts = {"ok": 0, "warnings": 0, "errors": 0, "fixed": 0, "skipped": 0}
    for result in results:
        if result["status"] == "ok":
            counts["ok"] += 1
        elif result["status"] == "warning":
            counts["warnings"] += 1
        else:
            counts["errors"] += 1
        fix = result.get("fix", "")
        if fix == FIX_DONE:
            counts["fixed"] += 1
        elif fix.startswith("skipped"):
            counts["skipped"] += 1
    return counts


def _summary(counts: Counts, mode: Mode) -> str:
    summary = f"{counts['ok']} passed, {counts['warnings']} warnings, {counts['errors']} errors"
    if mode == "fix":
        summary += f", {counts['fixed']} fixed, {counts['skipped']} skipped"
    return summary


def run(
    ctx: CheckContext,
    mode: Mode = "detect",
    checks: list[Check] | None = None,
    *,
    skip_fix: Iterable[str] = (),
) -> DoctorReport:
    """Run every check and, in ``fix`` mode, repair what can be repaired.

    Detection runs first for all checks. Repairs then run serially in
    registration order: a check is re-detected before its repair once an
    earlier repair has changed the encampment, and again right after, so the
    report reflects post-repair state. A context built with ``dry_run`` turns
    ``fix`` into ``dry-run``.
    """
    if mode not in MODES:
        raise ValueError(f"unknown doctor mode: {mode!r}")
    if mode == "fix" and ctx.dry_run:
        mode = "dry-run"
    registered = checks if checks is not None else default_checks(warband=ctx.warband)
    skipped_by_flag = frozenset(skip_fix)

    detections = [_detect_or_raise(check, ctx) for check in registered]
    results = [result for result, _ in detections]

    if mode != "detect":
        repaired_any = False
        for index, check in enumerate(registered):
            if results[index]["status"] == "ok":
                continue
            reason = _skip_reason(check, ctx, skipped_by_flag, detections[index][1])
            if reason:
                results[index]["fix"] = reason
                continue
            if mode == "dry-run":
                results[index]["fix"] = FIX_WOULD
                continue
            if repaired_any:
                results[index] = _detect(check, ctx)
                if results[index]["status"] == "ok":
                    continue
            results[index] = _repair(check, ctx, results[index])
            repaired_any = True

    counts = _count(results)
    return {
        "mode": mode,
        "town_root": str(ctx.town_root),
        "warband": ctx.warband,
        "status": _worst_status([result["status"] for result in results]),
        "summary": _summary(counts, mode),
        "counts": counts,
        "checks": results,
    }


def exit_code(report: DoctorReport) -> int:
    """0 when every check is OK, 1 for warnings only, 2 when any error remains."""
    return STATUS_RANK[report["status"]]


_GLYPHS: dict[Status, str] = {"ok": "✓", "warning": "⚠", "error": "✗"}


def format_report(report: DoctorReport, *, verbose: bool = False) -> str:
    lines = []
    for result in report["checks"]:
        status = result["status"]
        lines.append(f"{_GLYPHS[status]} {result['name']}: {result['message']}")
        if status != "ok" or verbose:
            lines.extend(f"    {detail}" for detail in result.get("details", []))
        if status != "ok" and result.get("fix_hint") and not result.get("fix"):
            lines.append(f"    → {result['fix_hint']}")
        if result.get("fix"):
            lines.append(f"    [{result['fix']}]")
    lines.append("")
    lines.append(report["summary"])
    return "\n".join(lines)
