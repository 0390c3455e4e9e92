"""Handoff invariants over pinned records: attached totems, duplicates and orphaned agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from horde.checks_common import (
    RELICS_SKIPPED,
    CheckContext,
    CheckResult,
    RelicsCheck,
    RelicsFactory,
)
from horde.paths import RELICS_DIR_NAME, town_relics_dir
from horde.relics import (
    STATUS_CLOSED,
    STATUS_PINNED,
    Issue,
    RelicsError,
    RelicsNotFound,
    RelicsUnavailable,
    parse_attachment_fields,
    strip_attachment_fields,
)

log = logging.getLogger(__name__)

HANDOFF_SUFFIX = " Handoff"


def hook_relics_dirs(town_root: Path) -> list[Path]:
    """The encampment ``.relics`` plus every ``<warband>/.relics`` one level down."""
    dirs = []
    if town_relics_dir(town_root).is_dir():
        dirs.append(town_relics_dir(town_root))
    try:
        entries = sorted(town_root.iterdir())
    except OSError:
        return dirs
    for entry in entries:
        if entry.name.startswith(".") or entry.name == "warchief":
            continue
        if (entry / RELICS_DIR_NAME).is_dir():
            dirs.append(entry / RELICS_DIR_NAME)
    return dirs


class _PinnedRecordsCheck(RelicsCheck):
    """Walks the pinned records of every relics directory in the encampment."""

    category = "Cleanup"

    def pinned(self, ctx: CheckContext) -> list[tuple[Path, list[Issue]]]:
        """``(work_dir, pinned records)`` per directory. Raises RelicsUnavailable."""
        found = []
        for relics_dir in hook_relics_dirs(ctx.town_root):
            work_dir = relics_dir.parent
            try:
                issues = self.relics(ctx, work_dir).list_issues(status=STATUS_PINNED)
            except RelicsUnavailable:
                raise
            except RelicsError as exc:
                log.debug("Cannot list pinned records in %s: %s", work_dir, exc)
                continue
            found.append((work_dir, issues))
        return found


@dataclass(frozen=True)
class InvalidAttachment:
    work_dir: Path
    record_id: str
    totem_id: str
    reason: str

    def describe(self) -> str:
        reason = "is closed" if self.reason == "closed" else "not found"
        return f"{self.record_id}: attached totem {self.totem_id} {reason}"


class HookAttachmentValidCheck(_PinnedRecordsCheck):
    name = "hook-attachment-valid"
    description = "Verify attached totems exist and are not closed"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.invalid: list[InvalidAttachment] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.invalid = []
        try:
            pinned = self.pinned(ctx)
        except RelicsUnavailable:
            return self.ok(RELICS_SKIPPED)

        for work_dir, issues in pinned:
            client = self.relics(ctx, work_dir)
            for issue in issues:
                fields = parse_attachment_fields(issue.get("description", "") or "")
                totem_id = fields.get("attached_molecule")
                if not totem_id:
                    continue
                try:
                    totem = client.show(totem_id)
                except RelicsNotFound:
                    reason = "not_found"
                except RelicsError as exc:
                    log.debug("Cannot show %s: %s", totem_id, exc)
                    continue
                else:
                    if totem.get("status") != STATUS_CLOSED:
                        continue
                    reason = "closed"
                self.invalid.append(
                    InvalidAttachment(work_dir, issue.get("id", ""), totem_id, reason)
                )

        if not self.invalid:
            return self.ok("All hook attachments are valid")
        return self.error(
            f"Found {len(self.invalid)} invalid hook attachment(s)",
            details=[attachment.describe() for attachment in self.invalid],
            fix_hint=(
                "Run 'hd doctor --fix' to dismiss invalid totems, "
                "or 'hd totem dismiss <pinned-bead-id>' manually"
            ),
        )

    def repair(self, ctx: CheckContext) -> None:
        errors = []
        for attachment in self.invalid:
            client = self.relics(ctx, attachment.work_dir)
            try:
                record = client.show(attachment.record_id)
                description = record.get("description", "") or ""
                client.update_description(
                    attachment.record_id, strip_attachment_fields(description)
                )
            except RelicsError as exc:
                errors.append(f"failed to dismiss from {attachment.record_id}: {exc}")
        if errors:
            raise RuntimeError("; ".join(errors))


def handoff_duplicates(issues: list[Issue]) -> dict[str, list[str]]:
    """Handoff titles held by more than one pinned record, ids in listing order."""
    by_title: dict[str, list[str]] = {}
    for issue in issues:
        title = issue.get("title", "")
        if title.endswith(HANDOFF_SUFFIX):
            by_title.setdefault(title, []).append(issue.get("id", ""))
    return {title: ids for title, ids in by_title.items() if len(ids) > 1}


class HookSingletonCheck(_PinnedRecordsCheck):
    name = "hook-singleton"
    description = "Ensure each agent has at most one handoff bead"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self.duplicates: list[tuple[Path, str, list[str]]] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self.duplicates = []
        try:
            pinned = self.pinned(ctx)
        except RelicsUnavailable:
            return self.ok(RELICS_SKIPPED)

        for work_dir, issues in pinned:
            for title, ids in handoff_duplicates(issues).items():
                self.duplicates.append((work_dir, title, ids))

        if not self.duplicates:
            return self.ok("All handoff relics are unique")
        extra = sum(len(ids) - 1 for _, _, ids in self.duplicates)
        return self.error(
            f"Found {extra} duplicate handoff bead(s)",
            details=[
                f'"{title}" has {len(ids)} relics: {", ".join(ids)}'
                for _, title, ids in self.duplicates
            ],
            fix_hint="Run 'hd doctor --fix' to close duplicates, or 'rl close <id>' manually",
        )

    def repair(self, ctx: CheckContext) -> None:
        errors = []
        for work_dir, title, ids in self.duplicates:
            client = self.relics(ctx, work_dir)
            # The first record is kept.
            for record_id in ids[1:]:
                try:
                    client.close(record_id, "duplicate handoff bead")
                except RelicsError as exc:
                    errors.append(f'failed to close duplicates for "{title}": {exc}')
        if errors:
            raise RuntimeError("; ".join(errors))


def handoff_agent_exists(agent: str, town_root: Path) -> bool:
    """Whether the agent named by a handoff title still has a directory.

    Unrecognised agent names are assumed to exist.
    """
    if agent.endswith("-witness"):
        return (town_root / agent.removesuffix("-witness") / "witness").is_dir()
    if agent.endswith("-forge"):
        return (town_root / agent.removesuffix("-forge") / "forge").is_dir()
    if agent == "warchief":
        return (town_root / "warchief").is_dir()
    if "/clan/" in agent:
        warband, _, worker = agent.partition("/clan/")
        return (town_root / warband / "clan" / worker).is_dir()
    if "/" in agent:
        warband, _, raider = agent.partition("/")
        return (town_root / warband / "raiders" / raider).is_dir()
    return True


class OrphanedAttachmentsCheck(_PinnedRecordsCheck):
    name = "orphaned-attachments"
    description = "Detect handoff relics for non-existent agents"

    def detect(self, ctx: CheckContext) -> CheckResult:
        try:
            pinned = self.pinned(ctx)
        except RelicsUnavailable:
            return self.ok(RELICS_SKIPPED)

        details = []
        for _work_dir, issues in pinned:
            for issue in issues:
                title = issue.get("title", "")
                if not title.endswith(HANDOFF_SUFFIX):
                    continue
                agent = title.removesuffix(HANDOFF_SUFFIX)
                if agent and not handoff_agent_exists(agent, ctx.town_root):
                    details.append(f'{issue.get("id", "")}: agent "{agent}" no longer exists')

        if not details:
            return self.ok("No orphaned handoff relics found")
        return self.warning(
            f"Found {len(details)} orphaned handoff bead(s)",
            details=details,
            fix_hint="Reassign with 'hd charge <id> <agent>', or close with 'rl close <id>'",
        )
