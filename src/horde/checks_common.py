"""Check contract shared by every doctor check.

A check has a stable kebab-case ``name``, a ``description``, a ``category``
and a ``can_fix`` bit. ``detect(ctx)`` is purely observational and returns a
:class:`CheckResult`; ``repair(ctx)`` (fixable checks only) applies the
repair and raises on failure. Checks may cache the offending items found by
``detect`` for ``repair`` to use, but every repair re-reads what it needs
before acting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Literal, TypedDict

from horde.relics import RelicsClient
from horde.settings import DoctorSettings

log = logging.getLogger(__name__)

Status = Literal["ok", "warning", "error"]
STATUS_RANK: dict[Status, int] = {"ok": 0, "warning": 1, "error": 2}

Category = Literal["Core", "Config", "Patrol", "Rig", "Cleanup", "Infrastructure"]
CATEGORIES: tuple[Category, ...] = ("Core", "Config", "Patrol", "Rig", "Cleanup", "Infrastructure")


class _CheckResultRequired(TypedDict):
    name: str
    status: Status
    message: str


class CheckResult(_CheckResultRequired, total=False):
    category: Category
    details: list[str]
    fix_hint: str
    fix: str


def _log_notice(message: str) -> None:
    log.warning("%s", message)


@dataclass(frozen=True)
class CheckContext:
    """Immutable per-run inputs handed to every check."""

    town_root: Path
    warband: str | None = None
    restart_sessions: bool = False
    dry_run: bool = False
    verbose: bool = False
    settings: DoctorSettings = field(default_factory=DoctorSettings)
    notify: Callable[[str], None] = _log_notice

    @property
    def warband_path(self) -> Path | None:
        if not self.warband:
            return None
        return self.town_root / self.warband

    @property
    def timeout(self) -> float:
        return self.settings.command_timeout


class Check:
    """Base class for doctor checks."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    category: ClassVar[Category] = "Core"
    can_fix: ClassVar[bool] = False

    def detect(self, ctx: CheckContext) -> CheckResult:
        raise NotImplementedError

    def repair(self, ctx: CheckContext) -> None:
        raise NotImplementedError(f"{self.name} cannot be fixed automatically")

    def result(
        self,
        status: Status,
        message: str,
        details: list[str] | None = None,
        fix_hint: str | None = None,
    ) -> CheckResult:
        result: CheckResult = {
            "name": self.name,
            "category": self.category,
            "status": status,
            "message": message,
        }
        if details:
            result["details"] = list(details)
        if fix_hint:
            result["fix_hint"] = fix_hint
        return result

    def ok(self, message: str, details: list[str] | None = None) -> CheckResult:
        return self.result("ok", message, details)

    def warning(
        self, message: str, details: list[str] | None = None, fix_hint: str | None = None
    ) -> CheckResult:
        return self.result("warning", message, details, fix_hint)

    def error(
        self, message: str, details: list[str] | None = None, fix_hint: str | None = None
    ) -> CheckResult:
        return self.result("error", message, details, fix_hint)


RelicsFactory = Callable[[Path, float], RelicsClient]

RELICS_SKIPPED = "relics not installed (skipped)"


def default_relics(work_dir: Path, timeout: float) -> RelicsClient:
    return RelicsClient(work_dir, timeout=timeout)


class RelicsCheck(Check):
    """A check that talks to the relics store through an injectable client factory."""

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        self._relics_factory = relics or default_relics

    def relics(self, ctx: CheckContext, work_dir: Path | None = None) -> RelicsClient:
        return self._relics_factory(work_dir or ctx.town_root, ctx.timeout)


def file_nonempty(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False
