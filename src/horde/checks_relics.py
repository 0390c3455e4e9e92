"""Config checks for the relics store: database health, custom types, role records and routing."""

from __future__ import annotations

import logging
from pathlib import Path

from horde.checks_common import (
    RELICS_SKIPPED,
    Check,
    CheckContext,
    CheckResult,
    RelicsCheck,
    RelicsFactory,
    file_nonempty,
)
from horde.layout import (
    ConfigError,
    load_warbands_registry,
    read_json_file,
    registered_warbands,
    save_warbands_registry,
    warbands_registry_path,
)
from horde.paths import RELICS_DIR_NAME, ROUTES_FILE_NAME, town_relics_dir
from horde.relics import (
    RELICS_CUSTOM_TYPES,
    RELICS_CUSTOM_TYPES_LIST,
    ROLE_LABEL,
    ROLE_RECORD_DEFS,
    RelicsError,
    RelicsNotFound,
    RelicsUnavailable,
    Route,
    find_conflicting_prefixes,
    has_label,
    load_routes,
    resolve_relics_dir,
    write_routes,
)

log = logging.getLogger(__name__)

TOWN_ROUTE = Route(prefix="hq-", path=".")
RAID_ROUTE = Route(prefix="hq-cv-", path=".")


def _stale_database(relics_dir: Path) -> bool:
    """An ``issues.db`` of size zero next to a non-empty ``issues.jsonl``."""
    db = relics_dir / "issues.db"
    try:
        empty_db = db.stat().st_size == 0
    except OSError:
        return False
    return empty_db and file_nonempty(relics_dir / "issues.jsonl")


class RelicsDatabaseCheck(RelicsCheck):
    name = "relics-database"
    description = "Verify relics database is properly initialized"
    category = "Config"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        relics_dir = town_relics_dir(ctx.town_root)
        if not relics_dir.is_dir():
            return self.warning(
                "No .relics directory found at encampment root",
                fix_hint="Run 'rl init' to initialize relics",
            )
        if not (relics_dir / "issues.db").exists():
            return self.ok("No issues.db file (will be created on first use)")
        if _stale_database(relics_dir):
            return self.error(
                "issues.db is empty but issues.jsonl has content",
                details=[
                    "This can cause 'table issues has no column named pinned' errors",
                    "The database needs to be rebuilt from the JSONL file",
                ],
                fix_hint="Run 'hd doctor --fix' or delete issues.db and run 'rl sync --from-main'",
            )
        if ctx.warband_path is not None:
            warband_relics = resolve_relics_dir(ctx.warband_path)
            if warband_relics.is_dir() and _stale_database(warband_relics):
                return self.error(
                    "Warband issues.db is empty but issues.jsonl has content",
                    details=[
                        f"Warband: {ctx.warband}",
                        "This can cause 'table issues has no column named pinned' errors",
                    ],
                    fix_hint="Run 'hd doctor --fix' or delete the warband's issues.db",
                )
        return self.ok("Relics database is properly initialized")

    def repair(self, ctx: CheckContext) -> None:
        relics_dir = town_relics_dir(ctx.town_root)
        if _stale_database(relics_dir):
            (relics_dir / "issues.db").unlink()
            log.info("Removed empty %s, rebuilding from JSONL", relics_dir / "issues.db")
            self.relics(ctx).sync(from_main=True)

        if ctx.warband_path is not None:
            warband_relics = resolve_relics_dir(ctx.warband_path)
            if _stale_database(warband_relics):
                (warband_relics / "issues.db").unlink()
                self.relics(ctx, ctx.warband_path).sync(from_main=True)


class CustomTypesCheck(RelicsCheck):
    name = "relics-custom-types"
    description = "Check that Horde custom types are registered with relics"
    category = "Config"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        if not town_relics_dir(ctx.town_root).is_dir():
            return self.ok("No relics database (skipped)")
        try:
            configured = self.relics(ctx).config_get("types.custom")
        except RelicsUnavailable:
            return self.ok(RELICS_SKIPPED)
        except RelicsError:
            configured = ""

        configured_set = {item.strip() for item in configured.split(",") if item.strip()}
        if not configured_set:
            return self.warning(
                "Custom types not configured",
                details=[
                    "Horde custom types (agent, role, warband, raid, slot) are not registered",
                    "This may cause record creation/validation errors",
                ],
                fix_hint=(
                    "Run 'hd doctor --fix' or "
                    f"'rl config set types.custom \"{RELICS_CUSTOM_TYPES}\"'"
                ),
            )

        missing = [name for name in RELICS_CUSTOM_TYPES_LIST if name not in configured_set]
        if not missing:
            return self.ok("All custom types registered")
        return self.warning(
            f"{len(missing)} custom type(s) missing",
            details=[
                f"Missing types: {', '.join(missing)}",
                f"Configured: {configured}",
                f"Required: {RELICS_CUSTOM_TYPES}",
            ],
            fix_hint="Run 'hd doctor --fix' to register missing types",
        )

    def repair(self, ctx: CheckContext) -> None:
        self.relics(ctx).config_set("types.custom", RELICS_CUSTOM_TYPES)


class RoleLabelCheck(RelicsCheck):
    name = "role-bead-labels"
    description = "Check that role records have the gt:role label"
    category = "Config"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self._missing_label: list[str] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._missing_label = []
        if not town_relics_dir(ctx.town_root).is_dir():
            return self.ok("No relics database (skipped)")
        store = self.relics(ctx)
        for definition in ROLE_RECORD_DEFS:
            try:
                issue = store.show(definition.id)
            except RelicsUnavailable:
                return self.ok(RELICS_SKIPPED)
            except RelicsNotFound:
                continue
            if not has_label(issue, ROLE_LABEL):
                self._missing_label.append(definition.id)

        if not self._missing_label:
            return self.ok(f"All role records have {ROLE_LABEL} label")
        return self.warning(
            f"{len(self._missing_label)} role record(s) missing {ROLE_LABEL} label",
            details=list(self._missing_label),
            fix_hint="Run 'hd doctor --fix' to add missing labels",
        )

    def repair(self, ctx: CheckContext) -> None:
        store = self.relics(ctx)
        for record_id in self._missing_label:
            store.add_label(record_id, ROLE_LABEL)


class RoleRelicsCheck(RelicsCheck):
    name = "role-relics-exist"
    description = "Verify role definition records exist"
    category = "Config"
    can_fix = True

    def __init__(self, relics: RelicsFactory | None = None) -> None:
        super().__init__(relics)
        self._missing: list[str] = []

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._missing = []
        store = self.relics(ctx)
        for definition in ROLE_RECORD_DEFS:
            try:
                exists = store.exists(definition.id)
            except RelicsUnavailable:
                return self.ok(RELICS_SKIPPED)
            if not exists:
                self._missing.append(definition.id)

        if not self._missing:
            return self.ok(f"All {len(ROLE_RECORD_DEFS)} role records exist")
        # Agents fall back to defaults without role records.
        return self.warning(
            f"{len(self._missing)} role record(s) missing (agents will use defaults)",
            details=list(self._missing),
            fix_hint="Run 'hd doctor --fix' to create missing role records",
        )

    def repair(self, ctx: CheckContext) -> None:
        store = self.relics(ctx)
        by_id = {definition.id: definition for definition in ROLE_RECORD_DEFS}
        for record_id in self._missing:
            definition = by_id[record_id]
            if store.exists(record_id):
                continue
            store.create(
                issue_type="role",
                record_id=definition.id,
                title=definition.title,
                description=definition.description,
                labels=[ROLE_LABEL],
            )


# -- routing --


class PrefixConflictCheck(Check):
    name = "prefix-conflict"
    description = "Check for duplicate relics prefixes across warbands"
    category = "Config"

    def detect(self, ctx: CheckContext) -> CheckResult:
        relics_dir = town_relics_dir(ctx.town_root)
        if not (relics_dir / ROUTES_FILE_NAME).exists():
            return self.ok("No routes.jsonl file (prefix routing not configured)")
        try:
            conflicts = find_conflicting_prefixes(relics_dir)
        except OSError as exc:
            return self.warning(f"Could not check routes.jsonl: {exc}")
        if not conflicts:
            return self.ok("No prefix conflicts found")
        return self.error(
            f"{len(conflicts)} prefix conflict(s) found in routes.jsonl",
            details=[
                f'Prefix "{prefix}" used by: {", ".join(paths)}'
                for prefix, paths in sorted(conflicts.items())
            ],
            fix_hint=(
                "Use 'rl rename-prefix <new-prefix>' in one of the conflicting warbands to resolve"
            ),
        )


def _route_prefix_by_path(routes: list[Route]) -> dict[str, str]:
    return {route.path: route.prefix.removesuffix("-") for route in routes}


def _clone_route_path(warband: str) -> str:
    return f"{warband}/warchief/warband"


class PrefixMismatchCheck(Check):
    name = "prefix-mismatch"
    description = "Check for prefix mismatches between warbands.json and routes.jsonl"
    category = "Config"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        try:
            routes = load_routes(town_relics_dir(ctx.town_root))
        except OSError as exc:
            return self.warning(f"Could not load routes.jsonl: {exc}")
        if not routes:
            return self.ok("No routes configured (nothing to check)")
        try:
            registry = load_warbands_registry(ctx.town_root)
        except (ConfigError, OSError):
            registry = None
        if not registry:
            return self.ok("No warbands.json found (nothing to check)")

        by_path = _route_prefix_by_path(routes)
        details = []
        for name, entry in sorted((registry.get("warbands") or {}).items()):
            declared = ((entry or {}).get("relics") or {}).get("prefix") or ""
            if not declared:
                continue
            routed = by_path.get(_clone_route_path(name))
            if routed is None or routed == declared:
                continue
            details.append(
                f"Warband '{name}': warbands.json says '{declared}', routes.jsonl uses '{routed}'"
            )

        if not details:
            return self.ok("No prefix mismatches found")
        return self.warning(
            f"{len(details)} prefix mismatch(es) between warbands.json and routes.jsonl",
            details=details,
            fix_hint="Run 'hd doctor --fix' to update warbands.json with correct prefixes",
        )

    def repair(self, ctx: CheckContext) -> None:
        routes = load_routes(town_relics_dir(ctx.town_root))
        if not routes:
            return
        try:
            document = read_json_file(warbands_registry_path(ctx.town_root))
        except FileNotFoundError:
            return
        by_path = _route_prefix_by_path(routes)
        modified = False
        for name, entry in (document.get("warbands") or {}).items():
            routed = by_path.get(_clone_route_path(name))
            if routed is None:
                continue
            relics_config = entry.setdefault("relics", {})
            if relics_config.get("prefix") != routed:
                relics_config["prefix"] = routed
                modified = True
        if modified:
            save_warbands_registry(ctx.town_root, document)


class RoutesCheck(Check):
    name = "routes-config"
    description = "Check relics routing configuration"
    category = "Config"
    can_fix = True

    def detect(self, ctx: CheckContext) -> CheckResult:
        relics_dir = town_relics_dir(ctx.town_root)
        if not relics_dir.is_dir():
            return self.warning(
                "No .relics directory at encampment root",
                fix_hint="Run 'rl init' to initialize relics",
            )
        routes = load_routes(relics_dir)
        prefixes = {route.prefix for route in routes}
        paths = {route.path for route in routes}

        details: list[str] = []
        missing_town = TOWN_ROUTE.prefix not in prefixes
        missing_raid = RAID_ROUTE.prefix not in prefixes
        if missing_town:
            details.append("Encampment root route (hq- -> .) is missing")
        if missing_raid:
            details.append("Raid route (hq-cv- -> .) is missing")

        missing_warbands = []
        for name, entry in sorted(registered_warbands(ctx.town_root).items()):
            if _clone_route_path(name) in paths:
                continue
            prefix = ((entry or {}).get("relics") or {}).get("prefix") or ""
            if prefix and f"{prefix}-" not in prefixes:
                missing_warbands.append(name)
                details.append(f"Warband '{name}' (prefix: {prefix}-) has no routing entry")

        invalid = []
        for route in routes:
            if route.path == ".":
                continue
            target = ctx.town_root / route.path
            if not target.exists():
                invalid.append(route.prefix)
                details.append(f"Route {route.prefix} -> {route.path}: path does not exist")
            elif not (target / RELICS_DIR_NAME).exists():
                invalid.append(route.prefix)
                details.append(f"Route {route.prefix} -> {route.path}: no .relics directory")

        if not (missing_town or missing_raid or missing_warbands or invalid):
            return self.ok(f"Routes configured correctly ({len(routes)} routes)")

        if not (missing_warbands or invalid):
            message = "Required encampment routes are missing"
        else:
            parts = []
            if missing_town:
                parts.append("encampment root route missing")
            if missing_raid:
                parts.append("raid route missing")
            if missing_warbands:
                parts.append(f"{len(missing_warbands)} warband(s) missing routes")
            if invalid:
                parts.append(f"{len(invalid)} invalid route(s)")
            message = ", ".join(parts)
        return self.warning(
            message, details=details, fix_hint="Run 'hd doctor --fix' to add missing routes"
        )

    def repair(self, ctx: CheckContext) -> None:
        """Append missing warband routes, then the reserved routes; never delete."""
        relics_dir = town_relics_dir(ctx.town_root)
        if not relics_dir.is_dir():
            raise RuntimeError(".relics directory does not exist; run 'rl init' first")

        routes = load_routes(relics_dir)
        prefixes = {route.prefix for route in routes}
        added: list[Route] = []

        for name, entry in sorted(registered_warbands(ctx.town_root).items()):
            prefix = ((entry or {}).get("relics") or {}).get("prefix") or ""
            if not prefix or f"{prefix}-" in prefixes:
                continue
            if (ctx.town_root / _clone_route_path(name)).is_dir():
                added.append(Route(prefix=f"{prefix}-", path=_clone_route_path(name)))
                prefixes.add(f"{prefix}-")

        for reserved in (TOWN_ROUTE, RAID_ROUTE):
            if reserved.prefix not in prefixes:
                added.append(reserved)
                prefixes.add(reserved.prefix)

        if added:
            write_routes(relics_dir, routes + added)


class WarbandRoutesJsonlCheck(Check):
    name = "warband-routes-jsonl"
    description = "Check for routes.jsonl in warband .relics directories"
    category = "Config"
    can_fix = True

    def __init__(self) -> None:
        self._affected: list[Path] = []

    def _warband_dirs(self, town_root: Path) -> list[Path]:
        seen: dict[Path, None] = {}
        for name in registered_warbands(town_root):
            if (town_root / name).is_dir():
                seen.setdefault(town_root / name, None)
        for route in load_routes(town_relics_dir(town_root)):
            if route.path in (".", ""):
                continue
            first = route.path.split("/", 1)[0]
            if first and (town_root / first).is_dir():
                seen.setdefault(town_root / first, None)
        try:
            entries = sorted(town_root.iterdir())
        except OSError:
            entries = []
        for entry in entries:
            if not entry.is_dir() or entry.name in ("warchief", RELICS_DIR_NAME, ".git"):
                continue
            if (entry / RELICS_DIR_NAME).is_dir():
                seen.setdefault(entry, None)
        return list(seen)

    def detect(self, ctx: CheckContext) -> CheckResult:
        self._affected = []
        warband_dirs = self._warband_dirs(ctx.town_root)
        if not warband_dirs:
            return self.ok("No warbands to check")
        details = []
        for warband_dir in warband_dirs:
            routes_file = warband_dir / RELICS_DIR_NAME / ROUTES_FILE_NAME
            if routes_file.exists():
                self._affected.append(routes_file)
                details.append(
                    f"{warband_dir.name}: has routes.jsonl "
                    "(will delete - breaks cross-warband routing)"
                )
        if not self._affected:
            return self.ok(
                f"No warband-level routes.jsonl files ({len(warband_dirs)} warbands checked)"
            )
        return self.warning(
            f"{len(self._affected)} warband(s) have routes.jsonl (breaks routing)",
            details=details,
            fix_hint="Run 'hd doctor --fix' to delete these files",
        )

    def repair(self, ctx: CheckContext) -> None:
        for routes_file in self._affected:
            routes_file.unlink(missing_ok=True)
