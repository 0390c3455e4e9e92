from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from horde import __version__
from horde.checks_common import CheckContext
from horde.doctor import default_checks, exit_code, format_report, run, select_checks
from horde.paths import find_encampment_root, is_encampment_root
from horde.settings import load_doctor_settings


class _HordeGroup(click.Group):
    """Group that suggests close matches for mistyped commands."""

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise


@click.group(cls=_HordeGroup)
@click.version_option(version=__version__)
def main():
    """Manage a Horde encampment of coding agents.

    \b
    Quick start:
      hd doctor                       Verify encampment health
      hd doctor --fix                 Repair what can be repaired automatically
      hd doctor --warband NAME        Include warband-level checks
    """


def _resolve_root(root: str | None) -> Path:
    if root:
        path = Path(root).expanduser().resolve()
        if not is_encampment_root(path):
            raise click.ClickException(
                f"{path} is not an encampment (missing warchief/encampment.json)"
            )
        return path
    found = find_encampment_root()
    if found is None:
        raise click.ClickException(
            "Not inside a Horde encampment. Run from the encampment or pass --root."
        )
    return found


def _notify(message: str) -> None:
    click.echo(message, err=True)


# -- doctor --


@main.command()
@click.option("--fix", is_flag=True, help="Repair fixable problems.")
@click.option("--dry-run", is_flag=True, help="With --fix, report what would be repaired.")
@click.option("--warband", "-w", default=None, help="Also run warband checks for NAME.")
@click.option(
    "--restart-sessions",
    is_flag=True,
    help="Allow repairs to kill agent sessions whose settings were rewritten.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show details for passing checks; debug logs.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.option(
    "--root",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Encampment root (default: HD_ROOT or search upward).",
)
@click.option("--skip-fix", multiple=True, metavar="NAME", help="Never repair check NAME.")
@click.option("--check", "only", multiple=True, metavar="NAME", help="Run only check NAME.")
def doctor(
    fix: bool,
    dry_run: bool,
    warband: str | None,
    restart_sessions: bool,
    verbose: bool,
    as_json: bool,
    root: str | None,
    skip_fix: tuple[str, ...],
    only: tuple[str, ...],
):
    """Verify encampment invariants and optionally repair them."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    town_root = _resolve_root(root)
    if warband and not (town_root / warband).is_dir():
        raise click.ClickException(f"Warband '{warband}' not found in {town_root}")

    ctx = CheckContext(
        town_root=town_root,
        warband=warband,
        restart_sessions=restart_sessions,
        dry_run=dry_run,
        verbose=verbose,
        settings=load_doctor_settings(),
        notify=_notify,
    )
    try:
        checks = select_checks(default_checks(warband=warband), only)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from None

    if dry_run:
        mode = "dry-run"
    elif fix:
        mode = "fix"
    else:
        mode = "detect"
    report = run(ctx, mode, checks, skip_fix=skip_fix)

    if as_json:
        click.echo(json.dumps(report, indent=2))
    else:
        click.echo(format_report(report, verbose=verbose))
    click.get_current_context().exit(exit_code(report))
