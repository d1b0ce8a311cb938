"""CLI entry point for apt-smart."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

import apt_smart

app = typer.Typer(
    name="apt-smart",
    help="Guided distribution upgrader with conflict handling for Debian, Ubuntu and Armbian.",
    no_args_is_help=True,
)
console = Console()


def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _open_store():
    """Open the local store, or return None when it cannot be created."""
    from apt_smart.data.store import DataStore

    try:
        return DataStore()
    except Exception as e:
        console.print(f"[dim]Run history disabled: {e}[/]")
        return None


def _run_upgrade(
    upgrader_name: str,
    yes: bool,
    reboot: bool,
    rules_file: Optional[Path],
    log_dir: Optional[Path],
    backup_root: Optional[Path],
    report_dir: Optional[Path],
    min_free_kb: Optional[int],
) -> None:
    from apt_smart.core import orchestrator
    from apt_smart.core.settings import resolve_settings
    from apt_smart.data.rules import RulesError, load_rules

    # The upgrader refuses non-root runs; leave no store file behind for them
    store = _open_store() if orchestrator.is_root() else None
    try:
        try:
            settings = resolve_settings(
                store,
                log_dir=log_dir,
                backup_root=backup_root,
                report_dir=report_dir,
                rules_file=rules_file,
                min_free_kb=min_free_kb,
            )
            rules = load_rules(settings.rules_file)
            upgrader_class = getattr(orchestrator, upgrader_name)
            upgrader = upgrader_class(
                settings=settings,
                rules=rules,
                console=console,
                store=store,
                auto_confirm=yes,
                reboot=reboot,
            )
        except (RulesError, ValueError) as e:
            console.print(f"[red]Error: {e}[/]")
            raise typer.Exit(1)

        result = upgrader.run()
    finally:
        if store is not None:
            store.close()

    raise typer.Exit(result.exit_code)


@app.command()
def upgrade(
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Auto-confirm all prompts"
    ),
    reboot: bool = typer.Option(
        False, "--reboot", help="With --yes, reboot when the upgrade succeeds"
    ),
    rules_file: Optional[Path] = typer.Option(
        None, "--rules", "-r", help="Conflict rules JSON file"
    ),
    log_dir: Optional[Path] = typer.Option(
        None, "--log-dir", help="Directory for the run log"
    ),
    backup_root: Optional[Path] = typer.Option(
        None, "--backup-root", help="Parent directory for backups"
    ),
    min_free_kb: Optional[int] = typer.Option(
        None, "--min-free-kb", help="Free space required on / before warning"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging"
    ),
) -> None:
    """Run the generic guided distribution upgrade."""
    _setup_logging(verbose)
    _run_upgrade(
        "Upgrader", yes, reboot, rules_file, log_dir, backup_root, None, min_free_kb,
    )


@app.command("sbc-upgrade")
def sbc_upgrade(
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Auto-confirm all prompts"
    ),
    reboot: bool = typer.Option(
        False, "--reboot", help="With --yes, reboot when the upgrade succeeds"
    ),
    rules_file: Optional[Path] = typer.Option(
        None, "--rules", "-r", help="Conflict rules JSON file"
    ),
    log_dir: Optional[Path] = typer.Option(
        None, "--log-dir", help="Directory for the run and hardware logs"
    ),
    backup_root: Optional[Path] = typer.Option(
        None, "--backup-root", help="Parent directory for backups"
    ),
    report_dir: Optional[Path] = typer.Option(
        None, "--report-dir", help="Directory for the upgrade report"
    ),
    min_free_kb: Optional[int] = typer.Option(
        None, "--min-free-kb", help="Free space required on / before warning"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging"
    ),
) -> None:
    """Run the hardware-aware upgrade for Armbian single-board computers."""
    _setup_logging(verbose)
    _run_upgrade(
        "SbcUpgrader", yes, reboot, rules_file, log_dir, backup_root,
        report_dir, min_free_kb,
    )


@app.command()
def detect(
    rules_file: Optional[Path] = typer.Option(
        None, "--rules", "-r", help="Conflict rules JSON file"
    ),
) -> None:
    """Show board, SoC, GPU and boot medium without changing anything."""
    from apt_smart.core.environment import SystemInspector
    from apt_smart.core.executor import CommandExecutor
    from apt_smart.core.hardware import HardwareDetector
    from apt_smart.core.packages import PackageDatabase
    from apt_smart.data.rules import RulesError, load_rules

    try:
        rules = load_rules(rules_file)
    except RulesError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)

    console.print("[dim]Detecting hardware...[/]\n")
    executor = CommandExecutor()
    detector = HardwareDetector(executor, rules.soc_families)
    facts = detector.detect()
    armbian = detector.armbian()
    gpu = detector.gpu(PackageDatabase(executor))
    inspector = SystemInspector(executor)

    table = Table(title="Hardware")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Board", facts.board_model)
    table.add_row("SoC", facts.soc)
    table.add_row("GPU", facts.gpu)
    table.add_row("Boot", f"{facts.boot_type} ({facts.boot_device or '?'})")
    table.add_row("Kernel", facts.kernel)
    table.add_row("Distribution", f"{inspector.release()} ({inspector.codename()})")
    table.add_row(
        "Armbian",
        f"{armbian.version} ({armbian.board})" if armbian.is_armbian else "no",
    )
    table.add_row("GPU driver", gpu.driver or "(none)")
    table.add_row("DRI devices", str(gpu.dri_devices))
    console.print(table)


@app.command()
def rules(
    rules_file: Optional[Path] = typer.Option(
        None, "--rules", "-r", help="Conflict rules JSON file"
    ),
) -> None:
    """Show the effective conflict rules table."""
    from apt_smart.core.settings import resolve_settings
    from apt_smart.data.rules import RulesError, load_rules

    store = _open_store()
    try:
        settings = resolve_settings(store, rules_file=rules_file)
        table_rules = load_rules(settings.rules_file)
    except (RulesError, ValueError) as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(1)
    finally:
        if store is not None:
            store.close()

    console.print(f"[dim]Source: {table_rules.source}[/]\n")

    remedies = Table(title="Remediations")
    remedies.add_column("Name", style="cyan")
    remedies.add_column("Matches")
    remedies.add_column("Action", style="green")
    for remedy in table_rules.remediations.values():
        remedies.add_row(
            remedy.name,
            ", ".join(repr(m) for m in remedy.match) or "(always)",
            remedy.action,
        )
    console.print(remedies)

    profiles = Table(title="Upgrade Profiles")
    profiles.add_column("Variant", style="cyan")
    profiles.add_column("Dpkg options")
    profiles.add_column("Ladder", style="green")
    for variant, profile in table_rules.profiles.items():
        profiles.add_row(
            variant,
            " ".join(profile.dpkg_options) or "(none)",
            " → ".join(r.name for r in profile.ladder) or "(none)",
        )
    console.print(profiles)

    patterns = Table(title="Conflict Patterns")
    patterns.add_column("Name", style="cyan")
    patterns.add_column("Pattern")
    for name, pattern in table_rules.conflict_patterns.items():
        patterns.add_row(name, pattern.pattern)
    console.print(patterns)

    if table_rules.problematic_packages:
        console.print("\n[bold]Problematic packages:[/]")
        for pkg in table_rules.problematic_packages:
            console.print(f"  - {pkg}")


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """List recent upgrade runs."""
    from apt_smart.data.store import DataStore

    store = DataStore()
    runs = store.recent_runs(limit)
    store.close()

    if not runs:
        console.print("[yellow]No upgrade runs recorded.[/]")
        raise typer.Exit(0)

    table = Table(title="Upgrade Runs")
    table.add_column("Started", style="cyan")
    table.add_column("Variant")
    table.add_column("Outcome")
    table.add_column("Release")
    table.add_column("Log")
    for run in runs:
        outcome = run["outcome"] or "incomplete"
        style = "green" if outcome == "success" else "red"
        release = run["codename_before"] or "?"
        if run["codename_after"]:
            release += f" → {run['codename_after']}"
        table.add_row(
            run["created_at"][:19],
            run["variant"],
            f"[{style}]{outcome}[/]",
            release,
            run["log_file"] or "",
        )
    console.print(table)


@app.command()
def config(
    action: str = typer.Argument(
        "get", help="Action: get, set or unset"
    ),
    key: Optional[str] = typer.Argument(
        None, help="Config key (log-dir, backup-root, report-dir, rules-file, min-free-kb)"
    ),
    value: Optional[str] = typer.Argument(
        None, help="Value to set"
    ),
) -> None:
    """View or modify configuration."""
    from apt_smart.core.settings import CONFIG_KEYS, validate_config
    from apt_smart.data.store import DataStore

    store = DataStore()

    try:
        if action == "get":
            if key:
                val = store.get_config(key)
                if val is not None:
                    console.print(f"{key} = {val}")
                else:
                    console.print(f"[yellow]{key} is not set[/]")
            else:
                for k in sorted(CONFIG_KEYS):
                    val = store.get_config(k)
                    console.print(f"{k} = {val or '(not set)'}")
        elif action == "set":
            if not key or value is None:
                console.print("[red]Usage: apt-smart config set <key> <value>[/]")
                raise typer.Exit(1)
            try:
                validate_config(key, value)
            except ValueError as e:
                console.print(f"[red]{e}[/]")
                raise typer.Exit(1)
            store.set_config(key, value)
            console.print(f"[green]Set {key} = {value}[/]")
        elif action == "unset":
            if not key:
                console.print("[red]Usage: apt-smart config unset <key>[/]")
                raise typer.Exit(1)
            store.unset_config(key)
            console.print(f"[green]Unset {key}[/]")
        else:
            console.print("[red]Unknown action. Use 'get', 'set' or 'unset'.[/]")
            raise typer.Exit(1)
    finally:
        store.close()


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"apt-smart {apt_smart.__version__}")


if __name__ == "__main__":
    app()
