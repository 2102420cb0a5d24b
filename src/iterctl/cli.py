"""iterctl CLI.

Main entry point for the iterctl command.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import (
    LoopConfig,
    format_config_for_display,
    get_config_path,
    list_config_keys,
    load_config,
    read_config_file,
    save_config,
)
from .errors import IterctlError, handle_exception, set_debug_mode
from .plan import filter_deferred, filter_tested, next_pending, read_plans
from .recovery import detect_failure
from .replan import ReplanManager, parse_replan_strategy
from .scope import format_deferral_reason

console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _config(ctx: click.Context) -> LoopConfig:
    return ctx.obj["config"]


def _plan_path(ctx: click.Context) -> Path:
    return Path(_config(ctx).core.plan_file)


def _replan_manager(config: LoopConfig, plan_path: Path) -> ReplanManager:
    return ReplanManager(
        plan_path,
        agent_cmd=config.core.agent_cmd,
        auto_replan=config.replan.auto_replan,
        threshold=config.replan.threshold,
        min_blocked=config.replan.min_blocked,
        strategy=config.replan.strategy,
        agent_timeout=config.core.agent_timeout,
    )


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: $ITERCTL_CONFIG, ./iterctl.toml, ~/.iterctl/config.toml)",
)
@click.option("--plan", "-p", "plan_file", type=click.Path(dir_okay=False), help="Plan file (overrides core.plan_file)")
@click.pass_context
def main(
    ctx: click.Context,
    version: bool,
    debug: bool,
    config_path: Path | None,
    plan_file: str | None,
) -> None:
    """iterctl - failure recovery and adaptive replanning for agent build loops.

    Inspect and manage the plan file, its backups and the loop settings.

    Use --debug for verbose error output with stack traces.
    """
    if debug:
        set_debug_mode(True)

    if version:
        console.print(f"iterctl version {__version__}")
        ctx.exit()

    config = load_config(config_path)
    if plan_file:
        config.core.plan_file = plan_file

    _setup_logging("debug" if debug else config.ui.log_level)
    ctx.obj = {"config": config}

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Plan Commands
# =============================================================================


@main.command("status")
@click.pass_context
def status_cmd(ctx: click.Context) -> None:
    """Show plan progress.

    Counts tested, untested and deferred features and names the next one.
    """
    path = _plan_path(ctx)
    try:
        plans = read_plans(path)
    except IterctlError as e:
        handle_exception(console, e, "reading plan")
        return

    tested = filter_tested(plans, True)
    deferred = [p for p in filter_deferred(plans, True) if not p.tested]
    untested = len(plans) - len(tested) - len(deferred)

    console.print(f"[bold]Plan:[/bold] {path}")
    console.print(f"  [green]Tested:[/green]   {len(tested)}")
    console.print(f"  [yellow]Untested:[/yellow] {untested}")
    console.print(f"  [dim]Deferred:[/dim] {len(deferred)}")

    head = next_pending(plans)
    console.print()
    if head:
        console.print(f"Next feature: [cyan]#{head.id}[/cyan] {head.description}")
    else:
        console.print("[green]✓ No pending features[/green]")


@main.command("deferred")
@click.pass_context
def deferred_cmd(ctx: click.Context) -> None:
    """List deferred features and why they were deferred."""
    try:
        plans = read_plans(_plan_path(ctx))
    except IterctlError as e:
        handle_exception(console, e, "reading plan")
        return

    deferred = filter_deferred(plans, True)
    if not deferred:
        console.print("[dim]No deferred features[/dim]")
        return

    table = Table(title="Deferred Features")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Description")
    table.add_column("Reason", style="yellow")
    for p in deferred:
        table.add_row(str(p.id), p.description, format_deferral_reason(p.defer_reason) or "-")
    console.print(table)


@main.command("classify")
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--exit-code", "-e", type=int, default=0, help="Exit status of the command that produced the output")
def classify_cmd(output_file: Path, exit_code: int) -> None:
    """Classify a saved iteration output.

    \\b
    Examples:
        iterctl classify out.log                 # Markers only
        iterctl classify out.log --exit-code 1   # Non-zero exit counts as agent error
    """
    output = output_file.read_text(errors="replace")
    failure = detect_failure(output, exit_code, 0, 0)

    if failure is None:
        console.print("[green]✓ No failure detected[/green]")
        return

    console.print(f"[red]✗ {failure.kind.value}[/red]: {failure.message}")


# =============================================================================
# Versioning and Replanning Commands
# =============================================================================


@main.command("versions")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def versions_cmd(ctx: click.Context, as_json: bool) -> None:
    """List plan backups.

    Backups are created automatically before every replan.
    """
    path = _plan_path(ctx)
    versions = _replan_manager(_config(ctx), path).get_versions()

    if as_json:
        click.echo(json.dumps([v.to_dict() for v in versions], indent=2))
        return

    if not versions:
        console.print(f"[dim]No backup versions found for {path}[/dim]")
        console.print("[dim]Backups are created when replanning runs ('iterctl replan')[/dim]")
        return

    table = Table(title=f"Plan Versions ({path})")
    table.add_column("Version", justify="right", style="cyan")
    table.add_column("Created")
    table.add_column("Trigger")
    table.add_column("Path", style="dim")
    for v in versions:
        table.add_row(
            str(v.version),
            v.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            v.trigger or "unknown",
            str(v.path),
        )
    console.print(table)
    console.print(f"\nTotal: {len(versions)} version(s)")
    console.print("[dim]Restore with 'iterctl restore <version>'[/dim]")


@main.command("restore")
@click.argument("version", type=int)
@click.confirmation_option(prompt="Restore this version? The current plan will be overwritten.")
@click.pass_context
def restore_cmd(ctx: click.Context, version: int) -> None:
    """Restore the plan file from a backup version.

    \\b
    Examples:
        iterctl restore 2          # Asks for confirmation
        iterctl restore 2 --yes    # No prompt
    """
    manager = _replan_manager(_config(ctx), _plan_path(ctx))
    try:
        manager.restore_version(version)
    except IterctlError as e:
        handle_exception(console, e, "restoring plan")
        return

    console.print(f"[green]✓ Restored plan version {version}[/green]")


@main.command("replan")
@click.option(
    "--strategy",
    "-s",
    type=str,
    default=None,
    help="incremental, agent or none (default: replan.strategy)",
)
@click.pass_context
def replan_cmd(ctx: click.Context, strategy: str | None) -> None:
    """Replan the remaining features now.

    The current plan is backed up first.

    \\b
    Examples:
        iterctl replan                     # Configured strategy
        iterctl replan --strategy agent    # Ask the agent for a new plan
    """
    config = _config(ctx)
    path = _plan_path(ctx)

    try:
        strategy_type = parse_replan_strategy(strategy if strategy is not None else config.replan.strategy)
        plans = read_plans(path)
        manager = _replan_manager(config, path)

        head = next_pending(plans)
        manager.update_state(head.id if head else 0, 0, None, plans)

        console.print(f"[cyan]Manual replanning with strategy: {strategy_type.value}[/cyan]")
        with console.status("[cyan]Replanning...[/cyan]"):
            result = manager.manual_replan(strategy_type)
    except IterctlError as e:
        handle_exception(console, e, "replanning")
        return

    if result.success:
        console.print(f"[green]✓ {result.message}[/green]")
        if result.old_plan_path:
            console.print(f"[dim]Backup: {result.old_plan_path}[/dim]")
        if result.diff is not None and not result.diff.is_empty():
            console.print()
            console.print(result.diff.summary(), markup=False)
    else:
        console.print(f"[yellow]Replanning completed: {result.message}[/yellow]")


# =============================================================================
# Configuration Commands
# =============================================================================


@main.group()
def config() -> None:
    """View and manage iterctl configuration.

    Configuration priority:
    1. Environment variables (highest)
    2. Config file (--config, $ITERCTL_CONFIG, ./iterctl.toml, ~/.iterctl/config.toml)
    3. Defaults (lowest)
    """
    pass


@config.command("show")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show the effective configuration."""
    cfg = _config(ctx)

    if as_json:
        click.echo(json.dumps(cfg.to_dict(), indent=2))
        return

    console.print(format_config_for_display(cfg), markup=False)

    try:
        cfg.validate()
    except IterctlError as e:
        console.print()
        console.print(f"[yellow]Warning:[/yellow] {e}")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx: click.Context, key: str) -> None:
    """Get a configuration value by dotted key (e.g. recovery.max_retries)."""
    value = _config(ctx).get(key)

    if value is None or key.count(".") != 1:
        console.print(f"[yellow]Key not found: {key}[/yellow]")
        console.print("[dim]Use 'iterctl config keys' to list available keys[/dim]")
        return

    console.print(f"{key} = {value}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value and save it.

    \\b
    Examples:
        iterctl config set recovery.max_retries 5
        iterctl config set replan.auto_replan true
    """
    path = _config(ctx).config_path or get_config_path()

    # Edit the file as written; env and --plan overrides stay out of it
    try:
        cfg = read_config_file(path)
        if not cfg.set(key, value):
            console.print(f"[red]Failed to set {key}[/red]")
            console.print("[dim]Use 'iterctl config keys' to list available keys[/dim]")
            return
        cfg.validate()
    except IterctlError as e:
        handle_exception(console, e, "updating config")
        return

    if save_config(cfg):
        console.print(f"[green]✓ Set {key} = {cfg.get(key)}[/green]")
    else:
        console.print("[red]Failed to save config[/red]")


@config.command("keys")
def config_keys() -> None:
    """List all available configuration keys."""
    console.print("[bold]Available Configuration Keys[/bold]\n")

    current_section = None
    for key in list_config_keys():
        section = key.split(".")[0]
        if section != current_section:
            current_section = section
            console.print(f"[cyan]\\[{current_section}][/cyan]")
        console.print(f"  {key}")


if __name__ == "__main__":
    main()
