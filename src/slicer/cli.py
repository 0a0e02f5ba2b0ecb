"""Command-line interface for slice simulations."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from slicer.config.scenario import (
    DEFAULT_SCENARIO_PATH,
    ScenarioConfig,
    create_default_scenario,
    load_scenario,
)
from slicer.config.settings import get_settings, setup_logging
from slicer.core.exceptions import ConfigurationError, SliceError
from slicer.core.models import Direction, bps_to_pct
from slicer.simulation import Simulation, build_simulation, from_units

app = typer.Typer(
    name="slicer",
    help="Multi-asset yield portfolio with target allocations and rebalancing",
    add_completion=False,
)
console = Console()


@app.callback()
def main_callback() -> None:
    """Initialize logging on startup."""
    settings = get_settings()
    setup_logging(settings)


def _load(scenario_path: Path | None) -> ScenarioConfig:
    try:
        return load_scenario(scenario_path)
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None


async def _build(scenario_path: Path | None) -> Simulation:
    scenario = _load(scenario_path)
    try:
        return await build_simulation(scenario)
    except SliceError as e:
        console.print(f"[red]Error building scenario: {e}[/red]")
        raise typer.Exit(1) from None


async def _print_allocations(sim: Simulation, title: str) -> None:
    """Print allocations with their current valuation."""
    slice_ = sim.slice
    snapshot = await slice_.snapshot()

    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Asset")
    table.add_column("Wrapper")
    table.add_column("Target", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("Underlying", justify="right")
    table.add_column("Value", justify="right")

    for v in snapshot.entries:
        wrapper = v.allocation.wrapper
        target = bps_to_pct(v.allocation.target_percentage)
        current = bps_to_pct(snapshot.weight_bps(wrapper))
        drift = current - target
        color = "green" if abs(drift) < 1 else "yellow"
        table.add_row(
            sim.symbol_of(wrapper),
            f"{wrapper[:10]}…",
            f"{target}%",
            f"[{color}]{current}%[/{color}]",
            f"{from_units(v.underlying_amount):,.6f}",
            f"${from_units(v.current_value):,.2f}",
        )

    console.print(table)
    supply = await slice_.total_supply()
    console.print(
        f"Total value: [bold]${from_units(snapshot.total_value):,.2f}[/bold]  "
        f"Share supply: {from_units(supply):,.6f} {slice_.symbol}\n"
    )


@app.command()
def info(
    scenario: Path | None = typer.Option(
        None, "--scenario", "-s", help=f"Scenario file (default {DEFAULT_SCENARIO_PATH})"
    ),
) -> None:
    """Show a scenario's allocations and valuation."""
    asyncio.run(_show_info(scenario))


async def _show_info(scenario_path: Path | None) -> None:
    sim = await _build(scenario_path)
    slice_ = sim.slice

    console.print(f"\n[bold blue]{slice_.name} ({slice_.symbol})[/bold blue]")
    console.print(f"[dim]Address: {slice_.address}[/dim]")
    if slice_.metadata_uri:
        console.print(f"[dim]Metadata: {slice_.metadata_uri}[/dim]")
    console.print(f"Base currency: {sim.base_token.symbol}\n")

    await _print_allocations(sim, "Allocations")


@app.command()
def simulate(
    scenario: Path | None = typer.Option(
        None, "--scenario", "-s", help=f"Scenario file (default {DEFAULT_SCENARIO_PATH})"
    ),
    rounds: int = typer.Option(1, "--rounds", "-r", min=1, help="Rebalance passes to run"),
    notify: bool = typer.Option(
        False, "--notify", help="Post rebalance results to the configured Discord webhook"
    ),
) -> None:
    """Run rebalance passes against paper collaborators."""
    asyncio.run(_run_simulation(scenario, rounds, notify))


async def _run_simulation(scenario_path: Path | None, rounds: int, notify: bool) -> None:
    from slicer.notifications import DiscordNotifier

    settings = get_settings()
    sim = await _build(scenario_path)

    notifier = None
    if notify:
        if not settings.has_discord_webhook:
            console.print("[yellow]No Discord webhook configured, skipping notifications[/yellow]")
        else:
            notifier = DiscordNotifier(
                settings.discord_webhook_url,
                notify_on_rebalance=settings.notify_on_rebalance,
                notify_on_deposit=settings.notify_on_deposit,
            )
            sim.slice.events.subscribe(notifier.handle_event)

    sim.apply_price_changes()
    await _print_allocations(sim, "Before rebalance")

    try:
        for i in range(1, rounds + 1):
            result = await sim.rebalance()

            if result.aborted_reason:
                console.print(f"[red]Round {i} aborted: {result.aborted_reason}[/red]")
                break

            table = Table(title=f"Round {i}", show_header=True, header_style="bold cyan")
            table.add_column("Asset")
            table.add_column("Action")
            table.add_column("Amount In", justify="right")
            table.add_column("Amount Out", justify="right")
            table.add_column("Note")

            for action in result.executed:
                color = "red" if action.direction == Direction.SHED else "green"
                table.add_row(
                    sim.symbol_of(action.wrapper),
                    f"[{color}]{action.direction.value.upper()}[/{color}]",
                    f"{from_units(action.amount_in):,.6f}",
                    f"{from_units(action.amount_out):,.6f}",
                    "",
                )
            for skip in result.skipped:
                table.add_row(
                    sim.symbol_of(skip.wrapper),
                    f"[yellow]{skip.direction.value.upper()}[/yellow]",
                    "-",
                    "-",
                    f"[dim]{skip.reason}[/dim]",
                )

            if result.executed or result.skipped:
                console.print(table)
            else:
                console.print(f"[dim]Round {i}: no rebalancing needed[/dim]")

            console.print(
                f"Base raised: {from_units(result.proceeds):,.2f}  "
                f"spent: {from_units(result.spent):,.2f}  "
                f"left over: {from_units(result.base_leftover):,.2f} {sim.base_token.symbol}\n"
            )

            if notifier:
                await notifier.notify_rebalance_summary(result)

            if not result.traded:
                break

        await _print_allocations(sim, "After rebalance")
    finally:
        if notifier:
            await notifier.close()


@app.command("init-scenario")
def init_scenario(
    path: Path = typer.Argument(DEFAULT_SCENARIO_PATH, help="Where to write the scenario"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
) -> None:
    """Write an example scenario file."""
    if path.exists() and not force:
        console.print(f"[yellow]Scenario already exists at {path}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(1)

    scenario = create_default_scenario(path)
    console.print(f"[green]Created scenario '{scenario.name}' at {path}[/green]")
    console.print("[dim]Edit this file to customize allocations and prices[/dim]")


@app.command()
def version() -> None:
    """Show version information."""
    from slicer import __version__

    console.print(f"Slicer version {__version__}")


if __name__ == "__main__":
    app()
