#!/usr/bin/env python
"""
Run the example slice through a few rebalance passes.

This script can be run directly without installing the package:
    python scripts/run_simulation.py --rounds 3

Or after installing:
    slicer simulate --rounds 3
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from slicer.config.scenario import load_scenario
from slicer.config.settings import get_settings, setup_logging
from slicer.simulation import build_simulation, from_units


async def main(scenario_path: str | None = None, rounds: int = 3) -> None:
    """Build the scenario and rebalance until nothing trades."""
    setup_logging(get_settings())
    scenario = load_scenario(scenario_path)
    sim = await build_simulation(scenario)

    print(f"\n{'='*50}")
    print(f"Slice Simulation: {scenario.name}")
    print(f"{'='*50}")

    sim.apply_price_changes()

    for i in range(1, rounds + 1):
        result = await sim.rebalance()
        snapshot = await sim.slice.snapshot()

        print(f"\nRound {i}: {len(result.executed)} swaps, {len(result.skipped)} skipped")
        for v in snapshot.entries:
            symbol = sim.symbol_of(v.allocation.wrapper)
            weight = snapshot.weight_pct(v.allocation.wrapper)
            print(
                f"  {symbol:<6} target {v.allocation.target_pct:>6}%  "
                f"current {weight:>6.2f}%  value ${from_units(v.current_value):,.2f}"
            )

        if not result.traded:
            break

    print(f"\nTotal value: ${from_units(await sim.slice.total_value()):,.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a slice rebalance simulation")
    parser.add_argument("--scenario", help="Scenario YAML file")
    parser.add_argument("--rounds", type=int, default=3, help="Maximum rebalance passes")
    args = parser.parse_args()

    asyncio.run(main(args.scenario, args.rounds))
