"""YAML-based simulation scenarios."""

from __future__ import annotations

from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from slicer.config.settings import DEFAULT_DATA_DIR
from slicer.core.exceptions import ConfigurationError

# Default scenario path
DEFAULT_SCENARIO_PATH = DEFAULT_DATA_DIR / "scenario.yaml"


class AllocationConfig(BaseModel):
    """One allocation of a scenario.

    Amounts are in whole tokens and prices in value units per whole token;
    both are scaled to 18 decimals when the scenario is built.
    """

    symbol: str
    percentage: int = Field(gt=0, lt=10_000)  # basis points
    price: float = Field(gt=0)
    deposit: float = Field(default=0.0, ge=0)
    pool_liquidity: float = Field(default=1_000_000.0, gt=0)
    unlock_duration: float = Field(default=0.0, ge=0)
    description: str | None = None


class ScenarioRebalanceConfig(BaseModel):
    """Rebalance overrides. Unset fields fall back to settings."""

    slippage_bps: int | None = Field(default=None, ge=0, lt=10_000)
    drift_threshold_bps: int | None = Field(default=None, ge=0, lt=10_000)
    min_trade_value: int | None = Field(default=None, ge=0)
    dry_run: bool = False


class ScenarioConfig(BaseModel):
    """Root scenario object."""

    name: str = "Slice"
    symbol: str = "sTOKEN"
    metadata_uri: str = ""
    base_symbol: str = "USDC"
    swap_fee_bps: int = Field(default=30, ge=0, lt=10_000)
    allocations: list[AllocationConfig] = Field(default_factory=list)
    rebalance: ScenarioRebalanceConfig = Field(default_factory=ScenarioRebalanceConfig)
    # Prices published after deposits, before the first rebalance
    price_changes: dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_symbols(self) -> ScenarioConfig:
        symbols = [a.symbol.upper() for a in self.allocations]
        if len(symbols) != len(set(symbols)):
            raise ValueError("Allocation symbols must be unique")
        if self.base_symbol.upper() in symbols:
            raise ValueError(f"{self.base_symbol} is the base currency, not an allocation")
        unknown = set(s.upper() for s in self.price_changes) - set(symbols)
        if unknown:
            raise ValueError(f"Price changes for unknown symbols: {sorted(unknown)}")
        return self

    @property
    def total_percentage(self) -> int:
        return sum(a.percentage for a in self.allocations)

    def get_allocation(self, symbol: str) -> AllocationConfig | None:
        """Get an allocation config by symbol."""
        for a in self.allocations:
            if a.symbol.lower() == symbol.lower():
                return a
        return None


def load_scenario(path: Path | str | None = None) -> ScenarioConfig:
    """Load a scenario from a YAML file.

    Args:
        path: Path to scenario file. Defaults to ~/.slicer/scenario.yaml

    Returns:
        ScenarioConfig object. The default scenario if the file does not exist.

    Raises:
        ConfigurationError: File could not be parsed or validated
    """
    if path is None:
        path = DEFAULT_SCENARIO_PATH

    path = Path(path)

    if not path.exists():
        logger.debug(f"Scenario file not found at {path}, using default scenario")
        return default_scenario()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        scenario = ScenarioConfig(**data)
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse scenario file: {e}")
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except ValidationError as e:
        logger.error(f"Invalid scenario: {e}")
        raise ConfigurationError(f"Invalid scenario in {path}: {e}") from e

    logger.info(f"Loaded scenario '{scenario.name}' from {path}")
    return scenario


def save_scenario(scenario: ScenarioConfig, path: Path | str | None = None) -> None:
    """Save a scenario to a YAML file.

    Args:
        scenario: ScenarioConfig object to save
        path: Path to save to. Defaults to ~/.slicer/scenario.yaml
    """
    if path is None:
        path = DEFAULT_SCENARIO_PATH

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(scenario.model_dump(), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved scenario to {path}")


def default_scenario() -> ScenarioConfig:
    """Two-asset example drifted away from a 40/60 target."""
    return ScenarioConfig(
        name="BuildingSlice",
        symbol="sBLD",
        base_symbol="USDC",
        allocations=[
            AllocationConfig(
                symbol="WETH",
                percentage=4000,
                price=2000.0,
                deposit=10.0,
                pool_liquidity=5_000.0,
                description="Wrapped ether in a lending vault",
            ),
            AllocationConfig(
                symbol="WBTC",
                percentage=6000,
                price=60000.0,
                deposit=0.1,
                pool_liquidity=200.0,
                description="Wrapped bitcoin in a lending vault",
            ),
        ],
    )


def create_default_scenario(path: Path | str | None = None) -> ScenarioConfig:
    """Write the example scenario to disk.

    Args:
        path: Path to save to. Defaults to ~/.slicer/scenario.yaml

    Returns:
        The created ScenarioConfig
    """
    scenario = default_scenario()
    save_scenario(scenario, path)
    return scenario
