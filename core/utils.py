# utils.py

import asyncio
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Dict, Optional, Sequence, Tuple, Type, TypeVar

import numpy as np
import yaml
from dotenv import load_dotenv

T = TypeVar("T")


# --- Custom Exceptions ---
class ConfigError(Exception):
    """Custom exception for configuration file errors."""
    pass


class QuoteFailure(Exception):
    """A venue quote failed, timed out or returned an unusable amount."""
    pass


class CandidateSkipped(Exception):
    """
    Base class for every per-candidate fault. The pipeline catches these,
    records the reason and moves on to the next ranked opportunity.
    """
    reason = "skipped"

    def __init__(self, message: str = "", economics: Any = None):
        super().__init__(message)
        self.economics = economics


class BundleBuildFailure(CandidateSkipped):
    reason = "bundle_build_failure"


class PriceLookupFailure(CandidateSkipped):
    reason = "price_lookup_failure"


class UnprofitableAfterFees(CandidateSkipped):
    reason = "unprofitable_after_fees_and_incentive"


class GasEstimationFailure(CandidateSkipped):
    reason = "gas_estimation_failure"


class AnomalousGasEstimate(CandidateSkipped):
    reason = "anomalous_gas_estimate"


class SimulationFailure(CandidateSkipped):
    reason = "simulation_failure"


class ExhaustedCandidates(Exception):
    """No ranked opportunity made it through to broadcast."""
    pass


async def with_timeout(awaitable: Awaitable[T], timeout_s: float, failure: Type[Exception], what: str) -> T:
    """
    Awaits a network-bound call under a hard timeout. Timeouts and call errors
    are both re-raised as `failure`, the call's designated failure mode.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise failure(f"{what} timed out after {timeout_s}s") from e
    except failure:
        raise
    except Exception as e:
        raise failure(f"{what} failed: {e}") from e


def to_decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ConfigError(f"CRITICAL ERROR: '{name}' must be numeric, got {value!r}.")
    if not result.is_finite():
        raise ConfigError(f"CRITICAL ERROR: '{name}' must be finite, got {value!r}.")
    return result


def build_trial_volumes(start: Any, stop: Any, num: int) -> Tuple[Decimal, ...]:
    """
    Log-spaced trial volume grid between `start` and `stop` (inclusive),
    rounded to whole reference-asset units. Rounding can collapse neighbouring
    points, so duplicates are dropped to keep the grid strictly increasing.
    """
    if num < 1:
        raise ConfigError("CRITICAL ERROR: 'trial_volume_grid.num' must be at least 1.")
    start, stop = float(start), float(stop)
    if start <= 0 or stop < start:
        raise ConfigError("CRITICAL ERROR: 'trial_volume_grid' needs 0 < start <= stop.")

    volumes = []
    for point in np.geomspace(start, stop, num=num):
        volume = Decimal(int(round(point)))
        if volume > 0 and (not volumes or volume > volumes[-1]):
            volumes.append(volume)
    return tuple(volumes)


@dataclass(frozen=True)
class ArbitrageConfig:
    """
    Per-deployment tuning for one evaluation-and-execution pass. Amounts are in
    whole reference-asset units.
    """
    profit_floor: Decimal
    incentive_rate_pct: Decimal
    borrow_fee_bps: Decimal
    gas_ceiling: int
    trial_volumes: Tuple[Decimal, ...]
    reference_volume: Decimal = Decimal("0.01")
    provisional_gas_limit: int = 2_000_000
    gas_headroom_multiplier: int = 2
    reference_decimals: int = 18
    native_decimals: int = 18
    quote_timeout_s: float = 2.0
    rpc_timeout_s: float = 5.0
    relay_timeout_s: float = 5.0
    reference_token: Optional[str] = None
    executor_address: Optional[str] = None
    executor_wallet_address: Optional[str] = None
    rpc_url: Optional[str] = None
    price_source: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        validate_arbitrage_config(self)


def validate_arbitrage_config(cfg: ArbitrageConfig) -> bool:
    if cfg.profit_floor < 0:
        raise ConfigError("CRITICAL ERROR: 'profit_floor' must not be negative.")
    if not Decimal(0) <= cfg.incentive_rate_pct <= Decimal(100):
        raise ConfigError("CRITICAL ERROR: 'incentive_rate_pct' must be between 0 and 100.")
    if cfg.borrow_fee_bps < 0:
        raise ConfigError("CRITICAL ERROR: 'borrow_fee_bps' must not be negative.")
    if cfg.gas_ceiling <= 0:
        raise ConfigError("CRITICAL ERROR: 'gas_ceiling' must be positive.")
    if cfg.reference_volume <= 0:
        raise ConfigError("CRITICAL ERROR: 'reference_volume' must be positive.")
    if cfg.gas_headroom_multiplier < 1:
        raise ConfigError("CRITICAL ERROR: 'gas_headroom_multiplier' must be at least 1.")
    if any(v <= 0 for v in cfg.trial_volumes):
        raise ConfigError("CRITICAL ERROR: 'trial_volumes' must all be positive.")
    for lower, upper in zip(cfg.trial_volumes, cfg.trial_volumes[1:]):
        if upper <= lower:
            raise ConfigError("CRITICAL ERROR: 'trial_volumes' must be strictly increasing.")
    return True


# --- Configuration Loading ---
_ENV_PLACEHOLDER = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env(value: Any) -> Any:
    """Replaces ${VAR} placeholders with environment values, recursively."""
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def validate_config(config: Dict[str, Any]) -> bool:
    """Validates the structure of the raw YAML config file."""
    if "arbitrage" not in config or not isinstance(config["arbitrage"], dict):
        raise ConfigError("CRITICAL ERROR: Missing or invalid section 'arbitrage' in config.yaml.")

    required_keys = ['profit_floor', 'incentive_rate_pct', 'borrow_fee_bps', 'gas_ceiling']
    for key in required_keys:
        if key not in config['arbitrage']:
            raise ConfigError(f"CRITICAL ERROR: Missing required key '{key}' in 'arbitrage'.")

    section = config['arbitrage']
    if 'trial_volumes' not in section and 'trial_volume_grid' not in section:
        raise ConfigError("CRITICAL ERROR: 'arbitrage' needs 'trial_volumes' or 'trial_volume_grid'.")

    return True


def parse_config(config: Dict[str, Any]) -> ArbitrageConfig:
    """Turns a validated raw config dict into an ArbitrageConfig."""
    validate_config(config)
    section = config['arbitrage']

    if 'trial_volumes' in section:
        volumes: Sequence[Any] = section['trial_volumes'] or []
        trial_volumes = tuple(to_decimal(v, 'trial_volumes') for v in volumes)
    else:
        grid = section['trial_volume_grid'] or {}
        try:
            trial_volumes = build_trial_volumes(grid['start'], grid['stop'], int(grid['num']))
        except KeyError as e:
            raise ConfigError(f"CRITICAL ERROR: Missing key {e} in 'trial_volume_grid'.")

    optional = {}
    for key in ('provisional_gas_limit', 'gas_headroom_multiplier', 'reference_decimals', 'native_decimals'):
        if key in section:
            optional[key] = int(section[key])
    for key in ('quote_timeout_s', 'rpc_timeout_s', 'relay_timeout_s'):
        if key in section:
            optional[key] = float(section[key])
    for key in ('reference_token', 'executor_address', 'executor_wallet_address', 'rpc_url'):
        if section.get(key):
            optional[key] = str(section[key])
    if 'reference_volume' in section:
        optional['reference_volume'] = to_decimal(section['reference_volume'], 'reference_volume')

    return ArbitrageConfig(
        profit_floor=to_decimal(section['profit_floor'], 'profit_floor'),
        incentive_rate_pct=to_decimal(section['incentive_rate_pct'], 'incentive_rate_pct'),
        borrow_fee_bps=to_decimal(section['borrow_fee_bps'], 'borrow_fee_bps'),
        gas_ceiling=int(section['gas_ceiling']),
        trial_volumes=trial_volumes,
        price_source=dict(config.get('price_source') or {}),
        **optional,
    )


def load_config(filepath: str = None) -> ArbitrageConfig:
    """Loads .env, then reads, expands and validates the YAML configuration file."""
    if filepath is None:
        base_dir = os.path.dirname(os.path.dirname(__file__))  # project root
        filepath = os.path.join(base_dir, "config", "config.yaml")
    load_dotenv()
    try:
        with open(filepath, 'r') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"CRITICAL ERROR: Configuration file '{filepath}' not found.")
    except yaml.YAMLError as e:
        raise ConfigError(f"CRITICAL ERROR: Could not decode '{filepath}'. YAML error: {e}")
    return parse_config(_expand_env(config))
