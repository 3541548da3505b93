"""
Typed trading configuration for one grid manager.

Every recognised option is enumerated on ManagerConfig with its default.
String directives from bot profiles are parsed once, here, into typed
variants:

- price bounds: AbsolutePrice(value) | RelativeToMarket(multiplier) | PercentFromMarket(fraction)
  "5x" -> RelativeToMarket(5.0), "20%" -> PercentFromMarket(0.2), 1500 -> AbsolutePrice(1500)
  "5x" bounds the grid to market / 5 .. market * 5; "20%" to market * 0.8 .. market * 1.2
- fund allotments: AbsoluteAmount(value) | PercentOfTotal(fraction)
  "100%" -> PercentOfTotal(1.0), 250 -> AbsoluteAmount(250)

Bot profiles live in a YAML file with a top-level `bots:` list.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from dexgrid.core.numeric import parse_percentage_string, parse_relative_multiplier_string
from dexgrid.execution.orders import ConfigurationError, SideValues

log = logging.getLogger("gridbot")

PRICE_MODES = ("fixed", "pool", "market")

# Allowed range for per-side weight exponents
MIN_WEIGHT = -1.0
MAX_WEIGHT = 2.0


@dataclass(frozen=True)
class AbsolutePrice:
    value: float

    def resolve(self, market_price: float, mode: str) -> float:
        return self.value


@dataclass(frozen=True)
class RelativeToMarket:
    multiplier: float

    def resolve(self, market_price: float, mode: str) -> float:
        if mode == "min":
            return market_price / self.multiplier
        return market_price * self.multiplier


@dataclass(frozen=True)
class PercentFromMarket:
    """A band of `fraction` either side of the market: 0.2 gives 80 to 120 around 100."""
    fraction: float

    def resolve(self, market_price: float, mode: str) -> float:
        if mode == "min":
            return market_price * (1.0 - self.fraction)
        return market_price * (1.0 + self.fraction)


PriceBound = Union[AbsolutePrice, RelativeToMarket, PercentFromMarket]


@dataclass(frozen=True)
class AbsoluteAmount:
    value: float

    def resolve(self, total: Optional[float]) -> Optional[float]:
        return self.value


@dataclass(frozen=True)
class PercentOfTotal:
    fraction: float

    def resolve(self, total: Optional[float]) -> Optional[float]:
        if total is None:
            return None
        return total * self.fraction


FundAllotment = Union[AbsoluteAmount, PercentOfTotal]


def parse_price_bound(value: Any, name: str) -> PriceBound:
    if isinstance(value, (AbsolutePrice, RelativeToMarket, PercentFromMarket)):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value) or value <= 0:
            raise ConfigurationError(f"{name} must be a positive number, got {value}")
        return AbsolutePrice(float(value))
    if isinstance(value, str):
        multiplier = parse_relative_multiplier_string(value)
        if multiplier is not None:
            if multiplier < 1.0:
                raise ConfigurationError(f"{name} multiplier must be >= 1, got {value!r}")
            return RelativeToMarket(multiplier)
        pct = parse_percentage_string(value)
        if pct is not None:
            if not 0 < pct < 1:
                raise ConfigurationError(f"{name} percentage must be within 0-100% exclusive, got {value!r}")
            return PercentFromMarket(pct)
        try:
            return parse_price_bound(float(value), name)
        except ValueError:
            pass
    raise ConfigurationError(f"Unrecognised {name}: {value!r}")


def parse_fund_allotment(value: Any, side: str) -> FundAllotment:
    if isinstance(value, (AbsoluteAmount, PercentOfTotal)):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ConfigurationError(f"botFunds.{side} must be >= 0, got {value}")
        return AbsoluteAmount(float(value))
    if isinstance(value, str):
        pct = parse_percentage_string(value)
        if pct is not None:
            if pct < 0 or pct > 1:
                raise ConfigurationError(f"botFunds.{side} percentage must be within 0-100%, got {value!r}")
            return PercentOfTotal(pct)
        try:
            return parse_fund_allotment(float(value), side)
        except ValueError:
            pass
    raise ConfigurationError(f"Unrecognised botFunds.{side}: {value!r}")


def _default_bot_funds() -> Dict[str, FundAllotment]:
    return {"buy": PercentOfTotal(1.0), "sell": PercentOfTotal(1.0)}


@dataclass
class ManagerConfig:
    """Static trading parameters for one pair."""
    asset_a: Optional[str] = None
    asset_b: Optional[str] = None
    name: str = ""
    account: Optional[str] = None
    market_price: Optional[float] = None
    price_mode: str = "pool"
    min_price: PriceBound = field(default_factory=lambda: RelativeToMarket(3.0))
    max_price: PriceBound = field(default_factory=lambda: RelativeToMarket(3.0))
    increment_percent: float = 0.5
    target_spread_percent: float = 2.0
    weight_distribution: SideValues = field(default_factory=lambda: SideValues(0.0, 0.0))
    bot_funds: Dict[str, FundAllotment] = field(default_factory=_default_bot_funds)
    active_orders: Dict[str, int] = field(default_factory=lambda: {"buy": 20, "sell": 20})
    min_order_size: float = 1e-8
    dry_run: bool = False

    def __post_init__(self) -> None:
        self._validate()

    @property
    def pair(self) -> str:
        return f"{self.asset_a}/{self.asset_b}"

    @property
    def bot_key(self) -> str:
        base = self.name or self.pair
        return base.replace("/", "_").replace(":", "_").replace(" ", "_").lower()

    def target_count(self, side: str) -> int:
        return int(self.active_orders.get(side, 0))

    def _validate(self) -> None:
        if not (0 < self.increment_percent < 100):
            raise ConfigurationError(
                f"incrementPercent must be between 0 and 100 (exclusive), got {self.increment_percent}"
            )
        if self.target_spread_percent <= 0:
            raise ConfigurationError("targetSpreadPercent must be > 0")
        for side in ("buy", "sell"):
            weight = self.weight_distribution.get(side)
            if not (MIN_WEIGHT <= weight <= MAX_WEIGHT):
                raise ConfigurationError(
                    f"weightDistribution.{side}={weight} must be within [{MIN_WEIGHT}, {MAX_WEIGHT}]"
                )
            if self.target_count(side) < 0:
                raise ConfigurationError(f"activeOrders.{side} must be >= 0")
            if side not in self.bot_funds:
                raise ConfigurationError(f"botFunds.{side} is required")
        if self.min_order_size < 0:
            raise ConfigurationError("minOrderSize must be >= 0")
        if self.price_mode not in PRICE_MODES:
            raise ConfigurationError(f"price mode must be one of {PRICE_MODES}, got {self.price_mode!r}")
        if self.price_mode == "fixed" and self.market_price is None:
            raise ConfigurationError("fixed price mode requires a numeric marketPrice")
        if isinstance(self.min_price, AbsolutePrice) and isinstance(self.max_price, AbsolutePrice):
            if self.min_price.value >= self.max_price.value:
                raise ConfigurationError(
                    f"minPrice ({self.min_price.value}) must be below maxPrice ({self.max_price.value})"
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerConfig":
        """Build from a bot profile; accepts camelCase and snake_case keys."""
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        raw_price = pick("marketPrice", "market_price")
        market_price: Optional[float] = None
        price_mode = "pool"
        if isinstance(raw_price, str) and raw_price.strip().lower() in ("pool", "market"):
            price_mode = raw_price.strip().lower()
        elif raw_price not in (None, 0, "", "0"):
            try:
                market_price = float(raw_price)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Unrecognised marketPrice: {raw_price!r}")
            price_mode = "fixed"

        weights = pick("weightDistribution", "weight_distribution", default={})
        funds = pick("botFunds", "bot_funds", default={})
        active = pick("activeOrders", "active_orders", default={})

        try:
            return cls(
                asset_a=pick("assetA", "asset_a"),
                asset_b=pick("assetB", "asset_b"),
                name=str(pick("name", default="")),
                account=pick("account", "preferredAccount", "preferred_account"),
                market_price=market_price,
                price_mode=price_mode,
                min_price=parse_price_bound(pick("minPrice", "min_price", default="3x"), "minPrice"),
                max_price=parse_price_bound(pick("maxPrice", "max_price", default="3x"), "maxPrice"),
                increment_percent=float(pick("incrementPercent", "increment_percent", default=0.5)),
                target_spread_percent=float(pick("targetSpreadPercent", "target_spread_percent", default=2.0)),
                weight_distribution=SideValues(
                    float(weights.get("buy", 0.0)), float(weights.get("sell", 0.0))
                ),
                bot_funds={
                    "buy": parse_fund_allotment(funds.get("buy", "100%"), "buy"),
                    "sell": parse_fund_allotment(funds.get("sell", "100%"), "sell"),
                },
                active_orders={
                    "buy": int(active.get("buy", 20)),
                    "sell": int(active.get("sell", 20)),
                },
                min_order_size=float(pick("minOrderSize", "min_order_size", default=1e-8)),
                dry_run=bool(pick("dryRun", "dry_run", default=False)),
            )
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(str(exc)) from exc


def load_bot_profiles(path: str | Path) -> List[ManagerConfig]:
    """Read bot profiles from YAML. A missing file yields no profiles."""
    p = Path(path)
    if not p.exists():
        log.warning(f"bot profiles not found: {p}")
        return []
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    bots = data.get("bots", []) if isinstance(data, dict) else data
    if not isinstance(bots, list):
        raise ConfigurationError(f"{p}: expected a list under 'bots'")
    return [ManagerConfig.from_dict(b) for b in bots if isinstance(b, dict)]


def select_bot_profile(profiles: List[ManagerConfig], name: Optional[str]) -> Optional[ManagerConfig]:
    if not profiles:
        return None
    if name:
        for profile in profiles:
            if profile.name.lower() == name.lower():
                return profile
        log.warning(f"bot profile {name!r} not found, using {profiles[0].name!r}")
    return profiles[0]
