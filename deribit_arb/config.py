from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping

from dotenv import load_dotenv

from deribit_arb.decimal_math import ONE, to_decimal
from deribit_arb.errors import ConfigError, InvalidInputError
from deribit_arb.models import Currency, SettlementCurrency, StrategyFilter


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _as_bool(value: str | None, default: bool, name: str) -> bool:
    if value is None or not value.strip():
        return default
    token = value.strip().lower()
    if token in _TRUE_VALUES:
        return True
    if token in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name}: invalid boolean {value!r}")


def _as_decimal(value: str | None, default: Decimal, name: str) -> Decimal:
    if value is None or not value.strip():
        return default
    try:
        return to_decimal(value)
    except ValueError:
        raise ConfigError(f"{name}: invalid decimal value {value!r}") from None


def _as_float(value: str | None, default: float, name: str) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name}: invalid number {value!r}") from None


def _as_int(value: str | None, default: int, name: str) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name}: invalid integer {value!r}") from None


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class DeribitEnvironment(str, Enum):
    TESTNET = "testnet"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str) -> "DeribitEnvironment":
        token = value.strip().lower()
        if token in {"test", "testnet"}:
            return cls.TESTNET
        if token in {"prod", "production", "main"}:
            return cls.PRODUCTION
        raise ConfigError(f"unknown environment: {value}")

    @property
    def http_url(self) -> str:
        if self is DeribitEnvironment.PRODUCTION:
            return "https://www.deribit.com/api/v2"
        return "https://test.deribit.com/api/v2"

    @property
    def ws_url(self) -> str:
        if self is DeribitEnvironment.PRODUCTION:
            return "wss://www.deribit.com/ws/api/v2"
        return "wss://test.deribit.com/ws/api/v2"


@dataclass(frozen=True)
class VenueSettings:
    environment: DeribitEnvironment = DeribitEnvironment.TESTNET
    api_key: str | None = field(default=None, repr=False)
    api_secret: str | None = field(default=None, repr=False)
    request_timeout_seconds: float = 10.0

    @property
    def http_url(self) -> str:
        return self.environment.http_url

    @property
    def ws_url(self) -> str:
        return self.environment.ws_url

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class StrategySettings:
    min_edge_usd: Decimal = Decimal("50")
    min_edge_ratio: Decimal = Decimal("2.0")
    hold_to_expiry: bool = False
    strategies: StrategyFilter = field(default_factory=StrategyFilter)
    # When set, boxes only need to clear min_edge_usd.
    box_edge_ratio_exempt: bool = False


@dataclass(frozen=True)
class SizingSettings:
    max_ticket_usd: Decimal = Decimal("20000")
    min_depth_contracts: Decimal = ONE


@dataclass(frozen=True)
class RiskSettings:
    max_concurrent_combos: int = 3
    max_ticket_usd: Decimal = Decimal("20000")
    pnl_ewma_alpha: Decimal = Decimal("0.2")


@dataclass(frozen=True)
class AppSettings:
    venue: VenueSettings = field(default_factory=VenueSettings)
    currencies: tuple[Currency, ...] = (Currency.BTC, Currency.ETH)
    settlements: tuple[SettlementCurrency, ...] = (SettlementCurrency.USDC, SettlementCurrency.COIN)
    dry_run: bool = True
    strategy: StrategySettings = field(default_factory=StrategySettings)
    sizing: SizingSettings = field(default_factory=SizingSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    log_level: str = "INFO"
    top: int = 10
    csv_path: str | None = None
    stream_seconds: float = 0.0
    stats_interval_seconds: float = 5.0
    plan_top: int = 3
    discovery_pause_ms: int = 25

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the settings. Credentials are never included."""
        return {
            "env": self.venue.environment.value,
            "credentials": "present" if self.venue.has_credentials else "absent",
            "currencies": ",".join(c.value for c in self.currencies),
            "settlements": ",".join(s.value for s in self.settlements),
            "dry_run": self.dry_run,
            "max_ticket_usd": str(self.sizing.max_ticket_usd),
            "min_edge_usd": str(self.strategy.min_edge_usd),
            "min_edge_ratio": str(self.strategy.min_edge_ratio),
            "hold_to_expiry": self.strategy.hold_to_expiry,
            "only": ",".join(k.value for k in self.strategy.strategies.include),
            "max_concurrent_combos": self.risk.max_concurrent_combos,
            "min_depth_contracts": str(self.sizing.min_depth_contracts),
        }


def _parse_settlement(value: str) -> SettlementCurrency:
    token = value.strip().lower()
    if token == "usdc":
        return SettlementCurrency.USDC
    if token in {"coin", "inverse"}:
        return SettlementCurrency.COIN
    raise ConfigError(f"unknown settlement: {value}")


def _dedupe(items: List[Any]) -> tuple[Any, ...]:
    seen: List[Any] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def load_settings(overrides: Mapping[str, str | None] | None = None) -> AppSettings:
    """Build settings from the environment, with CLI overrides on top.

    ``overrides`` maps environment variable names to raw string values; a
    ``None`` value means "not given on the command line" and falls through to
    the environment (and then the built-in default).

    Raises
    ------
    ConfigError
        For unknown environments, currencies, settlements or detectors, an
        empty detector list, non-numeric or non-boolean values, or
        ``MIN_EDGE_RATIO < 1``.
    """
    load_dotenv(override=False)
    overrides = overrides or {}

    def _get(*names: str) -> str | None:
        for name in names:
            value = overrides.get(name)
            if value is not None:
                return value
        for name in names:
            value = os.getenv(name)
            if value is not None:
                return value
        return None

    environment = DeribitEnvironment.parse(_get("DERIBIT_ENV") or "test")
    venue = VenueSettings(
        environment=environment,
        api_key=os.getenv("API_KEY") or None,
        api_secret=os.getenv("API_SECRET") or None,
        request_timeout_seconds=_as_float(_get("DERIBIT_TIMEOUT_SECONDS"), 10.0, "DERIBIT_TIMEOUT_SECONDS"),
    )

    try:
        currencies = _dedupe([Currency.parse(raw) for raw in _as_csv(_get("CURRENCIES") or "BTC,ETH")])
    except InvalidInputError as exc:
        raise ConfigError(str(exc)) from None
    if not currencies:
        raise ConfigError("CURRENCIES: at least one currency is required")

    settlements = _dedupe([_parse_settlement(raw) for raw in _as_csv(_get("LINEARS") or "usdc,coin")])
    if not settlements:
        raise ConfigError("LINEARS: at least one settlement is required")

    only_raw = _get("ONLY")
    try:
        strategies = (
            StrategyFilter.parse(_as_csv(only_raw)) if only_raw is not None else StrategyFilter()
        )
    except InvalidInputError as exc:
        raise ConfigError(str(exc)) from None
    if not strategies.include:
        raise ConfigError("ONLY: detector list is empty")

    min_edge_ratio = _as_decimal(_get("MIN_EDGE_RATIO"), Decimal("2.0"), "MIN_EDGE_RATIO")
    if min_edge_ratio < ONE:
        raise ConfigError(f"MIN_EDGE_RATIO must be >= 1.0 (got {min_edge_ratio})")

    max_ticket_usd = _as_decimal(_get("MAX_TICKET_USD"), Decimal("20000"), "MAX_TICKET_USD")
    max_concurrent = _as_int(_get("MAX_CONCURRENT_COMBOS"), 3, "MAX_CONCURRENT_COMBOS")
    min_depth = _as_decimal(_get("MIN_DEPTH_CONTRACTS"), ONE, "MIN_DEPTH_CONTRACTS")
    if max_concurrent < 0:
        raise ConfigError("MAX_CONCURRENT_COMBOS must be >= 0")
    if min_depth < 0 or max_ticket_usd < 0:
        raise ConfigError("MIN_DEPTH_CONTRACTS and MAX_TICKET_USD must be >= 0")

    strategy = StrategySettings(
        min_edge_usd=_as_decimal(_get("MIN_EDGE_USD"), Decimal("50"), "MIN_EDGE_USD"),
        min_edge_ratio=min_edge_ratio,
        hold_to_expiry=_as_bool(_get("HOLD_TO_EXPIRY"), False, "HOLD_TO_EXPIRY"),
        strategies=strategies,
        box_edge_ratio_exempt=_as_bool(_get("BOX_EDGE_RATIO_EXEMPT"), False, "BOX_EDGE_RATIO_EXEMPT"),
    )
    sizing = SizingSettings(max_ticket_usd=max_ticket_usd, min_depth_contracts=min_depth)
    risk = RiskSettings(max_concurrent_combos=max_concurrent, max_ticket_usd=max_ticket_usd)

    csv_path = _get("CSV_PATH")
    return AppSettings(
        venue=venue,
        currencies=currencies,
        settlements=settlements,
        dry_run=_as_bool(_get("DRY_RUN"), True, "DRY_RUN"),
        strategy=strategy,
        sizing=sizing,
        risk=risk,
        log_level=(_get("LOG_LEVEL") or "INFO").strip().upper(),
        top=max(0, _as_int(_get("TOP"), 10, "TOP")),
        csv_path=csv_path.strip() if csv_path and csv_path.strip() else None,
        stream_seconds=max(0.0, _as_float(_get("STREAM_SECONDS"), 0.0, "STREAM_SECONDS")),
        stats_interval_seconds=max(0.1, _as_float(_get("STATS_INTERVAL_SECONDS"), 5.0, "STATS_INTERVAL_SECONDS")),
        plan_top=max(0, _as_int(_get("PLAN_TOP"), 3, "PLAN_TOP")),
        discovery_pause_ms=max(0, _as_int(_get("DISCOVERY_PAUSE_MS"), 25, "DISCOVERY_PAUSE_MS")),
    )
