from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from deribit_arb.decimal_math import FEE_RATIO_FLOOR, ONE, ZERO, safe_div
from deribit_arb.errors import (
    InvalidExpiryError,
    InvalidFormatError,
    InvalidInputError,
    InvalidStrikeError,
    UnknownCurrencyError,
    UnknownOptionKindError,
)


class Currency(str, Enum):
    BTC = "BTC"
    ETH = "ETH"

    @classmethod
    def parse(cls, value: str) -> "Currency":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise UnknownCurrencyError(value) from None


class OptionKind(str, Enum):
    CALL = "C"
    PUT = "P"

    @classmethod
    def parse(cls, value: str) -> "OptionKind":
        token = value.strip().upper()
        if token in {"C", "CALL"}:
            return cls.CALL
        if token in {"P", "PUT"}:
            return cls.PUT
        raise UnknownOptionKindError(token)


class SettlementCurrency(str, Enum):
    USDC = "usdc"
    COIN = "coin"

    @property
    def label(self) -> str:
        return self.value.upper()

    @classmethod
    def from_venue(cls, value: str | None) -> "SettlementCurrency":
        if (value or "").strip().lower() == "usdc":
            return cls.USDC
        return cls.COIN


class ComboSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def label(self) -> str:
        return self.value.upper()


class FillRole(str, Enum):
    MAKER = "maker"
    TAKER = "taker"


class TimeInForce(str, Enum):
    IOC = "IOC"
    FOK = "FOK"
    GTC = "GTC"


class StrategyKind(str, Enum):
    VERTICAL = "vertical"
    BUTTERFLY = "butterfly"
    CALENDAR = "calendar"
    BOX = "box"
    # Reserved: selectable in configuration, no detector behind it yet.
    STALE_QUOTE = "stale"
    JELLY_ROLL = "jelly"

    @property
    def display_name(self) -> str:
        return _STRATEGY_DISPLAY[self]

    @classmethod
    def parse(cls, value: str) -> "StrategyKind":
        token = value.strip().lower()
        kind = _STRATEGY_ALIASES.get(token)
        if kind is None:
            raise InvalidInputError(f"unknown strategy filter: {token}")
        return kind


_STRATEGY_DISPLAY = {
    StrategyKind.VERTICAL: "Vertical",
    StrategyKind.BUTTERFLY: "Butterfly",
    StrategyKind.CALENDAR: "Calendar",
    StrategyKind.BOX: "Box",
    StrategyKind.STALE_QUOTE: "Stale",
    StrategyKind.JELLY_ROLL: "Jelly Roll",
}

_STRATEGY_ALIASES = {
    "vertical": StrategyKind.VERTICAL,
    "butterfly": StrategyKind.BUTTERFLY,
    "calendar": StrategyKind.CALENDAR,
    "box": StrategyKind.BOX,
    "stale": StrategyKind.STALE_QUOTE,
    "stalequote": StrategyKind.STALE_QUOTE,
    "stale-quote": StrategyKind.STALE_QUOTE,
    "jelly": StrategyKind.JELLY_ROLL,
    "jellyroll": StrategyKind.JELLY_ROLL,
    "jelly-roll": StrategyKind.JELLY_ROLL,
}


ALL_STRATEGIES: tuple[StrategyKind, ...] = (
    StrategyKind.VERTICAL,
    StrategyKind.BUTTERFLY,
    StrategyKind.CALENDAR,
    StrategyKind.BOX,
    StrategyKind.JELLY_ROLL,
)


@dataclass(frozen=True)
class StrategyFilter:
    include: tuple[StrategyKind, ...] = ALL_STRATEGIES

    def allows(self, strategy: StrategyKind) -> bool:
        return strategy in self.include

    @classmethod
    def parse(cls, values: Iterable[str]) -> "StrategyFilter":
        kinds: list[StrategyKind] = []
        for raw in values:
            if not raw.strip():
                continue
            kind = StrategyKind.parse(raw)
            if kind not in kinds:
                kinds.append(kind)
        return cls(include=tuple(kinds))


# ---------------------------------------------------------------------------
# Instrument names
# ---------------------------------------------------------------------------

_MONTHS = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}

_DATE_PART = re.compile(r"^(\d{1,2})([A-Za-z]{3})(\d{2})$")
_STRIKE_PART = re.compile(r"\d+(\.\d+)?")

# Deribit options expire at 08:00 UTC.
EXPIRY_HOUR_UTC = 8


@dataclass(frozen=True)
class ParsedInstrumentName:
    currency: Currency
    day: int
    month: str
    year: int
    strike: Decimal
    option_kind: OptionKind

    def expiry_date(self) -> datetime:
        month = _MONTHS.get(self.month)
        if month is None:
            raise InvalidExpiryError(self.month)
        try:
            return datetime(self.year, month, self.day, EXPIRY_HOUR_UTC, tzinfo=timezone.utc)
        except ValueError:
            raise InvalidExpiryError(f"{self.year}-{month}-{self.day}") from None


def parse_instrument_name(name: str) -> ParsedInstrumentName:
    """Parse ``CCY-dMMMyy-STRIKE-K`` (e.g. ``BTC-25MAR23-42000-C``)."""
    parts = name.split("-")
    if len(parts) != 4:
        raise InvalidFormatError(name)

    currency = Currency.parse(parts[0])

    date_part = parts[1]
    match = _DATE_PART.match(date_part)
    if match is None:
        raise InvalidExpiryError(date_part)
    day = int(match.group(1))
    month = match.group(2).upper()
    year = 2000 + int(match.group(3))

    if _STRIKE_PART.fullmatch(parts[2]) is None:
        raise InvalidStrikeError(parts[2])
    strike = Decimal(parts[2])

    option_kind = OptionKind.parse(parts[3])

    return ParsedInstrumentName(
        currency=currency,
        day=day,
        month=month,
        year=year,
        strike=strike,
        option_kind=option_kind,
    )


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Instrument:
    instrument_name: str
    currency: Currency
    option_kind: OptionKind
    strike: Decimal
    expiry: datetime
    settlement_currency: SettlementCurrency
    contract_size: Decimal = ONE
    tick_size: Decimal = Decimal("0.0001")
    min_trade_amount: Decimal = ONE
    is_combo: bool = False

    @property
    def is_usdc_settled(self) -> bool:
        return self.settlement_currency is SettlementCurrency.USDC

    @classmethod
    def from_name(
        cls,
        instrument_name: str,
        settlement_currency: SettlementCurrency,
        contract_size: Decimal = ONE,
        tick_size: Decimal = Decimal("0.0001"),
        min_trade_amount: Decimal = ONE,
    ) -> "Instrument":
        parsed = parse_instrument_name(instrument_name)
        return cls(
            instrument_name=instrument_name,
            currency=parsed.currency,
            option_kind=parsed.option_kind,
            strike=parsed.strike,
            expiry=parsed.expiry_date(),
            settlement_currency=settlement_currency,
            contract_size=contract_size,
            tick_size=tick_size,
            min_trade_amount=min_trade_amount,
        )


@dataclass(frozen=True)
class QuoteLevel:
    price: Decimal
    amount: Decimal

    def __post_init__(self) -> None:
        if self.amount < ZERO:
            raise InvalidInputError(f"negative quote amount: {self.amount}")


@dataclass(frozen=True)
class Quote:
    timestamp: datetime
    index_price: Decimal = ZERO
    best_bid: Optional[QuoteLevel] = None
    best_ask: Optional[QuoteLevel] = None
    mark_iv: Optional[float] = None
    bid_iv: Optional[float] = None
    ask_iv: Optional[float] = None
    interest_rate: Optional[float] = None

    @classmethod
    def empty(cls, now: datetime | None = None) -> "Quote":
        return cls(timestamp=now or datetime.now(timezone.utc))

    @property
    def has_touch(self) -> bool:
        return self.best_bid is not None or self.best_ask is not None


@dataclass(frozen=True)
class OrderBook:
    timestamp: datetime
    bids: tuple[QuoteLevel, ...] = ()
    asks: tuple[QuoteLevel, ...] = ()


@dataclass(frozen=True)
class InstrumentSnapshot:
    instrument: Instrument
    quote: Quote
    order_book: Optional[OrderBook] = None

    @property
    def name(self) -> str:
        return self.instrument.instrument_name


@dataclass(frozen=True)
class ChainSnapshot:
    timestamp: datetime
    instruments: tuple[InstrumentSnapshot, ...]


# ---------------------------------------------------------------------------
# Combos, fees, opportunities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComboLeg:
    instrument_name: str
    ratio: int
    side: ComboSide

    def __post_init__(self) -> None:
        if self.ratio <= 0:
            raise InvalidInputError(f"combo leg ratio must be positive: {self.ratio}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "instrument_name": self.instrument_name,
            "ratio": self.ratio,
            "direction": self.side.value,
        }


@dataclass(frozen=True)
class ComboDefinition:
    combo_id: Optional[str]
    currency: Currency
    settlement: SettlementCurrency
    description: str
    legs: tuple[ComboLeg, ...]


@dataclass(frozen=True)
class LegTouch:
    instrument_name: str
    side: ComboSide
    price: Decimal
    size_contracts: Decimal


@dataclass(frozen=True)
class LegFee:
    instrument_name: str
    side: ComboSide
    settlement: SettlementCurrency
    execution_role: FillRole
    trade_fee_native: Decimal
    trade_fee_usd: Decimal


@dataclass(frozen=True)
class FeeBreakdown:
    legs: tuple[LegFee, ...]
    combo_discount: Decimal
    combo_discount_usd: Decimal
    delivery_fee: Decimal
    delivery_fee_usd: Decimal
    total_native: Decimal
    total_usd: Decimal


@dataclass(frozen=True)
class ComboExecutionPlan:
    create_payload: Dict[str, Any]
    time_in_force: TimeInForce
    price_limit: Decimal
    dry_run: bool


@dataclass(frozen=True)
class StrategyOpportunity:
    strategy: StrategyKind
    currency: Currency
    settlement: SettlementCurrency
    expiries: tuple[datetime, ...]
    strikes: tuple[Decimal, ...]
    legs: tuple[ComboLeg, ...]
    touches: tuple[LegTouch, ...]
    total_cost: Decimal
    max_payout: Decimal
    fee_breakdown: FeeBreakdown
    net_edge_native: Decimal
    net_edge_usd: Decimal
    notional_usd: Decimal
    reference_index: Decimal
    edge_bps: float
    size_contracts: Decimal
    execution_plan: ComboExecutionPlan

    @property
    def fees_usd(self) -> Decimal:
        return self.fee_breakdown.total_usd

    @property
    def edge_ratio(self) -> Decimal:
        return safe_div(self.net_edge_usd, max(self.fees_usd, FEE_RATIO_FLOOR))

    @property
    def first_expiry(self) -> datetime | None:
        return self.expiries[0] if self.expiries else None
