"""Multi-leg option arbitrage detectors.

Each detector walks a :class:`~deribit_arb.models.ChainSnapshot`, builds
candidate combos from the best bid/ask touches, sizes them against depth and
the USD ticket, prices fees through :class:`~deribit_arb.fee_model.FeeEngine`
and keeps the ones whose net edge clears the configured gates.

Detectors are plain functions keyed by :class:`StrategyKind`; the suite only
dispatches the kinds its filter allows and merges the results.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Hashable, Iterable, Iterator, List, Sequence

from deribit_arb.config import SizingSettings, StrategySettings
from deribit_arb.decimal_math import (
    FEE_RATIO_FLOOR,
    PAYOUT_TOLERANCE,
    TWO,
    ZERO,
    safe_div,
    to_float,
)
from deribit_arb.errors import InvalidInputError
from deribit_arb.fee_model import FeeComputationContext, FeeEngine, LegFeeInput, is_daily_option
from deribit_arb.models import (
    ChainSnapshot,
    ComboExecutionPlan,
    ComboLeg,
    ComboSide,
    InstrumentSnapshot,
    LegTouch,
    OptionKind,
    QuoteLevel,
    SettlementCurrency,
    StrategyKind,
    StrategyOpportunity,
    TimeInForce,
)
from deribit_arb.sizing import TicketSizer

LOGGER = logging.getLogger(__name__)

_BPS = Decimal("10000")


def to_usd(native: Decimal, settlement: SettlementCurrency, index_price: Decimal) -> Decimal:
    if settlement is SettlementCurrency.COIN:
        return native * index_price
    return native


def to_native(usd: Decimal, settlement: SettlementCurrency, index_price: Decimal) -> Decimal:
    if settlement is SettlementCurrency.COIN:
        return safe_div(usd, index_price)
    return usd


@dataclass(frozen=True)
class _LegPick:
    snapshot: InstrumentSnapshot
    side: ComboSide
    level: QuoteLevel
    ratio: int = 1


class _ScanContext:
    """Per-scan state shared by the detectors: gates, sizing, fees."""

    def __init__(
        self,
        strategy: StrategySettings,
        sizer: TicketSizer,
        fee_engine: FeeEngine,
        dry_run: bool,
        now: datetime,
    ) -> None:
        self.strategy = strategy
        self.sizer = sizer
        self.fee_engine = fee_engine
        self.dry_run = dry_run
        self.now = now

    def passes_edge_gates(self, kind: StrategyKind, net_edge_usd: Decimal, fees_usd: Decimal) -> bool:
        if net_edge_usd <= ZERO or net_edge_usd < self.strategy.min_edge_usd:
            return False
        if kind is StrategyKind.BOX and self.strategy.box_edge_ratio_exempt:
            return True
        ratio = safe_div(net_edge_usd, max(fees_usd, FEE_RATIO_FLOOR))
        return ratio >= self.strategy.min_edge_ratio

    def finalize(
        self,
        kind: StrategyKind,
        picks: Sequence[_LegPick],
        size: Decimal,
        reference: InstrumentSnapshot,
        gross_edge_usd: Decimal,
        total_cost: Decimal,
        max_payout: Decimal,
        expiries: tuple[datetime, ...],
        strikes: tuple[Decimal, ...],
    ) -> StrategyOpportunity | None:
        instrument = reference.instrument
        settlement = instrument.settlement_currency
        reference_index = reference.quote.index_price

        fee_legs = [
            LegFeeInput(
                instrument_name=pick.snapshot.name,
                side=pick.side,
                settlement=pick.snapshot.instrument.settlement_currency,
                option_price=pick.level.price,
                index_price=pick.snapshot.quote.index_price,
                contracts=size * pick.ratio,
                contract_size=pick.snapshot.instrument.contract_size,
                expiry=pick.snapshot.instrument.expiry,
                is_daily=is_daily_option(pick.snapshot.name, pick.snapshot.instrument.expiry, self.now),
            )
            for pick in picks
        ]
        try:
            fees = self.fee_engine.compute(
                FeeComputationContext(legs=fee_legs, hold_to_expiry=self.strategy.hold_to_expiry)
            )
        except InvalidInputError as exc:
            LOGGER.debug("skipping %s %s: %s", kind.value, [p.snapshot.name for p in picks], exc)
            return None

        net_edge_usd = gross_edge_usd - fees.total_usd
        if not self.passes_edge_gates(kind, net_edge_usd, fees.total_usd):
            return None

        contract_size = instrument.contract_size
        notional_usd = reference_index * size * contract_size
        bps_base = reference_index * size
        edge_bps = 0.0 if bps_base.is_zero() else to_float(net_edge_usd / bps_base * _BPS)

        legs = tuple(ComboLeg(pick.snapshot.name, pick.ratio, pick.side) for pick in picks)
        touches = tuple(
            LegTouch(
                instrument_name=pick.snapshot.name,
                side=pick.side,
                price=pick.level.price,
                size_contracts=size * pick.ratio,
            )
            for pick in picks
        )
        plan = ComboExecutionPlan(
            create_payload={"legs": [leg.to_payload() for leg in legs], "amount": size},
            time_in_force=TimeInForce.IOC,
            price_limit=total_cost,
            dry_run=self.dry_run,
        )
        return StrategyOpportunity(
            strategy=kind,
            currency=instrument.currency,
            settlement=settlement,
            expiries=expiries,
            strikes=strikes,
            legs=legs,
            touches=touches,
            total_cost=total_cost,
            max_payout=max_payout,
            fee_breakdown=fees,
            net_edge_native=to_native(net_edge_usd, settlement, reference_index),
            net_edge_usd=net_edge_usd,
            notional_usd=notional_usd,
            reference_index=reference_index,
            edge_bps=edge_bps,
            size_contracts=size,
            execution_plan=plan,
        )


# ---------------------------------------------------------------------------
# Grouping helpers
# ---------------------------------------------------------------------------


def _grouped(
    snapshots: Iterable[InstrumentSnapshot],
    key: Callable[[InstrumentSnapshot], Hashable],
) -> Iterator[List[InstrumentSnapshot]]:
    groups: Dict[Hashable, List[InstrumentSnapshot]] = defaultdict(list)
    for snap in snapshots:
        groups[key(snap)].append(snap)
    for group_key in sorted(groups):
        yield groups[group_key]


def _by_strike(snapshots: List[InstrumentSnapshot]) -> List[InstrumentSnapshot]:
    return sorted(snapshots, key=lambda s: (s.instrument.strike, s.name))


def _expiry_kind_key(snap: InstrumentSnapshot) -> tuple:
    inst = snap.instrument
    return (inst.currency, inst.expiry, inst.settlement_currency, inst.option_kind)


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


def detect_verticals(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    """Debit verticals priced below their strike width.

    Calls buy the lower strike and sell the higher; puts buy the higher and
    sell the lower.
    """
    results: List[StrategyOpportunity] = []
    for group in _grouped(snapshots, _expiry_kind_key):
        ordered = _by_strike(group)
        for low, high in zip(ordered, ordered[1:]):
            strikes_diff = high.instrument.strike - low.instrument.strike
            if strikes_diff <= ZERO:
                continue
            if low.instrument.option_kind is OptionKind.CALL:
                buy, sell = low, high
            else:
                buy, sell = high, low

            ask = buy.quote.best_ask
            bid = sell.quote.best_bid
            if not (ctx.sizer.has_depth(ask) and ctx.sizer.has_depth(bid)):
                continue
            size = ctx.sizer.clip(buy, ask.amount, bid.amount)
            if size is None:
                continue

            settlement = buy.instrument.settlement_currency
            contract_size = buy.instrument.contract_size
            reference_index = buy.quote.index_price
            debit_native = (ask.price - bid.price) * size * contract_size
            if debit_native < ZERO:
                continue
            debit_usd = to_usd(debit_native, settlement, reference_index)
            max_payout_usd = strikes_diff * size * contract_size
            if debit_usd > max_payout_usd + PAYOUT_TOLERANCE:
                continue

            opp = ctx.finalize(
                StrategyKind.VERTICAL,
                (_LegPick(buy, ComboSide.BUY, ask), _LegPick(sell, ComboSide.SELL, bid)),
                size=size,
                reference=buy,
                gross_edge_usd=max_payout_usd - debit_usd,
                total_cost=debit_native,
                max_payout=to_native(max_payout_usd, settlement, reference_index),
                expiries=(buy.instrument.expiry,),
                strikes=(low.instrument.strike, high.instrument.strike),
            )
            if opp is not None:
                results.append(opp)
    return results


def detect_butterflies(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    """Long 1x2x1 flies over consecutive strikes that trade for a credit."""
    results: List[StrategyOpportunity] = []
    for group in _grouped(snapshots, _expiry_kind_key):
        ordered = _by_strike(group)
        for low, mid, high in zip(ordered, ordered[1:], ordered[2:]):
            if not (low.instrument.strike < mid.instrument.strike < high.instrument.strike):
                continue
            ask_low = low.quote.best_ask
            bid_mid = mid.quote.best_bid
            ask_high = high.quote.best_ask
            if not all(ctx.sizer.has_depth(level) for level in (ask_low, bid_mid, ask_high)):
                continue
            size = ctx.sizer.clip(low, ask_low.amount, ask_high.amount, bid_mid.amount / TWO)
            if size is None:
                continue

            settlement = low.instrument.settlement_currency
            contract_size = low.instrument.contract_size
            reference_index = low.quote.index_price
            cost_per = ask_low.price + ask_high.price - TWO * bid_mid.price
            debit_native = cost_per * size * contract_size
            debit_usd = to_usd(debit_native, settlement, reference_index)
            max_payout_usd = (high.instrument.strike - low.instrument.strike) * size * contract_size

            opp = ctx.finalize(
                StrategyKind.BUTTERFLY,
                (
                    _LegPick(low, ComboSide.BUY, ask_low),
                    _LegPick(mid, ComboSide.SELL, bid_mid, ratio=2),
                    _LegPick(high, ComboSide.BUY, ask_high),
                ),
                size=size,
                reference=low,
                gross_edge_usd=-debit_usd,
                total_cost=debit_native,
                max_payout=to_native(max_payout_usd, settlement, reference_index),
                expiries=(low.instrument.expiry,),
                strikes=(low.instrument.strike, mid.instrument.strike, high.instrument.strike),
            )
            if opp is not None:
                results.append(opp)
    return results


def detect_calendars(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    """Sell the near expiry at the bid, buy the next expiry at the ask."""

    def _key(snap: InstrumentSnapshot) -> tuple:
        inst = snap.instrument
        return (inst.currency, inst.strike, inst.settlement_currency, inst.option_kind)

    results: List[StrategyOpportunity] = []
    for group in _grouped(snapshots, _key):
        ordered = sorted(group, key=lambda s: (s.instrument.expiry, s.name))
        for near, far in zip(ordered, ordered[1:]):
            if near.instrument.expiry == far.instrument.expiry:
                continue
            bid = near.quote.best_bid
            ask = far.quote.best_ask
            if not (ctx.sizer.has_depth(bid) and ctx.sizer.has_depth(ask)):
                continue
            size = ctx.sizer.clip(near, bid.amount, ask.amount)
            if size is None:
                continue

            settlement = near.instrument.settlement_currency
            contract_size = near.instrument.contract_size
            credit_native = (bid.price - ask.price) * size * contract_size
            credit_usd = to_usd(credit_native, settlement, near.quote.index_price)
            if credit_usd <= ZERO:
                continue

            opp = ctx.finalize(
                StrategyKind.CALENDAR,
                (_LegPick(near, ComboSide.SELL, bid), _LegPick(far, ComboSide.BUY, ask)),
                size=size,
                reference=near,
                gross_edge_usd=credit_usd,
                total_cost=credit_native,
                max_payout=ZERO,
                expiries=(near.instrument.expiry, far.instrument.expiry),
                strikes=(near.instrument.strike,),
            )
            if opp is not None:
                results.append(opp)
    return results


def detect_boxes(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    """USDC boxes trading below the strike width.

    +C(K_low) -C(K_high) -P(K_low) +P(K_high) pays ``K_high - K_low`` at
    expiry regardless of the underlying.
    """

    def _key(snap: InstrumentSnapshot) -> tuple:
        inst = snap.instrument
        return (inst.expiry, inst.settlement_currency, inst.currency)

    linear = [s for s in snapshots if s.instrument.settlement_currency is SettlementCurrency.USDC]
    results: List[StrategyOpportunity] = []
    for group in _grouped(linear, _key):
        calls = _by_strike([s for s in group if s.instrument.option_kind is OptionKind.CALL])
        puts = {s.instrument.strike: s for s in group if s.instrument.option_kind is OptionKind.PUT}
        for call_low, call_high in zip(calls, calls[1:]):
            k_low = call_low.instrument.strike
            k_high = call_high.instrument.strike
            if k_high <= k_low:
                continue
            put_low = puts.get(k_low)
            put_high = puts.get(k_high)
            if put_low is None or put_high is None:
                continue

            ask_c_low = call_low.quote.best_ask
            bid_c_high = call_high.quote.best_bid
            bid_p_low = put_low.quote.best_bid
            ask_p_high = put_high.quote.best_ask
            levels = (ask_c_low, bid_c_high, bid_p_low, ask_p_high)
            if not all(ctx.sizer.has_depth(level) for level in levels):
                continue
            size = ctx.sizer.clip(call_low, *(level.amount for level in levels))
            if size is None:
                continue

            contract_size = call_low.instrument.contract_size
            combo_price_per = ask_c_low.price - bid_c_high.price - bid_p_low.price + ask_p_high.price
            combo_cost = combo_price_per * size * contract_size
            fair_value = (k_high - k_low) * size * contract_size

            opp = ctx.finalize(
                StrategyKind.BOX,
                (
                    _LegPick(call_low, ComboSide.BUY, ask_c_low),
                    _LegPick(call_high, ComboSide.SELL, bid_c_high),
                    _LegPick(put_low, ComboSide.SELL, bid_p_low),
                    _LegPick(put_high, ComboSide.BUY, ask_p_high),
                ),
                size=size,
                reference=call_low,
                gross_edge_usd=fair_value - combo_cost,
                total_cost=combo_cost,
                max_payout=fair_value,
                expiries=(call_low.instrument.expiry,),
                strikes=(k_low, k_high),
            )
            if opp is not None:
                results.append(opp)
    return results


def detect_jelly_rolls(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    """Near synthetic long against far synthetic short at one strike, for a credit."""

    def _key(snap: InstrumentSnapshot) -> tuple:
        inst = snap.instrument
        return (inst.currency, inst.strike, inst.settlement_currency)

    results: List[StrategyOpportunity] = []
    for group in _grouped(snapshots, _key):
        by_expiry: Dict[datetime, Dict[OptionKind, InstrumentSnapshot]] = defaultdict(dict)
        for snap in group:
            by_expiry[snap.instrument.expiry][snap.instrument.option_kind] = snap
        expiries = sorted(by_expiry)
        for near_expiry, far_expiry in zip(expiries, expiries[1:]):
            near = by_expiry[near_expiry]
            far = by_expiry[far_expiry]
            if len(near) < 2 or len(far) < 2:
                continue
            near_call, near_put = near[OptionKind.CALL], near[OptionKind.PUT]
            far_call, far_put = far[OptionKind.CALL], far[OptionKind.PUT]

            ask_c_near = near_call.quote.best_ask
            bid_p_near = near_put.quote.best_bid
            bid_c_far = far_call.quote.best_bid
            ask_p_far = far_put.quote.best_ask
            levels = (ask_c_near, bid_p_near, bid_c_far, ask_p_far)
            if not all(ctx.sizer.has_depth(level) for level in levels):
                continue
            size = ctx.sizer.clip(near_call, *(level.amount for level in levels))
            if size is None:
                continue

            settlement = near_call.instrument.settlement_currency
            contract_size = near_call.instrument.contract_size
            debit_per = ask_c_near.price - bid_p_near.price - bid_c_far.price + ask_p_far.price
            debit_native = debit_per * size * contract_size
            debit_usd = to_usd(debit_native, settlement, near_call.quote.index_price)
            if debit_usd >= ZERO:
                continue

            opp = ctx.finalize(
                StrategyKind.JELLY_ROLL,
                (
                    _LegPick(near_call, ComboSide.BUY, ask_c_near),
                    _LegPick(near_put, ComboSide.SELL, bid_p_near),
                    _LegPick(far_call, ComboSide.SELL, bid_c_far),
                    _LegPick(far_put, ComboSide.BUY, ask_p_far),
                ),
                size=size,
                reference=near_call,
                gross_edge_usd=-debit_usd,
                total_cost=debit_native,
                max_payout=ZERO,
                expiries=(near_expiry, far_expiry),
                strikes=(near_call.instrument.strike,),
            )
            if opp is not None:
                results.append(opp)
    return results


def detect_stale_quotes(ctx: _ScanContext, snapshots: Sequence[InstrumentSnapshot]) -> List[StrategyOpportunity]:
    # Reserved strategy kind; nothing to report yet.
    return []


_DETECTORS: Dict[StrategyKind, Callable[[_ScanContext, Sequence[InstrumentSnapshot]], List[StrategyOpportunity]]] = {
    StrategyKind.VERTICAL: detect_verticals,
    StrategyKind.BUTTERFLY: detect_butterflies,
    StrategyKind.CALENDAR: detect_calendars,
    StrategyKind.BOX: detect_boxes,
    StrategyKind.STALE_QUOTE: detect_stale_quotes,
    StrategyKind.JELLY_ROLL: detect_jelly_rolls,
}


class DetectorSuite:
    """Runs the enabled detectors over a chain snapshot.

    Parameters
    ----------
    strategy:
        Edge gates, hold-to-expiry flag and the detector allow-list.
    sizing:
        Ticket cap and minimum touch depth.
    dry_run:
        Copied onto every execution plan.
    settlements:
        Only instruments with these settlements are considered. Defaults to
        both.
    fee_engine:
        Override for tests; defaults to the standard Deribit schedule.
    """

    def __init__(
        self,
        strategy: StrategySettings,
        sizing: SizingSettings,
        dry_run: bool = True,
        settlements: Iterable[SettlementCurrency] | None = None,
        fee_engine: FeeEngine | None = None,
    ) -> None:
        self._strategy = strategy
        self._sizer = TicketSizer(sizing)
        self._dry_run = dry_run
        self._settlements = frozenset(settlements) if settlements is not None else frozenset(SettlementCurrency)
        self._fee_engine = fee_engine or FeeEngine()

    def scan(self, snapshot: ChainSnapshot) -> List[StrategyOpportunity]:
        """Opportunities across all enabled detectors, best net edge first."""
        ctx = _ScanContext(
            strategy=self._strategy,
            sizer=self._sizer,
            fee_engine=self._fee_engine,
            dry_run=self._dry_run,
            now=snapshot.timestamp,
        )
        candidates = [
            snap
            for snap in snapshot.instruments
            if not snap.instrument.is_combo and snap.instrument.settlement_currency in self._settlements
        ]

        found: List[StrategyOpportunity] = []
        for kind in self._strategy.strategies.include:
            detector = _DETECTORS[kind]
            opportunities = detector(ctx, candidates)
            LOGGER.debug("%s detector produced %d opportunities", kind.value, len(opportunities))
            found.extend(opportunities)

        return sorted(found, key=lambda opp: opp.net_edge_usd, reverse=True)
