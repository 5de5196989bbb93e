from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from deribit_arb.config import SizingSettings, StrategySettings
from deribit_arb.decimal_math import FEE_RATIO_FLOOR, PAYOUT_TOLERANCE
from deribit_arb.models import (
    ChainSnapshot,
    ComboSide,
    Instrument,
    InstrumentSnapshot,
    Quote,
    QuoteLevel,
    SettlementCurrency,
    StrategyFilter,
    StrategyKind,
    TimeInForce,
)
from deribit_arb.sizing import TicketSizer
from deribit_arb.strategy import DetectorSuite

NOW = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)
USDC = SettlementCurrency.USDC
COIN = SettlementCurrency.COIN


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _snap(
    name: str,
    bid: str | None = None,
    ask: str | None = None,
    depth: str = "10",
    index: str = "40000",
    settlement: SettlementCurrency = USDC,
    contract_size: str = "1",
) -> InstrumentSnapshot:
    instrument = Instrument.from_name(name, settlement, contract_size=Decimal(contract_size))
    quote = Quote(
        timestamp=NOW,
        index_price=Decimal(index),
        best_bid=QuoteLevel(Decimal(bid), Decimal(depth)) if bid is not None else None,
        best_ask=QuoteLevel(Decimal(ask), Decimal(depth)) if ask is not None else None,
    )
    return InstrumentSnapshot(instrument=instrument, quote=quote)


def _suite(
    only: tuple[StrategyKind, ...] | None = None,
    min_edge_usd: str = "50",
    min_edge_ratio: str = "1.5",
    hold_to_expiry: bool = False,
    box_edge_ratio_exempt: bool = False,
    min_depth: str = "1",
    settlements: tuple[SettlementCurrency, ...] | None = None,
) -> DetectorSuite:
    strategy = StrategySettings(
        min_edge_usd=Decimal(min_edge_usd),
        min_edge_ratio=Decimal(min_edge_ratio),
        hold_to_expiry=hold_to_expiry,
        strategies=StrategyFilter(only) if only is not None else StrategyFilter(),
        box_edge_ratio_exempt=box_edge_ratio_exempt,
    )
    sizing = SizingSettings(max_ticket_usd=Decimal("20000"), min_depth_contracts=Decimal(min_depth))
    return DetectorSuite(strategy, sizing, dry_run=True, settlements=settlements)


def _scan(*snaps: InstrumentSnapshot, **kw):
    return _suite(**kw).scan(ChainSnapshot(timestamp=NOW, instruments=tuple(snaps)))


def _vertical_call_chain() -> tuple[InstrumentSnapshot, ...]:
    return (
        _snap("BTC-25DEC24-40000-C", bid="5800", ask="6000"),
        _snap("BTC-25DEC24-45000-C", bid="5400", ask="5600"),
    )


def _box_chain() -> tuple[InstrumentSnapshot, ...]:
    return (
        _snap("BTC-25DEC24-40000-C", bid="1800", ask="2000"),
        _snap("BTC-25DEC24-45000-C", bid="1500", ask="1700"),
        _snap("BTC-25DEC24-40000-P", bid="1500", ask="1700"),
        _snap("BTC-25DEC24-45000-P", bid="1800", ask="2000"),
    )


def _jelly_chain() -> tuple[InstrumentSnapshot, ...]:
    return (
        _snap("BTC-25DEC24-40000-C", bid="4", ask="5"),
        _snap("BTC-25DEC24-40000-P", bid="150", ask="151"),
        _snap("BTC-25JAN25-40000-C", bid="10", ask="11"),
        _snap("BTC-25JAN25-40000-P", bid="4", ask="5"),
    )


def _find(opportunities, kind: StrategyKind):
    matches = [opp for opp in opportunities if opp.strategy is kind]
    assert matches, f"no {kind.value} opportunity in {[o.strategy.value for o in opportunities]}"
    return matches[0]


# ---------------------------------------------------------------------------
# Verticals
# ---------------------------------------------------------------------------


class TestVertical:
    def test_call_debit_vertical(self) -> None:
        opportunities = _scan(*_vertical_call_chain())

        assert len(opportunities) == 1
        opp = opportunities[0]
        assert opp.strategy is StrategyKind.VERTICAL
        assert opp.size_contracts == Decimal("0.5")
        assert opp.total_cost == Decimal("300")
        assert opp.max_payout == Decimal("2500")
        assert opp.fees_usd == Decimal("6")
        assert opp.net_edge_usd == Decimal("2194")
        assert opp.net_edge_native == Decimal("2194")
        assert opp.notional_usd == Decimal("20000")
        assert opp.reference_index == Decimal("40000")
        assert abs(opp.edge_bps - 1097.0) < 1e-9
        assert opp.strikes == (Decimal("40000"), Decimal("45000"))
        assert [(leg.instrument_name, leg.side) for leg in opp.legs] == [
            ("BTC-25DEC24-40000-C", ComboSide.BUY),
            ("BTC-25DEC24-45000-C", ComboSide.SELL),
        ]
        assert [touch.price for touch in opp.touches] == [Decimal("6000"), Decimal("5400")]

    def test_execution_plan(self) -> None:
        opp = _scan(*_vertical_call_chain())[0]
        plan = opp.execution_plan
        assert plan.time_in_force is TimeInForce.IOC
        assert plan.price_limit == Decimal("300")
        assert plan.dry_run is True
        assert plan.create_payload["amount"] == Decimal("0.5")
        assert plan.create_payload["legs"][0] == {
            "instrument_name": "BTC-25DEC24-40000-C",
            "ratio": 1,
            "direction": "buy",
        }

    def test_put_vertical_buys_higher_strike(self) -> None:
        opportunities = _scan(
            _snap("BTC-25DEC24-40000-P", bid="1000", ask="1100"),
            _snap("BTC-25DEC24-45000-P", bid="1400", ask="1500"),
        )
        opp = _find(opportunities, StrategyKind.VERTICAL)
        assert opp.legs[0].instrument_name == "BTC-25DEC24-45000-P"
        assert opp.legs[0].side is ComboSide.BUY
        assert opp.legs[1].instrument_name == "BTC-25DEC24-40000-P"
        assert opp.net_edge_usd == Decimal("2244")

    def test_rejects_debit_above_strike_width(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="5900", ask="6000"),
            _snap("BTC-25DEC24-45000-C", bid="500", ask="600"),
        ) == []

    def test_rejects_negative_debit(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="4900", ask="5000"),
            _snap("BTC-25DEC24-45000-C", bid="5400", ask="5600"),
        ) == []

    def test_coin_vertical_converts_through_index(self) -> None:
        opp = _scan(
            _snap("BTC-25DEC24-40000-C", bid="0.14", ask="0.15", settlement=COIN),
            _snap("BTC-25DEC24-45000-C", bid="0.0875", ask="0.09", settlement=COIN),
        )[0]
        assert opp.settlement is COIN
        assert opp.total_cost == Decimal("0.03125")
        assert opp.net_edge_usd == Decimal("1244")
        assert opp.net_edge_native == Decimal("0.0311")
        assert opp.max_payout == Decimal("0.0625")

    def test_hold_to_expiry_adds_delivery_fees(self) -> None:
        opp = _scan(*_vertical_call_chain(), hold_to_expiry=True)[0]
        assert opp.fee_breakdown.delivery_fee_usd == Decimal("6")
        assert opp.net_edge_usd == Decimal("2188")

    def test_depth_gate(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="5800", ask="6000", depth="0.5"),
            _snap("BTC-25DEC24-45000-C", bid="5400", ask="5600"),
        ) == []

    def test_min_edge_usd_gate(self) -> None:
        assert _scan(*_vertical_call_chain(), min_edge_usd="3000") == []


# ---------------------------------------------------------------------------
# Butterflies
# ---------------------------------------------------------------------------


class TestButterfly:
    def _chain(self) -> tuple[InstrumentSnapshot, ...]:
        return (
            _snap("BTC-25DEC24-38000-C", bid="850", ask="900"),
            _snap("BTC-25DEC24-40000-C", bid="2200", ask="2300"),
            _snap("BTC-25DEC24-42000-C", bid="950", ask="1000"),
        )

    def test_free_butterfly(self) -> None:
        opportunities = _scan(*self._chain(), only=(StrategyKind.BUTTERFLY,))

        assert len(opportunities) == 1
        opp = opportunities[0]
        assert opp.size_contracts == Decimal("0.5")
        assert opp.total_cost == Decimal("-1250")
        assert opp.fees_usd == Decimal("12")
        assert opp.net_edge_usd == Decimal("1238")
        assert opp.max_payout == Decimal("2000")
        assert [leg.ratio for leg in opp.legs] == [1, 2, 1]
        assert [leg.side for leg in opp.legs] == [ComboSide.BUY, ComboSide.SELL, ComboSide.BUY]
        assert opp.touches[1].size_contracts == Decimal("1.0")

    def test_ranked_against_vertical(self) -> None:
        opportunities = _scan(*self._chain())
        assert [opp.strategy for opp in opportunities] == [StrategyKind.BUTTERFLY, StrategyKind.VERTICAL]
        assert opportunities[1].net_edge_usd == Decimal("319")

    def test_mid_depth_halves_size(self) -> None:
        chain = (
            _snap("BTC-25DEC24-38000-C", bid="850", ask="900"),
            _snap("BTC-25DEC24-40000-C", bid="2200", ask="2300", depth="0.6"),
            _snap("BTC-25DEC24-42000-C", bid="950", ask="1000"),
        )
        opportunities = _scan(*chain, only=(StrategyKind.BUTTERFLY,), min_depth="0.1")
        assert opportunities[0].size_contracts == Decimal("0.3")


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


class TestCalendar:
    def test_calendar_credit(self) -> None:
        opportunities = _scan(
            _snap("BTC-25DEC24-40000-C", bid="1600", ask="1700"),
            _snap("BTC-25JAN25-40000-C", bid="1200", ask="1300"),
        )
        assert len(opportunities) == 1
        opp = opportunities[0]
        assert opp.strategy is StrategyKind.CALENDAR
        assert opp.total_cost == Decimal("150")
        assert opp.net_edge_usd == Decimal("144")
        assert opp.max_payout == Decimal("0")
        assert opp.legs[0].side is ComboSide.SELL
        assert opp.legs[0].instrument_name == "BTC-25DEC24-40000-C"
        assert opp.legs[1].side is ComboSide.BUY
        assert opp.expiries == (
            datetime(2024, 12, 25, 8, tzinfo=timezone.utc),
            datetime(2025, 1, 25, 8, tzinfo=timezone.utc),
        )

    def test_ignores_opposite_kinds_at_same_expiry(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="1600", ask="1700"),
            _snap("BTC-25DEC24-40000-P", bid="1200", ask="1300"),
            only=(StrategyKind.CALENDAR,),
        ) == []

    def test_ignores_opposite_kinds_across_expiries(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="1600", ask="1700"),
            _snap("BTC-25JAN25-40000-P", bid="1200", ask="1300"),
            only=(StrategyKind.CALENDAR,),
        ) == []

    def test_rejects_debit_calendar(self) -> None:
        assert _scan(
            _snap("BTC-25DEC24-40000-C", bid="1200", ask="1300"),
            _snap("BTC-25JAN25-40000-C", bid="1600", ask="1700"),
        ) == []


# ---------------------------------------------------------------------------
# Boxes
# ---------------------------------------------------------------------------


class TestBox:
    def test_box_parity_gap(self) -> None:
        opportunities = _scan(*_box_chain())

        opp = _find(opportunities, StrategyKind.BOX)
        assert opp.size_contracts == Decimal("0.5")
        assert opp.total_cost == Decimal("500")
        assert opp.max_payout == Decimal("2500")
        assert opp.fees_usd == Decimal("12")
        assert opp.net_edge_usd == Decimal("1988")
        assert [(leg.instrument_name, leg.side) for leg in opp.legs] == [
            ("BTC-25DEC24-40000-C", ComboSide.BUY),
            ("BTC-25DEC24-45000-C", ComboSide.SELL),
            ("BTC-25DEC24-40000-P", ComboSide.SELL),
            ("BTC-25DEC24-45000-P", ComboSide.BUY),
        ]
        edges = [o.net_edge_usd for o in opportunities]
        assert edges == sorted(edges, reverse=True)

    def test_coin_settled_boxes_are_skipped(self) -> None:
        chain = tuple(
            _snap(s.name, bid=str(s.quote.best_bid.price / 40000), ask=str(s.quote.best_ask.price / 40000), settlement=COIN)
            for s in _box_chain()
        )
        assert _scan(*chain, only=(StrategyKind.BOX,)) == []

    def test_missing_put_leg(self) -> None:
        assert _scan(*_box_chain()[:3], only=(StrategyKind.BOX,)) == []

    def test_edge_ratio_applies_unless_exempt(self) -> None:
        assert _scan(*_box_chain(), min_edge_ratio="500") == []

        exempt = _scan(*_box_chain(), min_edge_ratio="500", box_edge_ratio_exempt=True)
        assert [opp.strategy for opp in exempt] == [StrategyKind.BOX]


# ---------------------------------------------------------------------------
# Jelly rolls
# ---------------------------------------------------------------------------


class TestJellyRoll:
    def test_jelly_roll_credit(self) -> None:
        opportunities = _scan(*_jelly_chain())

        opp = opportunities[0]
        assert opp.strategy is StrategyKind.JELLY_ROLL
        assert opp.total_cost == Decimal("-75")
        assert opp.fees_usd == Decimal("6.625")
        assert opp.net_edge_usd == Decimal("68.375")
        assert opp.max_payout == Decimal("0")
        assert [leg.side for leg in opp.legs] == [
            ComboSide.BUY,
            ComboSide.SELL,
            ComboSide.SELL,
            ComboSide.BUY,
        ]

    def test_needs_both_kinds_at_both_expiries(self) -> None:
        assert _scan(*_jelly_chain()[:3], only=(StrategyKind.JELLY_ROLL,)) == []


# ---------------------------------------------------------------------------
# Suite behaviour
# ---------------------------------------------------------------------------


def test_stale_quote_kind_is_reserved() -> None:
    assert _scan(*_box_chain(), only=(StrategyKind.STALE_QUOTE,)) == []


def test_settlement_filter_excludes_instruments() -> None:
    assert _scan(*_vertical_call_chain(), settlements=(COIN,)) == []


def _call_vertical(currency: str, expiry: str) -> tuple[InstrumentSnapshot, ...]:
    return (
        _snap(f"{currency}-{expiry}-40000-C", bid="5800", ask="6000"),
        _snap(f"{currency}-{expiry}-45000-C", bid="5400", ask="5600"),
    )


def _put_calendar_matching_vertical_edge() -> tuple[InstrumentSnapshot, ...]:
    # (6000 - 1600) * 0.5 credit less 6 of fees nets the same 2194 as the vertical.
    return (
        _snap("BTC-25DEC24-50000-P", bid="6000", ask="6100"),
        _snap("BTC-27DEC24-50000-P", bid="1500", ask="1600"),
    )


class TestEqualEdgeOrdering:
    def test_one_detector_keeps_group_order(self) -> None:
        snaps = (
            _call_vertical("ETH", "25DEC24")
            + _call_vertical("BTC", "27DEC24")
            + _call_vertical("BTC", "25DEC24")
        )

        opportunities = _scan(*reversed(snaps), only=(StrategyKind.VERTICAL,))

        assert [opp.net_edge_usd for opp in opportunities] == [Decimal("2194")] * 3
        assert [(opp.currency.value, opp.expiries[0].day) for opp in opportunities] == [
            ("BTC", 25),
            ("BTC", 27),
            ("ETH", 25),
        ]

    def test_across_detectors_keeps_detector_order(self) -> None:
        snaps = _put_calendar_matching_vertical_edge() + _vertical_call_chain()

        default_order = _scan(*snaps)
        calendar_first = _scan(*snaps, only=(StrategyKind.CALENDAR, StrategyKind.VERTICAL))

        assert [opp.net_edge_usd for opp in default_order] == [Decimal("2194")] * 2
        assert [opp.strategy for opp in default_order] == [StrategyKind.VERTICAL, StrategyKind.CALENDAR]
        assert [opp.strategy for opp in calendar_first] == [StrategyKind.CALENDAR, StrategyKind.VERTICAL]

    def test_higher_edge_still_wins_over_emission_order(self) -> None:
        snaps = _put_calendar_matching_vertical_edge()[:1] + (
            _snap("BTC-27DEC24-50000-P", bid="1400", ask="1500"),
        ) + _vertical_call_chain()

        opportunities = _scan(*snaps)

        assert [opp.strategy for opp in opportunities] == [StrategyKind.CALENDAR, StrategyKind.VERTICAL]
        assert opportunities[0].net_edge_usd == Decimal("2244")


def test_invariants_hold_across_a_mixed_chain() -> None:
    snaps = (
        _box_chain()
        + _jelly_chain()[2:]
        + (
            _snap("BTC-25DEC24-35000-C", bid="5000", ask="5100"),
            _snap("BTC-25DEC24-50000-C", bid="300", ask="350"),
            _snap("BTC-25DEC24-50000-P", bid="9000", ask="9500"),
            _snap("BTC-25JAN25-45000-C", bid="2100", ask="2200"),
            _snap("ETH-25DEC24-2000-C", bid="150", ask="160", index="2000"),
            _snap("ETH-25DEC24-2200-C", bid="40", ask="45", index="2000"),
        )
    )
    min_edge_usd = Decimal("50")
    min_edge_ratio = Decimal("1.5")

    opportunities = _scan(*snaps)

    assert opportunities
    edges = [opp.net_edge_usd for opp in opportunities]
    assert edges == sorted(edges, reverse=True)
    for opp in opportunities:
        assert opp.size_contracts > 0
        assert opp.net_edge_usd >= min_edge_usd
        assert opp.net_edge_usd / max(opp.fees_usd, FEE_RATIO_FLOOR) >= min_edge_ratio
        paying = {fee.side for fee in opp.fee_breakdown.legs if fee.trade_fee_usd > 0}
        assert len(paying) <= 1
        if opp.strategy is StrategyKind.VERTICAL:
            width = (opp.strikes[1] - opp.strikes[0]) * opp.size_contracts
            assert opp.total_cost <= width + PAYOUT_TOLERANCE


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


class TestTicketSizer:
    def _sizer(self) -> TicketSizer:
        return TicketSizer(SizingSettings(max_ticket_usd=Decimal("20000"), min_depth_contracts=Decimal("2")))

    def test_cap_from_ticket(self) -> None:
        snap = _snap("BTC-25DEC24-40000-C", bid="1", ask="2")
        assert self._sizer().ticket_cap(snap) == Decimal("0.5")

    def test_cap_limited_by_touch_amount(self) -> None:
        snap = _snap("BTC-25DEC24-40000-C", bid="1", ask="2", depth="0.2")
        assert self._sizer().ticket_cap(snap) == Decimal("0.2")

    def test_zero_index_falls_back_to_min_depth(self) -> None:
        snap = _snap("BTC-25DEC24-40000-C", bid="1", ask="2", index="0")
        assert self._sizer().ticket_cap(snap) == Decimal("2")

    def test_depth_gate(self) -> None:
        sizer = self._sizer()
        assert not sizer.has_depth(None)
        assert not sizer.has_depth(QuoteLevel(Decimal("1"), Decimal("1.5")))
        assert sizer.has_depth(QuoteLevel(Decimal("1"), Decimal("2")))
