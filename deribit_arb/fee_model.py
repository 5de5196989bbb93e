"""Deribit option fee accounting.

Per-leg taker/maker trade fees with the 12.5%-of-premium cap, the combo
discount that waives the cheaper side of a multi-leg order, and the
optional delivery fee charged when a position is held to expiry.

Usage::

    engine = FeeEngine()
    breakdown = engine.compute(FeeComputationContext(legs=[...], hold_to_expiry=False))
    breakdown.total_usd
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Sequence

from deribit_arb.decimal_math import ONE, ZERO, safe_div
from deribit_arb.errors import InvalidInputError
from deribit_arb.models import ComboSide, FeeBreakdown, FillRole, LegFee, SettlementCurrency


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeSchedule:
    """Venue fee constants.

    Parameters
    ----------
    coin_fee_per_contract:
        Flat trade fee per inverse contract, in base coin. Default 0.0003.
    linear_fee_rate:
        Trade fee for USDC-settled options as a fraction of the index.
        Default 0.0003.
    premium_cap_rate:
        Trade and delivery fees never exceed this fraction of the option
        price. Default 0.125.
    delivery_fee_rate:
        Delivery fee as a fraction of the underlying notional. Default 0.00015.
    daily_window:
        Options expiring within this window count as dailies and pay no
        delivery fee. Default 24h.
    """

    coin_fee_per_contract: Decimal = Decimal("0.0003")
    linear_fee_rate: Decimal = Decimal("0.0003")
    premium_cap_rate: Decimal = Decimal("0.125")
    delivery_fee_rate: Decimal = Decimal("0.00015")
    daily_window: timedelta = timedelta(days=1)


DEFAULT_FEE_SCHEDULE = FeeSchedule()


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LegFeeInput:
    instrument_name: str
    side: ComboSide
    settlement: SettlementCurrency
    option_price: Decimal
    index_price: Decimal
    contracts: Decimal
    contract_size: Decimal
    expiry: datetime
    is_daily: bool = False
    role: FillRole = FillRole.TAKER


@dataclass(frozen=True)
class FeeComputationContext:
    legs: Sequence[LegFeeInput]
    hold_to_expiry: bool = False


def is_daily_option(
    instrument_name: str,
    expiry: datetime,
    now: datetime | None = None,
    window: timedelta = DEFAULT_FEE_SCHEDULE.daily_window,
) -> bool:
    if "-D" in instrument_name:
        return True
    now = now or datetime.now(timezone.utc)
    return expiry - now <= window


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class FeeEngine:
    """Stateless fee calculator for single options and combos."""

    def __init__(self, schedule: FeeSchedule | None = None) -> None:
        self._schedule = schedule or DEFAULT_FEE_SCHEDULE

    @property
    def schedule(self) -> FeeSchedule:
        return self._schedule

    def compute(self, ctx: FeeComputationContext) -> FeeBreakdown:
        """Price the trade and (optionally) delivery fees for a combo.

        Raises
        ------
        InvalidInputError
            If no legs are given or legs mix settlement currencies.
        """
        if not ctx.legs:
            raise InvalidInputError("no legs provided")
        settlement = ctx.legs[0].settlement
        if any(leg.settlement is not settlement for leg in ctx.legs):
            raise InvalidInputError("mixed settlement combos not supported")

        leg_fees = [self.trade_fee(leg) for leg in ctx.legs]
        leg_fees, discount_native, discount_usd = self._apply_combo_discount(leg_fees)

        delivery_native = ZERO
        delivery_usd = ZERO
        if ctx.hold_to_expiry:
            for leg in ctx.legs:
                if leg.is_daily:
                    continue
                fee_native, fee_usd = self.delivery_fee(leg)
                delivery_native += fee_native
                delivery_usd += fee_usd

        total_native = sum((fee.trade_fee_native for fee in leg_fees), ZERO) + delivery_native
        total_usd = sum((fee.trade_fee_usd for fee in leg_fees), ZERO) + delivery_usd

        return FeeBreakdown(
            legs=tuple(leg_fees),
            combo_discount=discount_native,
            combo_discount_usd=discount_usd,
            delivery_fee=delivery_native,
            delivery_fee_usd=delivery_usd,
            total_native=total_native,
            total_usd=total_usd,
        )

    def trade_fee(self, leg: LegFeeInput) -> LegFee:
        """Trade fee for one leg before any combo discount."""
        sched = self._schedule
        contracts = abs(leg.contracts)
        fee_native = ZERO
        fee_usd = ZERO
        if not contracts.is_zero():
            cap = leg.option_price * sched.premium_cap_rate
            if leg.settlement is SettlementCurrency.COIN:
                per_contract = min(sched.coin_fee_per_contract, cap)
                fee_native = per_contract * contracts * leg.contract_size
                fee_usd = fee_native * leg.index_price
            else:
                per_contract = min(leg.index_price * sched.linear_fee_rate, cap)
                fee_native = per_contract * contracts * leg.contract_size
                fee_usd = fee_native

        return LegFee(
            instrument_name=leg.instrument_name,
            side=leg.side,
            settlement=leg.settlement,
            execution_role=leg.role,
            trade_fee_native=fee_native,
            trade_fee_usd=fee_usd,
        )

    def delivery_fee(self, leg: LegFeeInput) -> tuple[Decimal, Decimal]:
        """Delivery fee ``(native, usd)`` for a leg held to expiry."""
        sched = self._schedule
        quantity = abs(leg.contracts) * leg.contract_size
        notional_usd = leg.index_price * quantity
        unit = ONE if leg.settlement is SettlementCurrency.USDC else leg.index_price
        option_value_usd = leg.option_price * quantity * unit
        fee_usd = min(notional_usd * sched.delivery_fee_rate, option_value_usd * sched.premium_cap_rate)
        if leg.settlement is SettlementCurrency.USDC:
            return fee_usd, fee_usd
        return safe_div(fee_usd, leg.index_price), fee_usd

    @staticmethod
    def _apply_combo_discount(
        leg_fees: list[LegFee],
    ) -> tuple[list[LegFee], Decimal, Decimal]:
        buy_native = sell_native = ZERO
        buy_usd = sell_usd = ZERO
        for fee in leg_fees:
            if fee.side is ComboSide.BUY:
                buy_native += fee.trade_fee_native
                buy_usd += fee.trade_fee_usd
            else:
                sell_native += fee.trade_fee_native
                sell_usd += fee.trade_fee_usd

        # Ties waive the buy side.
        if buy_usd <= sell_usd:
            waived_side, discount_native, discount_usd = ComboSide.BUY, buy_native, buy_usd
        else:
            waived_side, discount_native, discount_usd = ComboSide.SELL, sell_native, sell_usd

        adjusted = [
            replace(fee, trade_fee_native=ZERO, trade_fee_usd=ZERO) if fee.side is waived_side else fee
            for fee in leg_fees
        ]
        return adjusted, discount_native, discount_usd
