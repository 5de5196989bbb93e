from __future__ import annotations

from decimal import Decimal

from deribit_arb.config import SizingSettings
from deribit_arb.decimal_math import ZERO, safe_div
from deribit_arb.models import InstrumentSnapshot, QuoteLevel


class TicketSizer:
    """Depth gate and USD ticket cap shared by every detector."""

    def __init__(self, settings: SizingSettings) -> None:
        self._settings = settings

    @property
    def min_depth(self) -> Decimal:
        return self._settings.min_depth_contracts

    def has_depth(self, level: QuoteLevel | None) -> bool:
        if level is None:
            return False
        return level.amount > ZERO and level.amount >= self._settings.min_depth_contracts

    def ticket_cap(self, base: InstrumentSnapshot) -> Decimal:
        """Largest size the base leg supports under the USD ticket.

        Falls back to the minimum depth when the base leg has no usable index.
        """
        index = base.quote.index_price
        contract_size = base.instrument.contract_size
        unit_usd = index * contract_size
        if index.is_zero() or unit_usd.is_zero():
            return self._settings.min_depth_contracts

        by_ticket = safe_div(self._settings.max_ticket_usd, unit_usd)
        ask_amount = base.quote.best_ask.amount if base.quote.best_ask is not None else ZERO
        bid_amount = base.quote.best_bid.amount if base.quote.best_bid is not None else ZERO
        return max(ZERO, min(by_ticket, max(ask_amount, bid_amount)))

    def clip(self, base: InstrumentSnapshot, *available: Decimal) -> Decimal | None:
        """Feasible size: the smallest available amount, capped by the ticket.

        Returns ``None`` when nothing can be traded.
        """
        size = min((*available, self.ticket_cap(base)))
        if size <= ZERO:
            return None
        return size
