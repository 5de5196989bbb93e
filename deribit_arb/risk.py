from __future__ import annotations

import logging
import threading
from decimal import Decimal

from deribit_arb.config import RiskSettings
from deribit_arb.decimal_math import ONE, ZERO
from deribit_arb.models import StrategyOpportunity

LOGGER = logging.getLogger(__name__)


class RiskManager:
    """Process-wide gate on concurrent combos, ticket size and recent PnL."""

    def __init__(self, settings: RiskSettings) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._live_combos = 0
        self._ewma_pnl = ZERO

    @property
    def live_combos(self) -> int:
        with self._lock:
            return self._live_combos

    @property
    def ewma_pnl(self) -> Decimal:
        with self._lock:
            return self._ewma_pnl

    def precheck(self, opportunity: StrategyOpportunity) -> tuple[bool, str]:
        with self._lock:
            return self._check_locked(opportunity)

    def approve(self, opportunity: StrategyOpportunity) -> bool:
        """Reserve a combo slot if every limit holds."""
        with self._lock:
            allowed, reason = self._check_locked(opportunity)
            if allowed:
                self._live_combos += 1
                live = self._live_combos
        if not allowed:
            LOGGER.warning(
                "risk rejected %s %s: %s",
                opportunity.strategy.value,
                opportunity.currency.value,
                reason,
            )
            return False
        LOGGER.info(
            "risk approved %s %s notional=%s live=%d",
            opportunity.strategy.value,
            opportunity.currency.value,
            opportunity.notional_usd,
            live,
        )
        return True

    def release(self) -> None:
        with self._lock:
            if self._live_combos > 0:
                self._live_combos -= 1

    def record_pnl(self, pnl_usd: Decimal) -> Decimal:
        alpha = self._settings.pnl_ewma_alpha
        with self._lock:
            self._ewma_pnl = (ONE - alpha) * self._ewma_pnl + alpha * pnl_usd
            return self._ewma_pnl

    def _check_locked(self, opportunity: StrategyOpportunity) -> tuple[bool, str]:
        if self._live_combos >= self._settings.max_concurrent_combos:
            return False, f"concurrent combo cap reached ({self._live_combos})"
        if opportunity.notional_usd > self._settings.max_ticket_usd:
            return False, f"notional {opportunity.notional_usd} exceeds ticket cap {self._settings.max_ticket_usd}"
        if self._ewma_pnl < ZERO:
            return False, f"recent pnl negative ({self._ewma_pnl})"
        return True, "ok"
