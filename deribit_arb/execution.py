from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from deribit_arb.errors import InvalidInputError
from deribit_arb.exchanges.base import VenueClient
from deribit_arb.models import SettlementCurrency, StrategyOpportunity

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionReport:
    combo_id: str
    preview: Any
    submitted: bool = False


def combo_name(opportunity: StrategyOpportunity) -> str:
    """Deterministic combo name, e.g. ``vertical-BTC-20241225-2``."""
    expiry = opportunity.first_expiry
    expiry_label = expiry.strftime("%Y%m%d") if expiry is not None else "NA"
    return f"{opportunity.strategy.value}-{opportunity.currency.value}-{expiry_label}-{len(opportunity.legs)}"


class ExecutionPlanner:
    """Resolves a combo id for an opportunity and fetches a leg-price preview.

    Orders are never sent from here; non-dry-run plans are only flagged.
    """

    def __init__(self, client: VenueClient, min_depth_contracts: Decimal) -> None:
        self._client = client
        self._min_depth = min_depth_contracts

    async def plan(self, opportunity: StrategyOpportunity) -> ExecutionReport:
        if opportunity.size_contracts < self._min_depth:
            raise InvalidInputError(
                f"size {opportunity.size_contracts} below min depth {self._min_depth}"
            )

        combo_id = await self._resolve_combo_id(opportunity)
        preview = await self._client.get_leg_prices(combo_id, opportunity.size_contracts)
        LOGGER.info(
            "leg price preview combo=%s size=%s strategy=%s",
            combo_id,
            opportunity.size_contracts,
            opportunity.strategy.value,
        )

        if not opportunity.execution_plan.dry_run:
            LOGGER.warning("auto-submission not implemented; combo %s left unsubmitted", combo_id)
        return ExecutionReport(combo_id=combo_id, preview=preview, submitted=False)

    async def _resolve_combo_id(self, opportunity: StrategyOpportunity) -> str:
        existing = opportunity.execution_plan.create_payload.get("combo_id")
        if existing:
            return str(existing)
        name = combo_name(opportunity)
        combo_id = await self._client.create_combo(
            name,
            opportunity.legs,
            is_usdc=opportunity.settlement is SettlementCurrency.USDC,
        )
        LOGGER.info("created combo %s as %s", name, combo_id)
        return combo_id
