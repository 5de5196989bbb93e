from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import List, Sequence

from deribit_arb.decimal_math import format_money, normalize
from deribit_arb.models import StrategyOpportunity

LOGGER = logging.getLogger(__name__)

TABLE_HEADERS = (
    "Strategy",
    "Ccy",
    "Settlement",
    "Expiry",
    "Strikes",
    "Leg Count",
    "Legs",
    "Touch Prices",
    "Notional ($)",
    "Net Edge ($)",
    "Fees ($)",
    "Edge bps",
)

CSV_FIELDS = (
    "strategy",
    "currency",
    "settlement",
    "expiry",
    "strikes",
    "leg_count",
    "touch_prices",
    "net_edge_usd",
    "notional_usd",
    "fees_usd",
    "size_contracts",
)


def _strikes(opp: StrategyOpportunity) -> str:
    return "/".join(normalize(strike) for strike in opp.strikes)


def _legs(opp: StrategyOpportunity) -> str:
    return " ".join(f"{leg.side.value}:{leg.instrument_name}@{leg.ratio}" for leg in opp.legs)


def _touches(opp: StrategyOpportunity, with_size: bool) -> str:
    if not opp.touches:
        return "-"
    parts = []
    for touch in opp.touches:
        text = f"{touch.side.value}:{touch.instrument_name}@{normalize(touch.price)}"
        if with_size:
            text += f" ({normalize(touch.size_contracts)}c)"
        parts.append(text)
    return " ".join(parts)


def table_rows(opportunities: Sequence[StrategyOpportunity], limit: int) -> List[List[str]]:
    rows: List[List[str]] = []
    for opp in opportunities[: max(0, limit)]:
        rows.append(
            [
                opp.strategy.display_name,
                opp.currency.value,
                opp.settlement.label,
                "/".join(expiry.strftime("%Y-%m-%d") for expiry in opp.expiries),
                _strikes(opp),
                str(len(opp.legs)),
                _legs(opp),
                _touches(opp, with_size=True),
                format_money(opp.notional_usd),
                format_money(opp.net_edge_usd),
                format_money(opp.fees_usd),
                f"{opp.edge_bps:.2f}",
            ]
        )
    return rows


def render_table(opportunities: Sequence[StrategyOpportunity], limit: int = 10) -> str:
    """Plain-text table of the top ``limit`` opportunities."""
    if not opportunities:
        return "no opportunities found"
    rows = table_rows(opportunities, limit)
    widths = [len(header) for header in TABLE_HEADERS]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _line(cells: Sequence[str]) -> str:
        return " | ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(cells)).rstrip()

    separator = "-+-".join("-" * width for width in widths)
    lines = [_line(TABLE_HEADERS), separator]
    lines.extend(_line(row) for row in rows)
    return "\n".join(lines)


def export_csv(opportunities: Sequence[StrategyOpportunity], path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(CSV_FIELDS))
        writer.writeheader()
        for opp in opportunities:
            writer.writerow(
                {
                    "strategy": opp.strategy.display_name,
                    "currency": opp.currency.value,
                    "settlement": opp.settlement.label,
                    "expiry": "/".join(expiry.isoformat() for expiry in opp.expiries),
                    "strikes": _strikes(opp),
                    "leg_count": len(opp.legs),
                    "touch_prices": _touches(opp, with_size=False),
                    "net_edge_usd": normalize(opp.net_edge_usd),
                    "notional_usd": normalize(opp.notional_usd),
                    "fees_usd": normalize(opp.fees_usd),
                    "size_contracts": normalize(opp.size_contracts),
                }
            )
    LOGGER.info("wrote %d opportunities to %s", len(opportunities), out)
    return out
