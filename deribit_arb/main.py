from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Dict, List, Sequence

from deribit_arb.chain import OptionChain
from deribit_arb.config import AppSettings, load_settings
from deribit_arb.errors import ConfigError, InvalidInputError, TransientError
from deribit_arb.exchanges import DeribitClient, VenueClient
from deribit_arb.execution import ExecutionPlanner
from deribit_arb.feed import StatsReporter, discover, stream_updates
from deribit_arb.logging_setup import configure_logging
from deribit_arb.models import StrategyOpportunity
from deribit_arb.render import export_csv, render_table
from deribit_arb.risk import RiskManager
from deribit_arb.strategy import DetectorSuite

LOGGER = logging.getLogger(__name__)

# CLI flag destination -> environment variable it overrides.
_FLAG_ENV = {
    "env": "DERIBIT_ENV",
    "currencies": "CURRENCIES",
    "linears": "LINEARS",
    "dry_run": "DRY_RUN",
    "max_ticket": "MAX_TICKET_USD",
    "min_edge_usd": "MIN_EDGE_USD",
    "min_edge_ratio": "MIN_EDGE_RATIO",
    "hold_to_expiry": "HOLD_TO_EXPIRY",
    "only": "ONLY",
    "max_concurrent_combos": "MAX_CONCURRENT_COMBOS",
    "min_depth_contracts": "MIN_DEPTH_CONTRACTS",
    "box_edge_ratio_exempt": "BOX_EDGE_RATIO_EXEMPT",
    "log_level": "LOG_LEVEL",
    "top": "TOP",
    "csv": "CSV_PATH",
    "stream_seconds": "STREAM_SECONDS",
    "stats_interval": "STATS_INTERVAL_SECONDS",
    "plan_top": "PLAN_TOP",
    "discovery_pause_ms": "DISCOVERY_PAUSE_MS",
}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="deribit-arb",
        description="Scan Deribit option chains for multi-leg combo arbitrage",
    )
    parser.add_argument("--env", help="test/testnet or prod/production/main (default: test)")
    parser.add_argument("--currencies", help="Comma-separated currencies to scan (default: BTC,ETH)")
    parser.add_argument("--linears", help="Enabled settlements: usdc,coin (default: both)")
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Only preview combos, never submit (default: on)",
    )
    parser.add_argument("--max-ticket", help="USD cap per combo ticket (default: 20000)")
    parser.add_argument("--min-edge-usd", help="Minimum net edge in USD (default: 50)")
    parser.add_argument("--min-edge-ratio", help="Minimum net edge / fees ratio, >= 1.0 (default: 2.0)")
    parser.add_argument(
        "--hold-to-expiry",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include delivery fees in the edge calculation",
    )
    parser.add_argument(
        "--only",
        help="Detector allow-list: vertical,butterfly,calendar,box,jelly,stale (default: all but stale)",
    )
    parser.add_argument("--max-concurrent-combos", help="Risk gate on live combos (default: 3)")
    parser.add_argument("--min-depth-contracts", help="Minimum touch amount per leg (default: 1)")
    parser.add_argument(
        "--box-edge-ratio-exempt",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Let boxes skip the edge/fee ratio gate",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument("--top", help="Rows shown in the opportunity table (default: 10)")
    parser.add_argument("--csv", help="Also export all opportunities to this CSV path")
    parser.add_argument(
        "--stream-seconds",
        help="Stream ticker updates for N seconds after discovery before scanning (default: 0)",
    )
    parser.add_argument("--stats-interval", help="Seconds between chain stats log lines (default: 5)")
    parser.add_argument(
        "--plan-top",
        help="How many top opportunities go through risk and combo preview (default: 3)",
    )
    parser.add_argument("--discovery-pause-ms", help="Pause between ticker loads (default: 25)")
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> Dict[str, str | None]:
    overrides: Dict[str, str | None] = {}
    for dest, env_name in _FLAG_ENV.items():
        value = getattr(args, dest, None)
        if value is None:
            continue
        overrides[env_name] = ("true" if value else "false") if isinstance(value, bool) else str(value)
    return overrides


async def plan_top_opportunities(
    opportunities: Sequence[StrategyOpportunity],
    risk: RiskManager,
    planner: ExecutionPlanner,
    limit: int,
) -> int:
    """Risk-check and preview the best ``limit`` opportunities; returns previews produced."""
    previews = 0
    for opportunity in opportunities[: max(0, limit)]:
        if not risk.approve(opportunity):
            continue
        try:
            report = await planner.plan(opportunity)
        except (InvalidInputError, TransientError) as exc:
            LOGGER.warning(
                "planning failed for %s %s: %s",
                opportunity.strategy.value,
                opportunity.currency.value,
                exc,
            )
            continue
        finally:
            risk.release()
        previews += 1
        LOGGER.info(
            "execution report combo=%s submitted=%s preview=%s",
            report.combo_id,
            report.submitted,
            report.preview,
        )
    return previews


async def run_scan(settings: AppSettings, client: VenueClient) -> int:
    chain = OptionChain()
    reporter = StatsReporter(chain, settings.stats_interval_seconds)
    reporter.start()
    try:
        try:
            loaded = await discover(
                client,
                chain,
                settings.currencies,
                settings.settlements,
                pause_seconds=settings.discovery_pause_ms / 1000.0,
            )
        except TransientError as exc:
            LOGGER.error("discovery failed: %s", exc)
            return 1

        await stream_updates(client, chain, loaded, settings.stream_seconds)
        reporter.report()

        suite = DetectorSuite(
            settings.strategy,
            settings.sizing,
            dry_run=settings.dry_run,
            settlements=settings.settlements,
        )
        opportunities = suite.scan(chain.snapshot())
        LOGGER.info("scan complete opportunities=%d", len(opportunities))

        print(render_table(opportunities, settings.top))
        if settings.csv_path:
            export_csv(opportunities, settings.csv_path)

        risk = RiskManager(settings.risk)
        planner = ExecutionPlanner(client, settings.sizing.min_depth_contracts)
        await plan_top_opportunities(opportunities, risk, planner, settings.plan_top)
        return 0
    finally:
        await reporter.stop()


async def _run(settings: AppSettings) -> int:
    client = DeribitClient(settings.venue)
    try:
        return await run_scan(settings, client)
    finally:
        await client.aclose()


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(cli_overrides(args))
    except ConfigError as exc:
        configure_logging("INFO")
        LOGGER.error("configuration error: %s", exc)
        return 2

    configure_logging(settings.log_level)
    LOGGER.info("deribit-arb starting %s", settings.summary())
    return asyncio.run(_run(settings))


if __name__ == "__main__":
    raise SystemExit(main())
