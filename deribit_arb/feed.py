"""Market-data plumbing between the venue client and the option chain.

* :func:`discover` loads instruments and an initial ticker per instrument.
* :func:`stream_updates` applies WebSocket ticker updates for a bounded window.
* :class:`StatsReporter` logs chain coverage on a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Iterable, List

from deribit_arb.chain import ChainStats, OptionChain
from deribit_arb.errors import TransientError
from deribit_arb.exchanges.base import VenueClient
from deribit_arb.models import Currency, SettlementCurrency

LOGGER = logging.getLogger(__name__)


async def discover(
    client: VenueClient,
    chain: OptionChain,
    currencies: Iterable[Currency],
    settlements: Iterable[SettlementCurrency],
    pause_seconds: float = 0.0,
) -> List[str]:
    """Upsert every listed option and load tickers for the enabled settlements.

    Returns the names whose tickers were loaded. A failed ticker load
    propagates: the scan cannot run on a partially loaded chain.
    """
    enabled = frozenset(settlements)
    loaded: List[str] = []
    for currency in currencies:
        instruments = await client.get_instruments(currency)
        for instrument in instruments:
            chain.upsert_instrument(instrument)

        wanted = [
            inst
            for inst in instruments
            if not inst.is_combo and inst.settlement_currency in enabled
        ]
        LOGGER.info(
            "discovered %s instruments=%d loading tickers=%d",
            currency.value,
            len(instruments),
            len(wanted),
        )
        for instrument in wanted:
            quote = await client.get_ticker(instrument.instrument_name)
            chain.update_quote(instrument.instrument_name, quote)
            loaded.append(instrument.instrument_name)
            if pause_seconds > 0:
                await asyncio.sleep(pause_seconds)
    return loaded


async def stream_updates(
    client: VenueClient,
    chain: OptionChain,
    instrument_names: List[str],
    duration_seconds: float,
) -> int:
    """Apply streamed ticker updates for ``duration_seconds``; returns the update count."""
    if duration_seconds <= 0 or not instrument_names or not client.supports_streaming():
        return 0

    updates = 0

    async def _consume() -> None:
        nonlocal updates
        async for name, quote in client.stream_tickers(instrument_names):
            chain.update_quote(name, quote)
            updates += 1

    try:
        await asyncio.wait_for(_consume(), timeout=duration_seconds)
    except asyncio.TimeoutError:
        pass
    except TransientError as exc:
        LOGGER.warning("ticker stream stopped early after %d updates: %s", updates, exc)
    LOGGER.info("ticker stream window closed updates=%d", updates)
    return updates


class StatsReporter:
    def __init__(self, chain: OptionChain, interval_seconds: float) -> None:
        self._chain = chain
        self._interval = max(0.1, interval_seconds)
        self._task: asyncio.Task[None] | None = None

    def report(self) -> ChainStats:
        stats = self._chain.stats()
        LOGGER.info(
            "chain instruments=%d quoted=%d fresh_10s=%d bids=%d asks=%d",
            *stats.as_tuple(),
        )
        return stats

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.report()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
