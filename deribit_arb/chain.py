"""In-memory option chain.

Holds the latest ``(instrument, quote, order book)`` per instrument name.
Market-data producers write through :meth:`OptionChain.update_quote` and
friends; detectors read an immutable point-in-time copy via
:meth:`OptionChain.snapshot`.

Usage::

    chain = OptionChain()
    chain.upsert_instrument(instrument)
    chain.update_quote(instrument.instrument_name, quote)
    snap = chain.snapshot()
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator

from deribit_arb.models import (
    ChainSnapshot,
    Instrument,
    InstrumentSnapshot,
    OrderBook,
    Quote,
)

FRESHNESS_HORIZON = timedelta(seconds=10)


@dataclass(frozen=True)
class ChainStats:
    instrument_count: int
    instruments_with_quotes: int
    instruments_fresh_10s: int
    bid_levels: int
    ask_levels: int

    def as_tuple(self) -> tuple[int, int, int, int, int]:
        return (
            self.instrument_count,
            self.instruments_with_quotes,
            self.instruments_fresh_10s,
            self.bid_levels,
            self.ask_levels,
        )


class _ReadWriteLock:
    """Many concurrent readers or a single writer.

    New readers wait while any writer is queued.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class OptionChain:
    """Latest snapshot per instrument, shared between producers and readers."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._entries: Dict[str, InstrumentSnapshot] = {}
        self._lock = _ReadWriteLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def upsert_instrument(self, instrument: Instrument) -> None:
        name = instrument.instrument_name
        with self._lock.write():
            existing = self._entries.get(name)
            if existing is None:
                self._entries[name] = InstrumentSnapshot(
                    instrument=instrument,
                    quote=Quote.empty(self._clock()),
                )
            else:
                self._entries[name] = replace(existing, instrument=instrument)

    def update_quote(self, instrument_name: str, quote: Quote) -> None:
        # Unknown names are ignored: producers upsert the instrument first.
        with self._lock.write():
            existing = self._entries.get(instrument_name)
            if existing is not None:
                self._entries[instrument_name] = replace(existing, quote=quote)

    def update_order_book(self, instrument_name: str, order_book: OrderBook) -> None:
        with self._lock.write():
            existing = self._entries.get(instrument_name)
            if existing is not None:
                self._entries[instrument_name] = replace(existing, order_book=order_book)

    def get(self, instrument_name: str) -> InstrumentSnapshot | None:
        with self._lock.read():
            return self._entries.get(instrument_name)

    def instrument_names(self) -> list[str]:
        with self._lock.read():
            return list(self._entries.keys())

    def snapshot(self) -> ChainSnapshot:
        # Entries are frozen dataclasses, so copying the container is enough
        # to isolate readers from later writes.
        with self._lock.read():
            instruments = tuple(self._entries.values())
        return ChainSnapshot(timestamp=self._clock(), instruments=instruments)

    def stats(self) -> ChainStats:
        now = self._clock()
        with_quote = fresh = bids = asks = 0
        with self._lock.read():
            count = len(self._entries)
            for entry in self._entries.values():
                quote = entry.quote
                if quote.has_touch:
                    with_quote += 1
                if now - quote.timestamp <= FRESHNESS_HORIZON:
                    fresh += 1
                if quote.best_bid is not None:
                    bids += 1
                if quote.best_ask is not None:
                    asks += 1
        return ChainStats(
            instrument_count=count,
            instruments_with_quotes=with_quote,
            instruments_fresh_10s=fresh,
            bid_levels=bids,
            ask_levels=asks,
        )

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)
