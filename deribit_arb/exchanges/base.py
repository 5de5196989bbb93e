from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any, Sequence

from deribit_arb.models import ComboDefinition, ComboLeg, Currency, Instrument, Quote


class VenueClient(ABC):
    venue: str

    @abstractmethod
    async def get_instruments(self, currency: Currency) -> list[Instrument]:
        raise NotImplementedError

    @abstractmethod
    async def get_ticker(self, instrument_name: str) -> Quote:
        raise NotImplementedError

    @abstractmethod
    async def create_combo(self, name: str, legs: Sequence[ComboLeg], is_usdc: bool) -> str:
        raise NotImplementedError

    @abstractmethod
    async def get_leg_prices(self, combo_id: str, amount: Decimal) -> Any:
        raise NotImplementedError

    async def get_combo_ids(self, currency: Currency) -> list[str]:
        return []

    async def get_combo_details(self, combo_id: str) -> ComboDefinition | None:
        return None

    def supports_streaming(self) -> bool:
        return False

    async def stream_tickers(self, instrument_names: Sequence[str]) -> AsyncIterator[tuple[str, Quote]]:
        if False:
            yield
        return

    async def aclose(self) -> None:
        return None
