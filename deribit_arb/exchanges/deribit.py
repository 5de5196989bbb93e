from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

import httpx
import websockets

from deribit_arb.config import VenueSettings
from deribit_arb.decimal_math import ONE, ZERO, to_decimal, to_float
from deribit_arb.errors import InstrumentNameError, InvalidInputError, TransientError
from deribit_arb.models import (
    ComboDefinition,
    ComboLeg,
    ComboSide,
    Currency,
    Instrument,
    Quote,
    QuoteLevel,
    SettlementCurrency,
    parse_instrument_name,
)

from .base import VenueClient

LOGGER = logging.getLogger(__name__)

JSON_RPC_VERSION = "2.0"
TOKEN_REFRESH_MARGIN_SECONDS = 30.0
DEFAULT_TOKEN_TTL_SECONDS = 3000
SUBSCRIBE_BATCH_SIZE = 200


def _request_id() -> int:
    return random.getrandbits(63)


def _timestamp_from_ms(value: Any, now: datetime | None = None) -> datetime:
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return now or datetime.now(timezone.utc)
    return datetime.fromtimestamp(millis // 1000, tz=timezone.utc)


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _level(price: Any, amount: Any) -> QuoteLevel | None:
    if price is None or amount is None:
        return None
    return QuoteLevel(price=to_decimal(price, ZERO), amount=to_decimal(amount, ZERO))


def parse_quote(data: Mapping[str, Any], now: datetime | None = None) -> Quote:
    """Build a :class:`Quote` from ticker fields (REST result or WS ``params.data``).

    A bid or ask is only present when both its price and amount are.
    """
    return Quote(
        timestamp=_timestamp_from_ms(data.get("timestamp"), now),
        index_price=to_decimal(data.get("index_price"), ZERO),
        best_bid=_level(data.get("best_bid_price"), data.get("best_bid_amount")),
        best_ask=_level(data.get("best_ask_price"), data.get("best_ask_amount")),
        mark_iv=_optional_float(data.get("mark_iv")),
        bid_iv=_optional_float(data.get("bid_iv")),
        ask_iv=_optional_float(data.get("ask_iv")),
        interest_rate=_optional_float(data.get("interest_rate")),
    )


def parse_quote_from_ticker(payload: Mapping[str, Any], now: datetime | None = None) -> Quote | None:
    params = payload.get("params")
    if not isinstance(params, Mapping):
        return None
    data = params.get("data")
    if not isinstance(data, Mapping):
        return None
    return parse_quote(data, now)


def parse_instrument(payload: Mapping[str, Any]) -> Instrument:
    """Instrument from a ``public/get_instruments`` entry.

    Raises
    ------
    InstrumentNameError
        If the instrument name does not follow ``CCY-dMMMyy-STRIKE-K``.
    """
    name = str(payload.get("instrument_name") or "")
    parsed = parse_instrument_name(name)
    expiry_ms = payload.get("expiration_timestamp")
    expiry = _timestamp_from_ms(expiry_ms) if expiry_ms is not None else parsed.expiry_date()
    return Instrument(
        instrument_name=name,
        currency=parsed.currency,
        option_kind=parsed.option_kind,
        strike=to_decimal(payload.get("strike"), parsed.strike),
        expiry=expiry,
        settlement_currency=SettlementCurrency.from_venue(payload.get("settlement_currency")),
        contract_size=to_decimal(payload.get("contract_size"), ONE),
        tick_size=to_decimal(payload.get("tick_size"), Decimal("0.1")),
        min_trade_amount=to_decimal(payload.get("min_trade_amount"), ONE),
        is_combo=bool(payload.get("is_combo") or False),
    )


def parse_stream_frames(raw: str | bytes) -> list[dict[str, Any]]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return []
    frames = payload if isinstance(payload, list) else [payload]
    return [frame for frame in frames if isinstance(frame, dict)]


def ticker_update_from_frame(frame: Mapping[str, Any]) -> tuple[str, Quote] | None:
    """``(instrument_name, quote)`` for a ticker subscription frame, else None."""
    params = frame.get("params")
    if not isinstance(params, Mapping):
        return None
    channel = str(params.get("channel") or "")
    if not channel.startswith("ticker."):
        return None
    try:
        quote = parse_quote_from_ticker(frame)
    except InvalidInputError as exc:
        LOGGER.warning("bad ticker frame on %s: %s", channel, exc)
        return None
    if quote is None:
        return None
    name = params["data"].get("instrument_name") or channel.split(".")[1]
    return str(name), quote


@dataclass
class _AccessToken:
    token: str
    expires_at: float


class DeribitClient(VenueClient):
    """JSON-RPC client for the Deribit v2 API plus a WebSocket ticker stream."""

    venue = "deribit"

    def __init__(
        self,
        settings: VenueSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._client = httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            headers={"User-Agent": "deribit-arb/0.1"},
            transport=transport,
        )
        self._token: _AccessToken | None = None
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    async def _post(self, method: str, params: Mapping[str, Any]) -> Any:
        body = {
            "jsonrpc": JSON_RPC_VERSION,
            "id": _request_id(),
            "method": method,
            "params": dict(params),
        }
        try:
            response = await self._client.post(self._settings.http_url, json=body)
        except httpx.HTTPError as exc:
            raise TransientError(f"failed to call {method}: {exc}") from exc

        if response.status_code >= 400:
            raise TransientError(f"HTTP {response.status_code} for {method}: {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientError(f"failed to parse response for {method}") from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            message = error.get("message", "unknown") if isinstance(error, dict) else error
            code = error.get("code") if isinstance(error, dict) else None
            raise TransientError(f"RPC error {method}: {message} ({code})")
        if not isinstance(payload, dict) or payload.get("result") is None:
            raise TransientError(f"missing result for {method}")
        return payload["result"]

    async def _call(self, method: str, params: Mapping[str, Any], private: bool = False) -> Any:
        if private:
            token = await self._ensure_token()
            params = {**params, "access_token": token}
        return await self._post(method, params)

    async def _ensure_token(self) -> str:
        if not self._settings.has_credentials:
            raise TransientError("API key/secret required for private call")
        async with self._token_lock:
            now = self._clock()
            if self._token is not None and self._token.expires_at - TOKEN_REFRESH_MARGIN_SECONDS > now:
                return self._token.token

            result = await self._post(
                "public/auth",
                {
                    "grant_type": "client_credentials",
                    "client_id": self._settings.api_key,
                    "client_secret": self._settings.api_secret,
                },
            )
            access_token = result.get("access_token") if isinstance(result, dict) else None
            if not access_token:
                raise TransientError("auth response missing access_token")
            try:
                expires_in = int(result.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
            except (TypeError, ValueError):
                expires_in = DEFAULT_TOKEN_TTL_SECONDS
            self._token = _AccessToken(token=str(access_token), expires_at=now + expires_in)
            LOGGER.debug("deribit auth token refreshed, expires_in=%ds", expires_in)
            return self._token.token

    # ------------------------------------------------------------------
    # Public endpoints
    # ------------------------------------------------------------------

    async def get_instruments(self, currency: Currency) -> list[Instrument]:
        result = await self._call(
            "public/get_instruments",
            {"currency": currency.value, "kind": "option", "expired": False},
        )
        instruments: list[Instrument] = []
        for entry in result or []:
            try:
                instruments.append(parse_instrument(entry))
            except InstrumentNameError as exc:
                LOGGER.warning("skipping instrument %s: %s", entry.get("instrument_name"), exc)
        return instruments

    async def get_ticker(self, instrument_name: str) -> Quote:
        result = await self._call("public/ticker", {"instrument_name": instrument_name})
        try:
            return parse_quote(result)
        except InvalidInputError as exc:
            raise TransientError(f"invalid ticker for {instrument_name}: {exc}") from exc

    async def get_combo_ids(self, currency: Currency) -> list[str]:
        result = await self._call("public/get_combo_ids", {"currency": currency.value})
        ids: list[str] = []
        for entry in result or []:
            combo_id = entry.get("combo_id") if isinstance(entry, dict) else entry
            if combo_id:
                ids.append(str(combo_id))
        return ids

    async def get_combo_details(self, combo_id: str) -> ComboDefinition:
        result = await self._call("public/get_combo_details", {"combo_id": combo_id})
        legs: list[ComboLeg] = []
        for leg in result.get("legs", []):
            direction = str(leg.get("direction", "")).lower()
            if direction not in {"buy", "sell"}:
                LOGGER.warning("unknown combo leg direction %s on %s", direction, combo_id)
                direction = "buy"
            legs.append(
                ComboLeg(
                    instrument_name=str(leg.get("instrument_name")),
                    ratio=abs(int(leg.get("ratio", 1))) or 1,
                    side=ComboSide(direction),
                )
            )
        try:
            currency = Currency.parse(str(result.get("currency", "")))
        except InvalidInputError as exc:
            raise TransientError(f"combo {combo_id}: {exc}") from exc
        return ComboDefinition(
            combo_id=combo_id,
            currency=currency,
            settlement=SettlementCurrency.from_venue(result.get("settlement_currency")),
            description=str(result.get("description", "")),
            legs=tuple(legs),
        )

    # ------------------------------------------------------------------
    # Private endpoints
    # ------------------------------------------------------------------

    async def create_combo(self, name: str, legs: Sequence[ComboLeg], is_usdc: bool) -> str:
        result = await self._call(
            "private/create_combo",
            {
                "name": name,
                "settlement": "usdc" if is_usdc else "coin",
                "legs": [leg.to_payload() for leg in legs],
            },
            private=True,
        )
        combo_id = result.get("combo_id") if isinstance(result, dict) else None
        if not combo_id:
            raise TransientError("create_combo response missing combo_id")
        return str(combo_id)

    async def get_leg_prices(self, combo_id: str, amount: Decimal) -> Any:
        return await self._call(
            "private/get_leg_prices",
            {"combo_id": combo_id, "amount": to_float(amount)},
            private=True,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def supports_streaming(self) -> bool:
        return True

    async def stream_tickers(self, instrument_names: Sequence[str]) -> AsyncIterator[tuple[str, Quote]]:
        channels = [f"ticker.{name}.100ms" for name in instrument_names]
        if not channels:
            return
        try:
            async with websockets.connect(
                self._settings.ws_url,
                ping_interval=20,
                ping_timeout=10,
                max_size=None,
            ) as socket:
                for start in range(0, len(channels), SUBSCRIBE_BATCH_SIZE):
                    batch = channels[start : start + SUBSCRIBE_BATCH_SIZE]
                    await socket.send(
                        json.dumps(
                            {
                                "jsonrpc": JSON_RPC_VERSION,
                                "id": _request_id(),
                                "method": "public/subscribe",
                                "params": {"channels": batch},
                            }
                        )
                    )
                LOGGER.info("deribit stream subscribed to %d ticker channels", len(channels))

                async for raw in socket:
                    for frame in parse_stream_frames(raw):
                        if frame.get("error"):
                            LOGGER.warning("deribit stream error frame: %s", frame["error"])
                            continue
                        if frame.get("method") != "subscription":
                            continue
                        update = ticker_update_from_frame(frame)
                        if update is not None:
                            yield update
        except (websockets.exceptions.WebSocketException, OSError) as exc:
            raise TransientError(f"deribit stream failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
