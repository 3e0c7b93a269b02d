"""Quote provider adapters and concurrent quote resolution.

Market data is an external input. Providers implement :class:`QuoteProvider`; the snapshotter
resolves every open instrument through :func:`fetch_quotes`, which runs requests concurrently
and isolates failures per symbol.
"""

from __future__ import annotations

import asyncio
import os
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import httpx
import structlog

from ..core.instruments import occ_symbol
from ..core.models import Position
from ..errors import QuoteUnavailableError

logger = structlog.get_logger(__name__)

QUOTE_URL_ENV_VAR = "POSITIONFLOW_QUOTE_URL"
QUOTE_TIMEOUT_ENV_VAR = "POSITIONFLOW_QUOTE_TIMEOUT"
DEFAULT_QUOTE_TIMEOUT = 10.0


@dataclass(frozen=True)
class Quote:
    """A point-in-time market quote."""

    symbol: str
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None
    last: Optional[Decimal] = None
    volume: Optional[int] = None
    open_interest: Optional[int] = None
    greeks: Mapping[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class QuoteRequest:
    """What to ask a provider for: the display symbol and the provider-facing symbol."""

    symbol: str
    asset_type: str
    quote_symbol: str

    @classmethod
    def for_position(cls, position: Position) -> "QuoteRequest":
        quote_symbol = position.symbol
        if (
            position.asset_type == "option"
            and position.expiration_date is not None
            and position.option_type is not None
            and position.strike_price is not None
        ):
            quote_symbol = occ_symbol(
                position.symbol,
                position.expiration_date,
                position.option_type,
                position.strike_price,
            )
        elif position.asset_type == "futures" and position.contract_month:
            quote_symbol = f"{position.symbol}{position.contract_month}"
        return cls(symbol=quote_symbol, asset_type=position.asset_type, quote_symbol=quote_symbol)


class QuoteProvider(Protocol):
    async def get_quote(self, request: QuoteRequest) -> Optional[Quote]:
        """Return a quote, ``None`` when the symbol is unknown, or raise on provider failure."""
        ...


def mark_price(quote: Optional[Quote]) -> Optional[Decimal]:
    """Bid/ask midpoint when both sides are positive, otherwise the last trade."""
    if quote is None:
        return None
    if quote.bid is not None and quote.ask is not None and quote.bid > 0 and quote.ask > 0:
        return (quote.bid + quote.ask) / 2
    return quote.last


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def quote_from_payload(symbol: str, payload: Mapping[str, Any]) -> Quote:
    """Build a :class:`Quote` from a provider JSON payload."""
    greeks_payload = payload.get("greeks") or {}
    greeks = {
        name: parsed
        for name, raw in greeks_payload.items()
        if (parsed := _to_decimal(raw)) is not None
    }
    return Quote(
        symbol=symbol,
        bid=_to_decimal(payload.get("bid")),
        ask=_to_decimal(payload.get("ask")),
        last=_to_decimal(payload.get("last")),
        volume=_to_int(payload.get("volume")),
        open_interest=_to_int(payload.get("open_interest")),
        greeks=greeks,
    )


class StaticQuoteProvider:
    """In-memory provider keyed by quote symbol, for tests and offline runs."""

    def __init__(self, quotes: Optional[Mapping[str, Quote]] = None) -> None:
        self._quotes: Dict[str, Quote] = dict(quotes or {})

    @classmethod
    def from_prices(cls, prices: Mapping[str, Any]) -> "StaticQuoteProvider":
        """Build a provider from ``{symbol: last}`` or ``{symbol: {bid, ask, last}}`` data."""
        quotes: Dict[str, Quote] = {}
        for symbol, value in prices.items():
            key = symbol.upper()
            if isinstance(value, Mapping):
                quotes[key] = quote_from_payload(key, value)
            else:
                quotes[key] = Quote(symbol=key, last=_to_decimal(value))
        return cls(quotes)

    def set_quote(self, quote: Quote) -> None:
        self._quotes[quote.symbol.upper()] = quote

    async def get_quote(self, request: QuoteRequest) -> Optional[Quote]:
        return self._quotes.get(request.quote_symbol.upper())


class HttpQuoteProvider:
    """Quote provider backed by a JSON HTTP endpoint (``GET {base_url}/quotes/{symbol}``)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        resolved_url = base_url or os.environ.get(QUOTE_URL_ENV_VAR)
        if not resolved_url:
            raise ValueError(f"Quote endpoint not configured; set {QUOTE_URL_ENV_VAR}.")
        self._base_url = resolved_url.rstrip("/")
        if timeout is None:
            timeout = float(os.environ.get(QUOTE_TIMEOUT_ENV_VAR, DEFAULT_QUOTE_TIMEOUT))
        self._timeout = timeout
        self._client = client

    @property
    def base_url(self) -> str:
        return self._base_url

    async def get_quote(self, request: QuoteRequest) -> Optional[Quote]:
        url = f"{self._base_url}/quotes/{request.quote_symbol}"
        params = {"asset_type": request.asset_type}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, params=params)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise QuoteUnavailableError(
                request.quote_symbol, f"HTTP {exc.response.status_code}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise QuoteUnavailableError(request.quote_symbol, "request timed out") from exc
        except httpx.RequestError as exc:
            raise QuoteUnavailableError(request.quote_symbol, str(exc)) from exc
        except ValueError as exc:
            raise QuoteUnavailableError(request.quote_symbol, "invalid JSON payload") from exc
        return quote_from_payload(request.quote_symbol, payload)


@dataclass
class QuoteBatch:
    """Quotes resolved for a set of requests plus the symbols that could not be priced."""

    quotes: Dict[str, Quote] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def price_for(self, quote_symbol: str) -> Optional[Decimal]:
        return mark_price(self.quotes.get(quote_symbol))


async def _resolve_one(
    provider: QuoteProvider, request: QuoteRequest
) -> Tuple[QuoteRequest, Optional[Quote], Optional[str]]:
    try:
        quote = await provider.get_quote(request)
    except Exception as exc:  # noqa: BLE001 - one bad symbol must not abort the batch
        logger.warning(
            "quotes.fetch_failed",
            symbol=request.quote_symbol,
            asset_type=request.asset_type,
            error=str(exc),
        )
        return request, None, str(exc)
    if quote is None or mark_price(quote) is None:
        return request, None, "no quote"
    return request, quote, None


async def fetch_quotes(provider: QuoteProvider, requests: Iterable[QuoteRequest]) -> QuoteBatch:
    """Resolve quotes concurrently, one task per symbol, batched by asset type."""
    batches: Dict[str, List[QuoteRequest]] = defaultdict(list)
    seen = set()
    for request in requests:
        if request.quote_symbol in seen:
            continue
        seen.add(request.quote_symbol)
        batches[request.asset_type].append(request)

    async def _run_batch(batch: List[QuoteRequest]):  # type: ignore[no-untyped-def]
        return await asyncio.gather(*(_resolve_one(provider, request) for request in batch))

    results = await asyncio.gather(*(_run_batch(batch) for batch in batches.values()))

    resolved = QuoteBatch()
    for batch_results in results:
        for request, quote, failure in batch_results:
            if quote is not None:
                resolved.quotes[request.quote_symbol] = quote
            else:
                resolved.failures[request.quote_symbol] = failure or "no quote"
    return resolved
