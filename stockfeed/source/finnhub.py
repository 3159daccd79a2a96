from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from stockfeed.errors import FetchError
from stockfeed.events import Quote
from stockfeed.market_data import ZERO, normalize_price, to_cents, utcnow
from stockfeed.source.base import QuoteSource


class FinnhubQuoteSource(QuoteSource):
    """Quote adapter for the Finnhub ``/quote`` endpoint.

    Response fields used: ``c`` (current price), ``d`` (change), ``dp``
    (percent change). Finnhub answers unknown symbols with ``c == 0``, which
    is treated as a failed fetch.
    """

    def __init__(self, api_key: str, base_url: str = "https://finnhub.io/api/v1", session: Optional[Any] = None) -> None:
        self._log = logging.getLogger("source.finnhub")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._session = session if session is not None else requests.Session()

    def fetch(self, symbol: str, timeout: float) -> Quote:
        url = f"{self._base_url}/quote"
        try:
            resp = self._session.get(url, params={"symbol": symbol, "token": self._api_key}, timeout=timeout)
        except requests.Timeout as exc:
            raise FetchError(symbol, f"timeout after {timeout}s") from exc
        except requests.RequestException as exc:
            raise FetchError(symbol, f"request failed: {exc}") from exc

        if not resp.ok:
            raise FetchError(symbol, f"HTTP {resp.status_code} - {resp.reason}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchError(symbol, "response is not JSON") from exc

        if not isinstance(data, dict):
            raise FetchError(symbol, "invalid response from API")
        price = normalize_price(data.get("c"))
        if price is None or price <= 0:
            raise FetchError(symbol, f"invalid price in response: {data.get('c')!r}")

        change = normalize_price(data.get("d"))
        pct = normalize_price(data.get("dp"))
        return Quote(
            symbol=symbol,
            price=to_cents(price),
            change=change if change is not None else ZERO,
            change_percent=pct if pct is not None else ZERO,
            ts=utcnow(),
        )

    def close(self) -> None:
        self._session.close()
