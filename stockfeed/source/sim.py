from __future__ import annotations

import logging
import random
import threading
from decimal import Decimal
from typing import Dict, Optional

from stockfeed.events import Quote
from stockfeed.market_data import derive_change, to_cents, utcnow
from stockfeed.source.base import QuoteSource


class SimQuoteSource(QuoteSource):
    """Seeded random-walk quotes for wiring, tests and dry runs.

    Each symbol walks independently from ``start_price``; change and
    changePercent are reported against the previous simulated price.
    """

    def __init__(self, seed: int = 7, start_price: float = 150.0, step: float = 0.5) -> None:
        self._log = logging.getLogger("source.sim")
        self._rng = random.Random(seed)
        self._start = start_price
        self._step = step
        self._last: Dict[str, Quote] = {}
        self._lock = threading.Lock()

    def fetch(self, symbol: str, timeout: float) -> Quote:
        with self._lock:
            prev: Optional[Quote] = self._last.get(symbol)
            base = float(prev.price) if prev else self._start * self._rng.uniform(0.5, 1.5)
            price = to_cents(Decimal(str(max(0.01, base + self._rng.uniform(-self._step, self._step)))))
            change, pct = derive_change(price, prev)
            quote = Quote(symbol=symbol, price=price, change=change, change_percent=pct, ts=utcnow())
            self._last[symbol] = quote
        return quote
