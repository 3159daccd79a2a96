from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from stockfeed.models import ThrottleState


class ThrottleCache:
    """Per-symbol gate for history writes.

    A write is due when the symbol has no state yet, when the price moved by at
    least ``price_delta`` since the last written row, or when ``window`` has
    elapsed since that row. State is only advanced through ``mark_inserted``,
    which the consumer calls after the history append succeeded.
    """

    def __init__(self, price_delta: Decimal, window: timedelta) -> None:
        self.price_delta = Decimal(price_delta)
        self.window = window
        self._state: Dict[str, ThrottleState] = {}

    def get(self, symbol: str) -> Optional[ThrottleState]:
        return self._state.get(symbol)

    def should_insert(self, symbol: str, price: Decimal, now: datetime) -> bool:
        last = self._state.get(symbol)
        if last is None:
            return True
        if abs(price - last.last_price) >= self.price_delta:
            return True
        return now - last.last_inserted_at >= self.window

    def mark_inserted(self, symbol: str, price: Decimal, now: datetime) -> None:
        self._state[symbol] = ThrottleState(last_price=price, last_inserted_at=now)
