from __future__ import annotations

import hashlib
import logging
import random
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from stockfeed.errors import PersistenceError
from stockfeed.events import Quote
from stockfeed.market_data import derive_change, to_cents, utcnow
from stockfeed.models import BoardRow
from stockfeed.persistence import Database


def placeholder_quote(symbol: str, ts: datetime) -> Quote:
    """Deterministic stand-in quote for a symbol (same symbol, same numbers)."""
    seed = int.from_bytes(hashlib.sha256(symbol.encode("utf-8")).digest()[:8], "big")
    rng = random.Random(seed)
    prev = to_cents(Decimal(str(rng.uniform(50.0, 500.0))))
    price = to_cents(prev + Decimal(str(rng.uniform(-5.0, 5.0))))
    change, pct = derive_change(price, Quote(symbol, prev, Decimal("0"), Decimal("0"), ts))
    return Quote(symbol=symbol, price=price, change=change, change_percent=pct, ts=ts)


class QuoteBoard:
    """Read side of the latest-quote table for a presentation layer.

    When the table cannot be read, the last good snapshot is served (rows
    flagged ``stale``); before any good read, placeholder rows are generated.
    """

    def __init__(self, db: Database, symbols: List[str], clock: Callable[[], datetime] = utcnow) -> None:
        self._db = db
        self.symbols = list(symbols)
        self._clock = clock
        self._last_good: Optional[List[BoardRow]] = None
        self._log = logging.getLogger("board")

    def snapshot(self) -> List[BoardRow]:
        try:
            latest: Dict[str, Quote] = {q.symbol: q for q in self._db.list_latest()}
        except PersistenceError as exc:
            self._log.warning("board_read_failed", extra={"error": str(exc), "has_last_good": self._last_good is not None})
            if self._last_good is not None:
                return [_with_flags(r, stale=True) for r in self._last_good]
            return self._placeholders()

        rows: List[BoardRow] = []
        now = self._clock()
        for sym in self.symbols:
            q = latest.get(sym)
            if q is None:
                rows.append(_row(placeholder_quote(sym, now), placeholder=True))
            else:
                rows.append(_row(q))
        self._last_good = rows
        return rows

    def _placeholders(self) -> List[BoardRow]:
        now = self._clock()
        return [_row(placeholder_quote(sym, now), placeholder=True) for sym in self.symbols]


def _row(q: Quote, placeholder: bool = False) -> BoardRow:
    return BoardRow(
        symbol=q.symbol,
        price=q.price,
        change=q.change,
        change_percent=q.change_percent,
        ts=q.ts,
        placeholder=placeholder,
    )


def _with_flags(r: BoardRow, stale: bool) -> BoardRow:
    return BoardRow(
        symbol=r.symbol,
        price=r.price,
        change=r.change,
        change_percent=r.change_percent,
        ts=r.ts,
        placeholder=r.placeholder,
        stale=stale,
    )
