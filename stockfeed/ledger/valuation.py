from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from stockfeed.events import Quote
from stockfeed.ledger.ledger import Ledger


class ValuationPump:
    """Feeds accepted quotes into ``Ledger.refresh_valuation`` on its own thread.

    ``submit`` never blocks on the ledger lock. Pending quotes are coalesced per
    symbol (only the newest price matters for a valuation), so a slow ledger
    cannot grow an unbounded backlog.
    """

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._log = logging.getLogger("ledger.valuation")
        self._pending: Dict[str, Quote] = {}
        self._cond = threading.Condition()
        self._stopping = False
        self._thread: Optional[threading.Thread] = None
        self.refreshed = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="valuation", daemon=True)
        self._thread.start()

    def submit(self, quote: Quote) -> None:
        with self._cond:
            prev = self._pending.get(quote.symbol)
            if prev is None or quote.ts >= prev.ts:
                self._pending[quote.symbol] = quote
            self._cond.notify()

    def drain(self) -> None:
        """Apply every pending quote on the calling thread."""
        with self._cond:
            batch = list(self._pending.values())
            self._pending.clear()
        for q in batch:
            self._apply(q)

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.drain()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._stopping:
                    self._cond.wait()
                if self._stopping and not self._pending:
                    return
                batch = list(self._pending.values())
                self._pending.clear()
            for q in batch:
                self._apply(q)

    def _apply(self, quote: Quote) -> None:
        try:
            val = self._ledger.refresh_valuation(quote)
        except Exception as exc:
            self._log.error("valuation_refresh_failed", extra={"symbol": quote.symbol, "error": str(exc)})
            return
        self.refreshed += 1
        if val is not None:
            self._log.debug(
                "valuation_refreshed",
                extra={
                    "symbol": val.symbol,
                    "current_price": str(val.current_price),
                    "total_value": str(val.total_value),
                    "gain_loss": str(val.gain_loss),
                    "gain_loss_percent": str(val.gain_loss_percent),
                },
            )
