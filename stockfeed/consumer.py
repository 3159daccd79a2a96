from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from stockfeed.bus import QuoteChannel, connect_with_backoff
from stockfeed.config import ChannelConfig
from stockfeed.errors import ChannelClosed, ChannelConnectionError, PersistenceError, ValidationError
from stockfeed.events import ChannelMessage, Quote
from stockfeed.market_data import parse_quote_message, quote_from_message
from stockfeed.persistence import Database
from stockfeed.throttle import ThrottleCache


@dataclass
class ConsumerStats:
    received: int = 0
    accepted: int = 0
    invalid: int = 0
    stale: int = 0
    latest_written: int = 0
    latest_failed: int = 0
    history_written: int = 0
    history_failed: int = 0
    history_throttled: int = 0


class StreamConsumer:
    """Consumes quote messages and writes them to the latest and history tables.

    Per message: validate, derive change fields, drop anything not newer than
    the last accepted quote for the symbol, upsert the latest row, append a
    history row when the throttle allows, then hand the quote to the
    subscribers (the ledger valuation pump). Sink failures are logged per sink
    and never stop the loop.
    """

    def __init__(
        self,
        db: Database,
        throttle: ThrottleCache,
        subscribers: Optional[List[Callable[[Quote], None]]] = None,
    ) -> None:
        self._db = db
        self._throttle = throttle
        self._subscribers: List[Callable[[Quote], None]] = list(subscribers or [])
        self._last: Dict[str, Quote] = {}
        self._log = logging.getLogger("consumer")
        self.stats = ConsumerStats()

    def subscribe(self, handler: Callable[[Quote], None]) -> None:
        self._subscribers.append(handler)

    def last_accepted(self, symbol: str) -> Optional[Quote]:
        return self._last.get(symbol)

    def prime_from_store(self) -> int:
        """Seed the per-symbol baseline from the latest table (restart without regressing)."""
        try:
            rows = self._db.list_latest()
        except PersistenceError as exc:
            self._log.warning("prime_failed", extra={"error": str(exc)})
            return 0
        for q in rows:
            self._last[q.symbol] = q
        return len(rows)

    def handle(self, raw: Union[bytes, str]) -> Optional[Quote]:
        """Process one message. Returns the accepted Quote, or None when it was dropped."""
        self.stats.received += 1
        try:
            msg = parse_quote_message(raw)
        except ValidationError as exc:
            self.stats.invalid += 1
            self._log.warning("message_invalid", extra={"error": str(exc), "raw": _preview(raw)})
            return None

        prev = self._last.get(msg.symbol)
        if prev is not None and msg.timestamp <= prev.ts:
            self.stats.stale += 1
            self._log.info(
                "message_stale",
                extra={"symbol": msg.symbol, "ts": msg.timestamp.isoformat(), "last_ts": prev.ts.isoformat()},
            )
            return None

        quote = quote_from_message(msg, prev)
        self._last[quote.symbol] = quote
        self.stats.accepted += 1

        self._write_latest(quote)
        self._write_history(quote)

        for handler in self._subscribers:
            try:
                handler(quote)
            except Exception:
                self._log.exception("subscriber_failed", extra={"symbol": quote.symbol})
        return quote

    def _write_latest(self, quote: Quote) -> None:
        try:
            applied = self._db.upsert_latest(quote)
        except PersistenceError as exc:
            self.stats.latest_failed += 1
            self._log.error("latest_write_failed", extra={"symbol": quote.symbol, "error": str(exc)})
            return
        if applied:
            self.stats.latest_written += 1
        else:
            self._log.info("latest_write_skipped_older", extra={"symbol": quote.symbol, "ts": quote.ts.isoformat()})

    def _write_history(self, quote: Quote) -> None:
        # Event time drives the window so replays are deterministic.
        now = quote.ts
        if not self._throttle.should_insert(quote.symbol, quote.price, now):
            self.stats.history_throttled += 1
            return
        try:
            self._db.insert_history(quote)
        except PersistenceError as exc:
            self.stats.history_failed += 1
            self._log.error("history_write_failed", extra={"symbol": quote.symbol, "error": str(exc)})
            return
        self._throttle.mark_inserted(quote.symbol, quote.price, now)
        self.stats.history_written += 1
        self._log.info("history_inserted", extra={"symbol": quote.symbol, "price": str(quote.price)})

    def run(self, channel: QuoteChannel, stop: threading.Event, cfg: Optional[ChannelConfig] = None) -> None:
        """Receive until the channel is closed and drained. ``stop`` only aborts the connect backoff."""
        cfg = cfg or ChannelConfig()
        try:
            connect_with_backoff(
                channel.connect,
                attempts=cfg.connect_attempts,
                base_delay=cfg.backoff_seconds,
                max_delay=cfg.backoff_max_seconds,
                stop=stop,
                name="consumer",
            )
        except ChannelConnectionError as exc:
            self._log.error("consumer_connect_gave_up", extra={"error": str(exc)})
            return

        self._log.info("consumer_started")
        while True:
            try:
                msg: Optional[ChannelMessage] = channel.receive(timeout=cfg.poll_seconds)
            except ChannelClosed:
                break
            if msg is None:
                continue
            self.handle(msg.value)
        self._log.info("consumer_stopped", extra={**self.stats.__dict__})


def _preview(raw: Union[bytes, str], limit: int = 200) -> str:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    return text[:limit]
