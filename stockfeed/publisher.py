from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from stockfeed.bus import QuoteChannel, connect_with_backoff
from stockfeed.config import ChannelConfig
from stockfeed.errors import ChannelConnectionError, FetchError, PublishError
from stockfeed.events import Quote
from stockfeed.market_data import encode_quote
from stockfeed.source.base import QuoteSource


@dataclass
class TickResult:
    fetched: int = 0
    published: int = 0
    fetch_failed: int = 0
    publish_failed: int = 0


class Publisher:
    """Fixed-interval producer: fetch every tracked symbol, send one message each.

    Fetches of a tick run concurrently, each bounded by ``fetch_timeout``. A
    failed or stalled symbol is logged and skipped for this tick only. Sending
    is at-most-once: a message the channel refuses is dropped, not retried.

    Use as a context manager; exiting closes the quote source and the channel.
    """

    def __init__(
        self,
        source: QuoteSource,
        channel: QuoteChannel,
        symbols: List[str],
        interval_seconds: float = 15.0,
        fetch_timeout: float = 5.0,
        channel_cfg: Optional[ChannelConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._channel = channel
        self.symbols = list(symbols)
        self.interval = interval_seconds
        self.fetch_timeout = fetch_timeout
        self._channel_cfg = channel_cfg or ChannelConfig()
        self._monotonic = monotonic
        self._log = logging.getLogger("publisher")
        self._pool: Optional[ThreadPoolExecutor] = None
        self.ticks = 0

    def __enter__(self) -> "Publisher":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self, stop: Optional[threading.Event] = None) -> None:
        cfg = self._channel_cfg
        connect_with_backoff(
            self._channel.connect,
            attempts=cfg.connect_attempts,
            base_delay=cfg.backoff_seconds,
            max_delay=cfg.backoff_max_seconds,
            stop=stop,
            name="publisher",
        )
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=max(1, len(self.symbols)), thread_name_prefix="fetch")

    def close(self) -> None:
        if self._pool is not None:
            # Stalled fetches are abandoned, not awaited.
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None
        try:
            self._source.close()
        except Exception as exc:
            self._log.warning("source_close_failed", extra={"error": str(exc)})
        self._channel.close()
        self._log.info("publisher_closed", extra={"ticks": self.ticks})

    def _fetch_all(self) -> Dict[str, Optional[Quote]]:
        assert self._pool is not None, "publisher not opened"
        futures = {sym: self._pool.submit(self._source.fetch, sym, self.fetch_timeout) for sym in self.symbols}
        deadline = self._monotonic() + self.fetch_timeout
        results: Dict[str, Optional[Quote]] = {}
        for sym, fut in futures.items():
            remaining = max(0.0, deadline - self._monotonic())
            try:
                results[sym] = fut.result(timeout=remaining)
            except FutureTimeout:
                fut.cancel()
                self._log.warning("quote_fetch_failed", extra={"symbol": sym, "error": f"timeout after {self.fetch_timeout}s"})
                results[sym] = None
            except FetchError as exc:
                self._log.warning("quote_fetch_failed", extra={"symbol": sym, "error": exc.reason})
                results[sym] = None
            except Exception as exc:
                self._log.error("quote_fetch_failed", extra={"symbol": sym, "error": repr(exc)})
                results[sym] = None
        return results

    def tick(self) -> TickResult:
        """Fetch and publish one round. Publishes in the configured symbol order."""
        res = TickResult()
        quotes = self._fetch_all()
        for sym in self.symbols:
            q = quotes.get(sym)
            if q is None:
                res.fetch_failed += 1
                continue
            res.fetched += 1
            try:
                self._channel.send(q.symbol, encode_quote(q))
            except (PublishError, ChannelConnectionError) as exc:
                res.publish_failed += 1
                self._log.error("publish_dropped", extra={"symbol": sym, "error": str(exc)})
                continue
            res.published += 1
            self._log.debug("quote_published", extra={"symbol": sym, "price": str(q.price), "ts": q.ts.isoformat()})
        self.ticks += 1
        return res

    def run(self, stop: threading.Event, max_ticks: int = 0) -> None:
        """Tick every ``interval`` seconds until ``stop`` is set (or ``max_ticks`` reached, 0 = no limit)."""
        self._log.info("publisher_started", extra={"symbols": self.symbols, "interval": self.interval})
        next_at = self._monotonic()
        while not stop.is_set():
            result = self.tick()
            self._log.info("tick_done", extra={"tick": self.ticks, **result.__dict__})
            if max_ticks and self.ticks >= max_ticks:
                break
            next_at += self.interval
            delay = next_at - self._monotonic()
            if delay < 0:
                # Overran the interval; skip missed ticks instead of bursting.
                next_at = self._monotonic()
                delay = 0
            if stop.wait(delay):
                break
        self._log.info("publisher_stopped", extra={"ticks": self.ticks})
