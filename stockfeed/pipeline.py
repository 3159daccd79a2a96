from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Optional

from stockfeed.board import QuoteBoard
from stockfeed.bus import QuoteChannel
from stockfeed.config import AppConfig
from stockfeed.consumer import StreamConsumer
from stockfeed.errors import ChannelConnectionError, OrderRejected
from stockfeed.ledger import Ledger, ValuationPump
from stockfeed.persistence import Database
from stockfeed.publisher import Publisher
from stockfeed.source import FinnhubQuoteSource, QuoteSource, SimQuoteSource
from stockfeed.throttle import ThrottleCache


def make_source(cfg: AppConfig) -> QuoteSource:
    if cfg.source.type == "sim":
        sim = cfg.source.sim
        return SimQuoteSource(seed=sim.seed, start_price=sim.start_price, step=sim.step)
    if cfg.source.type == "finnhub":
        fh = cfg.source.finnhub
        return FinnhubQuoteSource(api_key=fh.api_key, base_url=fh.base_url)
    raise ValueError(f"Unsupported source type: {cfg.source.type}")


def open_ledger(cfg: AppConfig, db: Database) -> Ledger:
    """Ledger rebuilt from the order journal and valued from the latest-quote table.

    Raises OrderRejected when the journal no longer replays (for example after
    ``ledger.starting_balance`` was lowered).
    """
    ledger = Ledger(
        starting_balance=cfg.ledger.starting_balance,
        price_lookup=db.get_latest_price,
        journal=db if cfg.ledger.journal_orders else None,
    )
    ledger.restore(db.list_orders())
    for q in db.list_latest():
        ledger.refresh_valuation(q)
    return ledger


class Pipeline:
    """Owns one process's feed: source → publisher → channel → consumer → sinks, plus the ledger.

    All state (throttle cache, last accepted quotes, ledger) lives on this
    object and is dropped with it.
    """

    def __init__(self, cfg: AppConfig, source: Optional[QuoteSource] = None, db: Optional[Database] = None) -> None:
        self.cfg = cfg
        self._log = logging.getLogger("pipeline")
        owns_db = db is None
        self.db = db or Database(cfg.storage.sqlite_path)
        try:
            self.ledger = open_ledger(cfg, self.db)
        except OrderRejected:
            if owns_db:
                self.db.close()
            raise
        self.channel = QuoteChannel(maxsize=cfg.channel.maxsize, publish_timeout=cfg.channel.publish_timeout_seconds)
        self.throttle = ThrottleCache(
            price_delta=cfg.throttle.price_delta,
            window=timedelta(seconds=cfg.throttle.window_seconds),
        )
        self.valuation = ValuationPump(self.ledger)
        self.consumer = StreamConsumer(self.db, self.throttle, subscribers=[self.valuation.submit])
        self.publisher = Publisher(
            source or make_source(cfg),
            self.channel,
            cfg.feed.symbols,
            interval_seconds=cfg.feed.interval_seconds,
            fetch_timeout=cfg.feed.fetch_timeout_seconds,
            channel_cfg=cfg.channel,
        )
        self.board = QuoteBoard(self.db, cfg.feed.symbols)
        self._stop = threading.Event()
        self._publisher_thread: Optional[threading.Thread] = None
        self._consumer_thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self, max_ticks: int = 0) -> None:
        primed = self.consumer.prime_from_store()
        self._log.info(
            "pipeline_starting",
            extra={"symbols": self.cfg.feed.symbols, "source": self.cfg.source.type, "primed": primed},
        )
        self.valuation.start()
        self._consumer_thread = threading.Thread(
            target=self.consumer.run, args=(self.channel, self._stop, self.cfg.channel), name="consumer", daemon=True
        )
        self._consumer_thread.start()
        self._publisher_thread = threading.Thread(
            target=self._run_publisher, args=(max_ticks,), name="publisher", daemon=True
        )
        self._publisher_thread.start()

    def _run_publisher(self, max_ticks: int) -> None:
        try:
            self.publisher.open(self._stop)
        except ChannelConnectionError as exc:
            self._log.error("publisher_connect_gave_up", extra={"error": str(exc)})
            self.channel.close()
            return
        try:
            self.publisher.run(self._stop, max_ticks=max_ticks)
        finally:
            self.publisher.close()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the publisher finishes (max_ticks reached). Returns False on timeout."""
        if self._publisher_thread is None:
            return True
        self._publisher_thread.join(timeout)
        return not self._publisher_thread.is_alive()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the ticker, let the consumer drain accepted messages, then release resources."""
        if self._closed:
            return
        self._stop.set()
        if self._publisher_thread is not None:
            self._publisher_thread.join(timeout)
        # Publisher.close() already closed the channel; this covers a publisher that never opened.
        self.channel.close()
        if self._consumer_thread is not None:
            self._consumer_thread.join(timeout)
        self.valuation.stop(timeout)
        self.db.close()
        self._closed = True
        self._log.info("pipeline_stopped", extra={**self.consumer.stats.__dict__})

    def run(self, iterations: int = 0) -> None:
        self.start(max_ticks=iterations)
        try:
            while not self.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            self._log.info("stopping_keyboard_interrupt")
        finally:
            self.stop()
