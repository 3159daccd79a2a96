from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from stockfeed.bus import QuoteChannel
from stockfeed.config import ChannelConfig
from stockfeed.consumer import StreamConsumer
from stockfeed.errors import PersistenceError
from stockfeed.events import Quote
from stockfeed.persistence import Database
from stockfeed.throttle import ThrottleCache

T0 = datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc)


def _msg(symbol: str, price: float, ts: datetime, **extra) -> bytes:
    payload = {"symbol": symbol, "price": price, "timestamp": ts.isoformat()}
    payload.update(extra)
    return json.dumps(payload).encode()


def _throttle(minutes: int = 5) -> ThrottleCache:
    return ThrottleCache(price_delta=Decimal("0.1"), window=timedelta(minutes=minutes))


class _FlakyStore:
    """In-memory stand-in for Database with switchable failures per sink."""

    def __init__(self) -> None:
        self.latest: dict[str, Quote] = {}
        self.history: list[Quote] = []
        self.fail_latest = False
        self.fail_history = False

    def upsert_latest(self, q: Quote) -> bool:
        if self.fail_latest:
            raise PersistenceError("latest down")
        cur: Optional[Quote] = self.latest.get(q.symbol)
        if cur is not None and q.ts <= cur.ts:
            return False
        self.latest[q.symbol] = q
        return True

    def insert_history(self, q: Quote) -> None:
        if self.fail_history:
            raise PersistenceError("history down")
        self.history.append(q)

    def list_latest(self) -> list[Quote]:
        return list(self.latest.values())


def test_throttled_history_only_first_and_large_move(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())

    consumer.handle(_msg("AAPL", 175.00, T0))
    consumer.handle(_msg("AAPL", 175.05, T0 + timedelta(minutes=1)))
    consumer.handle(_msg("AAPL", 175.20, T0 + timedelta(minutes=2)))

    rows = db.get_history("AAPL")
    assert [r.price for r in rows] == [Decimal("175.0"), Decimal("175.2")]
    assert [r.ts for r in rows] == [T0, T0 + timedelta(minutes=2)]
    assert db.get_latest("AAPL").price == Decimal("175.2")
    assert consumer.stats.history_throttled == 1


def test_missing_change_fields_derived_from_previous_accepted(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())

    first = consumer.handle(_msg("TSLA", 200.00, T0))
    second = consumer.handle(_msg("TSLA", 202.00, T0 + timedelta(seconds=15)))

    assert (first.change, first.change_percent) == (Decimal("0"), Decimal("0"))
    assert second.change == Decimal("2")
    assert second.change_percent == Decimal("1")
    latest = db.get_latest("TSLA")
    assert latest.change == Decimal("2")


def test_supplied_change_fields_kept(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())

    q = consumer.handle(_msg("MSFT", 410.0, T0, change=-1.25, changePercent=-0.3))
    assert q.change == Decimal("-1.25")
    assert q.change_percent == Decimal("-0.3")


def test_replay_same_timestamp_leaves_state_unchanged(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    throttle = _throttle()
    consumer = StreamConsumer(db, throttle)

    consumer.handle(_msg("AAPL", 175.00, T0))
    state_before = throttle.get("AAPL")
    latest_before = db.get_latest("AAPL")

    assert consumer.handle(_msg("AAPL", 180.00, T0)) is None

    assert db.get_latest("AAPL") == latest_before
    assert throttle.get("AAPL") == state_before
    assert len(db.get_history("AAPL")) == 1
    assert consumer.stats.stale == 1


def test_older_timestamp_never_overwrites_latest(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())

    consumer.handle(_msg("AAPL", 175.00, T0 + timedelta(minutes=1)))
    consumer.handle(_msg("AAPL", 170.00, T0))

    latest = db.get_latest("AAPL")
    assert latest.ts == T0 + timedelta(minutes=1)
    assert latest.price == Decimal("175.0")


def test_latest_timestamps_monotonic_per_symbol(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())
    offsets = [0, 30, 10, 60, 60, 45, 90]

    seen: list[datetime] = []
    for i, off in enumerate(offsets):
        consumer.handle(_msg("GOOGL", 150.0 + i, T0 + timedelta(seconds=off)))
        seen.append(db.get_latest("GOOGL").ts)

    assert seen == sorted(seen)
    assert seen[-1] == T0 + timedelta(seconds=90)


def test_malformed_message_dropped_and_loop_continues(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())

    assert consumer.handle(b"{not json") is None
    assert consumer.handle(b'{"symbol": "AAPL"}') is None
    assert consumer.handle(_msg("AAPL", 175.0, T0)) is not None
    assert consumer.stats.invalid == 2
    assert consumer.stats.accepted == 1


def test_latest_failure_does_not_block_history() -> None:
    store = _FlakyStore()
    store.fail_latest = True
    consumer = StreamConsumer(store, _throttle())  # type: ignore[arg-type]

    consumer.handle(_msg("AAPL", 175.0, T0))

    assert store.latest == {}
    assert len(store.history) == 1
    assert consumer.stats.latest_failed == 1


def test_history_failure_keeps_throttle_baseline() -> None:
    store = _FlakyStore()
    throttle = _throttle()
    consumer = StreamConsumer(store, throttle)  # type: ignore[arg-type]

    store.fail_history = True
    consumer.handle(_msg("AAPL", 175.0, T0))
    assert throttle.get("AAPL") is None
    assert "AAPL" in store.latest

    # Next tick is still evaluated against "no state" and gets written.
    store.fail_history = False
    consumer.handle(_msg("AAPL", 175.01, T0 + timedelta(seconds=15)))
    assert [q.price for q in store.history] == [Decimal("175.01")]
    assert throttle.get("AAPL").last_price == Decimal("175.01")


def test_subscribers_receive_accepted_quotes_and_failures_are_contained(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    got: list[Quote] = []

    def boom(q: Quote) -> None:
        raise RuntimeError("refresh failed")

    consumer = StreamConsumer(db, _throttle(), subscribers=[boom, got.append])
    consumer.handle(_msg("AAPL", 175.0, T0))
    consumer.handle(_msg("AAPL", 175.0, T0))  # stale, not forwarded

    assert [q.symbol for q in got] == ["AAPL"]


def test_prime_from_store_blocks_regression_after_restart(tmp_path) -> None:
    path = str(tmp_path / "db.sqlite")
    db = Database(path)
    StreamConsumer(db, _throttle()).handle(_msg("AAPL", 175.0, T0 + timedelta(minutes=1)))

    restarted = StreamConsumer(db, _throttle())
    assert restarted.prime_from_store() == 1
    assert restarted.handle(_msg("AAPL", 170.0, T0)) is None
    q = restarted.handle(_msg("AAPL", 176.0, T0 + timedelta(minutes=2)))
    assert q.change == Decimal("1.0")


def test_run_drains_channel_after_close(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    consumer = StreamConsumer(db, _throttle())
    ch = QuoteChannel(maxsize=100)
    ch.connect()
    t = threading.Thread(target=consumer.run, args=(ch, threading.Event(), ChannelConfig(poll_seconds=0.05)))
    t.start()
    for i in range(5):
        ch.send("AAPL", _msg("AAPL", 175.0 + i, T0 + timedelta(seconds=i)))
    ch.close()
    t.join(timeout=5)

    assert not t.is_alive()
    assert consumer.stats.accepted == 5
    assert db.get_latest("AAPL").price == Decimal("179.0")
