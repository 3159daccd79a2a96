import threading
from datetime import datetime, timezone
from decimal import Decimal

from stockfeed.errors import InsufficientFunds, PersistenceError
from stockfeed.ledger import Ledger
from stockfeed.models import OrderStatus, Side
from stockfeed.persistence import Database


def test_filled_orders_journaled_in_submission_order(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    ledger = Ledger(starting_balance=Decimal("45000"), price_lookup=db.get_latest_price, journal=db)

    first = ledger.submit_order("AAPL", "buy", "limit", 10, "100")
    second = ledger.submit_order("AAPL", "sell", "limit", 4, "110.50")

    rows = db.list_orders()
    assert [o.order_id for o in rows] == [first.order_id, second.order_id]
    assert rows[1].side is Side.SELL
    assert rows[1].total == Decimal("442.00")
    assert rows[1].status is OrderStatus.FILLED
    assert rows[0].ts == first.ts


def test_journal_roundtrip_restores_ledger(tmp_path) -> None:
    path = str(tmp_path / "db.sqlite")
    db = Database(path)
    ledger = Ledger(starting_balance=Decimal("45000"), journal=db)
    ledger.submit_order("AAPL", "buy", "limit", 10, "100")
    ledger.submit_order("AAPL", "buy", "limit", 5, "120")
    db.close()

    db2 = Database(path)
    restored = Ledger(starting_balance=Decimal("45000"), journal=db2)
    assert restored.restore(db2.list_orders()) == 2
    assert restored.balance == Decimal("43400")
    assert restored.position("AAPL").qty == 15


def test_journal_failure_does_not_undo_fill(tmp_path) -> None:
    class _BrokenJournal:
        def insert_order(self, order):
            raise PersistenceError("disk full")

    ledger = Ledger(starting_balance=Decimal("1000"), journal=_BrokenJournal())  # type: ignore[arg-type]
    ledger.submit_order("AAPL", "buy", "limit", 1, "100")

    assert ledger.balance == Decimal("900")
    assert len(ledger.orders()) == 1


def test_journal_replays_in_fill_order_when_clock_steps_back(tmp_path) -> None:
    ticks = iter(
        [
            datetime(2024, 5, 1, 14, 0, 5, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 14, 0, 1, tzinfo=timezone.utc),
        ]
    )
    db = Database(str(tmp_path / "db.sqlite"))
    ledger = Ledger(starting_balance=Decimal("1000"), journal=db, clock=lambda: next(ticks))

    buy = ledger.submit_order("AAPL", "buy", "limit", 5, "100")
    sell = ledger.submit_order("AAPL", "sell", "limit", 5, "100")
    assert sell.ts < buy.ts

    journal = db.list_orders()
    assert [o.order_id for o in journal] == [buy.order_id, sell.order_id]

    restored = Ledger(starting_balance=Decimal("1000"))
    assert restored.restore(journal) == 2
    assert restored.balance == Decimal("1000")
    assert restored.positions() == {}


def test_concurrent_round_trips_replay_from_journal(tmp_path) -> None:
    db = Database(str(tmp_path / "db.sqlite"))
    ledger = Ledger(starting_balance=Decimal("100"), journal=db)
    barrier = threading.Barrier(4)

    def round_trips() -> None:
        barrier.wait()
        for _ in range(25):
            try:
                ledger.submit_order("AAPL", "buy", "limit", 1, "100")
            except InsufficientFunds:
                continue
            ledger.submit_order("AAPL", "sell", "limit", 1, "100")

    threads = [threading.Thread(target=round_trips) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    journal = db.list_orders()
    assert [o.order_id for o in journal] == [o.order_id for o in ledger.orders()]
    restored = Ledger(starting_balance=Decimal("100"))
    restored.restore(journal)
    assert restored.balance == ledger.balance == Decimal("100")
