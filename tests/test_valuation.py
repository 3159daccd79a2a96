from datetime import datetime, timedelta, timezone
from decimal import Decimal

from stockfeed.events import Quote
from stockfeed.ledger import Ledger, ValuationPump

T0 = datetime(2024, 5, 1, 14, 0, tzinfo=timezone.utc)


def _quote(symbol: str, price: str, ts: datetime) -> Quote:
    return Quote(symbol=symbol, price=Decimal(price), change=Decimal("0"), change_percent=Decimal("0"), ts=ts)


def test_pump_applies_latest_quote_per_symbol() -> None:
    ledger = Ledger(starting_balance=Decimal("45000"))
    ledger.submit_order("AAPL", "buy", "limit", 10, "100")
    pump = ValuationPump(ledger)

    pump.submit(_quote("AAPL", "105", T0))
    pump.submit(_quote("AAPL", "107", T0 + timedelta(seconds=15)))
    pump.submit(_quote("AAPL", "101", T0))  # older than what is pending
    pump.drain()

    assert ledger.valuation("AAPL").current_price == Decimal("107")
    assert pump.refreshed == 1


def test_pump_thread_refreshes_and_stops() -> None:
    ledger = Ledger(starting_balance=Decimal("45000"))
    ledger.submit_order("TSLA", "buy", "limit", 2, "200")
    pump = ValuationPump(ledger)
    pump.start()

    pump.submit(_quote("TSLA", "210", T0))
    pump.stop(timeout=5)

    val = ledger.valuation("TSLA")
    assert val.current_price == Decimal("210")
    assert val.gain_loss == Decimal("20")


def test_pump_survives_refresh_failure() -> None:
    class _Broken:
        def refresh_valuation(self, quote):
            raise RuntimeError("boom")

    pump = ValuationPump(_Broken())  # type: ignore[arg-type]
    pump.submit(_quote("AAPL", "100", T0))
    pump.drain()

    assert pump.refreshed == 0
