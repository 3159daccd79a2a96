from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import typer

from stockfeed.board import QuoteBoard
from stockfeed.config import AppConfig, load_config
from stockfeed.errors import OrderRejected
from stockfeed.ledger import Ledger
from stockfeed.logging_setup import setup_logging
from stockfeed.market_data import utcnow
from stockfeed.persistence import Database
from stockfeed.pipeline import Pipeline, open_ledger


app = typer.Typer(add_completion=False)


def _journaled_ledger(cfg: AppConfig, db: Database) -> Ledger:
    try:
        return open_ledger(cfg, db)
    except OrderRejected as exc:
        typer.echo(f"Order journal does not replay: {exc}")
        raise typer.Exit(code=1)


@app.command()
def run(config: str = typer.Option(..., "--config", "-c"), iterations: int = typer.Option(0, "--iterations", "-n", help="0 = run forever")) -> None:
    """Run the quote feed: fetch, publish, consume, persist."""
    cfg: AppConfig = load_config(config)
    setup_logging(cfg.log)
    log = logging.getLogger("runner")
    log.info("starting", extra={"symbols": cfg.feed.symbols, "source": cfg.source.type, "iterations": iterations})
    try:
        pipeline = Pipeline(cfg)
    except OrderRejected as exc:
        typer.echo(f"Order journal does not replay: {exc}")
        raise typer.Exit(code=1)
    pipeline.run(iterations)
    stats = pipeline.consumer.stats
    typer.echo(f"ticks={pipeline.publisher.ticks} accepted={stats.accepted} history_written={stats.history_written}")


@app.command()
def latest(config: str = typer.Option(..., "--config", "-c")) -> None:
    """Print the latest quote per tracked symbol."""
    cfg = load_config(config)
    db = Database(cfg.storage.sqlite_path)
    try:
        for row in QuoteBoard(db, cfg.feed.symbols).snapshot():
            flag = " (placeholder)" if row.placeholder else ""
            typer.echo(f"{row.symbol} {row.price} {row.change:+} {row.change_percent:+}% {row.ts.isoformat()}{flag}")
    finally:
        db.close()


@app.command()
def history(
    config: str = typer.Option(..., "--config", "-c"),
    symbol: str = typer.Option(..., "--symbol", "-s"),
    limit: int = typer.Option(50, "--limit", help="0 = all rows"),
) -> None:
    """Print the stored history rows for one symbol, oldest first."""
    cfg = load_config(config)
    db = Database(cfg.storage.sqlite_path)
    try:
        rows = db.get_history(symbol.upper(), limit=limit or None)
    finally:
        db.close()
    if not rows:
        typer.echo(f"No history for {symbol.upper()}")
        return
    for q in rows:
        typer.echo(f"{q.ts.isoformat()} {q.symbol} {q.price} {q.change:+} {q.change_percent:+}%")


@app.command()
def trade(
    config: str = typer.Option(..., "--config", "-c"),
    symbol: str = typer.Option(..., "--symbol", "-s"),
    side: str = typer.Option(..., "--side", help="buy or sell"),
    qty: int = typer.Option(..., "--qty"),
    order_type: str = typer.Option("market", "--order-type", help="market, limit or stop"),
    price: Optional[str] = typer.Option(None, "--price", help="Execution price for limit/stop orders"),
) -> None:
    """Submit one simulated order against the journaled ledger."""
    cfg = load_config(config)
    setup_logging(cfg.log)
    db = Database(cfg.storage.sqlite_path)
    try:
        ledger = _journaled_ledger(cfg, db)
        try:
            order = ledger.submit_order(symbol, side, order_type, qty, price)
        except OrderRejected as exc:
            typer.echo(f"Order rejected: {exc}")
            raise typer.Exit(code=1)
        typer.echo(
            f"filled order_id={order.order_id} {order.side.value} {order.qty} {order.symbol} @ {order.price} total={order.total}"
        )
        typer.echo(f"balance={ledger.balance}")
    finally:
        db.close()


@app.command()
def portfolio(config: str = typer.Option(..., "--config", "-c")) -> None:
    """Print balance, valued positions and the order count."""
    cfg = load_config(config)
    db = Database(cfg.storage.sqlite_path)
    try:
        snap = _journaled_ledger(cfg, db).snapshot()
    finally:
        db.close()
    typer.echo(f"balance={snap.balance} holdings={snap.holdings_value} equity={snap.equity} orders={len(snap.orders)}")
    for v in snap.positions:
        typer.echo(
            f"{v.symbol} qty={v.qty} avg={v.avg_price:.2f} last={v.current_price} value={v.total_value} "
            f"pnl={v.gain_loss:.2f} ({v.gain_loss_percent}%)"
        )


def _write_csv(path: Path, columns: list[str], rows: Iterable[Iterable[Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(columns)
        for row in rows:
            writer.writerow(list(row))


def _export_tables(cfg: AppConfig, outdir: Path, symbol: Optional[str] = None) -> list[Path]:
    outdir.mkdir(parents=True, exist_ok=True)
    ts_tag = utcnow().strftime("%Y%m%d_%H%M%S")
    symbols = [symbol.upper()] if symbol else cfg.feed.symbols
    db = Database(cfg.storage.sqlite_path)
    paths: list[Path] = []
    try:
        cols = ["symbol", "price", "change", "change_percent", "ts"]

        latest_rows = [q for q in db.list_latest() if q.symbol in symbols]
        path = outdir / f"{ts_tag}_stock_latest.csv"
        _write_csv(path, cols, ((q.symbol, q.price, q.change, q.change_percent, q.ts.isoformat()) for q in latest_rows))
        paths.append(path)

        history_rows = [q for sym in symbols for q in db.get_history(sym)]
        path = outdir / f"{ts_tag}_stock_history.csv"
        _write_csv(path, cols, ((q.symbol, q.price, q.change, q.change_percent, q.ts.isoformat()) for q in history_rows))
        paths.append(path)

        orders = [o for o in db.list_orders() if o.symbol in symbols]
        path = outdir / f"{ts_tag}_orders.csv"
        _write_csv(
            path,
            ["order_id", "symbol", "side", "order_type", "qty", "price", "total", "status", "ts"],
            (
                (o.order_id, o.symbol, o.side.value, o.order_type.value, o.qty, o.price, o.total, o.status.value, o.ts.isoformat())
                for o in orders
            ),
        )
        paths.append(path)
    finally:
        db.close()
    return paths


@app.command()
def export(
    config: str = typer.Option(..., "--config", "-c"),
    outdir: str = typer.Option("run/exports", "--outdir"),
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Only export this symbol"),
) -> None:
    """Export latest quotes, history and orders to CSV."""
    cfg = load_config(config)
    for path in _export_tables(cfg, Path(outdir), symbol):
        typer.echo(str(path))


if __name__ == "__main__":
    app()
