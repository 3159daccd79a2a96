from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Union

from stockfeed.errors import InsufficientFunds, InsufficientShares, InvalidOrder, PersistenceError, PriceUnavailable
from stockfeed.events import Quote
from stockfeed.market_data import utcnow
from stockfeed.models import LedgerSnapshot, Order, OrderStatus, OrderType, Position, PositionValuation, Side
from stockfeed.persistence import Database

ZERO = Decimal("0")
PCT = Decimal("0.01")

PriceLookup = Callable[[str], Optional[Decimal]]


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidOrder(f"invalid {field}: {value!r}") from exc


def value_position(pos: Position) -> PositionValuation:
    current = pos.current_price if pos.current_price is not None else pos.avg_price
    total_value = current * pos.qty
    cost_basis = pos.avg_price * pos.qty
    gain_loss = total_value - cost_basis
    if cost_basis == 0:
        gain_loss_pct = ZERO
    else:
        gain_loss_pct = (gain_loss / cost_basis * 100).quantize(PCT, rounding=ROUND_HALF_UP)
    return PositionValuation(
        symbol=pos.symbol,
        qty=pos.qty,
        avg_price=pos.avg_price,
        current_price=current,
        total_value=total_value,
        cost_basis=cost_basis,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss_pct,
    )


class Ledger:
    """In-memory cash balance, positions and order log for simulated trading.

    Every order is filled immediately on acceptance. All mutation and valuation
    refresh runs under one lock, so concurrent submissions cannot overspend the
    balance or oversell a position. A rejected order leaves balance, positions
    and the order log untouched.

    Market orders execute at ``price_lookup(symbol)`` (the latest-quote table);
    limit and stop orders execute at the caller's price, no trigger logic.
    """

    def __init__(
        self,
        starting_balance: Union[Decimal, int, str] = Decimal("45000"),
        price_lookup: Optional[PriceLookup] = None,
        journal: Optional[Database] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._log = logging.getLogger("ledger")
        self._lock = threading.RLock()
        self._balance = Decimal(starting_balance)
        if self._balance < 0:
            raise ValueError("starting_balance must be >= 0")
        self._positions: Dict[str, Position] = {}
        self._orders: List[Order] = []
        self._price_lookup = price_lookup
        self._journal = journal
        self._clock = clock

    # Read interface

    @property
    def balance(self) -> Decimal:
        with self._lock:
            return self._balance

    def positions(self) -> Dict[str, Position]:
        with self._lock:
            return {s: Position(p.symbol, p.qty, p.avg_price, p.current_price) for s, p in self._positions.items()}

    def position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            p = self._positions.get(symbol)
            return Position(p.symbol, p.qty, p.avg_price, p.current_price) if p else None

    def orders(self) -> tuple[Order, ...]:
        with self._lock:
            return tuple(self._orders)

    def valuation(self, symbol: str) -> Optional[PositionValuation]:
        with self._lock:
            pos = self._positions.get(symbol)
            return value_position(pos) if pos else None

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            vals = tuple(value_position(p) for p in sorted(self._positions.values(), key=lambda p: p.symbol))
            holdings = sum((v.total_value for v in vals), ZERO)
            return LedgerSnapshot(
                ts=self._clock(),
                balance=self._balance,
                positions=vals,
                orders=tuple(self._orders),
                holdings_value=holdings,
                equity=self._balance + holdings,
            )

    # Write interface

    def submit_order(
        self,
        symbol: str,
        side: Union[Side, str],
        order_type: Union[OrderType, str] = OrderType.MARKET,
        qty: int = 0,
        price: Optional[Union[Decimal, int, str]] = None,
    ) -> Order:
        side = _coerce_enum(Side, side, "side")
        order_type = _coerce_enum(OrderType, order_type, "order_type")
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise InvalidOrder("symbol is required")
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InvalidOrder(f"quantity must be a positive integer, got {qty!r}")

        with self._lock:
            exec_price = self._resolve_price(symbol, order_type, price)
            order = self._fill(uuid.uuid4().hex, symbol, side, order_type, qty, exec_price, self._clock())
            # Journal rows must land in fill order; restore replays them that way.
            if self._journal is not None:
                try:
                    self._journal.insert_order(order)
                except PersistenceError as exc:
                    self._log.error("order_journal_failed", extra={"order_id": order.order_id, "error": str(exc)})
        return order

    def restore(self, orders: Iterable[Order]) -> int:
        """Rebuild state by re-applying journaled filled orders, oldest first.

        Only valid on a ledger with no orders yet. An order that no longer fits
        (e.g. a different starting balance) raises the same errors as
        ``submit_order``.
        """
        with self._lock:
            if self._orders:
                raise RuntimeError("restore() requires an empty ledger")
            count = 0
            for o in orders:
                if o.status is not OrderStatus.FILLED:
                    continue
                self._fill(o.order_id, o.symbol, o.side, o.order_type, o.qty, o.price, o.ts)
                count += 1
        self._log.info("ledger_restored", extra={"orders": count, "balance": str(self.balance)})
        return count

    def _fill(
        self,
        order_id: str,
        symbol: str,
        side: Side,
        order_type: OrderType,
        qty: int,
        exec_price: Decimal,
        ts: datetime,
    ) -> Order:
        # Caller holds self._lock.
        total = exec_price * qty

        if side is Side.BUY:
            if self._balance < total:
                self._log.info(
                    "order_rejected",
                    extra={"symbol": symbol, "side": side.value, "qty": qty, "total": str(total), "reason": "insufficient_funds"},
                )
                raise InsufficientFunds(required=total, available=self._balance)
            self._balance -= total
            pos = self._positions.get(symbol)
            if pos is None:
                self._positions[symbol] = Position(symbol=symbol, qty=qty, avg_price=exec_price, current_price=exec_price)
            else:
                pos.avg_price = (pos.avg_price * pos.qty + exec_price * qty) / (pos.qty + qty)
                pos.qty += qty
        else:
            pos = self._positions.get(symbol)
            held = pos.qty if pos else 0
            if pos is None or held < qty:
                self._log.info(
                    "order_rejected",
                    extra={"symbol": symbol, "side": side.value, "qty": qty, "held": held, "reason": "insufficient_shares"},
                )
                raise InsufficientShares(symbol, requested=qty, held=held)
            self._balance += total
            pos.qty -= qty
            if pos.qty == 0:
                del self._positions[symbol]

        order = Order(
            order_id=order_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            qty=qty,
            price=exec_price,
            status=OrderStatus.FILLED,
            ts=ts,
            total=total,
        )
        self._orders.append(order)
        pos_after = self._positions.get(symbol)
        self._log.info(
            "order_filled",
            extra={
                "order_id": order.order_id,
                "symbol": symbol,
                "side": side.value,
                "order_type": order_type.value,
                "qty": qty,
                "price": str(exec_price),
                "total": str(total),
                "balance": str(self._balance),
                "pos_qty": pos_after.qty if pos_after else 0,
                "pos_avg": str(pos_after.avg_price) if pos_after else None,
            },
        )
        return order

    def refresh_valuation(self, quote: Quote) -> Optional[PositionValuation]:
        with self._lock:
            pos = self._positions.get(quote.symbol)
            if pos is None:
                return None
            pos.current_price = quote.price
            return value_position(pos)

    def _resolve_price(self, symbol: str, order_type: OrderType, price: Optional[Union[Decimal, int, str]]) -> Decimal:
        if order_type is OrderType.MARKET:
            try:
                latest = self._price_lookup(symbol) if self._price_lookup is not None else None
            except PersistenceError as exc:
                raise PriceUnavailable(f"latest price lookup failed for {symbol}: {exc}") from exc
            if latest is None:
                raise PriceUnavailable(f"no latest price for {symbol}")
            return latest
        if price is None:
            raise InvalidOrder(f"{order_type.value} orders require a price")
        try:
            value = Decimal(str(price))
        except ArithmeticError as exc:
            raise InvalidOrder(f"invalid price: {price!r}") from exc
        if not value.is_finite() or value <= 0:
            raise InvalidOrder(f"price must be positive, got {price!r}")
        return value
